from __future__ import annotations

# Rule names reported on result items
RULE_FAILED = 'failed'
RULE_STALLED = 'stalled'
RULE_SLOW = 'slow'
RULE_ERROR_PATTERN = 'error_pattern'
RULE_IMPORT_BLOCKED = 'import_blocked'
RULE_IMPORT_PENDING = 'import_pending'
RULE_SEEDING_TIMEOUT = 'seeding_timeout'
RULE_WHITELISTED = 'whitelisted'

# Preview-only pseudo rules
RULE_HEALTHY = 'healthy'
RULE_TOO_YOUNG = 'too_young'

IMPORT_RULES = (RULE_IMPORT_PENDING, RULE_IMPORT_BLOCKED)

CLEANUP_LEVELS = ('safe', 'moderate', 'aggressive')
PATTERN_MODES = ('defaults', 'include', 'exclude')
WHITELIST_TYPES = ('tracker', 'tag', 'category', 'title')

# Run-level limits
MANUAL_CLEAN_COOLDOWN_MINS = 2
MAX_CLEAN_DURATION_SECS = 5 * 60
SCHEDULER_TICK_SECS = 60
AUTO_IMPORT_DELAY_SECS = 0.2
MAX_AUTO_IMPORTS_PER_RUN = 10
QUEUE_PAGE_SIZE = 1000

# (default, min, max) for every numeric config knob
LIMITS = {
    'interval_mins': (30, 5, 1440),
    'stalled_threshold_mins': (60, 10, 1440),
    'slow_speed_threshold': (100, 10, 10000),
    'slow_grace_period_mins': (30, 5, 1440),
    'max_removals_per_run': (10, 1, 100),
    'min_queue_age_mins': (5, 0, 60),
    'max_strikes': (3, 2, 10),
    'strike_decay_hours': (24, 1, 168),
    'seeding_timeout_hours': (72, 1, 720),
    'estimated_completion_multiplier': (2.0, 1.5, 10.0),
    'import_pending_threshold_mins': (60, 5, 1440),
    'auto_import_max_attempts': (2, 1, 5),
    'auto_import_cooldown_mins': (30, 5, 240),
}

STALL_KEYWORDS = (
    'stalled',
    'no seeds',
    'no seeders',
    'not seeding',
    'dead torrent',
    'timed out',
    'timeout',
    'no connections',
    'metadata',
    'queued for checking',
)

FAILURE_KEYWORDS = (
    'failed',
    'failure',
    'import failed',
    'importfailed',
    'error',
    'cannot be imported',
    'could not be imported',
    'not a valid',
    'disk space',
    'permission denied',
    'access denied',
)

# Import-blocked tiers. SAFE is always cleaned, REVIEW from "moderate",
# TECHNICAL only at "aggressive".
IMPORT_BLOCKED_SAFE_KEYWORDS = (
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    'quality not wanted',
    'not wanted in',
    'cutoff already met',
    'not an upgrade',
    'not a custom format upgrade',
    'do not improve on existing',
    'sample only',
    'sample file',
    'no files found',
    'no video files',
    'no audio files',
    'no book files',
    'bad nfo',
)

IMPORT_BLOCKED_REVIEW_KEYWORDS = (
    'manual import',
    'manual interaction',
    'missing expected',
    'expected files',
    'automatic import is not possible',
    'was not found in the grabbed release',
    "couldn't find similar album",
    'match is not close enough',
    'has unmatched tracks',
)

IMPORT_BLOCKED_TECHNICAL_KEYWORDS = (
    'unpack required',
    'unpacking failed',
    'rar required',
    'password protected',
)

# Import pending items showing these are still being worked on remotely
IMPORT_PENDING_RECOVERABLE_KEYWORDS = (
    'extracting',
    'unpacking',
    'processing',
    'copying',
    'moving',
    'importing',
    'scanning',
)

AUTO_IMPORT_SAFE_KEYWORDS = (
    'waiting for import',
    'import pending',
    'manual import required',
    'manual import',
    'waiting for manual',
    'matched to series by id',
    'matched to movie by id',
    'matched to artist by id',
    'matched to album by id',
    'matched to author by id',
    'matched to book by id',
    'via grab history',
    'title mismatch',
    'name mismatch',
)

AUTO_IMPORT_NEVER_KEYWORDS = (
    'no video files',
    'no audio files',
    'no book files',
    'no files found',
    'no files',
    'sample only',
    'sample file',
    'bad nfo',
    'password protected',
    'unpack required',
    'rar required',
    'unpacking failed',
    'extraction failed',
    'quality not wanted',
    'not an upgrade',
    'cutoff already met',
    'not wanted in',
    'not a custom format upgrade',
    'do not improve on existing',
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    "couldn't find similar album",
    'match is not close enough',
    'path does not exist',
    'file not found',
)
