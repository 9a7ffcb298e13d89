from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.config import CleanerConfig, ParsedPatterns
from core.constants import (
    FAILURE_KEYWORDS,
    IMPORT_BLOCKED_REVIEW_KEYWORDS,
    IMPORT_BLOCKED_SAFE_KEYWORDS,
    IMPORT_BLOCKED_TECHNICAL_KEYWORDS,
    IMPORT_PENDING_RECOVERABLE_KEYWORDS,
    RULE_ERROR_PATTERN,
    RULE_FAILED,
    RULE_IMPORT_BLOCKED,
    RULE_IMPORT_PENDING,
    RULE_SEEDING_TIMEOUT,
    RULE_SLOW,
    RULE_STALLED,
    STALL_KEYWORDS,
)
from core.utils import (
    collect_status_texts,
    get_protocol,
    get_size,
    get_sizeleft,
    get_tracked_state,
    get_tracked_status,
    matches_custom_patterns,
    matches_keywords,
    parse_date,
    round_half_up,
)


@dataclass(frozen=True)
class RuleMatch:
    rule: str
    reason: str


class _Halt:
    """Marker returned by an evaluator to stop evaluation without a match."""


HALT = _Halt()


@dataclass
class ItemContext:
    item: Dict[str, Any]
    config: CleanerConfig
    patterns: ParsedPatterns
    now: datetime
    texts: List[str]
    state: str
    status: str

    @property
    def added(self) -> Optional[datetime]:
        return parse_date(self.item.get('added'))

    def age_minutes(self) -> Optional[float]:
        added = self.added
        if added is None:
            return None
        return (self.now - added).total_seconds() / 60.0


def evaluate_import_block_state(
    status_texts: Sequence[str],
    cleanup_level: str,
    pattern_mode: str,
    custom_patterns: Sequence[str],
    state_type: str,
) -> Optional[RuleMatch]:
    """Decide whether an import-blocked/pending item should be cleaned.

    - ``include`` with patterns: clean only items matching a custom pattern.
    - ``exclude`` with patterns: items matching a pattern are protected, the
      rest fall through to the keyword tiers.
    - ``defaults``: SAFE tier always cleans, REVIEW from ``moderate``,
      TECHNICAL only at ``aggressive``. Unmatched statuses count as REVIEW.
    """
    rule = RULE_IMPORT_BLOCKED if state_type == 'blocked' else RULE_IMPORT_PENDING
    prefix = 'Import blocked' if state_type == 'blocked' else 'Import pending'

    if pattern_mode == 'include' and custom_patterns:
        hit = matches_custom_patterns(status_texts, custom_patterns)
        if hit:
            return RuleMatch(rule, f'{prefix} (matched pattern): {hit}')
        return None

    if pattern_mode == 'exclude' and custom_patterns:
        if matches_custom_patterns(status_texts, custom_patterns):
            return None

    safe = matches_keywords(status_texts, IMPORT_BLOCKED_SAFE_KEYWORDS)
    if safe:
        return RuleMatch(rule, f'{prefix} (safe to remove): {safe}')

    review = matches_keywords(status_texts, IMPORT_BLOCKED_REVIEW_KEYWORDS)
    if review:
        if cleanup_level in ('moderate', 'aggressive'):
            return RuleMatch(rule, f'{prefix} (needs review): {review}')
        return None

    technical = matches_keywords(status_texts, IMPORT_BLOCKED_TECHNICAL_KEYWORDS)
    if technical:
        if cleanup_level == 'aggressive':
            return RuleMatch(rule, f'{prefix} (technical): {technical}')
        return None

    # TODO: unknown statuses are treated as REVIEW tier under a generic reason;
    # revisit once real-world blocked messages are catalogued.
    summary = status_texts[0] if status_texts else 'requires manual intervention'
    if cleanup_level in ('moderate', 'aggressive'):
        return RuleMatch(rule, f'{prefix}: {summary}')
    return None


def _import_block_for(ctx: ItemContext, state_type: str) -> Optional[RuleMatch]:
    return evaluate_import_block_state(
        ctx.texts,
        ctx.config.import_block_cleanup_level,
        ctx.config.import_block_pattern_mode,
        ctx.patterns.import_block_patterns,
        state_type,
    )


def check_failed(ctx: ItemContext):
    if not ctx.config.failed_enabled:
        return None
    if ctx.state == 'importfailed' or ctx.status == 'error' or 'failed' in ctx.state:
        return RuleMatch(RULE_FAILED, f'Download failed (state: {ctx.state or ctx.status})')
    hit = matches_keywords(ctx.texts, FAILURE_KEYWORDS)
    if hit:
        return RuleMatch(RULE_FAILED, f'Failed: {hit}')
    return None


def check_stalled(ctx: ItemContext):
    cfg = ctx.config
    if not cfg.stalled_enabled:
        return None
    if ctx.status == 'warning':
        hit = matches_keywords(ctx.texts, STALL_KEYWORDS)
        if hit:
            return RuleMatch(RULE_STALLED, f'Stalled: {hit}')
    age = ctx.age_minutes()
    if age is not None:
        size = get_size(ctx.item) or 0
        left = get_sizeleft(ctx.item) or 0
        # Download never started
        if size > 0 and left >= size and age > cfg.stalled_threshold_mins:
            return RuleMatch(
                RULE_STALLED,
                f'No progress for {round_half_up(age)} minutes (threshold: {cfg.stalled_threshold_mins}m)',
            )
    return None


def check_slow(ctx: ItemContext):
    cfg = ctx.config
    if not cfg.slow_enabled:
        return None
    age = ctx.age_minutes()
    if age is None or age <= cfg.slow_grace_period_mins:
        return None
    size = get_size(ctx.item) or 0
    left = get_sizeleft(ctx.item) or 0
    elapsed = age * 60.0
    if elapsed > 0 and size > 0 and left > 0:
        speed_kbs = (size - left) / 1024.0 / elapsed
        if speed_kbs < cfg.slow_speed_threshold:
            return RuleMatch(
                RULE_SLOW,
                f'Speed: {speed_kbs:.1f} KB/s (threshold: {cfg.slow_speed_threshold} KB/s)',
            )
    return None


def check_error_patterns(ctx: ItemContext):
    if not ctx.config.error_patterns_enabled or not ctx.patterns.error_patterns:
        return None
    all_text = ' '.join(ctx.texts).lower()
    err = ctx.item.get('errorMessage')
    err_text = err.lower() if isinstance(err, str) else ''
    for pattern in ctx.patterns.error_patterns:
        needle = pattern.strip().lower()
        if not needle:
            continue
        if needle in all_text or needle in err_text:
            return RuleMatch(RULE_ERROR_PATTERN, f'Matched error pattern: "{pattern}"')
    return None


def check_import_blocked(ctx: ItemContext):
    if not ctx.config.import_pending_enabled or ctx.state != 'importblocked':
        return None
    return _import_block_for(ctx, 'blocked')


def check_estimated_completion(ctx: ItemContext):
    cfg = ctx.config
    if not cfg.estimated_completion_enabled:
        return None
    estimated = parse_date(ctx.item.get('estimatedCompletionTime'))
    added = ctx.added
    left = get_sizeleft(ctx.item)
    if estimated is None or added is None or left is None or left <= 0:
        return None
    expected = (estimated - added).total_seconds()
    actual = (ctx.now - added).total_seconds()
    multiplier = cfg.estimated_completion_multiplier
    if expected > 0 and actual > expected * multiplier:
        exceeded = round_half_up((actual - expected) / 60.0)
        return RuleMatch(
            RULE_STALLED,
            f'Exceeded estimated completion by {exceeded}m ({multiplier:g}x threshold)',
        )
    return None


def check_import_pending(ctx: ItemContext):
    cfg = ctx.config
    if not cfg.import_pending_enabled or ctx.state != 'importpending':
        return None
    # Still being worked on remotely; later rules must not flag it either
    if matches_keywords(ctx.texts, IMPORT_PENDING_RECOVERABLE_KEYWORDS):
        return HALT
    match = _import_block_for(ctx, 'pending')
    if match:
        return match
    age = ctx.age_minutes()
    if age is not None and age > cfg.import_pending_threshold_mins:
        summary = '; '.join(ctx.texts[:2]) if ctx.texts else 'no status info'
        return RuleMatch(RULE_IMPORT_PENDING, f'Import pending too long ({round_half_up(age)}m): {summary}')
    return None


def check_seeding_timeout(ctx: ItemContext):
    cfg = ctx.config
    if not cfg.seeding_timeout_enabled:
        return None
    # Usenet downloads never seed
    if get_protocol(ctx.item) == 'usenet':
        return None
    left = get_sizeleft(ctx.item)
    seeding = (
        left == 0
        or ctx.status == 'seeding'
        or ctx.state in ('importpending', 'importing')
    )
    if not seeding or ctx.added is None:
        return None
    hours = (ctx.now - ctx.added).total_seconds() / 3600.0
    if hours >= cfg.seeding_timeout_hours:
        return RuleMatch(
            RULE_SEEDING_TIMEOUT,
            f'Seeding for {int(math.floor(hours))}h (limit: {cfg.seeding_timeout_hours}h)',
        )
    return None


# Fixed priority order; first match wins
RULE_EVALUATORS: List[Callable[[ItemContext], Any]] = [
    check_failed,
    check_stalled,
    check_slow,
    check_error_patterns,
    check_import_blocked,
    check_estimated_completion,
    check_import_pending,
    check_seeding_timeout,
]


def evaluate_queue_item(
    item: Dict[str, Any],
    config: CleanerConfig,
    now: datetime,
    patterns: Optional[ParsedPatterns] = None,
) -> Optional[RuleMatch]:
    """Evaluate one queue item against the enabled rules.

    ``patterns`` should come from ``config.parse_patterns()`` computed once per
    run; it is parsed here when omitted.
    """
    if patterns is None:
        patterns = config.parse_patterns()
    ctx = ItemContext(
        item=item,
        config=config,
        patterns=patterns,
        now=now,
        texts=collect_status_texts(item),
        state=get_tracked_state(item),
        status=get_tracked_status(item),
    )
    for evaluator in RULE_EVALUATORS:
        result = evaluator(ctx)
        if result is HALT:
            return None
        if result is not None:
            return result
    return None
