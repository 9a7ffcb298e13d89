import importlib
from datetime import datetime, timedelta, timezone

import pytest

from core.config import CleanerConfig

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ago(**delta):
    return (NOW - timedelta(**delta)).isoformat()


def _eval(item, **cfg):
    rules = importlib.import_module('core.rules')
    return rules.evaluate_queue_item(item, CleanerConfig(**cfg), NOW)


def _blocked(text, **extra):
    item = {
        'id': 1,
        'title': 'Show.S01E01',
        'protocol': 'usenet',
        'size': 1000,
        'sizeleft': 0,
        'added': _ago(hours=2),
        'trackedDownloadState': 'importBlocked',
        'trackedDownloadStatus': 'warning',
        'statusMessages': [{'title': 'Show.S01E01.mkv', 'messages': [text]}],
    }
    item.update(extra)
    return item


def test_failed_state_matches_first():
    item = {'id': 1, 'trackedDownloadState': 'importFailed', 'added': _ago(hours=1)}
    m = _eval(item)
    assert m.rule == 'failed'
    assert m.reason == 'Download failed (state: importfailed)'


def test_failed_keyword_in_status_text():
    item = {
        'id': 1,
        'added': _ago(hours=1),
        'statusMessages': [{'title': 'x', 'messages': ['Permission denied writing file']}],
    }
    m = _eval(item)
    assert m.rule == 'failed'
    assert m.reason == 'Failed: Permission denied writing file'


def test_failed_disabled_lets_later_rules_run():
    item = {'id': 1, 'trackedDownloadStatus': 'error', 'added': _ago(hours=1)}
    assert _eval(item, failed_enabled=False) is None


def test_stalled_keyword_requires_warning_status():
    texts = [{'title': 'The download is stalled with no connections'}]
    warning = {'id': 1, 'trackedDownloadStatus': 'warning', 'statusMessages': texts, 'added': _ago(minutes=10)}
    ok = {'id': 2, 'trackedDownloadStatus': 'ok', 'statusMessages': texts, 'added': _ago(minutes=10)}
    assert _eval(warning).rule == 'stalled'
    assert _eval(ok) is None


def test_stalled_when_download_never_started():
    item = {'id': 1, 'size': 1000, 'sizeleft': 1000, 'added': _ago(minutes=90)}
    m = _eval(item, stalled_threshold_mins=60)
    assert m.rule == 'stalled'
    assert m.reason == 'No progress for 90 minutes (threshold: 60m)'


def test_not_stalled_before_threshold():
    item = {'id': 1, 'size': 1000, 'sizeleft': 1000, 'added': _ago(minutes=30)}
    assert _eval(item, stalled_threshold_mins=60) is None


def test_slow_download_after_grace_period():
    # 10 MiB in 60 minutes is well under 100 KB/s
    item = {'id': 1, 'size': 20 * 1024 * 1024, 'sizeleft': 10 * 1024 * 1024, 'added': _ago(minutes=60)}
    m = _eval(item, slow_enabled=True, slow_speed_threshold=100, slow_grace_period_mins=30)
    assert m.rule == 'slow'
    assert m.reason.startswith('Speed: 2.8 KB/s')


def test_slow_ignored_inside_grace_period():
    item = {'id': 1, 'size': 20 * 1024 * 1024, 'sizeleft': 10 * 1024 * 1024, 'added': _ago(minutes=20)}
    assert _eval(item, slow_enabled=True, slow_grace_period_mins=30) is None


def test_error_pattern_matches_error_message():
    item = {'id': 1, 'added': _ago(minutes=10), 'errorMessage': 'Tracker says: Unregistered torrent'}
    m = _eval(item, failed_enabled=False, error_patterns_enabled=True, error_patterns='["unregistered"]')
    assert m.rule == 'error_pattern'
    assert m.reason == 'Matched error pattern: "unregistered"'


def test_import_blocked_safe_keyword_cleaned_at_safe_level():
    m = _eval(_blocked('Quality not wanted in profile'), import_block_cleanup_level='safe')
    assert m.rule == 'import_blocked'
    assert m.reason == 'Import blocked (safe to remove): Quality not wanted in profile'


def test_import_blocked_unknown_status_protected_at_safe_level():
    assert _eval(_blocked('Requires manual review'), import_block_cleanup_level='safe') is None


def test_import_blocked_unknown_status_cleaned_at_moderate():
    m = _eval(_blocked('Requires manual review'), import_block_cleanup_level='moderate')
    assert m.rule == 'import_blocked'
    # First status text is the message title
    assert m.reason == 'Import blocked: Show.S01E01.mkv'


def test_import_blocked_gated_by_import_pending_switch():
    assert _eval(_blocked('Quality not wanted'), import_pending_enabled=False) is None


def test_estimated_completion_overrun_is_stalled():
    item = {
        'id': 1,
        'size': 1000,
        'sizeleft': 500,
        'added': _ago(hours=5),
        'estimatedCompletionTime': _ago(hours=4),
    }
    m = _eval(item, stalled_enabled=False, estimated_completion_enabled=True, estimated_completion_multiplier=2.0)
    assert m.rule == 'stalled'
    assert m.reason == 'Exceeded estimated completion by 240m (2x threshold)'


def test_import_pending_recoverable_is_never_flagged():
    item = _blocked('Extracting files', trackedDownloadState='importPending', added=_ago(days=10))
    assert _eval(item, seeding_timeout_enabled=True, seeding_timeout_hours=1) is None


def test_import_pending_time_threshold():
    item = {
        'id': 1,
        'protocol': 'usenet',
        'sizeleft': 0,
        'added': _ago(minutes=90),
        'trackedDownloadState': 'importPending',
        'statusMessages': [{'title': 'Waiting for something'}],
    }
    m = _eval(item, import_pending_threshold_mins=60)
    assert m.rule == 'import_pending'
    assert m.reason == 'Import pending too long (90m): Waiting for something'


def test_seeding_timeout_for_torrent():
    item = {'id': 1, 'protocol': 'torrent', 'size': 1000, 'sizeleft': 0, 'added': _ago(hours=73)}
    m = _eval(item, seeding_timeout_enabled=True, seeding_timeout_hours=72)
    assert m.rule == 'seeding_timeout'
    assert m.reason == 'Seeding for 73h (limit: 72h)'


def test_seeding_timeout_never_for_usenet():
    item = {'id': 1, 'protocol': 'usenet', 'size': 1000, 'sizeleft': 0, 'added': _ago(hours=73)}
    assert _eval(item, seeding_timeout_enabled=True, seeding_timeout_hours=72) is None


def test_healthy_item_has_no_match():
    item = {'id': 1, 'protocol': 'torrent', 'size': 1000, 'sizeleft': 400, 'added': _ago(minutes=20),
            'trackedDownloadStatus': 'ok', 'trackedDownloadState': 'downloading'}
    assert _eval(item) is None


def test_evaluation_is_idempotent():
    item = _blocked('Quality not wanted')
    assert _eval(item) == _eval(item)


def test_invalid_error_patterns_raise_config_error():
    errors = importlib.import_module('core.errors')
    with pytest.raises(errors.ConfigError):
        _eval({'id': 1}, error_patterns_enabled=True, error_patterns='not json')
