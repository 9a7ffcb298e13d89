from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.autoimport import evaluate_auto_import_eligibility
from core.config import CleanerConfig, ServiceInstance
from core.constants import (
    IMPORT_RULES,
    RULE_ERROR_PATTERN,
    RULE_FAILED,
    RULE_HEALTHY,
    RULE_IMPORT_BLOCKED,
    RULE_IMPORT_PENDING,
    RULE_SEEDING_TIMEOUT,
    RULE_SLOW,
    RULE_STALLED,
    RULE_TOO_YOUNG,
    RULE_WHITELISTED,
)
from core.errors import ArrRequestError, ConfigError, FetchError, LedgerError
from core.models import (
    EnhancedPreviewItem,
    EnhancedPreviewResult,
    QueueStateSummary,
    StrikeInfo,
)
from core.runner import Candidate, StrikeDecision, classify_queue, config_error_message, decide_strikes
from core.utils import (
    age_minutes,
    collect_status_texts,
    get_download_id,
    get_item_id,
    get_progress_percent,
    get_size,
    get_sizeleft,
    get_title,
    get_tracked_state,
    get_tracked_status,
    round_half_up,
    utcnow,
)
from storage.strikes import StrikeRecord, StrikeStore

logger = logging.getLogger(__name__)

ACTION_REMOVE = 'remove'
ACTION_WARN = 'warn'
ACTION_SKIP = 'skip'
ACTION_WHITELIST = 'whitelist'


def calculate_queue_summary(records: Sequence[Dict[str, Any]]) -> QueueStateSummary:
    """Count queue items per coarse state; each item lands in at most one bucket."""
    summary = QueueStateSummary(total_items=len(records))
    for item in records:
        status = str(item.get('status') or '').lower()
        state = get_tracked_state(item)
        tracked_status = get_tracked_status(item)
        if state in ('importfailed', 'failed') or status == 'failed' or tracked_status == 'error':
            summary.failed += 1
        elif state in ('importpending', 'importblocked', 'importing'):
            summary.import_pending += 1
        elif status in ('seeding', 'completed') or tracked_status == 'seeding':
            summary.seeding += 1
        elif status == 'paused':
            summary.paused += 1
        elif status in ('queued', 'delay'):
            summary.queued += 1
        elif status in ('downloading', 'warning'):
            summary.downloading += 1
    return summary


def _fmt_hours(mins: float) -> str:
    if mins < 120:
        return f'{round_half_up(mins)} minutes'
    return f'{mins / 60.0:.1f} hours'


def generate_detailed_reason(rule: str, item: Dict[str, Any], config: CleanerConfig, now: datetime) -> str:
    """Longer explanation of a rule decision for display next to the short reason."""
    age = age_minutes(item, now) or 0.0
    texts = collect_status_texts(item)
    status_text = texts[0] if texts else 'no status message'

    if rule == RULE_WHITELISTED:
        return 'This item matches a whitelist pattern and is protected from every cleanup rule.'
    if rule == RULE_FAILED:
        return (
            f'The download client or the service reported this download as failed ({status_text}). '
            'Failed downloads will not complete on their own.'
        )
    if rule == RULE_STALLED:
        return (
            f'This download has been in the queue for {_fmt_hours(age)} without making expected progress. '
            f'The stalled threshold is {config.stalled_threshold_mins} minutes.'
        )
    if rule == RULE_SLOW:
        return (
            f'This download is transferring below {config.slow_speed_threshold} KB/s '
            f'after the {config.slow_grace_period_mins} minute grace period.'
        )
    if rule == RULE_ERROR_PATTERN:
        return f'A status message matched one of your custom error patterns: {status_text}.'
    if rule == RULE_IMPORT_BLOCKED:
        return (
            f'The download finished but the service refused to import it: {status_text}. '
            f'Cleanup level is "{config.import_block_cleanup_level}".'
        )
    if rule == RULE_IMPORT_PENDING:
        return (
            f'The download finished {_fmt_hours(age)} ago and is still waiting to be imported '
            f'(threshold: {config.import_pending_threshold_mins} minutes): {status_text}.'
        )
    if rule == RULE_SEEDING_TIMEOUT:
        return (
            f'This torrent has been in the queue for {_fmt_hours(age)}, '
            f'past the seeding limit of {config.seeding_timeout_hours} hours.'
        )
    return 'This download is progressing normally and doesn\'t match any removal rules.'


def _base_item(item: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    age = age_minutes(item, now)
    protocol = item.get('protocol')
    indexer = item.get('indexer')
    client = item.get('downloadClient')
    status = item.get('trackedDownloadStatus')
    return {
        'id': get_item_id(item),
        'title': get_title(item),
        'queue_age': round_half_up(age) if age is not None else 0,
        'size': get_size(item) or 0,
        'sizeleft': get_sizeleft(item) or 0,
        'progress': get_progress_percent(item),
        'protocol': protocol if isinstance(protocol, str) else None,
        'indexer': indexer if isinstance(indexer, str) else None,
        'download_client': client if isinstance(client, str) else None,
        'status': status if isinstance(status, str) else None,
        'download_id': get_download_id(item),
    }


def _empty_result(
    instance: ServiceInstance,
    config: CleanerConfig,
    now: datetime,
    *,
    reachable: bool,
    error_message: str,
) -> EnhancedPreviewResult:
    return EnhancedPreviewResult(
        instance_id=instance.id,
        instance_label=instance.label,
        instance_service=instance.service_key,
        instance_reachable=reachable,
        queue_summary=QueueStateSummary(),
        config_snapshot=config.snapshot(),
        preview_generated_at=now.isoformat(),
        error_message=error_message,
    )


async def execute_enhanced_preview(
    instance: ServiceInstance,
    config: CleanerConfig,
    *,
    client: Any,
    store: StrikeStore,
    now: Optional[datetime] = None,
) -> EnhancedPreviewResult:
    """Classify every queued item the way a live run would, without changing anything."""
    now = now or utcnow()

    try:
        patterns = config.parse_patterns()
    except ConfigError as e:
        logger.error(f'Instance {instance.id}: invalid cleaner configuration, preview aborted: {e}')
        return _empty_result(instance, config, now, reachable=True, error_message=config_error_message(e))

    try:
        records = await client.get_queue()
    except (ArrRequestError, FetchError) as e:
        logger.warning(f'Instance {instance.id}: failed to fetch queue for preview: {e}')
        return _empty_result(instance, config, now, reachable=False, error_message=str(e) or 'Unknown error')

    existing: Dict[str, StrikeRecord] = {}
    if config.strike_system_enabled or config.auto_import_enabled:
        try:
            existing = store.all_for_instance(instance.id)
        except LedgerError as e:
            logger.error(f'Instance {instance.id}: strike records unreadable, preview aborted: {e}')
            return _empty_result(
                instance, config, now, reachable=True, error_message=f'Strike system unavailable: {e}'
            )

    classification = classify_queue(records, config, patterns, now)
    if config.strike_system_enabled:
        decision = decide_strikes(classification.matched, existing, config.max_strikes)
    else:
        decision = StrikeDecision(to_remove=list(classification.matched))

    # Keyed by object identity: queue ids are not guaranteed unique in a snapshot
    young = {id(item): age for item, age in classification.too_young}
    whitelisted = {id(item): res for item, res in classification.whitelisted}
    overflow = {id(c.item) for c in decision.to_remove[config.max_removals_per_run:]}
    decided: Dict[int, tuple] = {}
    for cand in decision.to_remove:
        decided[id(cand.item)] = (ACTION_REMOVE, cand)
    for cand in decision.warned:
        decided[id(cand.item)] = (ACTION_WARN, cand)

    preview_items: List[EnhancedPreviewItem] = []
    rule_summary: Dict[str, int] = {}
    for item in records:
        base = _base_item(item, now)
        key = id(item)
        if key in young:
            age = round_half_up(young[key])
            preview_items.append(EnhancedPreviewItem(
                action=ACTION_SKIP,
                rule=RULE_TOO_YOUNG,
                reason=f'In queue for {age}m (min: {config.min_queue_age_mins}m)',
                detailed_reason=(
                    f'This item has only been in the queue for {age} minutes. '
                    f'Items must be at least {config.min_queue_age_mins} minutes old before being evaluated.'
                ),
                **base,
            ))
            continue
        if key in whitelisted:
            rule_summary[RULE_WHITELISTED] = rule_summary.get(RULE_WHITELISTED, 0) + 1
            preview_items.append(EnhancedPreviewItem(
                action=ACTION_WHITELIST,
                rule=RULE_WHITELISTED,
                reason=whitelisted[key].reason,
                detailed_reason=generate_detailed_reason(RULE_WHITELISTED, item, config, now),
                **base,
            ))
            continue
        if key not in decided:
            preview_items.append(EnhancedPreviewItem(
                action=ACTION_SKIP,
                rule=RULE_HEALTHY,
                reason='No issues detected',
                detailed_reason=generate_detailed_reason(RULE_HEALTHY, item, config, now),
                **base,
            ))
            continue

        action, cand = decided[key]
        preview_items.append(_matched_item(action, cand, key in overflow, existing, config, patterns, now, base))
        rule_summary[cand.result.rule] = rule_summary.get(cand.result.rule, 0) + 1

    would_remove = sum(1 for i in preview_items if i.action == ACTION_REMOVE)
    would_warn = sum(1 for i in preview_items if i.action == ACTION_WARN)
    would_skip = sum(1 for i in preview_items if i.action in (ACTION_SKIP, ACTION_WHITELIST))
    return EnhancedPreviewResult(
        instance_id=instance.id,
        instance_label=instance.label,
        instance_service=instance.service_key,
        instance_reachable=True,
        queue_summary=calculate_queue_summary(records),
        config_snapshot=config.snapshot(),
        preview_generated_at=now.isoformat(),
        would_remove=would_remove,
        would_warn=would_warn,
        would_skip=would_skip,
        preview_items=preview_items,
        rule_summary=rule_summary,
    )


def _matched_item(
    action: str,
    cand: Candidate,
    over_cap: bool,
    existing: Dict[str, StrikeRecord],
    config: CleanerConfig,
    patterns,
    now: datetime,
    base: Dict[str, Any],
) -> EnhancedPreviewItem:
    rule = cand.result.rule
    reason = cand.rule_reason
    if over_cap:
        action = ACTION_SKIP
        reason = f'Exceeded max removals per run ({config.max_removals_per_run})'

    strike_info = None
    if config.strike_system_enabled:
        strike_info = StrikeInfo(
            current_strikes=cand.result.strike_count or 0,
            max_strikes=config.max_strikes,
            would_trigger_removal=(cand.result.strike_count or 0) >= config.max_strikes,
        )

    eligible = None
    eligible_reason = None
    if rule in IMPORT_RULES:
        eligibility = evaluate_auto_import_eligibility(
            cand.texts, config, existing.get(cand.key), now, patterns
        )
        eligible = eligibility.eligible
        eligible_reason = eligibility.reason

    return EnhancedPreviewItem(
        action=action,
        rule=rule,
        reason=reason,
        detailed_reason=generate_detailed_reason(rule, cand.item, config, now),
        strike_info=strike_info,
        auto_import_eligible=eligible,
        auto_import_reason=eligible_reason,
        **base,
    )
