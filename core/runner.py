from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from core.actions import remove_queue_item
from core.autoimport import AutoImportResult, attempt_auto_import, evaluate_auto_import_eligibility
from core.config import CleanerConfig, ParsedPatterns, ServiceInstance
from core.constants import (
    AUTO_IMPORT_DELAY_SECS,
    IMPORT_RULES,
    MAX_AUTO_IMPORTS_PER_RUN,
    RULE_WHITELISTED,
)
from core.errors import ArrRequestError, ConfigError, FetchError, LedgerError, RemovalError
from core.events import EventBus, run_summary_fields
from core.models import STATUS_COMPLETED, STATUS_PARTIAL, CleanerResultItem, RunResult
from core.rules import evaluate_queue_item
from core.utils import (
    age_minutes,
    check_whitelist,
    collect_status_texts,
    get_download_id,
    get_item_id,
    get_protocol,
    get_title,
    strike_key_for,
    utcnow,
)
from storage.strikes import StrikeRecord, StrikeStore, StrikeTransaction

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A queue item that matched a rule, with the raw record kept for later phases."""
    item: Dict[str, Any]
    result: CleanerResultItem
    key: str
    texts: List[str] = field(default_factory=list)
    rule_reason: str = ''


@dataclass
class Classification:
    matched: List[Candidate] = field(default_factory=list)
    whitelisted: List[Tuple[Dict[str, Any], CleanerResultItem]] = field(default_factory=list)
    too_young: List[Tuple[Dict[str, Any], float]] = field(default_factory=list)
    healthy: List[Dict[str, Any]] = field(default_factory=list)
    # Strike keys of every item in the snapshot, young and whitelisted items included
    snapshot_keys: Set[str] = field(default_factory=set)


@dataclass
class StrikeDecision:
    to_remove: List[Candidate] = field(default_factory=list)
    warned: List[Candidate] = field(default_factory=list)
    # strike key -> record to drop once the remote removal is confirmed
    pending_deletions: Dict[str, StrikeRecord] = field(default_factory=dict)


def config_error_message(err: ConfigError) -> str:
    if err.field == 'whitelist_patterns':
        return 'Whitelist configuration is invalid. Please fix whitelist patterns before running.'
    if err.field == 'error_patterns':
        return 'Error patterns configuration is invalid. Please fix error patterns before running.'
    return f'Configuration is invalid: {err}'


def classify_queue(
    records: Sequence[Dict[str, Any]],
    config: CleanerConfig,
    patterns: ParsedPatterns,
    now: datetime,
) -> Classification:
    """Sort a queue snapshot into age-guarded, whitelisted, matched and healthy items."""
    out = Classification()
    for item in records:
        key = strike_key_for(item)
        out.snapshot_keys.add(key)

        age = age_minutes(item, now)
        if age is not None and age < config.min_queue_age_mins:
            out.too_young.append((item, age))
            continue

        if patterns.whitelist:
            wl = check_whitelist(item, patterns.whitelist)
            if wl.matched:
                out.whitelisted.append((item, CleanerResultItem(
                    id=get_item_id(item),
                    title=get_title(item),
                    reason=f'Whitelisted: {wl.reason}',
                    rule=RULE_WHITELISTED,
                )))
                continue

        match = evaluate_queue_item(item, config, now, patterns)
        if match is None:
            out.healthy.append(item)
            continue
        result = CleanerResultItem(
            id=get_item_id(item),
            title=get_title(item),
            reason=match.reason,
            rule=match.rule,
            protocol=get_protocol(item) or None,
            download_id=get_download_id(item),
        )
        out.matched.append(Candidate(
            item=item, result=result, key=key, texts=collect_status_texts(item), rule_reason=match.reason,
        ))
    return out


def decide_strikes(
    matched: Sequence[Candidate],
    existing: Dict[str, StrikeRecord],
    max_strikes: int,
) -> StrikeDecision:
    """Split matched items into removals and warnings from their next strike count.

    Reasons get a ``(strike n/max)`` suffix. Nothing is written here.
    """
    decision = StrikeDecision()
    for cand in matched:
        record = existing.get(cand.key)
        count = (record.strike_count if record else 0) + 1
        annotated = cand.result.evolve(
            reason=f'{cand.result.reason} (strike {count}/{max_strikes})',
            strike_count=count,
            max_strikes=max_strikes,
        )
        updated = replace(cand, result=annotated)
        if count >= max_strikes:
            decision.to_remove.append(updated)
            if record is not None:
                decision.pending_deletions[cand.key] = record
        else:
            decision.warned.append(updated)
    return decision


def _record_strikes(
    tx: StrikeTransaction,
    instance_id: str,
    decision: StrikeDecision,
    existing: Dict[str, StrikeRecord],
    stamp: float,
) -> None:
    for cand in decision.warned:
        record = existing.get(cand.key)
        if record is None:
            record = StrikeRecord(
                instance_id=instance_id,
                download_id=cand.key,
                download_title=cand.result.title,
                first_strike_at=stamp,
            )
        record.strike_count = cand.result.strike_count
        record.last_rule = cand.result.rule
        record.last_reason = cand.rule_reason
        record.last_strike_at = stamp
        if record.first_strike_at is None:
            record.first_strike_at = stamp
        tx.put(record)


def apply_strike_ledger(
    store: StrikeStore,
    instance_id: str,
    classification: Classification,
    max_strikes: int,
    now: datetime,
) -> StrikeDecision:
    """Run the strike pass and stale-record GC as one transaction."""
    with store.transaction() as tx:
        existing = tx.all_for_instance(instance_id)
        decision = decide_strikes(classification.matched, existing, max_strikes)
        _record_strikes(tx, instance_id, decision, existing, now.timestamp())
        stale = [dlid for dlid in existing if dlid not in classification.snapshot_keys]
        if stale:
            removed = tx.delete(instance_id, stale)
            logger.info(f'Instance {instance_id}: dropped {removed} strike record(s) for items no longer queued')
    return decision


def _ledger_error_message(err: LedgerError) -> str:
    cause = err.__cause__
    if cause is None or isinstance(cause, (OSError, ValueError)):
        kind = 'storage error'
    else:
        kind = 'unexpected error'
    return f'Strike system {kind}: {err}. No items removed for safety.'


def _ledger_failure(
    err: LedgerError,
    instance_id: str,
    classification: Classification,
    is_dry_run: bool,
) -> RunResult:
    logger.error(f'Instance {instance_id}: strike system unavailable, aborting clean: {err}')
    skipped = [
        c.result.evolve(reason=f'Skipped (strike system unavailable): {c.result.reason}')
        for c in classification.matched
    ]
    skipped.extend(r for _, r in classification.whitelisted)
    return RunResult.error(_ledger_error_message(err), is_dry_run=is_dry_run, skipped=skipped)


def _cap(
    items: List[Candidate], limit: int
) -> Tuple[List[Candidate], List[CleanerResultItem]]:
    overflow = [
        c.result.evolve(reason=f'Exceeded max removals per run ({limit})')
        for c in items[limit:]
    ]
    return items[:limit], overflow


def _dry_run_result(
    to_remove: List[Candidate],
    warned: List[Candidate],
    skipped: List[CleanerResultItem],
) -> RunResult:
    # Strike suffixes are already part of the reason when strikes are on
    previewed = [c.result.evolve(reason=f'[DRY RUN] Would remove: {c.result.reason}') for c in to_remove]
    would_warn = [c.result.evolve(reason=f'[DRY RUN] Would warn: {c.result.reason}') for c in warned]
    if previewed:
        message = f'Dry run: would remove {len(previewed)} item(s)'
        if would_warn:
            message += f', warn {len(would_warn)}'
    elif would_warn:
        message = f'Dry run: would warn {len(would_warn)} item(s)'
    else:
        message = 'Dry run: no items match removal rules'
    all_skipped = previewed + skipped
    return RunResult(
        items_cleaned=0,
        items_skipped=len(all_skipped),
        items_warned=len(would_warn),
        skipped_items=all_skipped,
        warned_items=would_warn,
        is_dry_run=True,
        status=STATUS_COMPLETED,
        message=message,
    )


async def execute_queue_cleaner(
    instance: ServiceInstance,
    config: CleanerConfig,
    *,
    client: Any,
    store: StrikeStore,
    now: Optional[datetime] = None,
    event_bus: Optional[EventBus] = None,
) -> RunResult:
    """Run one clean pass over an instance's download queue.

    Run-level failures (bad configuration, unreachable queue, unavailable
    strike ledger) end the run with status ``error`` before anything is
    removed. Item-level removal failures are reported as skipped and end the
    run ``partial``.
    """
    now = now or utcnow()
    dry_run = config.dry_run_mode
    instance_id = instance.id

    try:
        patterns = config.parse_patterns()
    except ConfigError as e:
        logger.error(f'Instance {instance_id}: invalid cleaner configuration, aborting: {e}')
        return RunResult.error(config_error_message(e), is_dry_run=dry_run)

    try:
        records = await client.get_queue()
    except (ArrRequestError, FetchError, asyncio.TimeoutError) as e:
        logger.error(f'Instance {instance_id}: failed to fetch queue: {e}')
        return RunResult.error(f'Failed to fetch queue: {e}', is_dry_run=dry_run)

    if not records:
        return RunResult(is_dry_run=dry_run, message='Queue is empty')

    classification = classify_queue(records, config, patterns, now)
    skipped: List[CleanerResultItem] = [r for _, r in classification.whitelisted]
    logger.info(
        f'Instance {instance_id}: {len(records)} queued, {len(classification.matched)} matched, '
        f'{len(classification.whitelisted)} whitelisted, {len(classification.too_young)} too young'
    )

    if dry_run:
        decision = StrikeDecision(to_remove=list(classification.matched))
        if config.strike_system_enabled:
            try:
                existing = store.all_for_instance(instance_id)
            except LedgerError as e:
                return _ledger_failure(e, instance_id, classification, True)
            decision = decide_strikes(classification.matched, existing, config.max_strikes)
        capped, overflow = _cap(decision.to_remove, config.max_removals_per_run)
        result = _dry_run_result(capped, decision.warned, skipped + overflow)
        if event_bus is not None:
            event_bus.emit('run_complete', instance=instance_id, **run_summary_fields(result))
        return result

    if config.strike_system_enabled:
        try:
            decision = apply_strike_ledger(store, instance_id, classification, config.max_strikes, now)
        except LedgerError as e:
            return _ledger_failure(e, instance_id, classification, False)
    else:
        decision = StrikeDecision(to_remove=list(classification.matched))

    warned = [c.result for c in decision.warned]
    if event_bus is not None:
        for item in warned:
            event_bus.emit('strike', instance=instance_id, item=item, reason=item.reason)

    capped, overflow = _cap(decision.to_remove, config.max_removals_per_run)
    skipped.extend(overflow)

    strike_records: Optional[Dict[str, StrikeRecord]] = None
    if config.auto_import_enabled and any(c.result.rule in IMPORT_RULES for c in capped):
        try:
            strike_records = store.all_for_instance(instance_id)
        except LedgerError as e:
            logger.warning(f'Instance {instance_id}: strike records unreadable, auto-import skipped this run: {e}')

    cleaned: List[CleanerResultItem] = []
    auto_imported: List[CleanerResultItem] = []
    # Rows of one multi-file download share a strike key; a single failure keeps the record
    confirmed_keys: Set[str] = set()
    failed_keys: Set[str] = set()
    # One import per download per run; sibling rows reuse the first outcome
    import_outcomes: Dict[str, AutoImportResult] = {}
    remove_errors = 0
    import_attempts = 0

    for cand in capped:
        item = cand.result
        download_id = item.download_id
        outcome: Optional[AutoImportResult] = None
        if strike_records is not None and item.rule in IMPORT_RULES and download_id:
            outcome = import_outcomes.get(download_id)
            if outcome is None and import_attempts < MAX_AUTO_IMPORTS_PER_RUN:
                record = strike_records.get(cand.key)
                eligibility = evaluate_auto_import_eligibility(cand.texts, config, record, now, patterns)
                if eligibility.eligible:
                    logger.info(f'Instance {instance_id}: attempting auto-import before removal downloadId={download_id} title={item.title}')
                    import_attempts += 1
                    outcome = await attempt_auto_import(client, download_id, item.title)
                    import_outcomes[download_id] = outcome
                    if AUTO_IMPORT_DELAY_SECS > 0:
                        await asyncio.sleep(AUTO_IMPORT_DELAY_SECS)
                    try:
                        store.record_import_attempt(
                            instance_id,
                            cand.key,
                            title=item.title,
                            rule=item.rule,
                            reason=item.reason,
                            error=None if outcome.success else (outcome.error or 'Unknown error'),
                            at=now.timestamp(),
                        )
                    except LedgerError as e:
                        logger.warning(f'Instance {instance_id}: failed to record import attempt for {download_id}: {e}')
                else:
                    logger.debug(f'Instance {instance_id}: auto-import not eligible downloadId={download_id}: {eligibility.reason}')

        if outcome is not None:
            if outcome.success:
                imported = item.evolve(reason=f'Auto-imported successfully (was: {item.reason})')
                auto_imported.append(imported)
                confirmed_keys.add(cand.key)
                if event_bus is not None:
                    event_bus.emit('auto_import', instance=instance_id, item=imported, download_id=download_id)
                continue
            logger.info(f'Instance {instance_id}: auto-import failed, falling back to removal downloadId={download_id}: {outcome.error}')

        try:
            removed = await remove_queue_item(client, item, config, event_bus=event_bus)
        except RemovalError as e:
            remove_errors += 1
            failed_keys.add(cand.key)
            skipped.append(item.evolve(reason=f'Remove failed: {e}'))
            logger.warning(f'Instance {instance_id}: failed to remove id={item.id} title={item.title}: {e}')
            continue
        cleaned.append(item if removed else item.evolve(reason=f'{item.reason} (already removed)'))
        confirmed_keys.add(cand.key)

    # Strike records go only once every row of the download was removed or imported
    to_delete = [
        key for key in decision.pending_deletions
        if key in confirmed_keys and key not in failed_keys
    ]
    if to_delete:
        try:
            store.delete_many(instance_id, to_delete)
        except LedgerError as e:
            logger.warning(f'Instance {instance_id}: failed to clean up strike records after removal, retrying next run: {e}')

    status = STATUS_PARTIAL if remove_errors else STATUS_COMPLETED
    message = f'Removed {len(cleaned)} item(s) from queue'
    if auto_imported:
        message += f', {len(auto_imported)} auto-imported'
    if warned:
        message += f', {len(warned)} warned'
    if remove_errors:
        message += f' ({remove_errors} removal errors)'

    result = RunResult(
        items_cleaned=len(cleaned) + len(auto_imported),
        items_skipped=len(skipped),
        items_warned=len(warned),
        cleaned_items=cleaned + auto_imported,
        skipped_items=skipped,
        warned_items=warned,
        is_dry_run=False,
        status=status,
        message=message,
    )
    logger.info(f'Instance {instance_id}: {message}')
    if event_bus is not None:
        event_bus.emit('run_complete', instance=instance_id, **run_summary_fields(result))
    return result
