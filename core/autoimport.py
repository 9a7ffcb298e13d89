from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from core.config import CleanerConfig, ParsedPatterns
from core.constants import AUTO_IMPORT_NEVER_KEYWORDS, AUTO_IMPORT_SAFE_KEYWORDS
from core.errors import ArrRequestError, ManualImportError
from core.utils import matches_keywords
from storage.strikes import StrikeRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str


@dataclass(frozen=True)
class AutoImportResult:
    attempted: bool
    success: bool
    error: Optional[str] = None


def evaluate_auto_import_eligibility(
    status_texts: Sequence[str],
    config: CleanerConfig,
    record: Optional[StrikeRecord],
    now: datetime,
    patterns: Optional[ParsedPatterns] = None,
) -> Eligibility:
    if not config.auto_import_enabled:
        return Eligibility(False, 'Auto-import disabled')

    patterns = patterns or ParsedPatterns()
    max_attempts = config.auto_import_max_attempts
    attempts = record.import_attempts if record else 0
    if attempts >= max_attempts:
        return Eligibility(False, f'Max attempts reached ({attempts}/{max_attempts})')

    if record and record.last_import_attempt is not None:
        cooldown_secs = config.auto_import_cooldown_mins * 60
        since = now.timestamp() - record.last_import_attempt
        if since < cooldown_secs:
            remaining = math.ceil((cooldown_secs - since) / 60)
            return Eligibility(False, f'Cooldown active ({remaining}m remaining)')

    never = matches_keywords(status_texts, AUTO_IMPORT_NEVER_KEYWORDS)
    if never:
        return Eligibility(False, f'Cannot auto-import: {never}')

    if patterns.auto_import_never:
        custom_never = matches_keywords(status_texts, patterns.auto_import_never)
        if custom_never:
            return Eligibility(False, f'Blocked by custom pattern: {custom_never}')

    if config.auto_import_safe_only:
        safe = matches_keywords(status_texts, AUTO_IMPORT_SAFE_KEYWORDS)
        if not safe and patterns.auto_import_custom:
            safe = matches_keywords(status_texts, patterns.auto_import_custom)
        if not safe:
            return Eligibility(False, 'No safe pattern matched (safeOnly mode)')

    return Eligibility(True, 'Eligible for auto-import')


async def attempt_auto_import(client: Any, download_id: str, title: str) -> AutoImportResult:
    """Trigger the remote import for ``download_id``; never raises for remote failures."""
    instance_id = getattr(getattr(client, 'instance', None), 'id', '?')
    try:
        await client.import_by_download_id(download_id)
    except (ManualImportError, ArrRequestError) as e:
        logger.warning(f'Instance {instance_id}: auto-import failed downloadId={download_id} title={title}: {e}')
        return AutoImportResult(attempted=True, success=False, error=str(e) or 'Unknown error')
    logger.info(f'Instance {instance_id}: auto-import succeeded downloadId={download_id} title={title}')
    return AutoImportResult(attempted=True, success=True)
