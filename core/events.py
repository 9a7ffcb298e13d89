from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional


class EventBus:
    """Structured decision log for cleaner runs."""

    def __init__(
        self,
        *,
        structured_logs: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.structured_logs = structured_logs
        self.logger = logger or logging.getLogger('queue_cleaner.events')

    def log(self, event: str, **fields) -> None:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
            else:
                self.logger.info(f"{event}: {fields}")
        except (TypeError, ValueError):
            self.logger.info(str(payload))

    def emit(
        self,
        event: str,
        *,
        instance: Optional[str] = None,
        item: Any = None,
        reason: Optional[str] = None,
        **fields,
    ) -> None:
        if item is not None:
            if isinstance(item, dict):
                fields.setdefault('id', item.get('id'))
                fields.setdefault('title', item.get('title'))
            else:
                fields.setdefault('id', getattr(item, 'id', None))
                fields.setdefault('title', getattr(item, 'title', None))
                fields.setdefault('rule', getattr(item, 'rule', None))
        if instance is not None:
            fields.setdefault('instance', instance)
        if reason is not None:
            fields.setdefault('reason', reason)
        self.log(event, **fields)


def run_summary_fields(result: Any) -> Dict[str, Any]:
    return {
        'status': result.status,
        'cleaned': result.items_cleaned,
        'skipped': result.items_skipped,
        'warned': result.items_warned,
        'dry_run': result.is_dry_run,
    }
