from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

STATUS_COMPLETED = 'completed'
STATUS_PARTIAL = 'partial'
STATUS_ERROR = 'error'


@dataclass
class CleanerResultItem:
    id: int
    title: str
    reason: str
    rule: str
    protocol: Optional[str] = None
    strike_count: Optional[int] = None
    max_strikes: Optional[int] = None
    download_id: Optional[str] = None

    def evolve(self, **changes: Any) -> 'CleanerResultItem':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'id': self.id, 'title': self.title, 'reason': self.reason, 'rule': self.rule}
        if self.protocol is not None:
            out['protocol'] = self.protocol
        if self.strike_count is not None:
            out['strikeCount'] = self.strike_count
        if self.max_strikes is not None:
            out['maxStrikes'] = self.max_strikes
        if self.download_id is not None:
            out['downloadId'] = self.download_id
        return out


@dataclass
class RunResult:
    items_cleaned: int = 0
    items_skipped: int = 0
    items_warned: int = 0
    cleaned_items: List[CleanerResultItem] = field(default_factory=list)
    skipped_items: List[CleanerResultItem] = field(default_factory=list)
    warned_items: List[CleanerResultItem] = field(default_factory=list)
    is_dry_run: bool = False
    status: str = STATUS_COMPLETED
    message: str = ''

    @classmethod
    def error(cls, message: str, *, is_dry_run: bool, skipped: Optional[List[CleanerResultItem]] = None) -> 'RunResult':
        skipped = skipped or []
        return cls(
            items_skipped=len(skipped),
            skipped_items=skipped,
            is_dry_run=is_dry_run,
            status=STATUS_ERROR,
            message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'itemsCleaned': self.items_cleaned,
            'itemsSkipped': self.items_skipped,
            'itemsWarned': self.items_warned,
            'cleanedItems': [i.to_dict() for i in self.cleaned_items],
            'skippedItems': [i.to_dict() for i in self.skipped_items],
            'warnedItems': [i.to_dict() for i in self.warned_items],
            'isDryRun': self.is_dry_run,
            'status': self.status,
            'message': self.message,
        }


@dataclass
class StrikeInfo:
    current_strikes: int
    max_strikes: int
    would_trigger_removal: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currentStrikes': self.current_strikes,
            'maxStrikes': self.max_strikes,
            'wouldTriggerRemoval': self.would_trigger_removal,
        }


@dataclass
class QueueStateSummary:
    total_items: int = 0
    downloading: int = 0
    paused: int = 0
    queued: int = 0
    seeding: int = 0
    import_pending: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalItems': self.total_items,
            'downloading': self.downloading,
            'paused': self.paused,
            'queued': self.queued,
            'seeding': self.seeding,
            'importPending': self.import_pending,
            'failed': self.failed,
        }


@dataclass
class EnhancedPreviewItem:
    id: int
    title: str
    action: str
    rule: str
    reason: str
    detailed_reason: str
    queue_age: int
    size: Optional[float] = None
    sizeleft: Optional[float] = None
    progress: Optional[int] = None
    protocol: Optional[str] = None
    indexer: Optional[str] = None
    download_client: Optional[str] = None
    status: Optional[str] = None
    download_id: Optional[str] = None
    strike_info: Optional[StrikeInfo] = None
    auto_import_eligible: Optional[bool] = None
    auto_import_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'id': self.id,
            'title': self.title,
            'action': self.action,
            'rule': self.rule,
            'reason': self.reason,
            'detailedReason': self.detailed_reason,
            'queueAge': self.queue_age,
        }
        optional = {
            'size': self.size,
            'sizeleft': self.sizeleft,
            'progress': self.progress,
            'protocol': self.protocol,
            'indexer': self.indexer,
            'downloadClient': self.download_client,
            'status': self.status,
            'downloadId': self.download_id,
            'strikeInfo': self.strike_info.to_dict() if self.strike_info else None,
            'autoImportEligible': self.auto_import_eligible,
            'autoImportReason': self.auto_import_reason,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


@dataclass
class EnhancedPreviewResult:
    instance_id: str
    instance_label: str
    instance_service: str
    instance_reachable: bool
    queue_summary: QueueStateSummary
    config_snapshot: Dict[str, Any]
    preview_generated_at: str
    error_message: Optional[str] = None
    would_remove: int = 0
    would_warn: int = 0
    would_skip: int = 0
    preview_items: List[EnhancedPreviewItem] = field(default_factory=list)
    rule_summary: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = {
            'instanceId': self.instance_id,
            'instanceLabel': self.instance_label,
            'instanceService': self.instance_service,
            'instanceReachable': self.instance_reachable,
            'queueSummary': self.queue_summary.to_dict(),
            'wouldRemove': self.would_remove,
            'wouldWarn': self.would_warn,
            'wouldSkip': self.would_skip,
            'previewItems': [i.to_dict() for i in self.preview_items],
            'ruleSummary': dict(self.rule_summary),
            'previewGeneratedAt': self.preview_generated_at,
            'configSnapshot': dict(self.config_snapshot),
        }
        if self.error_message is not None:
            out['errorMessage'] = self.error_message
        return out
