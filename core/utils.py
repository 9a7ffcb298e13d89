from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from dateutil import parser as date_parser


def parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def get_item_id(item: Dict[str, Any]) -> int:
    val = item.get('id')
    return val if isinstance(val, int) and not isinstance(val, bool) else 0


def get_title(item: Dict[str, Any]) -> str:
    title = item.get('title')
    return title if isinstance(title, str) else 'Unknown'


def get_size(item: Dict[str, Any]) -> Optional[float]:
    return _as_number(item.get('size'))


def get_sizeleft(item: Dict[str, Any]) -> Optional[float]:
    val = item.get('sizeleft')
    if val is None:
        val = item.get('sizeLeft')
    return _as_number(val)


def get_progress_percent(item: Dict[str, Any]) -> int:
    size = get_size(item) or 0
    left = get_sizeleft(item) or 0
    if size <= 0:
        return 0
    pct = round(((size - left) / size) * 100)
    return int(max(0, min(100, pct)))


def get_protocol(item: Dict[str, Any]) -> str:
    proto = item.get('protocol')
    return proto.lower() if isinstance(proto, str) else ''


def get_tracked_state(item: Dict[str, Any]) -> str:
    val = item.get('trackedDownloadState')
    return val.lower() if isinstance(val, str) else ''


def get_tracked_status(item: Dict[str, Any]) -> str:
    val = item.get('trackedDownloadStatus')
    return val.lower() if isinstance(val, str) else ''


def get_download_id(item: Dict[str, Any]) -> Optional[str]:
    dlid = item.get('downloadId') or item.get('downloadID')
    if isinstance(dlid, str) and dlid.strip():
        return dlid.strip()
    return None


def strike_key_for(item: Dict[str, Any]) -> str:
    # Items without a download id fall back to their queue id
    return get_download_id(item) or str(get_item_id(item))


def age_minutes(item: Dict[str, Any], now: datetime) -> Optional[float]:
    added = parse_date(item.get('added'))
    if added is None:
        return None
    return (now - added).total_seconds() / 60.0


def collect_status_texts(item: Dict[str, Any]) -> List[str]:
    """Flatten status message titles, their messages and the error message, in order."""
    texts: List[str] = []
    for msg in item.get('statusMessages') or []:
        if not isinstance(msg, dict):
            continue
        title = msg.get('title')
        if isinstance(title, str) and title.strip():
            texts.append(title)
        messages = msg.get('messages')
        if isinstance(messages, str):
            messages = [messages]
        for m in messages or []:
            if isinstance(m, str) and m.strip():
                texts.append(m)
    err = item.get('errorMessage')
    if isinstance(err, str) and err.strip():
        texts.append(err)
    return texts


def matches_keywords(texts: Sequence[str], keywords: Iterable[str]) -> Optional[str]:
    """Return the first text containing any of the keywords (case-insensitive)."""
    lowered = [k.lower() for k in keywords if isinstance(k, str) and k.strip()]
    if not lowered:
        return None
    for text in texts:
        low = text.lower()
        if any(k in low for k in lowered):
            return text
    return None


def matches_custom_patterns(texts: Sequence[str], patterns: Iterable[str]) -> Optional[str]:
    """Return the first user pattern found anywhere in the joined texts."""
    all_text = ' '.join(texts).lower()
    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern.strip():
            continue
        if pattern.strip().lower() in all_text:
            return pattern
    return None


@dataclass(frozen=True)
class WhitelistMatch:
    matched: bool
    reason: Optional[str] = None


def _tag_labels(item: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for tag in item.get('tags') or []:
        if isinstance(tag, dict):
            label = tag.get('label')
            if label is not None:
                out.append(str(label))
        elif tag is not None:
            out.append(str(tag))
    return out


def _whitelist_fields(item: Dict[str, Any], typ: str) -> List[str]:
    if typ == 'tracker':
        val = item.get('indexer')
        return [val] if isinstance(val, str) else []
    if typ == 'tag':
        return _tag_labels(item)
    if typ == 'category':
        vals = [item.get('category'), item.get('downloadClientCategory')]
        return [v for v in vals if isinstance(v, str)]
    if typ == 'title':
        val = item.get('title')
        return [val] if isinstance(val, str) else []
    return []


def check_whitelist(item: Dict[str, Any], patterns: Sequence[Dict[str, str]]) -> WhitelistMatch:
    for entry in patterns:
        typ = str(entry.get('type') or '').lower()
        pattern = str(entry.get('pattern') or '').strip()
        if not pattern:
            continue
        needle = pattern.lower()
        for value in _whitelist_fields(item, typ):
            if needle in value.lower():
                return WhitelistMatch(True, f'{typ.capitalize()} matches: {pattern}')
    return WhitelistMatch(False)
