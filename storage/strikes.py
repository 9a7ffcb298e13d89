from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Iterator, Optional

from core.errors import LedgerError

logger = logging.getLogger(__name__)


def load_strikes(path: str) -> Dict[str, Any]:
    """Read the strike file. A missing file is an empty ledger; a corrupt one is an error."""
    try:
        with open(path, 'r') as file:
            data = json.load(file)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        raise LedgerError(f'Strike file {path} is unreadable: {e}') from e
    if not isinstance(data, dict):
        raise LedgerError(f'Strike file {path} does not contain an object')
    return data


def save_strikes(data: Dict[str, Any], path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


def make_strike_key(instance_id: str, download_id: Any) -> str:
    return f"{instance_id}:{download_id}"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass
class StrikeRecord:
    instance_id: str
    download_id: str
    download_title: str = ''
    strike_count: int = 0
    last_rule: Optional[str] = None
    last_reason: Optional[str] = None
    import_attempts: int = 0
    last_import_attempt: Optional[float] = None
    last_import_error: Optional[str] = None
    first_strike_at: Optional[float] = None
    last_strike_at: Optional[float] = None

    @property
    def key(self) -> str:
        return make_strike_key(self.instance_id, self.download_id)

    @property
    def last_activity(self) -> Optional[float]:
        stamps = [t for t in (self.last_strike_at, self.last_import_attempt) if t is not None]
        return max(stamps) if stamps else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, key: str, entry: Any) -> 'StrikeRecord':
        instance_id, _, download_id = key.partition(':')
        entry = entry if isinstance(entry, dict) else {}
        return cls(
            instance_id=str(entry.get('instance_id') or instance_id),
            download_id=str(entry.get('download_id') or download_id),
            download_title=str(entry.get('download_title') or ''),
            strike_count=_int(entry.get('strike_count')),
            last_rule=entry.get('last_rule'),
            last_reason=entry.get('last_reason'),
            import_attempts=_int(entry.get('import_attempts')),
            last_import_attempt=_float_or_none(entry.get('last_import_attempt')),
            last_import_error=entry.get('last_import_error'),
            first_strike_at=_float_or_none(entry.get('first_strike_at')),
            last_strike_at=_float_or_none(entry.get('last_strike_at')),
        )


class StrikeTransaction:
    """Working copy of the ledger; committed as a whole or not at all."""

    def __init__(self, data: Dict[str, Any]) -> None:
        self.data = data
        self.dirty = False

    def all_for_instance(self, instance_id: str) -> Dict[str, StrikeRecord]:
        prefix = f'{instance_id}:'
        out: Dict[str, StrikeRecord] = {}
        for key, entry in self.data.items():
            if key.startswith(prefix):
                rec = StrikeRecord.from_dict(key, entry)
                out[rec.download_id] = rec
        return out

    def get(self, instance_id: str, download_id: str) -> Optional[StrikeRecord]:
        key = make_strike_key(instance_id, download_id)
        if key not in self.data:
            return None
        return StrikeRecord.from_dict(key, self.data[key])

    def put(self, record: StrikeRecord) -> None:
        self.data[record.key] = record.to_dict()
        self.dirty = True

    def delete(self, instance_id: str, download_ids: Iterable[str]) -> int:
        removed = 0
        for dlid in download_ids:
            if self.data.pop(make_strike_key(instance_id, dlid), None) is not None:
                removed += 1
        if removed:
            self.dirty = True
        return removed


class StrikeStore:
    """Durable strike ledger backed by a JSON file.

    Every mutation goes through :meth:`transaction`, which serializes access
    with a lock and writes the whole file atomically on success.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[StrikeTransaction]:
        with self._lock:
            tx = StrikeTransaction(load_strikes(self.path))
            try:
                yield tx
            except LedgerError:
                raise
            except Exception as e:
                raise LedgerError(f'Strike transaction aborted: {e}') from e
            if tx.dirty:
                try:
                    save_strikes(tx.data, self.path)
                except (OSError, TypeError, ValueError) as e:
                    raise LedgerError(f'Strike file {self.path} could not be written: {e}') from e

    def all_for_instance(self, instance_id: str) -> Dict[str, StrikeRecord]:
        with self._lock:
            return StrikeTransaction(load_strikes(self.path)).all_for_instance(instance_id)

    def get(self, instance_id: str, download_id: str) -> Optional[StrikeRecord]:
        with self._lock:
            return StrikeTransaction(load_strikes(self.path)).get(instance_id, download_id)

    def delete_many(self, instance_id: str, download_ids: Iterable[str]) -> int:
        ids = list(download_ids)
        if not ids:
            return 0
        with self.transaction() as tx:
            return tx.delete(instance_id, ids)

    def record_import_attempt(
        self,
        instance_id: str,
        download_id: str,
        *,
        title: str,
        rule: str,
        reason: str,
        error: Optional[str],
        at: float,
    ) -> StrikeRecord:
        # Import tracking is independent of rule strikes: new records start at zero strikes
        with self.transaction() as tx:
            rec = tx.get(instance_id, download_id)
            if rec is None:
                rec = StrikeRecord(
                    instance_id=instance_id,
                    download_id=download_id,
                    download_title=title,
                    strike_count=0,
                    last_rule=rule,
                    last_reason=reason,
                )
            rec.import_attempts += 1
            rec.last_import_attempt = at
            rec.last_import_error = error
            tx.put(rec)
            return rec

    def decay(self, instance_id: str, older_than: float) -> int:
        """Delete records whose last strike/import activity predates ``older_than``."""
        with self.transaction() as tx:
            stale = [
                dlid
                for dlid, rec in tx.all_for_instance(instance_id).items()
                if rec.last_activity is not None and rec.last_activity < older_than
            ]
            removed = tx.delete(instance_id, stale)
        if removed:
            logger.info(f'Instance {instance_id}: {removed} strike record(s) expired')
        return removed

    def clear(self, key: Optional[str] = None) -> bool:
        with self.transaction() as tx:
            if key is None:
                had = bool(tx.data)
                tx.data.clear()
                tx.dirty = True
                return had
            if tx.data.pop(key, None) is None:
                return False
            tx.dirty = True
            return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return load_strikes(self.path)
