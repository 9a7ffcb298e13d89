from datetime import datetime, timedelta, timezone

import pytest

from core.config import ServiceInstance

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def iso_ago(**delta):
    return (NOW - timedelta(**delta)).isoformat().replace('+00:00', 'Z')


class FakeArrClient:
    """In-memory stand-in for ArrClient that records every call."""

    def __init__(self, instance, records=None, *, queue_error=None, delete_errors=None, import_errors=None):
        self.instance = instance
        self.records = list(records or [])
        self.queue_error = queue_error
        self.delete_errors = dict(delete_errors or {})
        self.import_errors = dict(import_errors or {})
        self.deleted = []
        self.imported = []

    async def get_queue(self, page_size=1000):
        if self.queue_error is not None:
            raise self.queue_error
        return list(self.records)

    async def delete_queue_item(self, queue_id, **options):
        err = self.delete_errors.get(queue_id)
        if err is not None:
            raise err
        self.deleted.append((queue_id, options))

    async def import_by_download_id(self, download_id):
        err = self.import_errors.get(download_id)
        if err is not None:
            raise err
        self.imported.append(download_id)


@pytest.fixture
def instance():
    return ServiceInstance(
        id='sonarr',
        label='Sonarr',
        service='Sonarr',
        api_url='http://sonarr:8989',
        api_key='k',
    )


@pytest.fixture
def make_client(instance):
    def _make(records=None, **kw):
        return FakeArrClient(instance, records, **kw)
    return _make


@pytest.fixture
def strike_store(tmp_path):
    from storage.strikes import StrikeStore
    return StrikeStore(str(tmp_path / 'strikes.json'))
