import importlib
import pytest

from core.config import CleanerConfig
from core.errors import ArrRequestError, RemovalError
from core.models import CleanerResultItem


pytestmark = pytest.mark.asyncio


class DummyBus:
    def __init__(self):
        self.events = []

    def emit(self, event, *, instance=None, item=None, reason=None, **fields):
        self.events.append({'event': event, 'instance': instance, 'item': item, 'reason': reason, **fields})


def _item(protocol='torrent'):
    return CleanerResultItem(id=9, title='Y', reason='Stalled: no seeds', rule='stalled', protocol=protocol)


async def test_remove_queue_item_passes_options_and_emits(make_client):
    actions = importlib.import_module('core.actions')
    client = make_client()
    bus = DummyBus()
    cfg = CleanerConfig(add_to_blocklist=True, search_after_removal=False, change_category_enabled=True)

    removed = await actions.remove_queue_item(client, _item(), cfg, event_bus=bus)
    assert removed is True
    assert client.deleted == [(9, {
        'remove_from_client': True,
        'blocklist': True,
        'skip_redownload': True,
        'change_category': True,
    })]
    assert bus.events[0]['event'] == 'remove'
    assert bus.events[0]['instance'] == 'sonarr'


async def test_change_category_only_for_torrents():
    actions = importlib.import_module('core.actions')
    cfg = CleanerConfig(change_category_enabled=True)
    assert actions.build_removal_options(_item('usenet'), cfg).change_category is False
    assert actions.build_removal_options(_item('torrent'), cfg).change_category is True


async def test_remove_queue_item_not_found_is_soft(make_client):
    actions = importlib.import_module('core.actions')
    client = make_client(delete_errors={9: ArrRequestError('HTTP 404', 404)})
    bus = DummyBus()
    assert await actions.remove_queue_item(client, _item(), CleanerConfig(), event_bus=bus) is False
    assert [e['event'] for e in bus.events] == ['already_removed']


async def test_remove_queue_item_other_errors_raise(make_client):
    actions = importlib.import_module('core.actions')
    client = make_client(delete_errors={9: ArrRequestError('HTTP 502', 502)})
    with pytest.raises(RemovalError) as exc:
        await actions.remove_queue_item(client, _item(), CleanerConfig())
    assert exc.value.status == 502
