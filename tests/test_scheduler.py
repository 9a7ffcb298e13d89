import asyncio
import importlib
from datetime import timedelta

import pytest

from core.config import CleanerConfig
from storage.strikes import StrikeRecord
from conftest import NOW, FakeArrClient, iso_ago

pytestmark = pytest.mark.asyncio


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


def _failed(item_id):
    return {
        'id': item_id,
        'title': f'Item {item_id}',
        'downloadId': f'DL{item_id}',
        'trackedDownloadState': 'importFailed',
        'added': iso_ago(hours=1),
    }


def _scheduler(instance, strike_store, records=(), clock=None, max_duration=60, **cfg):
    sched_mod = importlib.import_module('core.scheduler')
    base = dict(dry_run_mode=False, interval_mins=30)
    base.update(cfg)
    config = CleanerConfig(**base)
    clients = []

    def factory(inst):
        client = FakeArrClient(inst, list(records))
        clients.append(client)
        return client

    sched = sched_mod.CleanerScheduler(
        strike_store,
        factory,
        lambda: [(instance, config)],
        clock=clock or Clock(),
        max_duration=max_duration,
    )
    return sched, clients


async def test_scheduled_clean_runs_on_interval(instance, strike_store):
    clock = Clock()
    sched, clients = _scheduler(instance, strike_store, [_failed(1)], clock=clock)

    assert await sched.process_scheduled_cleans() == ['sonarr']
    assert [i for i, _ in clients[0].deleted] == [1]
    assert sched.state.last_results['sonarr'].items_cleaned == 1

    clock.advance(minutes=10)
    assert await sched.process_scheduled_cleans() == []

    clock.advance(minutes=20)
    assert await sched.process_scheduled_cleans() == ['sonarr']
    assert 'sonarr' not in sched.state.in_progress


async def test_disabled_instance_is_not_scheduled(instance, strike_store):
    sched, clients = _scheduler(instance, strike_store, [_failed(1)], enabled=False)
    assert await sched.process_scheduled_cleans() == []
    assert clients == []


async def test_manual_trigger_guards_and_cooldown(instance, strike_store):
    clock = Clock()
    sched, clients = _scheduler(instance, strike_store, [_failed(1)], clock=clock)

    assert sched.trigger_manual_clean('sonarr') == {'triggered': True, 'message': 'Queue clean queued'}
    assert sched.trigger_manual_clean('sonarr') == {
        'triggered': False,
        'message': 'Clean already in progress for this instance',
    }
    # Scheduled runs respect the same guard
    assert await sched.process_scheduled_cleans() == []
    await asyncio.gather(*list(sched._tasks))
    assert 'sonarr' not in sched.state.in_progress

    clock.advance(seconds=30)
    assert sched.trigger_manual_clean('sonarr') == {
        'triggered': False,
        'message': 'Cooldown: wait 2 minute(s) between cleans',
    }
    clock.advance(minutes=2)
    assert sched.trigger_manual_clean('sonarr')['triggered'] is True
    await asyncio.gather(*list(sched._tasks))


async def test_dry_run_trigger_does_not_touch_schedule(instance, strike_store):
    sched, clients = _scheduler(instance, strike_store, [_failed(1)])
    res = await sched.trigger_dry_run('sonarr')
    assert res.is_dry_run
    assert res.message == 'Dry run: would remove 1 item(s)'
    assert clients[0].deleted == []
    assert 'sonarr' not in sched.state.last_run_at

    missing = await sched.trigger_dry_run('nope')
    assert (missing.status, missing.message) == ('error', 'No queue cleaner config found for this instance')


async def test_enhanced_preview_trigger(instance, strike_store):
    sched, _ = _scheduler(instance, strike_store, [_failed(1)])
    res = await sched.trigger_enhanced_preview('sonarr')
    assert res.would_remove == 1
    missing = await sched.trigger_enhanced_preview('nope')
    assert not missing.instance_reachable
    assert missing.error_message == 'No queue cleaner configuration found for this instance'


async def test_run_clean_times_out(instance, strike_store):
    sched, _ = _scheduler(instance, strike_store, max_duration=0.01)

    class SlowClient(FakeArrClient):
        async def get_queue(self, page_size=1000):
            await asyncio.sleep(1)
            return []

    sched.client_factory = lambda inst: SlowClient(inst)
    res = await sched.run_clean('sonarr')
    assert res.status == 'error'
    assert res.message == 'Queue clean timed out after 0.01 seconds'
    assert 'sonarr' not in sched.state.last_run_at


async def test_decay_strikes_and_health(instance, strike_store, tmp_path):
    clock = Clock()
    sched, _ = _scheduler(instance, strike_store, clock=clock, strike_system_enabled=True, strike_decay_hours=24)
    with strike_store.transaction() as tx:
        tx.put(StrikeRecord(instance_id='sonarr', download_id='old', strike_count=1,
                            last_strike_at=(NOW - timedelta(hours=30)).timestamp()))
        tx.put(StrikeRecord(instance_id='sonarr', download_id='new', strike_count=1,
                            last_strike_at=(NOW - timedelta(hours=1)).timestamp()))
    assert sched.decay_strikes() == 1
    assert set(strike_store.all_for_instance('sonarr')) == {'new'}

    (tmp_path / 'strikes.json').write_text('{corrupt')
    for _ in range(3):
        sched.decay_strikes()
    health = sched.health()
    assert health['healthy'] is False
    assert health['warnings'][0].startswith('Strike decay failing (3 consecutive failures)')


async def test_orphan_runs_are_reported(instance, strike_store):
    clock = Clock()
    sched, _ = _scheduler(instance, strike_store, clock=clock)
    assert await sched.run_clean('ghost') is None
    assert sched.health()['warnings'] == [
        '1 scheduled clean(s) skipped - config not found for instance(s): ghost'
    ]
    clock.advance(hours=2)
    assert sched.health()['warnings'] == []


async def test_run_forever_records_tick_failures(instance, strike_store):
    sched, _ = _scheduler(instance, strike_store)

    async def bad_tick():
        sched.stop()
        raise RuntimeError('boom')

    sched.tick = bad_tick
    await sched.run_forever(interval=0)
    health = sched.health()
    assert health['consecutiveFailures'] == 1
    assert health['lastError'] == 'boom'
    assert health['running'] is False


async def test_manual_trigger_cannot_overlap_scheduled_clean(instance, strike_store):
    sched, _ = _scheduler(instance, strike_store)
    active = []
    peak = []

    class SlowClient(FakeArrClient):
        async def get_queue(self, page_size=1000):
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.pop()
            return []

    sched.client_factory = lambda inst: SlowClient(inst)
    scheduled = asyncio.ensure_future(sched.process_scheduled_cleans())
    await asyncio.sleep(0)
    assert sched.trigger_manual_clean('sonarr') == {
        'triggered': False,
        'message': 'Clean already in progress for this instance',
    }
    dry = await sched.trigger_dry_run('sonarr')
    assert (dry.status, dry.message) == ('error', 'Clean already in progress for this instance')
    assert await scheduled == ['sonarr']
    assert max(peak) == 1
    assert 'sonarr' not in sched.state.in_progress


async def test_crashed_clean_waits_for_next_interval(instance, strike_store):
    clock = Clock()
    sched, _ = _scheduler(instance, strike_store, clock=clock)

    class BrokenClient(FakeArrClient):
        async def get_queue(self, page_size=1000):
            raise RuntimeError('boom')

    sched.client_factory = lambda inst: BrokenClient(inst)
    assert await sched.process_scheduled_cleans() == ['sonarr']
    res = sched.state.last_results['sonarr']
    assert (res.status, res.message) == ('error', 'Queue clean failed: boom')
    assert sched.state.last_run_at['sonarr'] == NOW

    clock.advance(minutes=1)
    assert await sched.process_scheduled_cleans() == []
