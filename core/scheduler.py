from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.config import CleanerConfig, ServiceInstance
from core.constants import MANUAL_CLEAN_COOLDOWN_MINS, MAX_CLEAN_DURATION_SECS, SCHEDULER_TICK_SECS
from core.errors import LedgerError
from core.events import EventBus
from core.models import EnhancedPreviewResult, QueueStateSummary, RunResult
from core.preview import execute_enhanced_preview
from core.runner import execute_queue_cleaner
from core.utils import utcnow
from storage.strikes import StrikeStore

logger = logging.getLogger(__name__)

# Returns every configured instance with its effective cleaner config
ConfigProvider = Callable[[], List[Tuple[ServiceInstance, CleanerConfig]]]
ClientFactory = Callable[[ServiceInstance], Any]


@dataclass
class SchedulerState:
    last_run_at: Dict[str, datetime] = field(default_factory=dict)
    last_results: Dict[str, RunResult] = field(default_factory=dict)
    manual_triggered_at: Dict[str, datetime] = field(default_factory=dict)
    in_progress: Set[str] = field(default_factory=set)
    consecutive_tick_failures: int = 0
    last_tick_error: Optional[str] = None
    last_successful_tick: Optional[datetime] = None
    consecutive_decay_failures: int = 0
    last_decay_error: Optional[str] = None
    orphan_attempts: List[Tuple[str, datetime]] = field(default_factory=list)


class CleanerScheduler:
    """Runs queue cleans on each instance's interval and serves manual triggers.

    An instance is never cleaned twice at once: scheduled and manual runs share
    the ``in_progress`` guard.
    """

    def __init__(
        self,
        store: StrikeStore,
        client_factory: ClientFactory,
        config_provider: ConfigProvider,
        *,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        max_duration: float = MAX_CLEAN_DURATION_SECS,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.config_provider = config_provider
        self.event_bus = event_bus
        self.clock = clock
        self.max_duration = max_duration
        self.state = SchedulerState()
        self.running = False
        self._tasks: Set[asyncio.Task] = set()

    def _lookup(self, instance_id: str) -> Optional[Tuple[ServiceInstance, CleanerConfig]]:
        for instance, config in self.config_provider():
            if instance.id == instance_id:
                return instance, config
        return None

    def decay_strikes(self) -> int:
        """Drop strike records idle for longer than each instance's decay window."""
        total = 0
        try:
            now_ts = self.clock().timestamp()
            for instance, config in self.config_provider():
                if not config.strike_system_enabled:
                    continue
                cutoff = now_ts - config.strike_decay_hours * 3600
                total += self.store.decay(instance.id, cutoff)
        except LedgerError as e:
            self.state.consecutive_decay_failures += 1
            self.state.last_decay_error = str(e)
            logger.error(
                f'Failed to decay strikes ({self.state.consecutive_decay_failures} consecutive): {e}'
            )
            return total
        self.state.consecutive_decay_failures = 0
        self.state.last_decay_error = None
        return total

    def _due(self, instance_id: str, config: CleanerConfig, now: datetime) -> bool:
        last = self.state.last_run_at.get(instance_id)
        if last is None:
            return True
        return now >= last + timedelta(minutes=config.interval_mins)

    async def _guarded_clean(self, instance_id: str) -> Optional[RunResult]:
        # Caller has already claimed instance_id in in_progress
        try:
            return await self.run_clean(instance_id)
        finally:
            self.state.in_progress.discard(instance_id)

    async def process_scheduled_cleans(self) -> List[str]:
        now = self.clock()
        due: List[str] = []
        for instance, config in self.config_provider():
            if not config.enabled or not self._due(instance.id, config, now):
                continue
            if instance.id in self.state.in_progress:
                logger.debug(f'Instance {instance.id}: scheduled clean skipped, already in progress')
                continue
            due.append(instance.id)
        if not due:
            return []
        self.state.in_progress.update(due)
        results = await asyncio.gather(*(self._guarded_clean(i) for i in due), return_exceptions=True)
        for instance_id, res in zip(due, results):
            if isinstance(res, Exception):
                logger.error(f'Unhandled error in scheduled clean for {instance_id}: {res}')
        return due

    async def tick(self) -> None:
        self.decay_strikes()
        await self.process_scheduled_cleans()

    async def run_clean(self, instance_id: str, *, force_dry_run: bool = False) -> Optional[RunResult]:
        found = self._lookup(instance_id)
        if found is None:
            logger.error(f'No queue cleaner config found for instance {instance_id}; clean skipped')
            self.state.orphan_attempts.append((instance_id, self.clock()))
            return None
        instance, config = found
        if force_dry_run:
            config = config.with_overrides(dry_run_mode=True)
        client = self.client_factory(instance)
        try:
            result = await asyncio.wait_for(
                execute_queue_cleaner(
                    instance,
                    config,
                    client=client,
                    store=self.store,
                    now=self.clock(),
                    event_bus=self.event_bus,
                ),
                timeout=self.max_duration,
            )
        except asyncio.TimeoutError:
            message = f'Queue clean timed out after {self.max_duration:g} seconds'
            logger.error(f'Instance {instance_id}: {message}')
            result = RunResult.error(message, is_dry_run=config.dry_run_mode)
            self.state.last_results[instance_id] = result
            return result
        except Exception as e:
            logger.error(f'Instance {instance_id}: queue clean failed: {e}')
            result = RunResult.error(f'Queue clean failed: {e}', is_dry_run=config.dry_run_mode)
        # A crashed run still waits a full interval before the next attempt
        if not force_dry_run:
            self.state.last_run_at[instance_id] = self.clock()
        self.state.last_results[instance_id] = result
        logger.info(f'Instance {instance_id}: clean {result.status}: {result.message}')
        return result

    def _check_cooldown(self, instance_id: str) -> Optional[str]:
        last = self.state.manual_triggered_at.get(instance_id)
        if last is None:
            return None
        mins_since = (self.clock() - last).total_seconds() / 60.0
        if mins_since < MANUAL_CLEAN_COOLDOWN_MINS:
            wait = math.ceil(MANUAL_CLEAN_COOLDOWN_MINS - mins_since)
            return f'Cooldown: wait {wait} minute(s) between cleans'
        return None

    def trigger_manual_clean(self, instance_id: str) -> Dict[str, Any]:
        """Start a clean in the background; must be called from a running event loop."""
        if instance_id in self.state.in_progress:
            return {'triggered': False, 'message': 'Clean already in progress for this instance'}
        cooldown = self._check_cooldown(instance_id)
        if cooldown:
            return {'triggered': False, 'message': cooldown}

        self.state.in_progress.add(instance_id)
        self.state.manual_triggered_at[instance_id] = self.clock()

        async def _run() -> None:
            try:
                await self.run_clean(instance_id)
            except Exception as e:
                logger.error(f'Manual clean for {instance_id} failed: {e}')
                self.state.last_results[instance_id] = RunResult.error(
                    f'Clean failed to start: {e}', is_dry_run=False
                )
            finally:
                self.state.in_progress.discard(instance_id)

        task = asyncio.ensure_future(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {'triggered': True, 'message': 'Queue clean queued'}

    async def trigger_dry_run(self, instance_id: str) -> RunResult:
        if self._lookup(instance_id) is None:
            return RunResult.error('No queue cleaner config found for this instance', is_dry_run=True)
        if instance_id in self.state.in_progress:
            return RunResult.error('Clean already in progress for this instance', is_dry_run=True)
        self.state.in_progress.add(instance_id)
        try:
            return await self.run_clean(instance_id, force_dry_run=True)
        finally:
            self.state.in_progress.discard(instance_id)

    async def trigger_enhanced_preview(self, instance_id: str) -> EnhancedPreviewResult:
        found = self._lookup(instance_id)
        if found is None:
            return EnhancedPreviewResult(
                instance_id=instance_id,
                instance_label='Unknown',
                instance_service='sonarr',
                instance_reachable=False,
                queue_summary=QueueStateSummary(),
                config_snapshot=CleanerConfig().snapshot(),
                preview_generated_at=self.clock().isoformat(),
                error_message='No queue cleaner configuration found for this instance',
            )
        instance, config = found
        client = self.client_factory(instance)
        try:
            return await asyncio.wait_for(
                execute_enhanced_preview(instance, config, client=client, store=self.store, now=self.clock()),
                timeout=self.max_duration,
            )
        except asyncio.TimeoutError:
            return EnhancedPreviewResult(
                instance_id=instance.id,
                instance_label=instance.label,
                instance_service=instance.service_key,
                instance_reachable=False,
                queue_summary=QueueStateSummary(),
                config_snapshot=config.snapshot(),
                preview_generated_at=self.clock().isoformat(),
                error_message=f'Enhanced preview timed out after {self.max_duration:g} seconds',
            )

    def health(self) -> Dict[str, Any]:
        st = self.state
        warnings: List[str] = []
        if st.consecutive_decay_failures >= 3:
            warnings.append(
                f'Strike decay failing ({st.consecutive_decay_failures} consecutive failures): '
                f'{st.last_decay_error or "Unknown error"}. Strikes may not decay properly.'
            )
        hour_ago = self.clock() - timedelta(hours=1)
        st.orphan_attempts = [(i, t) for i, t in st.orphan_attempts if t > hour_ago]
        if st.orphan_attempts:
            ids = ', '.join(i for i, _ in st.orphan_attempts)
            warnings.append(
                f'{len(st.orphan_attempts)} scheduled clean(s) skipped - config not found for instance(s): {ids}'
            )
        return {
            'running': self.running,
            'healthy': st.consecutive_tick_failures < 3 and st.consecutive_decay_failures < 3,
            'consecutiveFailures': st.consecutive_tick_failures,
            'lastError': st.last_tick_error,
            'lastSuccessfulTick': st.last_successful_tick.isoformat() if st.last_successful_tick else None,
            'warnings': warnings,
        }

    def stop(self) -> None:
        self.running = False

    async def run_forever(self, interval: float = SCHEDULER_TICK_SECS) -> None:
        self.running = True
        while self.running:
            try:
                await self.tick()
            except Exception as e:
                self.state.consecutive_tick_failures += 1
                self.state.last_tick_error = str(e) or type(e).__name__
                logger.error(
                    f'Queue cleaner tick failed ({self.state.consecutive_tick_failures} consecutive): {e}'
                )
            else:
                self.state.consecutive_tick_failures = 0
                self.state.last_tick_error = None
                self.state.last_successful_tick = self.clock()
            if not self.running:
                break
            await asyncio.sleep(interval)
