import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

import aiohttp

from core.config import CleanerConfig, ConfigAccessor, ServiceInstance
from core.config import load_yaml as _load_yaml
from core.config import sanitize_config as _sanitize_config
from core.config import validate_config as _validate_config
from core.constants import SCHEDULER_TICK_SECS
from core.events import EventBus
from core.scheduler import CleanerScheduler
from integrations.arr import ArrClient
from integrations.services import RequestManager
from storage.strikes import StrikeStore

LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'


def get_env_var(key: str, default: Any = None, cast_to: Callable[[str], Any] = str) -> Any:
    value = os.environ.get(key)
    if value is None or value == '':
        return default
    return cast_to(value)


def _truthy(x: str) -> bool:
    return str(x).strip().lower() in ('true', '1', 'yes', 'on')


@dataclass
class AppSettings:
    debug_logging: bool = False
    structured_logs: bool = True
    strike_file_path: str = '/app/data/strikes.json'
    request_timeout: int = 10
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    tick_seconds: int = SCHEDULER_TICK_SECS
    min_request_interval_ms: float = 0.0
    max_concurrent_requests: int = 0


def load_settings(accessor: ConfigAccessor) -> AppSettings:
    """Resolve app settings: YAML ``general`` wins over env vars, which win over defaults."""
    defaults = AppSettings()
    from_env = {
        'debug_logging': get_env_var('DEBUG_LOGGING', defaults.debug_logging, _truthy),
        'structured_logs': get_env_var('STRUCTURED_LOGS', defaults.structured_logs, _truthy),
        'strike_file_path': get_env_var('STRIKE_FILE_PATH', defaults.strike_file_path),
        'request_timeout': get_env_var('REQUEST_TIMEOUT', defaults.request_timeout, int),
        'retry_attempts': get_env_var('RETRY_ATTEMPTS', defaults.retry_attempts, int),
        'retry_backoff': get_env_var('RETRY_BACKOFF', defaults.retry_backoff, float),
        'tick_seconds': get_env_var('TICK_SECONDS', defaults.tick_seconds, int),
        'min_request_interval_ms': defaults.min_request_interval_ms,
        'max_concurrent_requests': defaults.max_concurrent_requests,
    }
    resolved: Dict[str, Any] = {}
    for key, env_value in from_env.items():
        value = accessor.general(key, None)
        resolved[key] = env_value if value is None else value
    return AppSettings(
        debug_logging=bool(resolved['debug_logging']),
        structured_logs=bool(resolved['structured_logs']),
        strike_file_path=str(resolved['strike_file_path']),
        request_timeout=int(resolved['request_timeout']),
        retry_attempts=int(resolved['retry_attempts']),
        retry_backoff=float(resolved['retry_backoff']),
        tick_seconds=int(resolved['tick_seconds']),
        min_request_interval_ms=float(resolved['min_request_interval_ms']),
        max_concurrent_requests=int(resolved['max_concurrent_requests']),
    )


def setup_logging(debug: bool) -> logging.Logger:
    """Configure the root logger and return the event logger.

    Event lines get their own handler and do not propagate, so each decision is
    printed once.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format=LOG_FORMAT, level=level, handlers=[logging.StreamHandler()], force=True)
    event_log = logging.getLogger('queue_cleaner.events')
    event_log.setLevel(level)
    event_log.propagate = False
    for handler in list(event_log.handlers):
        event_log.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    event_log.addHandler(handler)
    return event_log


CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')
_ENV_DEBUG = get_env_var('DEBUG_LOGGING', False, _truthy)

CONFIG: Dict[str, Any] = _sanitize_config(_load_yaml(CONFIG_PATH), _ENV_DEBUG)
SETTINGS = load_settings(ConfigAccessor(CONFIG))
EVENT_LOG = setup_logging(SETTINGS.debug_logging)
_validate_config(CONFIG, SETTINGS.debug_logging)

REQUEST_TIMEOUT = SETTINGS.request_timeout
RETRY_ATTEMPTS = SETTINGS.retry_attempts
RETRY_BACKOFF = SETTINGS.retry_backoff

EVENT_BUS = EventBus(structured_logs=SETTINGS.structured_logs, logger=EVENT_LOG)
STRIKE_STORE = StrikeStore(SETTINGS.strike_file_path)
REQUEST_MANAGER = RequestManager(
    min_interval_ms=SETTINGS.min_request_interval_ms,
    max_concurrent=SETTINGS.max_concurrent_requests,
)


def configured_instances() -> List[Tuple[ServiceInstance, CleanerConfig]]:
    # Re-read CONFIG on every call so the scheduler sees the current module state
    accessor = ConfigAccessor(CONFIG)
    return [(inst, accessor.cleaner_config(inst)) for inst in accessor.instances()]


def make_client_factory(session: aiohttp.ClientSession) -> Callable[[ServiceInstance], ArrClient]:
    def _factory(instance: ServiceInstance) -> ArrClient:
        return ArrClient(
            session,
            instance,
            request_manager=REQUEST_MANAGER,
            request_timeout=REQUEST_TIMEOUT,
            retry_attempts=RETRY_ATTEMPTS,
            retry_backoff=RETRY_BACKOFF,
        )
    return _factory


def build_scheduler(session: aiohttp.ClientSession) -> CleanerScheduler:
    return CleanerScheduler(
        STRIKE_STORE,
        make_client_factory(session),
        configured_instances,
        event_bus=EVENT_BUS,
    )


async def main():
    async with aiohttp.ClientSession() as session:
        instances = configured_instances()
        if not instances:
            logging.warning('No services configured; set SONARR_URL/SONARR_API_KEY (or Radarr/Lidarr/Readarr)')
        for inst, cfg in instances:
            mode = 'dry-run' if cfg.dry_run_mode else 'live'
            state = 'enabled' if cfg.enabled else 'disabled'
            logging.info(f'Service {inst.label}: queue cleaner {state} ({mode}, every {cfg.interval_mins}m)')
        scheduler = build_scheduler(session)
        await scheduler.run_forever(SETTINGS.tick_seconds)


def run():
    asyncio.run(main())


if __name__ == '__main__':
    run()
