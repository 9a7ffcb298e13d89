from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

import yaml

from core.constants import CLEANUP_LEVELS, LIMITS, PATTERN_MODES, WHITELIST_TYPES
from core.errors import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_SERVICES = ('Sonarr', 'Radarr', 'Lidarr', 'Readarr')


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f'Config file {path} could not be read: {e}')
        return {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


def _camel_to_snake(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


@dataclass
class ServiceInstance:
    id: str
    label: str
    service: str
    api_url: str
    api_key: str

    @property
    def service_key(self) -> str:
        return self.service.lower()


@dataclass
class ParsedPatterns:
    whitelist: List[Dict[str, str]] = field(default_factory=list)
    error_patterns: List[str] = field(default_factory=list)
    import_block_patterns: List[str] = field(default_factory=list)
    auto_import_custom: List[str] = field(default_factory=list)
    auto_import_never: List[str] = field(default_factory=list)


def parse_string_list(raw: Any, field_name: str) -> List[str]:
    """Decode a JSON array of strings. Anything else is a ConfigError."""
    if raw is None:
        return []
    if isinstance(raw, list):
        data = raw
    elif isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f'{field_name} is not valid JSON: {e.msg}', field_name) from e
    else:
        raise ConfigError(f'{field_name} must be a JSON array', field_name)
    if not isinstance(data, list):
        raise ConfigError(f'{field_name} must be a JSON array', field_name)
    for entry in data:
        if not isinstance(entry, str):
            raise ConfigError(f'{field_name} entries must be strings', field_name)
    return [p for p in data if p.strip()]


def parse_whitelist(raw: Any) -> List[Dict[str, str]]:
    if raw is None:
        return []
    if isinstance(raw, list):
        data = raw
    elif isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f'whitelist_patterns is not valid JSON: {e.msg}', 'whitelist_patterns') from e
    else:
        raise ConfigError('whitelist_patterns must be a JSON array', 'whitelist_patterns')
    if not isinstance(data, list):
        raise ConfigError('whitelist_patterns must be a JSON array', 'whitelist_patterns')
    out: List[Dict[str, str]] = []
    for entry in data:
        if not isinstance(entry, dict):
            raise ConfigError('whitelist_patterns entries must be objects', 'whitelist_patterns')
        typ = str(entry.get('type') or '').lower()
        pattern = entry.get('pattern')
        if typ not in WHITELIST_TYPES:
            raise ConfigError(f'Unknown whitelist type: {entry.get("type")!r}', 'whitelist_patterns')
        if not isinstance(pattern, str) or not pattern.strip():
            raise ConfigError('whitelist_patterns entries need a non-empty pattern', 'whitelist_patterns')
        out.append({'type': typ, 'pattern': pattern})
    return out


@dataclass
class CleanerConfig:
    instance_id: str = ''
    enabled: bool = True
    interval_mins: int = LIMITS['interval_mins'][0]

    failed_enabled: bool = True
    stalled_enabled: bool = True
    stalled_threshold_mins: int = LIMITS['stalled_threshold_mins'][0]
    slow_enabled: bool = False
    slow_speed_threshold: int = LIMITS['slow_speed_threshold'][0]
    slow_grace_period_mins: int = LIMITS['slow_grace_period_mins'][0]
    error_patterns_enabled: bool = False
    error_patterns: Optional[str] = None
    seeding_timeout_enabled: bool = False
    seeding_timeout_hours: int = LIMITS['seeding_timeout_hours'][0]
    estimated_completion_enabled: bool = False
    estimated_completion_multiplier: float = LIMITS['estimated_completion_multiplier'][0]
    import_pending_enabled: bool = True
    import_pending_threshold_mins: int = LIMITS['import_pending_threshold_mins'][0]
    import_block_cleanup_level: str = 'safe'
    import_block_pattern_mode: str = 'defaults'
    import_block_patterns: Optional[str] = None

    strike_system_enabled: bool = False
    max_strikes: int = LIMITS['max_strikes'][0]
    strike_decay_hours: int = LIMITS['strike_decay_hours'][0]

    max_removals_per_run: int = LIMITS['max_removals_per_run'][0]
    min_queue_age_mins: int = LIMITS['min_queue_age_mins'][0]

    whitelist_enabled: bool = False
    whitelist_patterns: Optional[str] = None

    auto_import_enabled: bool = False
    auto_import_max_attempts: int = LIMITS['auto_import_max_attempts'][0]
    auto_import_cooldown_mins: int = LIMITS['auto_import_cooldown_mins'][0]
    auto_import_safe_only: bool = True
    auto_import_custom_patterns: Optional[str] = None
    auto_import_never_patterns: Optional[str] = None

    dry_run_mode: bool = True
    remove_from_client: bool = True
    add_to_blocklist: bool = False
    search_after_removal: bool = True
    change_category_enabled: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], instance_id: str = '') -> 'CleanerConfig':
        """Build from snake_case or camelCase keys; numbers are coerced and clamped."""
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for raw_key, value in (data or {}).items():
            key = _camel_to_snake(str(raw_key))
            if key not in known or value is None:
                continue
            default = known[key].default
            if isinstance(default, bool):
                kwargs[key] = _as_bool(value)
            elif key in LIMITS:
                kwargs[key] = _clamp(key, value)
            else:
                if isinstance(value, (list, dict)):
                    value = json.dumps(value)
                kwargs[key] = value if isinstance(value, str) else str(value)
        cfg = cls(**kwargs)
        if instance_id:
            cfg.instance_id = instance_id
        return cfg

    def with_overrides(self, **changes: Any) -> 'CleanerConfig':
        return replace(self, **changes)

    def validate(self) -> None:
        if self.import_block_cleanup_level not in CLEANUP_LEVELS:
            raise ConfigError(
                f'Unknown import block cleanup level: {self.import_block_cleanup_level!r}',
                'import_block_cleanup_level',
            )
        if self.import_block_pattern_mode not in PATTERN_MODES:
            raise ConfigError(
                f'Unknown import block pattern mode: {self.import_block_pattern_mode!r}',
                'import_block_pattern_mode',
            )

    def parse_patterns(self) -> ParsedPatterns:
        """Validate and decode every user pattern list once per run."""
        self.validate()
        out = ParsedPatterns()
        if self.whitelist_enabled:
            out.whitelist = parse_whitelist(self.whitelist_patterns)
        if self.error_patterns_enabled:
            out.error_patterns = parse_string_list(self.error_patterns, 'error_patterns')
        if self.import_block_pattern_mode != 'defaults':
            out.import_block_patterns = parse_string_list(self.import_block_patterns, 'import_block_patterns')
        if self.auto_import_enabled:
            out.auto_import_custom = parse_string_list(self.auto_import_custom_patterns, 'auto_import_custom_patterns')
            out.auto_import_never = parse_string_list(self.auto_import_never_patterns, 'auto_import_never_patterns')
        return out

    def snapshot(self) -> Dict[str, Any]:
        return {
            'dryRunMode': self.dry_run_mode,
            'strikeSystemEnabled': self.strike_system_enabled,
            'maxStrikes': self.max_strikes,
            'maxRemovalsPerRun': self.max_removals_per_run,
        }


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _clamp(key: str, value: Any) -> Any:
    default, lo, hi = LIMITS[key]
    cast = float if isinstance(default, float) else int
    try:
        num = cast(float(value))
    except (TypeError, ValueError):
        logger.warning(f'Invalid value for {key}: {value!r}; using default {default}')
        return default
    return max(lo, min(hi, num))


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    # Precedence: services[svc].queue_cleaner > queue_cleaner
    def cleaner_settings(self, service_name: str) -> Dict[str, Any]:
        base = self.cfg.get('queue_cleaner') if isinstance(self.cfg.get('queue_cleaner'), dict) else {}
        out = dict(base)
        services_cfg = self.cfg.get('services') if isinstance(self.cfg.get('services'), dict) else {}
        service_cfg = services_cfg.get(service_name, {}) if isinstance(services_cfg, dict) else {}
        if isinstance(service_cfg, dict):
            override = service_cfg.get('queue_cleaner')
            if isinstance(override, dict):
                out.update(override)
        return out

    def cleaner_config(self, instance: ServiceInstance) -> CleanerConfig:
        return CleanerConfig.from_dict(self.cleaner_settings(instance.service), instance_id=instance.id)

    def service_label(self, service_name: str) -> str:
        services_cfg = self.cfg.get('services') if isinstance(self.cfg.get('services'), dict) else {}
        service_cfg = services_cfg.get(service_name, {}) if isinstance(services_cfg, dict) else {}
        if isinstance(service_cfg, dict) and service_cfg.get('label'):
            return str(service_cfg['label'])
        return service_name

    # Endpoints from env (documented precedence: env-only)
    def service_endpoint(self, service_name: str) -> Dict[str, Optional[str]]:
        upper = service_name.upper()
        return {
            'api_url': _get_env(f'{upper}_URL') or None,
            'api_key': _get_env(f'{upper}_API_KEY') or None,
        }

    def instances(self) -> List[ServiceInstance]:
        out: List[ServiceInstance] = []
        for name in SUPPORTED_SERVICES:
            ep = self.service_endpoint(name)
            if not ep['api_url'] or not ep['api_key']:
                continue
            out.append(
                ServiceInstance(
                    id=name.lower(),
                    label=self.service_label(name),
                    service=name,
                    api_url=str(ep['api_url']).rstrip('/'),
                    api_key=str(ep['api_key']),
                )
            )
        return out

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        return gen.get(key, default)


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = out.get('general') if isinstance(out.get('general'), dict) else {}
    if gen:
        gen = dict(gen)
        if 'request_timeout' in gen:
            gen['request_timeout'] = max(1, _nz(gen.get('request_timeout'), int, 10))
        if 'retry_attempts' in gen:
            gen['retry_attempts'] = max(0, _nz(gen.get('retry_attempts'), int, 2))
        if 'retry_backoff' in gen:
            gen['retry_backoff'] = max(0.0, _nz(gen.get('retry_backoff'), float, 1.0))
        if 'tick_seconds' in gen:
            gen['tick_seconds'] = max(1, _nz(gen.get('tick_seconds'), int, 60))
        out['general'] = gen

    def _clean_section(section: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {}
        for k, v in section.items():
            key = _camel_to_snake(str(k))
            cleaned[key] = _clamp(key, v) if key in LIMITS else v
        return cleaned

    qc = out.get('queue_cleaner') if isinstance(out.get('queue_cleaner'), dict) else None
    if qc is not None:
        out['queue_cleaner'] = _clean_section(qc)

    sv = out.get('services') if isinstance(out.get('services'), dict) else {}
    for sname, scfg in list(sv.items()):
        if isinstance(scfg, dict) and isinstance(scfg.get('queue_cleaner'), dict):
            scfg = dict(scfg)
            scfg['queue_cleaner'] = _clean_section(scfg['queue_cleaner'])
            sv[sname] = scfg
            if debug_logging:
                logger.debug(f'Service {sname}: queue_cleaner overrides {sorted(scfg["queue_cleaner"])}')
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log non-fatal configuration problems; never raises."""
    problems: List[str] = []
    for s in SUPPORTED_SERVICES:
        url = os.environ.get(f'{s.upper()}_URL') or None
        key = os.environ.get(f'{s.upper()}_API_KEY') or None
        if (url and not key) or (key and not url):
            problems.append(f'Service {s} has partial env config (URL/API_KEY); it will be skipped.')
    accessor = ConfigAccessor(cfg)
    for s in SUPPORTED_SERVICES:
        settings = accessor.cleaner_settings(s)
        level = settings.get('import_block_cleanup_level')
        if level is not None and level not in CLEANUP_LEVELS:
            problems.append(f'Service {s}: import_block_cleanup_level {level!r} is invalid; runs will abort.')
        mode = settings.get('import_block_pattern_mode')
        if mode is not None and mode not in PATTERN_MODES:
            problems.append(f'Service {s}: import_block_pattern_mode {mode!r} is invalid; runs will abort.')
    for p in problems:
        logger.warning(p)
    return problems
