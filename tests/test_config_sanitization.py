import importlib

import pytest

from core.errors import ConfigError


def test_sanitize_config_coerces_and_clamps():
    cfgmod = importlib.import_module('core.config')
    raw = {
        'general': {'request_timeout': '0', 'retry_attempts': 'x', 'tick_seconds': '30'},
        'queue_cleaner': {'maxStrikes': '50', 'stalled_threshold_mins': '5', 'dry_run_mode': False},
        'services': {'Sonarr': {'queue_cleaner': {'max_removals_per_run': '3'}}},
    }
    out = cfgmod.sanitize_config(raw, debug_logging=False)
    assert out['general']['request_timeout'] == 1
    assert out['general']['retry_attempts'] == 2
    assert out['general']['tick_seconds'] == 30
    assert out['queue_cleaner']['max_strikes'] == 10
    assert out['queue_cleaner']['stalled_threshold_mins'] == 10
    assert out['queue_cleaner']['dry_run_mode'] is False
    assert out['services']['Sonarr']['queue_cleaner']['max_removals_per_run'] == 3


def test_cleaner_config_from_dict_accepts_camel_case():
    cfgmod = importlib.import_module('core.config')
    cfg = cfgmod.CleanerConfig.from_dict({
        'dryRunMode': 'false',
        'strikeSystemEnabled': True,
        'estimatedCompletionMultiplier': '20',
        'whitelistPatterns': [{'type': 'tag', 'pattern': 'keep'}],
        'unknownKey': 1,
    }, instance_id='radarr')
    assert cfg.instance_id == 'radarr'
    assert cfg.dry_run_mode is False
    assert cfg.strike_system_enabled is True
    assert cfg.estimated_completion_multiplier == 10.0
    assert cfg.whitelist_patterns == '[{"type": "tag", "pattern": "keep"}]'


def test_defaults_are_safe():
    cfgmod = importlib.import_module('core.config')
    cfg = cfgmod.CleanerConfig()
    assert cfg.dry_run_mode is True
    assert cfg.strike_system_enabled is False
    assert cfg.max_removals_per_run == 10
    assert cfg.import_block_cleanup_level == 'safe'


def test_accessor_service_overrides_take_precedence(monkeypatch):
    cfgmod = importlib.import_module('core.config')
    monkeypatch.setenv('SONARR_URL', 'http://sonarr:8989/')
    monkeypatch.setenv('SONARR_API_KEY', 'k')
    monkeypatch.delenv('RADARR_URL', raising=False)
    monkeypatch.setenv('RADARR_API_KEY', 'k')
    for name in ('LIDARR', 'READARR'):
        monkeypatch.delenv(f'{name}_URL', raising=False)
        monkeypatch.delenv(f'{name}_API_KEY', raising=False)
    acc = cfgmod.ConfigAccessor({
        'queue_cleaner': {'max_strikes': 3, 'dry_run_mode': True},
        'services': {'Sonarr': {'label': 'TV', 'queue_cleaner': {'max_strikes': 5}}},
    })
    instances = acc.instances()
    assert [(i.id, i.label, i.api_url) for i in instances] == [('sonarr', 'TV', 'http://sonarr:8989')]
    cfg = acc.cleaner_config(instances[0])
    assert (cfg.max_strikes, cfg.dry_run_mode, cfg.instance_id) == (5, True, 'sonarr')


def test_validate_config_reports_problems(monkeypatch):
    cfgmod = importlib.import_module('core.config')
    for name in ('SONARR', 'RADARR', 'LIDARR', 'READARR'):
        monkeypatch.delenv(f'{name}_URL', raising=False)
        monkeypatch.delenv(f'{name}_API_KEY', raising=False)
    monkeypatch.setenv('LIDARR_URL', 'http://lidarr')
    problems = cfgmod.validate_config({'queue_cleaner': {'import_block_cleanup_level': 'nuclear'}})
    assert any('Lidarr has partial env config' in p for p in problems)
    assert any("'nuclear' is invalid" in p for p in problems)


def test_parse_patterns_only_for_enabled_features():
    cfgmod = importlib.import_module('core.config')
    # Disabled features never parse their patterns
    cfg = cfgmod.CleanerConfig(whitelist_patterns='garbage', error_patterns='garbage')
    assert cfg.parse_patterns() == cfgmod.ParsedPatterns()

    cfg = cfgmod.CleanerConfig(error_patterns_enabled=True, error_patterns='["unregistered", "  "]')
    assert cfg.parse_patterns().error_patterns == ['unregistered']


@pytest.mark.parametrize(
    'kwargs,field',
    [
        ({'whitelist_enabled': True, 'whitelist_patterns': '{"type": "tag"}'}, 'whitelist_patterns'),
        ({'whitelist_enabled': True, 'whitelist_patterns': '[{"type": "indexer", "pattern": "x"}]'}, 'whitelist_patterns'),
        ({'error_patterns_enabled': True, 'error_patterns': '[1, 2]'}, 'error_patterns'),
        ({'import_block_pattern_mode': 'include', 'import_block_patterns': 'nope'}, 'import_block_patterns'),
        ({'import_block_cleanup_level': 'extreme'}, 'import_block_cleanup_level'),
        ({'import_block_pattern_mode': 'only'}, 'import_block_pattern_mode'),
    ],
)
def test_parse_patterns_rejects_malformed_input(kwargs, field):
    cfgmod = importlib.import_module('core.config')
    with pytest.raises(ConfigError) as exc:
        cfgmod.CleanerConfig(**kwargs).parse_patterns()
    assert exc.value.field == field
