import importlib


def test_configured_instances_reads_env_and_config(monkeypatch):
    cleaner = importlib.import_module('cleaner')
    for name in ('SONARR', 'RADARR', 'LIDARR', 'READARR'):
        monkeypatch.delenv(f'{name}_URL', raising=False)
        monkeypatch.delenv(f'{name}_API_KEY', raising=False)
    monkeypatch.setenv('RADARR_URL', 'http://radarr:7878')
    monkeypatch.setenv('RADARR_API_KEY', 'k')
    monkeypatch.setattr(cleaner, 'CONFIG', {'queue_cleaner': {'dry_run_mode': False, 'max_strikes': 4}})

    pairs = cleaner.configured_instances()
    assert len(pairs) == 1
    instance, config = pairs[0]
    assert (instance.id, instance.service) == ('radarr', 'Radarr')
    assert (config.dry_run_mode, config.max_strikes, config.instance_id) == (False, 4, 'radarr')


def test_client_factory_shares_request_manager():
    cleaner = importlib.import_module('cleaner')
    config = importlib.import_module('core.config')
    inst = config.ServiceInstance(id='sonarr', label='Sonarr', service='Sonarr', api_url='http://s', api_key='k')
    factory = cleaner.make_client_factory(session=object())
    a, b = factory(inst), factory(inst)
    assert a.requests is b.requests is cleaner.REQUEST_MANAGER
    assert a.request_timeout == cleaner.REQUEST_TIMEOUT
    assert a.base_url == 'http://s/api/v3'


def test_build_scheduler_uses_shared_store():
    cleaner = importlib.import_module('cleaner')
    sched = cleaner.build_scheduler(session=object())
    assert sched.store is cleaner.STRIKE_STORE
    assert sched.event_bus is cleaner.EVENT_BUS
    assert sched.health()['running'] is False


def test_load_settings_prefers_yaml_general_over_env(monkeypatch):
    cleaner = importlib.import_module('cleaner')
    config = importlib.import_module('core.config')
    monkeypatch.setenv('REQUEST_TIMEOUT', '25')
    monkeypatch.setenv('STRUCTURED_LOGS', 'false')
    monkeypatch.setenv('RETRY_ATTEMPTS', '')
    accessor = config.ConfigAccessor({'general': {'request_timeout': 5, 'max_concurrent_requests': 2}})
    settings = cleaner.load_settings(accessor)
    assert settings.request_timeout == 5
    assert settings.structured_logs is False
    # Empty env values fall back to defaults
    assert settings.retry_attempts == 2
    assert settings.max_concurrent_requests == 2
