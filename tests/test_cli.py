from unittest.mock import AsyncMock, MagicMock

import pytest

from ble_gateway_proxy import cli


@pytest.fixture
def environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ('MQTT_PUBLISH_INTERVAL_SECONDS', 'DEVICE_CACHE_RETENTION_SECONDS', 'SERVER_PORT', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('MQTT_BROKER', 'broker.local')
    # Registered so values loaded from .env are removed after the test
    monkeypatch.setenv('HA_BLE_DEVICE_1', '')
    monkeypatch.delenv('HA_BLE_DEVICE_1')
    return tmp_path


@pytest.fixture
def fake_service(monkeypatch):
    service = MagicMock()
    service.run = AsyncMock()
    factory = MagicMock(return_value=service)
    monkeypatch.setattr(cli, 'GatewayProxyService', factory)
    return factory


def test_parser_defaults():
    args = cli.build_parser().parse_args([])
    assert args.config is None
    assert args.log_level is None
    assert args.publish_interval is None


def test_cli_overrides_win(environment, fake_service):
    cli.main(['--publish-interval', '15', '--cache-retention', '90', '--port', '9001', '--log-level', 'WARNING'])

    config = fake_service.call_args.args[0]
    assert config['publish_interval_sec'] == 15
    assert config['device_cache_retention_sec'] == 90
    assert config['server']['port'] == 9001
    assert config['log_level'] == 'WARNING'
    fake_service.return_value.run.assert_awaited_once()


def test_config_file_is_loaded(environment, fake_service):
    path = environment / 'config.json'
    path.write_text('{"mqtt": {"broker": "file.local", "topic_prefix": "ble/"}}')
    (environment / '.env').write_text('HA_BLE_DEVICE_1=123b6a1b85ef,Car Token\n')

    cli.main(['-c', str(path)])

    config = fake_service.call_args.args[0]
    # MQTT_BROKER from the environment overrides the file
    assert config['mqtt']['broker'] == 'broker.local'
    assert config['mqtt']['topic_prefix'] == 'ble/'
    assert config['home_assistant']['devices'] == {'123b6a1b85ef': {'name': 'Car Token'}}


def test_invalid_override_exits(environment, fake_service):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(['--publish-interval', '-5'])

    assert exc_info.value.code == 1
    fake_service.assert_not_called()


def test_missing_config_file_exits(environment, fake_service):
    with pytest.raises(SystemExit):
        cli.main(['-c', str(environment / 'missing.json')])
