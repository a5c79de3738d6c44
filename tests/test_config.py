import json
import logging

import pytest

from ble_gateway_proxy.config import (
    load_config,
    normalize_tracked_devices,
    parse_device_entry,
    validate_config,
)
from ble_gateway_proxy.errors import ConfigError

BASE_ENV = {'MQTT_BROKER': 'broker.local'}


def write_config(tmp_path, data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(data))
    return str(path)


def test_defaults_from_environment_only():
    config = load_config(environ=BASE_ENV)

    assert config['mqtt']['broker'] == 'broker.local'
    assert config['mqtt']['port'] == 1883
    assert config['mqtt']['topic_prefix'] == '/blegateways/aprilbrother/device/'
    assert config['publish_interval_sec'] == 0
    assert config['device_cache_retention_sec'] == 300
    assert config['server'] == {'host': '0.0.0.0', 'port': 8000}
    assert config['home_assistant']['enabled'] is False


def test_missing_broker_is_an_error():
    with pytest.raises(ConfigError, match='broker'):
        load_config(environ={})


def test_file_values_are_merged_and_environment_wins(tmp_path):
    path = write_config(tmp_path, {
        'publish_interval_sec': 30,
        'mqtt': {'broker': 'file.local', 'qos': 0},
        'home_assistant': {'enabled': True, 'devices': {'12:3B:6A:1B:85:EF': 'Car Token'}},
    })

    config = load_config(path, environ={'MQTT_BROKER': 'env.local', 'MQTT_PUBLISH_INTERVAL_SECONDS': '5'})

    assert config['mqtt']['broker'] == 'env.local'
    assert config['mqtt']['qos'] == 0
    assert config['mqtt']['client_id'] == 'ble-gateway-proxy'
    assert config['publish_interval_sec'] == 5
    assert config['home_assistant']['devices'] == {'123b6a1b85ef': {'name': 'Car Token'}}


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / 'nope.json'), environ=BASE_ENV)


def test_invalid_json(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{not json')
    with pytest.raises(ConfigError, match='Invalid JSON'):
        load_config(str(path), environ=BASE_ENV)


def test_environment_overrides():
    config = load_config(environ={
        **BASE_ENV,
        'SERVER_HOST': '127.0.0.1',
        'SERVER_PORT': '9000',
        'MQTT_PORT': '8883',
        'MQTT_USERNAME': 'proxy',
        'MQTT_PASSWORD': 'secret',
        'MQTT_TOPIC_PREFIX': 'ble/',
        'MQTT_QOS': '2',
        'MQTT_RETAIN': 'true',
        'DEVICE_CACHE_RETENTION_SECONDS': '120',
        'MQTT_PUBLISH_INTERVAL_SECONDS': '2.5',
        'LOG_LEVEL': 'debug',
        'HA_ENABLED': 'true',
        'HA_DISCOVERY_TOPIC_PREFIX': 'ha',
        'HA_GATEWAY_NAME': 'Garage Gateway',
    })

    assert config['server'] == {'host': '127.0.0.1', 'port': 9000}
    assert config['mqtt']['port'] == 8883
    assert config['mqtt']['auth_type'] == 'userpass'
    assert config['mqtt']['credentials'] == {'username': 'proxy', 'password': 'secret'}
    assert config['mqtt']['topic_prefix'] == 'ble/'
    assert config['mqtt']['qos'] == 2
    assert config['mqtt']['retain'] is True
    assert config['device_cache_retention_sec'] == 120
    assert config['publish_interval_sec'] == 2.5
    assert config['log_level'] == 'DEBUG'
    assert config['home_assistant']['enabled'] is True
    assert config['home_assistant']['discovery_topic_prefix'] == 'ha'
    assert config['home_assistant']['gateway_name'] == 'Garage Gateway'


@pytest.mark.parametrize('url, broker, port', [
    ('mqtt://broker.example.com:1884', 'broker.example.com', 1884),
    ('mqtts://broker.example.com', 'broker.example.com', 8883),
    ('mqtt://10.0.0.5', '10.0.0.5', 1883),
])
def test_broker_url(url, broker, port):
    config = load_config(environ={'MQTT_BROKER_URL': url})
    assert (config['mqtt']['broker'], config['mqtt']['port']) == (broker, port)


def test_tracked_devices_from_environment(caplog):
    env = {
        **BASE_ENV,
        'HA_BLE_DEVICE_1': '12:3B:6A:1B:85:EF, Car Token',
        'HA_BLE_DEVICE_7': ' 123b6a1b8600 ,Keys, spare',
        'HA_BLE_DEVICE_3': 'garbage',
        'HA_BLE_DEVICE_4': 'zz3b6a1b8600,Broken',
        'HA_BLE_DEVICE_X': '010203040506,Ignored',
    }

    with caplog.at_level(logging.WARNING):
        config = load_config(environ=env)

    assert config['home_assistant']['devices'] == {
        '123b6a1b85ef': {'name': 'Car Token'},
        '123b6a1b8600': {'name': 'Keys, spare'},
    }
    assert 'garbage' in caplog.text
    assert 'zz3b6a1b8600' in caplog.text


@pytest.mark.parametrize('env, key', [
    ({'MQTT_PUBLISH_INTERVAL_SECONDS': '-1'}, 'publish_interval_sec'),
    ({'MQTT_PUBLISH_INTERVAL_SECONDS': 'soon'}, 'MQTT_PUBLISH_INTERVAL_SECONDS'),
    ({'DEVICE_CACHE_RETENTION_SECONDS': '0'}, 'device_cache_retention_sec'),
    ({'MQTT_QOS': '3'}, 'mqtt.qos'),
    ({'MQTT_PORT': 'abc'}, 'MQTT_PORT'),
    ({'SERVER_PORT': '70000'}, 'server.port'),
    ({'HA_ENABLED': 'maybe'}, 'HA_ENABLED'),
    ({'LOG_LEVEL': 'LOUD'}, 'log_level'),
])
def test_invalid_values_name_the_key(env, key):
    with pytest.raises(ConfigError, match=key):
        load_config(environ={**BASE_ENV, **env})


def test_client_id_length_is_limited(tmp_path):
    path = write_config(tmp_path, {'mqtt': {'broker': 'b', 'client_id': 'x' * 200}})
    with pytest.raises(ConfigError, match='client_id too long'):
        load_config(path, environ={})


def test_parse_device_entry():
    assert parse_device_entry('12:3B:6A:1B:85:EF,Car Token') == ('123b6a1b85ef', 'Car Token')
    assert parse_device_entry('123b6a1b85ef,') is None
    assert parse_device_entry('') is None


def test_normalize_tracked_devices_shapes():
    expected = {'123b6a1b85ef': {'name': 'Car Token'}}
    assert normalize_tracked_devices({'12:3B:6A:1B:85:EF': 'Car Token'}) == expected
    assert normalize_tracked_devices({'123B6A1B85EF': {'name': 'Car Token'}}) == expected
    assert normalize_tracked_devices(['123b6a1b85ef,Car Token']) == expected
    assert normalize_tracked_devices(None) == {}
    with pytest.raises(ConfigError):
        normalize_tracked_devices('123b6a1b85ef')


def test_validate_config_warnings():
    config = load_config(environ={
        **BASE_ENV,
        'HA_ENABLED': 'true',
        'MQTT_PUBLISH_INTERVAL_SECONDS': '600',
        'MQTT_PORT': '8883',
    })

    warnings = validate_config(config)

    assert len(warnings) == 3
    assert any('no HA_BLE_DEVICE_X' in w for w in warnings)
    assert any('shorter than publish_interval_sec' in w for w in warnings)
    assert any('8883' in w for w in warnings)


def test_validate_config_clean():
    assert validate_config(load_config(environ=BASE_ENV)) == []
