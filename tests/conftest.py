import logging
from unittest.mock import AsyncMock

import pytest

from ble_gateway_proxy.logging_setup import LOGGER_NAME

from .helpers import VirtualTime


@pytest.fixture
def virtual_time(monkeypatch):
    """Call ``virtual_time.install()`` from inside the test coroutine."""
    return VirtualTime(monkeypatch)


@pytest.fixture
def publish_callbacks():
    return AsyncMock(name='publish_device_data'), AsyncMock(name='publish_gateway_status')


@pytest.fixture
def base_config():
    return {
        'server': {'host': '127.0.0.1', 'port': 8000},
        'publish_interval_sec': 0,
        'device_cache_retention_sec': 300,
        'log_level': 'INFO',
        'mqtt': {
            'broker': 'localhost',
            'port': 1883,
            'client_id': 'test-proxy',
            'topic_prefix': '/blegateways/aprilbrother/device/',
            'qos': 1,
            'retain': False,
            'keepalive': 60,
            'auth_type': 'none',
        },
        'home_assistant': {
            'enabled': False,
            'discovery_topic_prefix': 'homeassistant',
            'gateway_name': 'April Brother BLE Gateway',
            'devices': {'aabbccddeeff': {'name': 'Car Token'}},
        },
    }


@pytest.fixture
def proxy_logger():
    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = True
    return logger
