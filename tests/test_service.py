import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from ble_gateway_proxy import service as service_module
from ble_gateway_proxy.gateway_parser import GatewayInfo
from ble_gateway_proxy.mqtt_publisher import PublishResults
from ble_gateway_proxy.service import GatewayProxyService

from .helpers import make_observation

GATEWAY_INFO = GatewayInfo(version='1.5.0', message_id=1, ip='10.0.0.2', mac='11:22:33:44:55:66')
GATEWAY_META = {'gateway_mac': '11:22:33:44:55:66', 'gateway_ip': '10.0.0.2'}


@pytest.fixture
def proxy(base_config, proxy_logger):
    proxy = GatewayProxyService(base_config, proxy_logger)
    proxy.publisher = MagicMock()
    proxy.publisher.publish_gateway_data.return_value = True
    proxy.publisher.connect = AsyncMock(return_value=True)
    proxy.discovery.publish_discovery_messages = MagicMock(return_value=0)
    return proxy


def test_wiring(base_config, proxy_logger):
    base_config['publish_interval_sec'] = 30
    base_config['mqtt']['topic_prefix'] = 'ble'

    proxy = GatewayProxyService(base_config, proxy_logger)

    assert proxy.publisher.topic_prefix == 'ble/'
    assert proxy.scheduler.publish_interval_sec == 30
    assert proxy.scheduler.tracked_devices is proxy.tracked_devices
    assert proxy.discovery.tracked_devices is proxy.tracked_devices
    assert proxy.discovery.enabled is False


@pytest.mark.asyncio
async def test_empty_batch_publishes_gateway_status_only(proxy):
    await proxy.publish_device_data([], GATEWAY_META, GATEWAY_INFO)

    proxy.publisher.publish_multiple_device_data.assert_not_called()
    proxy.publisher.publish_gateway_data.assert_called_once_with(GATEWAY_INFO)
    assert proxy.stats['gateway_publishes'] == 1


@pytest.mark.asyncio
async def test_devices_then_gateway_status(proxy):
    observations = [make_observation(), make_observation(mac='01:02:03:04:05:06')]
    proxy.publisher.publish_multiple_device_data.return_value = PublishResults(
        published=observations[:1],
        errors=[{'index': 1, 'device_mac': '01:02:03:04:05:06', 'error': 'publish rejected'}],
        total_count=2,
    )

    await proxy.publish_device_data(observations, GATEWAY_META, GATEWAY_INFO)

    proxy.publisher.publish_multiple_device_data.assert_called_once_with(observations)
    proxy.publisher.publish_gateway_data.assert_called_once_with(GATEWAY_INFO)
    assert proxy.stats['devices_published'] == 1
    assert proxy.stats['publish_errors'] == 1


@pytest.mark.asyncio
async def test_publish_errors_never_raise(proxy, caplog):
    proxy.publisher.publish_multiple_device_data.side_effect = RuntimeError('boom')
    proxy.publisher.publish_gateway_data.side_effect = ValueError('bad gateway')

    with caplog.at_level(logging.ERROR):
        await proxy.publish_device_data([make_observation()], GATEWAY_META, GATEWAY_INFO)
        await proxy.publish_gateway_status(GATEWAY_INFO)

    assert proxy.stats['publish_errors'] == 1
    assert 'bad gateway' in caplog.text


@pytest.mark.asyncio
async def test_gateway_status_without_info_is_skipped(proxy):
    await proxy.publish_gateway_status(None)
    proxy.publisher.publish_gateway_data.assert_not_called()


@pytest.mark.asyncio
async def test_handle_batch_immediate_mode(proxy):
    proxy.publisher.publish_multiple_device_data.return_value = PublishResults(
        published=[make_observation()], total_count=1
    )

    assert await proxy.handle_batch([make_observation()], GATEWAY_META, GATEWAY_INFO) is True
    assert await proxy.handle_batch([], GATEWAY_META, GATEWAY_INFO) is True

    assert proxy.publisher.publish_multiple_device_data.call_count == 1
    assert proxy.publisher.publish_gateway_data.call_count == 2
    assert proxy.stats['batches_received'] == 2
    assert proxy.stats['devices_received'] == 1


@pytest.mark.asyncio
async def test_handle_batch_scheduled_mode_caches_untracked(base_config, proxy_logger):
    base_config['publish_interval_sec'] = 30
    proxy = GatewayProxyService(base_config, proxy_logger)
    proxy.publisher = MagicMock()

    assert await proxy.handle_batch([make_observation(mac='01:02:03:04:05:06')], GATEWAY_META, GATEWAY_INFO) is False
    proxy.publisher.publish_multiple_device_data.assert_not_called()
    assert proxy.scheduler.get_state()['device_cache_size'] == 1

    proxy.scheduler.shutdown()


@pytest.mark.asyncio
async def test_start_and_stop(proxy):
    proxy.discovery.enabled = True
    proxy.scheduler.publish_interval_sec = 30

    await proxy.start()

    proxy.publisher.connect.assert_awaited_once()
    proxy.discovery.publish_discovery_messages.assert_called_once()
    assert proxy.scheduler.get_state()['has_scheduled_publish'] is True
    discovery_task = proxy._discovery_task

    await proxy.stop()
    await proxy.stop()

    assert discovery_task.cancelled()
    assert proxy.scheduler.get_state()['has_scheduled_publish'] is False
    proxy.publisher.disconnect.assert_called_once()


@pytest.mark.asyncio
async def test_start_continues_without_broker(proxy, caplog):
    proxy.publisher.connect.return_value = False

    with caplog.at_level(logging.ERROR):
        await proxy.start()

    assert 'continuing without it' in caplog.text
    proxy.discovery.publish_discovery_messages.assert_not_called()
    await proxy.stop()


@pytest.mark.asyncio
async def test_run_serves_and_stops(proxy, monkeypatch):
    uvicorn_server = MagicMock()
    uvicorn_server.serve = AsyncMock()
    server_factory = MagicMock(return_value=uvicorn_server)
    monkeypatch.setattr(service_module.uvicorn, 'Server', server_factory)

    await proxy.run(app=MagicMock())

    uvicorn_config = server_factory.call_args.args[0]
    assert uvicorn_config.host == '127.0.0.1'
    assert uvicorn_config.port == 8000
    uvicorn_server.serve.assert_awaited_once()
    proxy.publisher.connect.assert_awaited_once()
    proxy.publisher.disconnect.assert_called_once()
