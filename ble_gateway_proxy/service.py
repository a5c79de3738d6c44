"""Process wiring: MQTT publisher, Home Assistant discovery, scheduler and HTTP server."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import uvicorn

from .ha_discovery import HomeAssistantDiscovery
from .logging_setup import ICON_ERROR, ICON_INFO, ICON_PUBLISH, ICON_SUCCESS, ICON_WARNING
from .mqtt_publisher import DEFAULT_CLIENT_ID, DEFAULT_KEEPALIVE, DEFAULT_PORT, DEFAULT_QOS, MQTTPublisher
from .scheduler import DEFAULT_CACHE_RETENTION, DEFAULT_PUBLISH_INTERVAL, ScheduledPublisher
from .server import create_app
from .transformer import DeviceObservation

DISCOVERY_INTERVAL_SEC = 60


class GatewayProxyService:
    """Main proxy application."""

    def __init__(self, config: dict, logger: logging.Logger):
        self.config = config
        self.logger = logger

        mqtt_config = config['mqtt']
        auth_type = mqtt_config.get('auth_type', 'none')

        tls_config = None
        if auth_type == 'mtls':
            tls_config = {
                'ca_certs': mqtt_config.get('root_ca_path'),
                'certfile': mqtt_config.get('cert_path'),
                'keyfile': mqtt_config.get('key_path')
            }

        self.publisher = MQTTPublisher(
            broker=mqtt_config['broker'],
            port=mqtt_config.get('port', DEFAULT_PORT),
            client_id=mqtt_config.get('client_id', DEFAULT_CLIENT_ID),
            topic_prefix=mqtt_config['topic_prefix'],
            logger=logger,
            auth_type=auth_type,
            tls_config=tls_config,
            credentials=mqtt_config.get('credentials'),
            qos=mqtt_config.get('qos', DEFAULT_QOS),
            retain=mqtt_config.get('retain', False),
            keepalive=mqtt_config.get('keepalive', DEFAULT_KEEPALIVE)
        )

        ha_config = config['home_assistant']
        self.tracked_devices: Dict[str, Dict[str, str]] = ha_config.get('devices', {})

        self.discovery = HomeAssistantDiscovery(
            publisher=self.publisher,
            tracked_devices=self.tracked_devices,
            discovery_prefix=ha_config['discovery_topic_prefix'],
            gateway_name=ha_config['gateway_name'],
            enabled=ha_config['enabled']
        )

        self.scheduler = ScheduledPublisher(
            publish_device_data=self.publish_device_data,
            publish_gateway_status=self.publish_gateway_status,
            tracked_devices=self.tracked_devices,
            publish_interval_sec=config.get('publish_interval_sec', DEFAULT_PUBLISH_INTERVAL),
            cache_retention_sec=config.get('device_cache_retention_sec', DEFAULT_CACHE_RETENTION)
        )

        self.stats = {
            'batches_received': 0,
            'devices_received': 0,
            'devices_published': 0,
            'publish_errors': 0,
            'gateway_publishes': 0
        }

        self._discovery_task: Optional[asyncio.Task] = None
        self._started = False

    async def publish_device_data(
        self,
        observations: List[DeviceObservation],
        gateway_metadata: Any = None,
        gateway_info: Any = None
    ) -> None:
        """Publish device observations followed by the gateway status.

        An empty list publishes the gateway status alone, which keeps the
        gateway sensors alive while no devices are in range.
        """
        if not observations:
            self.logger.debug("No devices to publish, publishing gateway status only")
            await self.publish_gateway_status(gateway_info)
            return

        try:
            results = self.publisher.publish_multiple_device_data(observations)
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error publishing device data: {e}", exc_info=True)
            self.stats['publish_errors'] += len(observations)
            return

        self.stats['devices_published'] += results.success_count
        self.stats['publish_errors'] += results.error_count

        if results.error_count == 0:
            self.logger.info(f"{ICON_PUBLISH} Published {results.success_count} devices to MQTT")
        elif results.success_count == 0:
            self.logger.error(f"{ICON_ERROR} Failed to publish all {results.total_count} devices to MQTT")
        else:
            self.logger.warning(
                f"{ICON_WARNING} Published {results.success_count}/{results.total_count} devices, "
                f"{results.error_count} failed"
            )
            for error in results.errors:
                self.logger.debug(f"  Device {error['device_mac']}: {error['error']}")

        await self.publish_gateway_status(gateway_info)

    async def publish_gateway_status(self, gateway_info: Any) -> None:
        if gateway_info is None:
            return

        try:
            if self.publisher.publish_gateway_data(gateway_info):
                self.stats['gateway_publishes'] += 1
                self.logger.debug("Published gateway status")
            else:
                self.logger.debug("Gateway status not published")
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error publishing gateway status: {e}")

    async def handle_batch(
        self,
        observations: List[DeviceObservation],
        gateway_metadata: Any = None,
        gateway_info: Any = None
    ) -> bool:
        """Hand one decoded gateway request to the scheduler.

        Returns:
            True if something was published right away
        """
        self.stats['batches_received'] += 1
        self.stats['devices_received'] += len(observations)

        if self.scheduler.publish_interval_sec == 0 and not observations:
            await self.publish_gateway_status(gateway_info)
            return True

        return await self.scheduler.handle_incoming_data(observations, gateway_metadata, gateway_info)

    async def _discovery_loop(self) -> None:
        while True:
            await asyncio.sleep(DISCOVERY_INTERVAL_SEC)
            try:
                self.discovery.publish_discovery_messages()
            except Exception as e:
                self.logger.error(f"{ICON_ERROR} Error in Home Assistant discovery: {e}", exc_info=True)

    async def start(self) -> None:
        self.logger.info("Starting BLE Gateway MQTT Proxy")
        self.logger.info(
            f"Publish interval: {self.scheduler.publish_interval_sec}s "
            f"(0=immediate, >0=scheduled)"
        )
        self.logger.info(f"Device cache retention: {self.scheduler.cache_retention_sec}s")

        if await self.publisher.connect():
            self.logger.info(f"{ICON_SUCCESS} MQTT publisher ready")
        else:
            # paho keeps retrying in the background; requests are dropped until it connects
            self.logger.error(f"{ICON_ERROR} Failed to connect to MQTT broker, continuing without it")

        if self.discovery.enabled:
            self.discovery.publish_discovery_messages()
            self._discovery_task = asyncio.ensure_future(self._discovery_loop())
            self.logger.info(
                f"{ICON_INFO} Home Assistant discovery enabled, re-checking every {DISCOVERY_INTERVAL_SEC}s"
            )

        self.scheduler.initialize()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        if self._discovery_task:
            self._discovery_task.cancel()
            try:
                await self._discovery_task
            except asyncio.CancelledError:
                pass
            self._discovery_task = None

        self.scheduler.shutdown()
        self.publisher.disconnect()
        self.logger.info("Proxy stopped")
        self.logger.info(f"Final stats: {self.stats}")

    async def run(self, app=None) -> None:
        """Start, serve HTTP until uvicorn exits (SIGINT/SIGTERM), then stop."""
        if app is None:
            app = create_app(self)

        server_config = self.config['server']
        uvicorn_config = uvicorn.Config(
            app,
            host=server_config['host'],
            port=server_config['port'],
            log_level=self.config.get('log_level', 'INFO').lower(),
            access_log=False
        )
        server = uvicorn.Server(uvicorn_config)

        await self.start()
        try:
            self.logger.info(f"{ICON_INFO} Listening on {server_config['host']}:{server_config['port']}")
            await server.serve()
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error in HTTP server: {e}", exc_info=True)
        finally:
            await self.stop()
