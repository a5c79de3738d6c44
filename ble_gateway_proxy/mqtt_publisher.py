"""MQTT connection and publishing using paho-mqtt (broker agnostic)."""

import asyncio
import json
import logging
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import paho.mqtt.client as mqtt

from .gateway_parser import GatewayInfo
from .logging_setup import ICON_ERROR, ICON_SUCCESS, ICON_WARNING
from .transformer import DeviceObservation, iso_timestamp

DEFAULT_QOS = 1
DEFAULT_KEEPALIVE = 60
DEFAULT_PORT = 1883
DEFAULT_TOPIC_PREFIX = '/blegateways/aprilbrother/device/'
DEFAULT_CLIENT_ID = 'ble-gateway-proxy'

CONNECTION_TIMEOUT_SEC = 10
TLS_PORT = 8883

CONNECT_ERROR_MESSAGES = {
    1: "Connection refused - incorrect protocol version",
    2: "Connection refused - invalid client identifier",
    3: "Connection refused - server unavailable",
    4: "Connection refused - bad username or password",
    5: "Connection refused - not authorized"
}


def _reason_value(rc) -> int:
    # paho-mqtt v2 passes ReasonCode objects, v1 plain ints
    value = getattr(rc, 'value', rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


@dataclass
class PublishResults:
    """Outcome of publishing one batch of observations."""
    published: List[DeviceObservation] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)
    total_count: int = 0

    @property
    def success_count(self) -> int:
        return len(self.published)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class MQTTPublisher:
    """Handles MQTT connection and publishing of device and gateway state."""

    @staticmethod
    def _validate_cert_file(file_path: str, file_type: str) -> None:
        """Validate that a certificate file exists and is not empty."""
        # Support environment variable expansion
        expanded_path = os.path.expandvars(file_path)
        cert_file = Path(expanded_path)
        if not cert_file.exists():
            raise FileNotFoundError(f"{file_type} file not found: {expanded_path}")
        if cert_file.stat().st_size == 0:
            raise ValueError(f"{file_type} file is empty: {expanded_path}")

    def __init__(
        self,
        broker: str,
        port: int,
        client_id: str,
        topic_prefix: str,
        logger: logging.Logger,
        auth_type: str = "none",
        tls_config: Optional[Dict] = None,
        credentials: Optional[Dict] = None,
        qos: int = DEFAULT_QOS,
        retain: bool = False,
        keepalive: int = DEFAULT_KEEPALIVE
    ):
        self.broker = broker
        self.port = port
        self.client_id = client_id
        self.topic_prefix = topic_prefix if topic_prefix.endswith('/') else topic_prefix + '/'
        self.logger = logger
        self.qos = qos
        self.retain = retain
        self.keepalive = keepalive
        self.auth_type = auth_type

        self.connected = False
        self.client = None
        self.connection_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Configure authentication
        if auth_type == "mtls":
            self._configure_mtls(tls_config or {})
        elif auth_type == "userpass":
            self._configure_userpass(credentials or {})
        elif auth_type == "none":
            self.logger.info("No MQTT authentication configured")
        else:
            raise ValueError(f"Unsupported auth_type: {auth_type}")

    def _configure_mtls(self, tls_config: Dict) -> None:
        """Configure mutual TLS authentication."""
        ca_certs = tls_config.get('ca_certs')
        certfile = tls_config.get('certfile')
        keyfile = tls_config.get('keyfile')

        if not all([ca_certs, certfile, keyfile]):
            raise ValueError("mtls auth requires ca_certs, certfile, and keyfile")

        self._validate_cert_file(ca_certs, "CA certificate")
        self._validate_cert_file(certfile, "Client certificate")
        self._validate_cert_file(keyfile, "Private key")

        self.ca_filepath = os.path.expandvars(ca_certs)
        self.cert_filepath = os.path.expandvars(certfile)
        self.key_filepath = os.path.expandvars(keyfile)

        self.logger.info("Configured mTLS authentication")

    def _configure_userpass(self, credentials: Dict) -> None:
        """Configure username/password authentication."""
        self.username = credentials.get('username')
        self.password = credentials.get('password')

        if not self.username:
            raise ValueError("userpass auth requires username")

        self.logger.info(f"Configured username/password authentication for user: {self.username}")

    def _signal_connected(self, connected: bool) -> None:
        # paho callbacks run on its network thread; the event belongs to the asyncio loop
        if self._loop is None or self._loop.is_closed():
            return
        action = self.connection_event.set if connected else self.connection_event.clear
        self._loop.call_soon_threadsafe(action)

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        """Callback when connection is established."""
        rc_value = _reason_value(rc)

        if rc_value == 0:
            self.connected = True
            self._signal_connected(True)
            self.logger.info(f"{ICON_SUCCESS} Successfully connected to MQTT broker: {self.broker}:{self.port}")
        else:
            self.connected = False
            error_msg = CONNECT_ERROR_MESSAGES.get(rc_value, f"Unknown error code: {rc}")
            self.logger.error(f"{ICON_ERROR} Connection failed: {error_msg}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        """Callback when connection is lost."""
        self.connected = False
        self._signal_connected(False)

        if _reason_value(rc) != 0:
            self.logger.warning(f"{ICON_WARNING} Unexpected disconnection (rc={rc}), will auto-reconnect")
        else:
            self.logger.info("Disconnected from MQTT broker")

    def _on_publish(self, client, userdata, mid, rc=None, properties=None):
        """Callback when message is published."""
        self.logger.debug(f"Message published successfully (mid={mid})")

    async def connect(self) -> bool:
        """Establish connection to MQTT broker."""
        try:
            self.logger.info(f"Connecting to MQTT broker: {self.broker}:{self.port}")
            self._loop = asyncio.get_running_loop()

            self.client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                clean_session=True
            )

            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_publish = self._on_publish

            if self.auth_type == "mtls":
                self.client.tls_set(
                    ca_certs=self.ca_filepath,
                    certfile=self.cert_filepath,
                    keyfile=self.key_filepath,
                    tls_version=ssl.PROTOCOL_TLSv1_2
                )
            elif self.auth_type == "userpass":
                self.client.username_pw_set(self.username, self.password)
                if self.port == TLS_PORT:
                    self.client.tls_set(tls_version=ssl.PROTOCOL_TLSv1_2)

            # Connect (non-blocking); paho reconnects on its own afterwards
            self.client.connect_async(self.broker, self.port, keepalive=self.keepalive)
            self.client.loop_start()

            try:
                await asyncio.wait_for(
                    self.connection_event.wait(),
                    timeout=CONNECTION_TIMEOUT_SEC
                )
                return True
            except asyncio.TimeoutError:
                self.logger.error(f"{ICON_ERROR} Connection timeout after {CONNECTION_TIMEOUT_SEC}s")
                return False

        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Failed to connect to MQTT broker: {e}")
            return False

    def device_topic(self, mac_address: str) -> str:
        """Topic for one device: <prefix>state/<AA:BB:CC:DD:EE:FF>."""
        if not mac_address or not isinstance(mac_address, str):
            raise ValueError("Invalid MAC address for topic construction")
        return f"{self.topic_prefix}state/{mac_address}"

    def gateway_topic(self) -> str:
        return f"{self.topic_prefix}gateway/state"

    def is_connected(self) -> bool:
        return bool(self.client and self.connected)

    def publish(self, topic: str, message: str, retain: bool = False) -> bool:
        """Publish message to an MQTT topic."""
        try:
            if not self.client:
                self.logger.warning(f"{ICON_WARNING} No MQTT client, cannot publish")
                return False

            result = self.client.publish(
                topic=topic,
                payload=message,
                qos=self.qos,
                retain=retain
            )

            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                self.logger.debug(
                    f"MQTT publish queued - Topic: {topic}, "
                    f"QoS: {self.qos}, "
                    f"Payload length: {len(message)} bytes"
                )
                return True
            else:
                self.logger.error(f"{ICON_ERROR} Failed to publish to {topic}: {result.rc}")
                return False

        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Failed to publish message: {e}")
            return False

    def publish_device_data(self, observation: DeviceObservation) -> bool:
        """Publish one observation on its device state topic.

        State messages are never retained so Home Assistant's expire_after
        can mark devices unavailable.
        """
        if not self.is_connected():
            self.logger.debug(f"MQTT not connected, dropping state for {observation.mac_address}")
            return False

        topic = self.device_topic(observation.mac_address)
        return self.publish(topic, observation.to_json(), retain=False)

    def publish_multiple_device_data(self, observations: List[DeviceObservation]) -> PublishResults:
        results = PublishResults(total_count=len(observations))

        if not self.is_connected():
            self.logger.error(f"{ICON_ERROR} Cannot publish {len(observations)} payloads: MQTT not connected")
            for index, observation in enumerate(observations):
                results.errors.append({
                    'index': index,
                    'device_mac': observation.mac_address,
                    'error': 'MQTT client not connected'
                })
            return results

        for index, observation in enumerate(observations):
            try:
                if self.publish_device_data(observation):
                    results.published.append(observation)
                else:
                    results.errors.append({
                        'index': index,
                        'device_mac': observation.mac_address,
                        'error': 'publish rejected'
                    })
            except ValueError as e:
                results.errors.append({
                    'index': index,
                    'device_mac': getattr(observation, 'mac_address', None) or 'unknown',
                    'error': str(e)
                })

        return results

    def publish_gateway_data(self, gateway_info: Any) -> bool:
        """Publish gateway status (with a processed_timestamp) on the gateway topic."""
        if isinstance(gateway_info, GatewayInfo):
            payload = gateway_info.to_dict()
        elif isinstance(gateway_info, dict):
            payload = dict(gateway_info)
        else:
            raise ValueError("Invalid gateway data: must be an object")

        if not self.is_connected():
            self.logger.debug("MQTT not connected, dropping gateway status")
            return False

        payload['processed_timestamp'] = iso_timestamp()
        return self.publish(self.gateway_topic(), json.dumps(payload, separators=(',', ':')), retain=False)

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            'connected': self.is_connected(),
            'client_id': self.client_id,
            'broker': f"{self.broker}:{self.port}",
            'topic_prefix': self.topic_prefix,
        }

    def disconnect(self) -> None:
        """Disconnect from MQTT broker."""
        if self.client:
            try:
                self.logger.info("Disconnecting from MQTT broker")
                self.client.disconnect()
                self.client.loop_stop()
                self.connected = False
            except Exception as e:
                self.logger.error(f"{ICON_ERROR} Error during disconnect: {e}")
            finally:
                self.client = None
