"""
Home Assistant MQTT auto-discovery.

Tracked devices get an RSSI and a Last Seen sensor bound to their state
topic; the gateway gets one sensor per status field bound to the gateway
state topic. Config messages are retained so Home Assistant picks them up
after a restart of either side.
"""

import json
from typing import Any, Dict, Mapping, Optional

from .logging_setup import ICON_ERROR, ICON_INFO, ICON_WARNING, get_logger
from .mqtt_publisher import MQTTPublisher
from .utils import format_mac, slugify

logger = get_logger('ha_discovery')

DEFAULT_DISCOVERY_PREFIX = 'homeassistant'
DEFAULT_GATEWAY_NAME = 'April Brother BLE Gateway'
DEVICE_MODEL = 'April Brother BLE Gateway v4 Token'
GATEWAY_MODEL = 'April Brother BLE Gateway v4'
MANUFACTURER = 'April Brother'

# Matches the default cache retention: a device not republished for this long is unavailable
SENSOR_EXPIRE_AFTER_SEC = 300

# (sensor type, display suffix, value template, device class)
GATEWAY_SENSORS = (
    ('version', 'Version', '{{ value_json.version }}', None),
    ('ip', 'IP', '{{ value_json.ip }}', None),
    ('mac', 'MAC', '{{ value_json.mac }}', None),
    ('message_id', 'Message ID', '{{ value_json.messageId }}', None),
    ('time', 'Time', '{{ value_json.time }}', None),
    ('last_ping', 'Last Ping', '{{ value_json.processed_timestamp }}', 'timestamp'),
)


def create_device_object(mac: str, friendly_name: str) -> Dict[str, Any]:
    return {
        'identifiers': [f'ble_token_{mac}'],
        'name': friendly_name,
        'model': DEVICE_MODEL,
        'manufacturer': MANUFACTURER,
    }


def create_gateway_device_object(gateway_name: str) -> Dict[str, Any]:
    return {
        'identifiers': ['ble_gateway'],
        'name': gateway_name,
        'model': GATEWAY_MODEL,
        'manufacturer': MANUFACTURER,
    }


class HomeAssistantDiscovery:
    """Publishes discovery config once per device (and once for the gateway) per process."""

    def __init__(
        self,
        publisher: MQTTPublisher,
        tracked_devices: Mapping[str, Dict[str, str]],
        discovery_prefix: str = DEFAULT_DISCOVERY_PREFIX,
        gateway_name: str = DEFAULT_GATEWAY_NAME,
        enabled: bool = True
    ):
        self.publisher = publisher
        self.tracked_devices = tracked_devices
        self.discovery_prefix = discovery_prefix.rstrip('/')
        self.gateway_name = gateway_name
        self.enabled = enabled

        self.published_devices = set()
        self.gateway_published = False

    def rssi_sensor_config(self, mac: str, friendly_name: str) -> Dict[str, Any]:
        return {
            'name': f'{friendly_name} RSSI',
            'unique_id': f'ble_token_{mac}_rssi',
            'state_topic': self.publisher.device_topic(format_mac(mac)),
            'value_template': '{{ value_json.rssi | default(0) }}',
            'unit_of_measurement': 'dBm',
            'device_class': 'signal_strength',
            'expire_after': SENSOR_EXPIRE_AFTER_SEC,
            'device': create_device_object(mac, friendly_name),
        }

    def last_seen_sensor_config(self, mac: str, friendly_name: str) -> Dict[str, Any]:
        return {
            'name': f'{friendly_name} Last Seen',
            'unique_id': f'ble_token_{mac}_last_seen',
            'state_topic': self.publisher.device_topic(format_mac(mac)),
            'value_template': '{{ value_json.last_seen_timestamp }}',
            'device_class': 'timestamp',
            'expire_after': SENSOR_EXPIRE_AFTER_SEC,
            'device': create_device_object(mac, friendly_name),
        }

    def gateway_sensor_configs(self) -> Dict[str, Dict[str, Any]]:
        device = create_gateway_device_object(self.gateway_name)
        configs = {}
        for sensor_type, suffix, template, device_class in GATEWAY_SENSORS:
            sensor = {
                'name': f'{self.gateway_name} {suffix}',
                'unique_id': f'ble_gateway_{sensor_type}',
                'state_topic': self.publisher.gateway_topic(),
                'value_template': template,
                'device': device,
            }
            if device_class:
                sensor['device_class'] = device_class
            configs[sensor_type] = sensor
        return configs

    def _publish_config(self, topic: str, config: Dict[str, Any]) -> bool:
        return self.publisher.publish(topic, json.dumps(config), retain=True)

    def publish_device_discovery(self, mac: str, device_info: Mapping[str, str]) -> bool:
        """Announce one tracked device. Returns False if already announced or publishing failed."""
        if mac in self.published_devices:
            return False

        friendly_name = device_info.get('name') or mac
        slug = slugify(friendly_name) or mac

        rssi_topic = f'{self.discovery_prefix}/sensor/{slug}_rssi/config'
        last_seen_topic = f'{self.discovery_prefix}/sensor/{slug}_last_seen/config'

        try:
            ok = self._publish_config(rssi_topic, self.rssi_sensor_config(mac, friendly_name))
            ok = self._publish_config(last_seen_topic, self.last_seen_sensor_config(mac, friendly_name)) and ok
        except ValueError as e:
            logger.error(f"{ICON_ERROR} Error publishing Home Assistant discovery for device {mac}: {e}")
            return False

        if not ok:
            logger.warning(f"{ICON_WARNING} Home Assistant discovery for {friendly_name} was not accepted, will retry")
            return False

        logger.info(f"Published Home Assistant discovery for {friendly_name} ({format_mac(mac)})")
        self.published_devices.add(mac)
        return True

    def publish_gateway_discovery(self) -> bool:
        if self.gateway_published:
            return False

        slug = slugify(self.gateway_name) or 'ble_gateway'
        ok = True
        for sensor_type, sensor in self.gateway_sensor_configs().items():
            topic = f'{self.discovery_prefix}/sensor/{slug}_{sensor_type}/config'
            ok = self._publish_config(topic, sensor) and ok

        if not ok:
            logger.warning(f"{ICON_WARNING} Home Assistant gateway discovery was not accepted, will retry")
            return False

        logger.info(f"Published Home Assistant discovery for gateway: {self.gateway_name}")
        self.gateway_published = True
        return True

    def publish_discovery_messages(self) -> int:
        """Announce every tracked device not yet announced, then the gateway.

        Returns:
            Number of devices (gateway included) announced by this call
        """
        if not self.enabled:
            logger.info("Home Assistant integration is disabled. Skipping discovery message publishing.")
            return 0

        if not self.publisher.is_connected():
            logger.error(f"{ICON_ERROR} MQTT client not connected. Cannot publish discovery messages.")
            return 0

        published_count = 0
        if not self.tracked_devices:
            logger.warning(f"{ICON_WARNING} No Home Assistant BLE devices configured.")
        else:
            # Snapshot: the mapping may be reconfigured while we iterate
            for mac, device_info in list(self.tracked_devices.items()):
                if self.publish_device_discovery(mac, device_info):
                    published_count += 1

        if self.publish_gateway_discovery():
            published_count += 1

        if published_count:
            logger.info(f"{ICON_INFO} Published Home Assistant discovery messages for {published_count} devices")
        return published_count

    def reset(self, mac: Optional[str] = None) -> None:
        """Forget what was announced so it is sent again on the next run."""
        if mac is None:
            self.published_devices.clear()
            self.gateway_published = False
        else:
            self.published_devices.discard(mac)
