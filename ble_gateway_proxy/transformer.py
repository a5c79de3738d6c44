"""
Parsed device -> DeviceObservation transformation.

A DeviceObservation is the unit the scheduler caches and the MQTT publisher
serializes onto ``<prefix>state/<MAC>``.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from .device_parser import ParsedDevice
from .errors import TransformError
from .logging_setup import get_logger
from .utils import ValidationResult

logger = get_logger('transformer')

_COLON_MAC_UPPER = re.compile(r'^[0-9A-F]{2}(:[0-9A-F]{2}){5}$')
_HEX_UPPER = re.compile(r'^[0-9A-F]*$')

REQUIRED_FIELDS = (
    'mac_address',
    'rssi',
    'advertising_type_code',
    'advertising_type_description',
    'advertisement_data_hex',
)


def iso_timestamp(value: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a trailing Z."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class DeviceObservation:
    """One sighting of a BLE device, immutable once built."""
    mac_address: str
    rssi: int
    advertising_type_code: int
    advertising_type_description: str
    advertisement_data_hex: str
    last_seen_timestamp: str
    gateway_mac: Optional[str] = None
    gateway_ip: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        # Gateway fields are only present when the gateway reported them
        for key in ('gateway_mac', 'gateway_ip'):
            if data[key] is None:
                del data[key]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))


@dataclass
class TransformResults:
    observations: List[DeviceObservation] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)
    total_count: int = 0

    @property
    def success_count(self) -> int:
        return len(self.observations)

    @property
    def error_count(self) -> int:
        return len(self.errors)


def transform_device(
    parsed_device: ParsedDevice,
    gateway_mac: Optional[str] = None,
    gateway_ip: Optional[str] = None,
    timestamp: Optional[Union[datetime, str]] = None
) -> DeviceObservation:
    """Build the observation for one parsed device.

    Args:
        parsed_device: Output of device_parser.parse_device
        gateway_mac: MAC address of the reporting gateway
        gateway_ip: IP address of the reporting gateway
        timestamp: Sighting time (datetime or ISO string), defaults to now

    Raises:
        TransformError: if a required field is missing
    """
    if parsed_device is None:
        raise TransformError("Failed to transform device to JSON: parsed device data is required")

    for name in REQUIRED_FIELDS:
        if getattr(parsed_device, name, None) is None:
            raise TransformError(f"Failed to transform device to JSON: Missing required field: {name}")

    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
        except ValueError as e:
            raise TransformError(f"Failed to transform device to JSON: invalid timestamp {timestamp!r}") from e

    return DeviceObservation(
        mac_address=parsed_device.mac_address,
        rssi=parsed_device.rssi,
        advertising_type_code=parsed_device.advertising_type_code,
        advertising_type_description=parsed_device.advertising_type_description,
        advertisement_data_hex=parsed_device.advertisement_data_hex,
        last_seen_timestamp=iso_timestamp(timestamp),
        gateway_mac=gateway_mac if isinstance(gateway_mac, str) and gateway_mac else None,
        gateway_ip=gateway_ip if isinstance(gateway_ip, str) and gateway_ip else None,
    )


def transform_devices(
    parsed_devices: List[ParsedDevice],
    gateway_mac: Optional[str] = None,
    gateway_ip: Optional[str] = None,
    timestamp: Optional[Union[datetime, str]] = None
) -> TransformResults:
    """Transform a parsed batch; failures are collected rather than raised."""
    if not isinstance(parsed_devices, list):
        raise TransformError("Invalid parsed devices data: must be an array")

    # One timestamp per batch: every device in a scan cycle was seen together
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)

    results = TransformResults(total_count=len(parsed_devices))
    for index, device in enumerate(parsed_devices):
        try:
            results.observations.append(
                transform_device(device, gateway_mac=gateway_mac, gateway_ip=gateway_ip, timestamp=timestamp)
            )
        except TransformError as e:
            error_info = {
                'index': index,
                'device_mac': getattr(device, 'mac_address', None) or 'unknown',
                'error': str(e),
            }
            results.errors.append(error_info)
            logger.warning(f"Failed to transform device {index}: {e}")

    return results


def validate_observation(observation: DeviceObservation) -> ValidationResult:
    result = ValidationResult()

    expected_types = {
        'mac_address': str,
        'rssi': int,
        'advertising_type_code': int,
        'advertising_type_description': str,
        'advertisement_data_hex': str,
        'last_seen_timestamp': str,
    }
    for name, expected in expected_types.items():
        value = getattr(observation, name)
        if value is None:
            result.errors.append(f"Missing required field: {name}")
        elif not isinstance(value, expected):
            result.errors.append(f"Field {name} must be of type {expected.__name__}, got {type(value).__name__}")

    if isinstance(observation.mac_address, str) and not _COLON_MAC_UPPER.match(observation.mac_address):
        result.errors.append('MAC address must be in format XX:XX:XX:XX:XX:XX with uppercase hex digits')

    if isinstance(observation.rssi, int) and (observation.rssi > 0 or observation.rssi < -120):
        result.warnings.append(f"RSSI value {observation.rssi} is outside typical range (-120 to 0)")

    if isinstance(observation.advertising_type_code, int) and not 0 <= observation.advertising_type_code <= 4:
        result.warnings.append(
            f"Advertising type code {observation.advertising_type_code} is outside defined range (0-4)"
        )

    if isinstance(observation.advertisement_data_hex, str) and not _HEX_UPPER.match(observation.advertisement_data_hex):
        result.errors.append('Advertisement data hex must contain only uppercase hex digits (0-9, A-F)')

    if isinstance(observation.last_seen_timestamp, str):
        try:
            datetime.fromisoformat(observation.last_seen_timestamp.replace('Z', '+00:00'))
        except ValueError:
            result.errors.append('Invalid ISO 8601 timestamp format')

    if observation.gateway_mac is not None and not _COLON_MAC_UPPER.match(observation.gateway_mac):
        result.errors.append(
            'Gateway MAC address must be in format XX:XX:XX:XX:XX:XX with uppercase hex digits'
        )

    return result


def get_observation_statistics(observations: List[DeviceObservation]) -> Dict:
    """Summarize a transformed batch for debug logging."""
    stats = {
        'total_count': len(observations),
        'rssi_range': {'min': None, 'max': None, 'average': None},
        'advertising_types': {},
        'gateway_info': {'with_mac': 0, 'with_ip': 0, 'with_both': 0},
    }
    if not observations:
        return stats

    rssi_values = [o.rssi for o in observations]
    stats['rssi_range'] = {
        'min': min(rssi_values),
        'max': max(rssi_values),
        'average': round(sum(rssi_values) / len(rssi_values), 2),
    }
    for o in observations:
        key = f"{o.advertising_type_code}: {o.advertising_type_description}"
        stats['advertising_types'][key] = stats['advertising_types'].get(key, 0) + 1
        if o.gateway_mac:
            stats['gateway_info']['with_mac'] += 1
        if o.gateway_ip:
            stats['gateway_info']['with_ip'] += 1
        if o.gateway_mac and o.gateway_ip:
            stats['gateway_info']['with_both'] += 1
    return stats
