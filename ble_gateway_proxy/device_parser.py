"""
BLE device record decoding.

Every entry of the gateway's ``devices`` array is one raw advertisement:

    byte 0      advertising type code
    bytes 1..6  device MAC address (MSB first)
    byte 7      RSSI as an unsigned byte (dBm = value - 256)
    bytes 8..   advertisement data
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Union

from .errors import DeviceParseError
from .logging_setup import get_logger
from .utils import ValidationResult

logger = get_logger('device_parser')

# Record layout
MIN_RECORD_LENGTH = 8
MAC_START = 1
MAC_END = 7
RSSI_OFFSET = 7
AD_DATA_OFFSET = 8

# Typical RSSI window, anything outside only produces a warning
RSSI_TYPICAL_MIN = -100
RSSI_TYPICAL_MAX = -30

ADVERTISING_TYPE_DESCRIPTIONS: Dict[int, str] = {
    0: 'Connectable undirected advertisement',
    1: 'Connectable directed advertisement',
    2: 'Scannable undirected advertisement',
    3: 'Non-Connectable undirected advertisement',
    4: 'Scan Response',
}

_COLON_MAC = re.compile(r'^[0-9A-F]{2}(:[0-9A-F]{2}){5}$', re.IGNORECASE)
_HEX = re.compile(r'^[0-9A-F]*$', re.IGNORECASE)


@dataclass
class ParsedDevice:
    """One decoded advertisement, before gateway metadata and timestamp are attached."""
    advertising_type_code: int
    advertising_type_description: str
    mac_address: str
    rssi: int
    advertisement_data_hex: str


@dataclass
class ParseResults:
    devices: List[ParsedDevice] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)
    total_count: int = 0

    @property
    def success_count(self) -> int:
        return len(self.devices)

    @property
    def error_count(self) -> int:
        return len(self.errors)


def describe_advertising_type(code: int) -> str:
    return ADVERTISING_TYPE_DESCRIPTIONS.get(code, f"Unknown advertising type ({code})")


def _as_bytes(device_data: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(device_data, (bytes, bytearray)):
        return bytes(device_data)
    if isinstance(device_data, str):
        # JSON containers carry the record as a hex string
        try:
            return bytes.fromhex(device_data)
        except ValueError as e:
            raise DeviceParseError(f"Device data is not valid hex: {e}") from e
    raise DeviceParseError("Device data must be bytes")


def parse_device(device_data: Union[bytes, bytearray, str], device_index: int = 0) -> ParsedDevice:
    """Parse a single raw device record.

    Args:
        device_data: Raw advertising record (bytes, or hex string from a JSON body)
        device_index: Position in the devices array, used in error messages

    Returns:
        ParsedDevice

    Raises:
        DeviceParseError: if the record is not bytes or is shorter than 8 bytes
    """
    try:
        data = _as_bytes(device_data)
        if len(data) < MIN_RECORD_LENGTH:
            raise DeviceParseError(
                f"Device data must be at least {MIN_RECORD_LENGTH} bytes "
                f"(advertising type + MAC + RSSI)"
            )
    except DeviceParseError as e:
        raise DeviceParseError(f"Failed to parse device {device_index}: {e}") from e

    advertising_type_code = data[0]
    mac_address = ':'.join(f'{b:02X}' for b in data[MAC_START:MAC_END])
    rssi = data[RSSI_OFFSET] - 256
    advertisement_data_hex = data[AD_DATA_OFFSET:].hex().upper()

    parsed = ParsedDevice(
        advertising_type_code=advertising_type_code,
        advertising_type_description=describe_advertising_type(advertising_type_code),
        mac_address=mac_address,
        rssi=rssi,
        advertisement_data_hex=advertisement_data_hex,
    )

    logger.debug(
        f"Parsed device {device_index}: {mac_address}, RSSI: {rssi} dBm, "
        f"type: {advertising_type_code}, ad data: {len(data) - AD_DATA_OFFSET} bytes"
    )
    return parsed


def parse_devices(devices: list) -> ParseResults:
    """Parse every record of the gateway's devices array.

    A bad record is logged and reported in ``errors``; it never aborts the batch.
    """
    if not isinstance(devices, list):
        raise DeviceParseError("Invalid devices data: must be an array")

    results = ParseResults(total_count=len(devices))

    for index, device_data in enumerate(devices):
        try:
            results.devices.append(parse_device(device_data, index))
        except DeviceParseError as e:
            error_info = {
                'index': index,
                'error': str(e),
                'length': len(device_data) if isinstance(device_data, (bytes, bytearray, str)) else 0,
            }
            results.errors.append(error_info)
            logger.warning(f"Device parsing error at index {index}: {e}")

    logger.debug(
        f"Device parsing completed - total: {results.total_count}, "
        f"successful: {results.success_count}, errors: {results.error_count}"
    )
    return results


def validate_parsed_device(device: ParsedDevice) -> ValidationResult:
    result = ValidationResult()

    if not isinstance(device.advertising_type_code, int):
        result.errors.append('Missing or invalid advertising_type_code')

    if not isinstance(device.mac_address, str) or not device.mac_address:
        result.errors.append('Missing or invalid mac_address')
    elif not _COLON_MAC.match(device.mac_address):
        result.errors.append('Invalid MAC address format')

    if not isinstance(device.rssi, int):
        result.errors.append('Missing or invalid RSSI')
    else:
        if device.rssi > 0:
            result.warnings.append('RSSI value is positive, which is unusual')
        if device.rssi < RSSI_TYPICAL_MIN or device.rssi > RSSI_TYPICAL_MAX:
            result.warnings.append(
                f"Unusual RSSI value: {device.rssi} "
                f"(typical range: {RSSI_TYPICAL_MAX} to {RSSI_TYPICAL_MIN})"
            )

    if not isinstance(device.advertising_type_description, str) or not device.advertising_type_description:
        result.errors.append('Missing or invalid advertising_type_description')

    if not isinstance(device.advertisement_data_hex, str):
        result.errors.append('Missing or invalid advertisement_data_hex')
    else:
        if not _HEX.match(device.advertisement_data_hex):
            result.errors.append('Invalid advertisement_data_hex format (must be valid hexadecimal)')
        if len(device.advertisement_data_hex) % 2 != 0:
            result.errors.append('Invalid advertisement_data_hex format (must have even number of characters)')

    return result


def get_device_statistics(devices: List[ParsedDevice]) -> Dict:
    """Summarize a parsed batch for debug logging."""
    stats = {
        'total_devices': len(devices),
        'advertising_types': {},
        'rssi_range': {'min': None, 'max': None, 'average': None},
        'unique_devices': 0,
        'average_data_length': 0,
    }
    if not devices:
        return stats

    rssi_values = [d.rssi for d in devices]
    for device in devices:
        code = device.advertising_type_code
        stats['advertising_types'][code] = stats['advertising_types'].get(code, 0) + 1

    stats['rssi_range'] = {
        'min': min(rssi_values),
        'max': max(rssi_values),
        'average': round(sum(rssi_values) / len(rssi_values), 2),
    }
    stats['unique_devices'] = len({d.mac_address for d in devices})
    data_lengths = [len(d.advertisement_data_hex) // 2 for d in devices]
    stats['average_data_length'] = sum(data_lengths) / len(data_lengths)
    return stats
