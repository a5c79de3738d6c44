"""
Gateway container parsing.

The decoded MessagePack/JSON body carries gateway level fields next to the
``devices`` array: ``v`` (firmware), ``mid`` (message id), ``time``, ``ip``,
``mac``, and on newer firmware ``rssi`` (WiFi, v1.5.0+) and ``iccid`` (4G, v1.5.3+).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import GatewayParseError
from .logging_setup import ICON_WARNING, get_logger
from .utils import ValidationResult

logger = get_logger('gateway_parser')


@dataclass
class GatewayInfo:
    """Status of the gateway hardware itself, as reported in one request."""
    version: Optional[str] = None
    message_id: Optional[int] = None
    time: Optional[int] = None
    ip: Optional[str] = None
    mac: Optional[str] = None
    rssi: Optional[int] = None
    iccid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used on the gateway state topic; unset fields are omitted."""
        return format_gateway_info(self)


def parse_gateway_data(decoded_data: Any) -> Tuple[GatewayInfo, List]:
    """Split a decoded request body into gateway information and raw device records.

    Raises:
        GatewayParseError: if the body is not a mapping or ``devices`` is not a list
    """
    if not isinstance(decoded_data, dict):
        raise GatewayParseError("Invalid gateway data: must be an object")

    gateway_info = GatewayInfo(
        version=decoded_data.get('v'),
        message_id=decoded_data.get('mid'),
        time=decoded_data.get('time'),
        ip=decoded_data.get('ip'),
        mac=decoded_data.get('mac'),
        rssi=decoded_data.get('rssi'),
        iccid=decoded_data.get('iccid'),
    )

    devices = decoded_data.get('devices')
    if devices is None:
        logger.warning(f"{ICON_WARNING} No devices array found in gateway data")
        return gateway_info, []

    if not isinstance(devices, list):
        raise GatewayParseError("Invalid devices data: must be an array")

    logger.debug(
        f"Gateway data - version: {gateway_info.version}, mid: {gateway_info.message_id}, "
        f"ip: {gateway_info.ip}, mac: {gateway_info.mac}, devices: {len(devices)}"
    )
    return gateway_info, devices


def validate_gateway_data(gateway_info: GatewayInfo) -> ValidationResult:
    result = ValidationResult()

    if not gateway_info.version:
        result.errors.append('Missing firmware version (v)')
    if gateway_info.message_id is None:
        result.errors.append('Missing message ID (mid)')

    if not gateway_info.ip:
        result.warnings.append('Missing gateway IP address')
    if not gateway_info.mac:
        result.warnings.append('Missing gateway MAC address')

    if gateway_info.version and not isinstance(gateway_info.version, str):
        result.warnings.append('Version should be a string')
    if gateway_info.message_id is not None and not isinstance(gateway_info.message_id, int):
        result.warnings.append('Message ID should be a number')
    if gateway_info.time is not None and not isinstance(gateway_info.time, (int, float)):
        result.warnings.append('Time should be a number')

    return result


def format_gateway_info(gateway_info: GatewayInfo) -> Dict[str, Any]:
    formatted = {}
    if gateway_info.version:
        formatted['version'] = gateway_info.version
    if gateway_info.message_id is not None:
        formatted['messageId'] = gateway_info.message_id
    if gateway_info.time is not None:
        formatted['time'] = gateway_info.time
    if gateway_info.ip:
        formatted['ip'] = gateway_info.ip
    if gateway_info.mac:
        formatted['mac'] = gateway_info.mac
    if gateway_info.rssi is not None:
        formatted['rssi'] = gateway_info.rssi
    if gateway_info.iccid is not None:
        formatted['iccid'] = gateway_info.iccid
    return formatted


def get_gateway_metadata(gateway_info: GatewayInfo) -> Dict[str, str]:
    """Gateway fields attached to every device observation."""
    metadata = {}
    if gateway_info.mac:
        metadata['gateway_mac'] = gateway_info.mac
    if gateway_info.ip:
        metadata['gateway_ip'] = gateway_info.ip
    return metadata
