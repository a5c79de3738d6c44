"""
Configuration loading.

Values come from three layers, later layers winning:
built-in defaults, an optional JSON file, and environment variables
(a ``.env`` file in the working directory is loaded first).
"""

import copy
import json
import os
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError
from .logging_setup import get_logger
from .utils import normalize_mac

logger = get_logger('config')

MAX_CLIENT_ID_LENGTH = 128
VALID_AUTH_TYPES = ('none', 'userpass', 'mtls')
VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

HA_DEVICE_ENV_PATTERN = re.compile(r'^HA_BLE_DEVICE_(\d+)$')

DEFAULT_CONFIG: Dict[str, Any] = {
    'server': {
        'host': '0.0.0.0',
        'port': 8000,
    },
    'publish_interval_sec': 0,
    'device_cache_retention_sec': 300,
    'log_level': 'INFO',
    'mqtt': {
        'port': 1883,
        'client_id': 'ble-gateway-proxy',
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
        'devices': {},
    },
}


def _deep_merge(base: Dict, override: Mapping) -> Dict:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off', ''):
        return False
    raise ConfigError(f"{name} must be a boolean, got: {value}")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got: {value}") from e


def _parse_number(name: str, value: str) -> float:
    try:
        number = float(value.strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got: {value}") from e
    return int(number) if number.is_integer() else number


def parse_device_entry(entry: str) -> Optional[tuple]:
    """Parse one ``<mac>,<friendly name>`` entry into ``(normalized_mac, name)``.

    Returns None (after logging a warning) for malformed entries.
    """
    if not entry or ',' not in entry:
        logger.warning(f"Ignoring malformed tracked device entry (expected '<mac>,<name>'): {entry!r}")
        return None

    mac, name = entry.split(',', 1)
    name = name.strip()
    try:
        mac = normalize_mac(mac)
    except ValueError as e:
        logger.warning(f"Ignoring tracked device entry {entry!r}: {e}")
        return None

    if not name:
        logger.warning(f"Ignoring tracked device entry without a name: {entry!r}")
        return None
    return mac, name


def normalize_tracked_devices(devices: Any) -> Dict[str, Dict[str, str]]:
    """Normalize configured tracked devices to ``{mac: {"name": name}}``.

    Accepts a mapping of MAC to name (or to ``{"name": ...}``) or a list of
    ``"<mac>,<name>"`` strings. MACs may carry colons and any case.
    """
    normalized: Dict[str, Dict[str, str]] = {}
    if not devices:
        return normalized

    if isinstance(devices, Mapping):
        for mac, info in devices.items():
            name = info.get('name') if isinstance(info, Mapping) else info
            parsed = parse_device_entry(f"{mac},{name or ''}")
            if parsed:
                normalized[parsed[0]] = {'name': parsed[1]}
    elif isinstance(devices, list):
        for entry in devices:
            parsed = parse_device_entry(entry if isinstance(entry, str) else '')
            if parsed:
                normalized[parsed[0]] = {'name': parsed[1]}
    else:
        raise ConfigError(f"home_assistant.devices must be an object or a list, got: {type(devices).__name__}")

    return normalized


def _apply_broker_url(mqtt_config: Dict, url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ('mqtt', 'mqtts', 'tcp', 'ssl') or not parsed.hostname:
        raise ConfigError(f"MQTT_BROKER_URL must look like mqtt://host:port, got: {url}")
    mqtt_config['broker'] = parsed.hostname
    if parsed.port:
        mqtt_config['port'] = parsed.port
    elif parsed.scheme in ('mqtts', 'ssl'):
        mqtt_config['port'] = 8883


def apply_environment(config: Dict, environ: Mapping[str, str]) -> Dict:
    """Overlay environment variables onto a config dict (in place)."""
    server = config['server']
    mqtt_config = config['mqtt']
    ha = config['home_assistant']

    if 'SERVER_HOST' in environ:
        server['host'] = environ['SERVER_HOST']
    if 'SERVER_PORT' in environ:
        server['port'] = _parse_int('SERVER_PORT', environ['SERVER_PORT'])

    if 'MQTT_BROKER_URL' in environ:
        _apply_broker_url(mqtt_config, environ['MQTT_BROKER_URL'])
    if 'MQTT_BROKER' in environ:
        mqtt_config['broker'] = environ['MQTT_BROKER']
    if 'MQTT_PORT' in environ:
        mqtt_config['port'] = _parse_int('MQTT_PORT', environ['MQTT_PORT'])
    if 'MQTT_CLIENT_ID' in environ:
        mqtt_config['client_id'] = environ['MQTT_CLIENT_ID']
    if 'MQTT_TOPIC_PREFIX' in environ:
        mqtt_config['topic_prefix'] = environ['MQTT_TOPIC_PREFIX']
    if 'MQTT_QOS' in environ:
        mqtt_config['qos'] = _parse_int('MQTT_QOS', environ['MQTT_QOS'])
    if 'MQTT_RETAIN' in environ:
        mqtt_config['retain'] = _parse_bool('MQTT_RETAIN', environ['MQTT_RETAIN'])
    if environ.get('MQTT_USERNAME'):
        mqtt_config['auth_type'] = 'userpass'
        mqtt_config['credentials'] = {
            'username': environ['MQTT_USERNAME'],
            'password': environ.get('MQTT_PASSWORD', ''),
        }

    if 'MQTT_PUBLISH_INTERVAL_SECONDS' in environ:
        config['publish_interval_sec'] = _parse_number(
            'MQTT_PUBLISH_INTERVAL_SECONDS', environ['MQTT_PUBLISH_INTERVAL_SECONDS']
        )
    if 'DEVICE_CACHE_RETENTION_SECONDS' in environ:
        config['device_cache_retention_sec'] = _parse_number(
            'DEVICE_CACHE_RETENTION_SECONDS', environ['DEVICE_CACHE_RETENTION_SECONDS']
        )
    if 'LOG_LEVEL' in environ:
        config['log_level'] = environ['LOG_LEVEL'].upper()

    if 'HA_ENABLED' in environ:
        ha['enabled'] = _parse_bool('HA_ENABLED', environ['HA_ENABLED'])
    if 'HA_DISCOVERY_TOPIC_PREFIX' in environ:
        ha['discovery_topic_prefix'] = environ['HA_DISCOVERY_TOPIC_PREFIX']
    if 'HA_GATEWAY_NAME' in environ:
        ha['gateway_name'] = environ['HA_GATEWAY_NAME']

    # HA_BLE_DEVICE_<N>: any N, gaps allowed, applied in numeric order
    env_devices = []
    for key, value in environ.items():
        match = HA_DEVICE_ENV_PATTERN.match(key)
        if match:
            env_devices.append((int(match.group(1)), value))
    env_devices.sort()
    if env_devices:
        devices = normalize_tracked_devices(ha.get('devices'))
        for _, entry in env_devices:
            parsed = parse_device_entry(entry)
            if parsed:
                devices[parsed[0]] = {'name': parsed[1]}
        ha['devices'] = devices

    return config


def validate(config: Dict) -> Dict:
    """Check types and ranges; raise ConfigError naming the offending key."""
    interval = config.get('publish_interval_sec')
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval < 0:
        raise ConfigError(f"publish_interval_sec must be a non-negative number, got: {interval}")

    retention = config.get('device_cache_retention_sec')
    if isinstance(retention, bool) or not isinstance(retention, (int, float)) or retention <= 0:
        raise ConfigError(f"device_cache_retention_sec must be a positive number, got: {retention}")

    if str(config.get('log_level', '')).upper() not in VALID_LOG_LEVELS:
        raise ConfigError(f"log_level must be one of {', '.join(VALID_LOG_LEVELS)}, got: {config.get('log_level')}")

    server = config.get('server') or {}
    port = server.get('port')
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"server.port must be a valid TCP port, got: {port}")

    mqtt_config = config.get('mqtt')
    if not mqtt_config:
        raise ConfigError("Configuration must include 'mqtt' section")

    broker = mqtt_config.get('broker')
    if not broker or not isinstance(broker, str):
        raise ConfigError("MQTT configuration must include 'broker' (or set MQTT_BROKER / MQTT_BROKER_URL)")

    mqtt_port = mqtt_config.get('port')
    if isinstance(mqtt_port, bool) or not isinstance(mqtt_port, int) or not 0 < mqtt_port < 65536:
        raise ConfigError(f"mqtt.port must be a valid TCP port, got: {mqtt_port}")

    if mqtt_config.get('qos') not in (0, 1, 2):
        raise ConfigError(f"mqtt.qos must be 0, 1 or 2, got: {mqtt_config.get('qos')}")

    topic_prefix = mqtt_config.get('topic_prefix')
    if not topic_prefix or not isinstance(topic_prefix, str):
        raise ConfigError(f"MQTT topic_prefix must be a non-empty string, got: {topic_prefix}")

    client_id = mqtt_config.get('client_id')
    if not client_id or not isinstance(client_id, str):
        raise ConfigError(f"MQTT client_id must be a non-empty string, got: {client_id}")
    if len(client_id) > MAX_CLIENT_ID_LENGTH:
        raise ConfigError(
            f"MQTT client_id too long (max {MAX_CLIENT_ID_LENGTH} chars): {len(client_id)} chars"
        )

    if mqtt_config.get('auth_type') not in VALID_AUTH_TYPES:
        raise ConfigError(
            f"mqtt.auth_type must be one of {', '.join(VALID_AUTH_TYPES)}, got: {mqtt_config.get('auth_type')}"
        )

    if not isinstance(config['home_assistant'].get('enabled'), bool):
        raise ConfigError(
            f"home_assistant.enabled must be a boolean, got: {config['home_assistant'].get('enabled')}"
        )

    return config


def load_config(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict:
    """Load, merge and validate configuration.

    Args:
        config_path: Optional JSON configuration file
        environ: Environment to read overrides from; defaults to os.environ
            after loading ``.env``

    Returns:
        Validated configuration dict with tracked devices normalized to
        ``{mac: {"name": name}}``

    Raises:
        FileNotFoundError: if config_path does not exist
        ConfigError: on invalid JSON or invalid values
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path:
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Configuration file not found: {config_path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in configuration file: {e}") from e

        if not isinstance(file_config, dict):
            raise ConfigError("Configuration file must contain a JSON object")
        _deep_merge(config, file_config)

    if environ is None:
        load_dotenv(find_dotenv(usecwd=True))
        environ = os.environ

    config['home_assistant']['devices'] = normalize_tracked_devices(config['home_assistant'].get('devices'))
    apply_environment(config, environ)
    config['log_level'] = str(config.get('log_level', 'INFO')).upper()

    return validate(config)


def validate_config(config: Dict) -> List[str]:
    """Non-fatal configuration issues worth a warning at startup."""
    warnings = []
    ha = config['home_assistant']

    if ha['enabled'] and not ha['devices']:
        warnings.append('HA_ENABLED is true but no HA_BLE_DEVICE_X devices are configured')

    interval = config['publish_interval_sec']
    retention = config['device_cache_retention_sec']
    if interval > 0 and retention < interval:
        warnings.append(
            f"device_cache_retention_sec ({retention}s) is shorter than publish_interval_sec ({interval}s); "
            f"devices may expire between scheduled publishes"
        )

    mqtt_config = config['mqtt']
    if mqtt_config['auth_type'] == 'none' and mqtt_config['port'] == 8883:
        warnings.append('MQTT port 8883 is normally TLS but no authentication/TLS is configured')

    return warnings


def log_config_status(config: Dict, log=None) -> None:
    log = log or logger
    mqtt_config = config['mqtt']
    log.info("Configuration loaded:")
    log.info(f"  Server: {config['server']['host']}:{config['server']['port']}")
    log.info(f"  MQTT Broker: {mqtt_config['broker']}:{mqtt_config['port']}")
    log.info(f"  MQTT Topic Prefix: {mqtt_config['topic_prefix']}")
    log.info(
        f"  Publish interval: {config['publish_interval_sec']}s (0=immediate, >0=scheduled), "
        f"cache retention: {config['device_cache_retention_sec']}s"
    )

    ha = config['home_assistant']
    if ha['enabled']:
        log.info("Home Assistant Integration:")
        log.info(f"  Discovery Topic Prefix: {ha['discovery_topic_prefix']}")
        log.info(f"  Configured BLE Devices: {len(ha['devices'])}")
        for mac, info in ha['devices'].items():
            log.info(f"    {mac}: {info['name']}")
    else:
        log.info("Home Assistant Integration: Disabled")

    for warning in validate_config(config):
        log.warning(f"  - {warning}")
