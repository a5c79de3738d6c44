"""
HTTP listener for the April Brother gateway.

The gateway POSTs one MessagePack document per scan cycle to /tokendata
without a Content-Type; JSON is accepted when declared, with device records
as hex strings.
"""

import json
import logging
from typing import Any

import msgpack
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .device_parser import get_device_statistics, parse_devices, validate_parsed_device
from .errors import DeviceParseError, GatewayParseError
from .gateway_parser import format_gateway_info, get_gateway_metadata, parse_gateway_data, validate_gateway_data
from .logging_setup import ICON_ERROR, ICON_RECEIVE, ICON_WARNING, get_logger
from .transformer import get_observation_statistics, iso_timestamp, transform_devices, validate_observation

logger = get_logger('server')


def _error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    content = {'error': error}
    if details is not None:
        content['details'] = details
    return JSONResponse(status_code=status_code, content=content)


def decode_body(body: bytes, content_type: str) -> Any:
    """Decode a request body; raises ValueError naming the format on failure."""
    if content_type.split(';')[0].strip().lower() == 'application/json':
        try:
            return json.loads(body)
        except ValueError as e:
            raise ValueError(f"Invalid JSON format: {e}") from e

    try:
        return msgpack.unpackb(body, raw=False)
    except Exception as e:
        raise ValueError(f"Invalid MessagePack format: {e}") from e


def create_app(service) -> FastAPI:
    """Build the FastAPI app bound to a GatewayProxyService."""
    app = FastAPI(
        title="BLE Gateway MQTT Proxy",
        description="Receives April Brother BLE Gateway telemetry and republishes it to MQTT",
        version=__version__
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            logger.warning(f"404 - Endpoint not found: {request.method} {request.url.path}")
            return _error(404, 'Endpoint not found')
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"{ICON_ERROR} Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return _error(500, 'Internal server error')

    @app.get("/health")
    async def health():
        return {
            'status': 'ok',
            'timestamp': iso_timestamp(),
            'version': __version__,
            'mqtt_connected': service.publisher.is_connected(),
        }

    @app.post("/tokendata")
    async def token_data(request: Request):
        source_ip = request.client.host if request.client else 'unknown'
        body = await request.body()

        if not body:
            logger.warning(f"{ICON_WARNING} Empty request body received from {source_ip}")
            return _error(400, 'Request body is required')

        logger.debug(f"{ICON_RECEIVE} Received {len(body)} bytes from {source_ip}")

        try:
            return await _process_payload(service, body, request.headers.get('content-type', ''))
        except Exception as e:
            logger.error(f"{ICON_ERROR} Error processing request from {source_ip}: {e}", exc_info=True)
            return _error(500, 'Internal server error')

    return app


async def _process_payload(service, body: bytes, content_type: str) -> Response:
    # Decode
    try:
        decoded = decode_body(body, content_type)
    except ValueError as e:
        message, _, details = str(e).partition(': ')
        logger.error(f"{ICON_ERROR} {message} ({len(body)} bytes)")
        return _error(400, message, details or None)

    # Gateway container
    try:
        gateway_info, raw_devices = parse_gateway_data(decoded)
    except GatewayParseError as e:
        logger.error(f"{ICON_ERROR} Gateway data parsing failed: {e}")
        return _error(400, 'Invalid gateway data', [str(e)])

    validation = validate_gateway_data(gateway_info)
    if validation.warnings:
        logger.warning(f"{ICON_WARNING} Gateway data validation warnings: {validation.warnings}")
    if not validation.is_valid:
        logger.error(f"{ICON_ERROR} Gateway data validation failed: {validation.errors}")
        return _error(400, 'Invalid gateway data', validation.errors)

    logger.info(f"Gateway data parsed: {format_gateway_info(gateway_info)}, {len(raw_devices)} devices")

    # Devices
    try:
        parse_results = parse_devices(raw_devices)
    except DeviceParseError as e:
        return _error(400, 'Invalid gateway data', [str(e)])

    if parse_results.error_count:
        logger.warning(
            f"{ICON_WARNING} {parse_results.error_count}/{parse_results.total_count} devices failed to parse"
        )
    if parse_results.success_count == 0 and parse_results.total_count > 0:
        logger.error(f"{ICON_ERROR} All device parsing failed: {parse_results.errors}")
        return _error(400, 'Failed to parse any device data', 'All devices in the array had parsing errors')

    if parse_results.devices and logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Device statistics: {get_device_statistics(parse_results.devices)}")
        for device in parse_results.devices:
            _log_validation(device.mac_address, validate_parsed_device(device))

    # Observations
    gateway_metadata = get_gateway_metadata(gateway_info)
    transform_results = transform_devices(
        parse_results.devices,
        gateway_mac=gateway_metadata.get('gateway_mac'),
        gateway_ip=gateway_metadata.get('gateway_ip')
    )

    if transform_results.error_count:
        logger.warning(
            f"{ICON_WARNING} {transform_results.error_count}/{transform_results.total_count} "
            f"devices failed JSON transformation"
        )
    if transform_results.success_count == 0 and transform_results.total_count > 0:
        logger.error(f"{ICON_ERROR} All JSON transformations failed: {transform_results.errors}")
        return _error(
            500, 'Failed to transform device data to JSON format', 'All devices failed JSON transformation'
        )

    if transform_results.observations and logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Observation statistics: {get_observation_statistics(transform_results.observations)}")
        for observation in transform_results.observations:
            _log_validation(observation.mac_address, validate_observation(observation))

    await service.handle_batch(transform_results.observations, gateway_metadata, gateway_info)
    return Response(status_code=204)


def _log_validation(mac_address: str, result) -> None:
    for error in result.errors:
        logger.debug(f"  {mac_address}: {error}")
    for warning in result.warnings:
        logger.debug(f"  {mac_address}: {warning}")
