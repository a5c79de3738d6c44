import pytest

from ble_gateway_proxy.errors import GatewayParseError
from ble_gateway_proxy.gateway_parser import (
    GatewayInfo,
    format_gateway_info,
    get_gateway_metadata,
    parse_gateway_data,
    validate_gateway_data,
)

GATEWAY_BODY = {
    'v': '1.5.0',
    'mid': 1234,
    'time': 1700000000,
    'ip': '192.168.1.10',
    'mac': '11:22:33:44:55:66',
    'rssi': -55,
    'devices': [b'\x00' * 8],
}


def test_parse_gateway_data():
    info, devices = parse_gateway_data(GATEWAY_BODY)

    assert info == GatewayInfo(
        version='1.5.0', message_id=1234, time=1700000000, ip='192.168.1.10',
        mac='11:22:33:44:55:66', rssi=-55, iccid=None,
    )
    assert devices == [b'\x00' * 8]


def test_missing_devices_is_empty_batch():
    _, devices = parse_gateway_data({'v': '1.0', 'mid': 1})
    assert devices == []


@pytest.mark.parametrize('body', [None, [], 'text', {'v': '1', 'mid': 1, 'devices': 'nope'}])
def test_parse_gateway_data_rejects(body):
    with pytest.raises(GatewayParseError):
        parse_gateway_data(body)


def test_validate_gateway_data():
    info, _ = parse_gateway_data(GATEWAY_BODY)
    assert validate_gateway_data(info).is_valid

    result = validate_gateway_data(GatewayInfo(time='noon'))
    assert 'Missing firmware version (v)' in result.errors
    assert 'Missing message ID (mid)' in result.errors
    assert 'Missing gateway IP address' in result.warnings
    assert 'Time should be a number' in result.warnings


def test_format_gateway_info_omits_unset_fields():
    info, _ = parse_gateway_data(GATEWAY_BODY)

    assert format_gateway_info(info) == {
        'version': '1.5.0',
        'messageId': 1234,
        'time': 1700000000,
        'ip': '192.168.1.10',
        'mac': '11:22:33:44:55:66',
        'rssi': -55,
    }
    assert info.to_dict() == format_gateway_info(info)


def test_gateway_metadata():
    info, _ = parse_gateway_data(GATEWAY_BODY)
    assert get_gateway_metadata(info) == {'gateway_mac': '11:22:33:44:55:66', 'gateway_ip': '192.168.1.10'}
    assert get_gateway_metadata(GatewayInfo()) == {}
