"""Deterministic time for scheduler tests."""

import asyncio
from typing import Any, Callable, List

from ble_gateway_proxy.transformer import DeviceObservation

DEFAULT_TIMESTAMP = '2024-01-01T00:00:00.000Z'


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeTimerHandle:
    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.fired = False
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


async def settle(rounds: int = 10) -> None:
    """Let tasks spawned by timer callbacks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class VirtualTime:
    """Replaces the running loop's call_later with timers driven by a FakeClock."""

    def __init__(self, monkeypatch):
        self.clock = FakeClock()
        self.handles: List[FakeTimerHandle] = []
        self._monkeypatch = monkeypatch

    def install(self) -> 'VirtualTime':
        loop = asyncio.get_running_loop()
        self._monkeypatch.setattr(loop, 'call_later', self.call_later)
        return self

    def call_later(self, delay: float, callback: Callable, *args: Any, context=None) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.clock.now + delay, callback, args)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> List[FakeTimerHandle]:
        return [h for h in self.handles if not h.fired and not h.cancelled()]

    async def advance(self, seconds: float) -> None:
        target = self.clock.now + seconds
        while True:
            due = [h for h in self.pending if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.clock.now = handle.when
            handle.fired = True
            handle.callback(*handle.args)
            await settle()
        self.clock.now = target
        await settle()


def make_observation(mac: str = 'AA:BB:CC:DD:EE:FF', rssi: int = -50, **overrides) -> DeviceObservation:
    fields = {
        'mac_address': mac,
        'rssi': rssi,
        'advertising_type_code': 0,
        'advertising_type_description': 'Connectable undirected advertisement',
        'advertisement_data_hex': '0201061AFF4C00',
        'last_seen_timestamp': DEFAULT_TIMESTAMP,
    }
    fields.update(overrides)
    return DeviceObservation(**fields)


def device_record(mac: str = 'AA:BB:CC:DD:EE:FF', rssi: int = -50, adv_type: int = 0, ad_data: bytes = b'\x02\x01\x06') -> bytes:
    """Raw gateway device record: type, MAC, unsigned RSSI, advertisement data."""
    return bytes([adv_type]) + bytes.fromhex(mac.replace(':', '')) + bytes([rssi + 256]) + ad_data
