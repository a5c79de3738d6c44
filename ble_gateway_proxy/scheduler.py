"""
Scheduled publishing of cached device state.

Gateway batches arrive at whatever rate the hardware scans (often several per
second). The ScheduledPublisher keeps the latest observation per device in a
TTL cache and publishes the whole cache on a fixed interval, except when a
tracked device appears in the cache for the first time (or again after its
entry expired): that publishes immediately and restarts the interval.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from .logging_setup import ICON_ERROR, ICON_INFO, ICON_PUBLISH, ICON_WARNING, get_logger
from .transformer import DeviceObservation
from .utils import normalize_mac

logger = get_logger('scheduler')

DEFAULT_PUBLISH_INTERVAL = 0
DEFAULT_CACHE_RETENTION = 300

PublishDeviceDataCallback = Callable[[List[DeviceObservation], Any, Any], Awaitable[None]]
PublishGatewayStatusCallback = Callable[[Any], Awaitable[None]]


@dataclass
class CacheEntry:
    """Latest observation for one device and the instant it stops being valid."""
    data: DeviceObservation
    expires_at: float


@dataclass
class CleanupStats:
    expired_count: int
    remaining_count: int
    expired_macs: List[str] = field(default_factory=list)


class ScheduledPublisher:
    """
    Decouples bursty device sightings from a bounded MQTT publish rate.

    With publish_interval_sec == 0 every batch is forwarded as-is and nothing
    is cached. Otherwise batches only update the cache, and publishing happens:
    - on every timer tick, with the full (non-expired) cache, OR
    - immediately, when a tracked device is new to the cache.

    All cache access is serialized through one asyncio.Lock, so a batch that
    arrives during a publish waits for it to finish. Publish callbacks may
    fail; failures are logged and never propagate to the caller.
    """

    def __init__(
        self,
        publish_device_data: PublishDeviceDataCallback,
        publish_gateway_status: PublishGatewayStatusCallback,
        tracked_devices: Mapping[str, Any],
        publish_interval_sec: float = DEFAULT_PUBLISH_INTERVAL,
        cache_retention_sec: float = DEFAULT_CACHE_RETENTION,
        clock: Callable[[], float] = time.monotonic
    ):
        if publish_interval_sec is None or publish_interval_sec < 0:
            raise ValueError(f"publish_interval_sec must be >= 0, got: {publish_interval_sec}")
        if cache_retention_sec is None or cache_retention_sec <= 0:
            raise ValueError(f"cache_retention_sec must be > 0, got: {cache_retention_sec}")

        self.publish_device_data = publish_device_data
        self.publish_gateway_status = publish_gateway_status
        # Held by reference: reconfiguration is picked up on the next batch
        self.tracked_devices = tracked_devices
        self.publish_interval_sec = publish_interval_sec
        self.cache_retention_sec = cache_retention_sec
        self._clock = clock

        self._device_cache: Dict[str, CacheEntry] = {}
        self._last_gateway_metadata: Any = None
        self._last_gateway_info: Any = None

        self._timer: Optional[asyncio.TimerHandle] = None
        self._publish_task: Optional[asyncio.Task] = None
        self._timer_generation = 0
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def last_gateway_metadata(self) -> Any:
        return self._last_gateway_metadata

    @property
    def last_gateway_info(self) -> Any:
        return self._last_gateway_info

    async def handle_incoming_data(
        self,
        observations: Iterable[DeviceObservation],
        gateway_metadata: Any = None,
        gateway_info: Any = None
    ) -> bool:
        """Absorb one gateway batch.

        Args:
            observations: Devices seen in this scan cycle
            gateway_metadata: Gateway MAC/IP attached to device payloads
            gateway_info: Full gateway status, republished standalone when idle

        Returns:
            True if a publish was attempted immediately, False if the batch
            was only cached for the next scheduled tick
        """
        observations = list(observations)

        if self.publish_interval_sec == 0:
            logger.debug("Publish interval is disabled. Publishing immediately.")
            await self._invoke(self.publish_device_data, observations, gateway_metadata, gateway_info)
            return True

        async with self._lock:
            if self._closed:
                logger.debug("Scheduler shut down, dropping incoming batch.")
                return False

            now = self._clock()
            new_tracked_devices = self._update_cache(observations, now)

            self._last_gateway_metadata = gateway_metadata
            self._last_gateway_info = gateway_info

            if not new_tracked_devices:
                logger.debug(
                    "No new tracked devices detected. Caching data and waiting for next scheduled publish."
                )
                return False

            logger.info(
                f"{ICON_INFO} New tracked BLE devices detected, triggering immediate publication: "
                f"{', '.join(new_tracked_devices)}"
            )
            await self._publish_cached_devices(
                gateway_metadata, gateway_info, 'Immediate publish due to new tracked devices'
            )
            self.schedule_next_publish()
            return True

    def _update_cache(self, observations: List[DeviceObservation], now: float) -> List[str]:
        """Upsert every observation; return tracked MACs that are new to the cache."""
        new_tracked_devices = []
        expires_at = now + self.cache_retention_sec

        for observation in observations:
            try:
                mac = normalize_mac(getattr(observation, 'mac_address', None))
            except ValueError as e:
                logger.warning(f"{ICON_WARNING} Skipping observation without a usable MAC address: {e}")
                continue

            existing = self._device_cache.get(mac)
            # An expired entry means the device went away and came back
            is_new_to_cache = existing is None or existing.expires_at < now

            self._device_cache[mac] = CacheEntry(data=observation, expires_at=expires_at)

            if is_new_to_cache and mac in self.tracked_devices:
                new_tracked_devices.append(mac)
                logger.debug(f"New tracked device {mac} added to cache - will trigger immediate publish")

        logger.debug(
            f"Updated device cache with {len(observations)} devices. "
            f"Cache now contains {len(self._device_cache)} total devices."
        )
        return new_tracked_devices

    def cleanup_expired_devices(self, now: float) -> CleanupStats:
        """Drop every entry that expired before `now` (a value of the scheduler clock)."""
        expired = [mac for mac, entry in self._device_cache.items() if entry.expires_at < now]
        for mac in expired:
            del self._device_cache[mac]

        return CleanupStats(
            expired_count=len(expired),
            remaining_count=len(self._device_cache),
            expired_macs=expired,
        )

    async def _publish_cached_devices(self, gateway_metadata: Any, gateway_info: Any, trigger_reason: str) -> bool:
        """Purge expired entries, then publish everything left. Returns False when the cache is empty."""
        stats = self.cleanup_expired_devices(self._clock())
        if stats.expired_count > 0:
            logger.info(
                f"Cleaned up {stats.expired_count} expired devices from cache. "
                f"{stats.remaining_count} devices remain. "
                f"(retention: {self.cache_retention_sec}s)"
            )

        if not self._device_cache:
            logger.debug(f"{trigger_reason}: No device data in cache to publish.")
            return False

        observations = [entry.data for entry in self._device_cache.values()]
        logger.info(f"{ICON_PUBLISH} {trigger_reason}: Publishing {len(observations)} cached devices.")

        await self._invoke(self.publish_device_data, observations, gateway_metadata, gateway_info)
        return True

    async def perform_scheduled_publish(self, generation: Optional[int] = None) -> None:
        """Timer tick: publish the cache (or gateway status alone), then re-arm.

        A tick queued behind an immediate publish carries the timer generation
        it was armed under and is dropped once that publish has re-armed.
        """
        async with self._lock:
            if self._closed:
                logger.debug("Scheduler shut down, skipping scheduled publish.")
                return
            if generation is not None and generation != self._timer_generation:
                logger.debug("Timer was re-armed while waiting, skipping stale scheduled publish.")
                return

            logger.info(f"Scheduled publish triggered after {self.publish_interval_sec} seconds.")
            try:
                published = await self._publish_cached_devices(
                    self._last_gateway_metadata, self._last_gateway_info, 'Scheduled publish'
                )
                if not published and self._last_gateway_info is not None:
                    await self._invoke(self.publish_gateway_status, self._last_gateway_info)
            finally:
                self.schedule_next_publish()

    def schedule_next_publish(self) -> None:
        """Arm the one-shot timer for the next tick, replacing any pending one.

        Must be called from within the running event loop.
        """
        self._cancel_timer()
        self._timer_generation += 1

        if self.publish_interval_sec == 0 or self._closed:
            return

        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.publish_interval_sec, self._on_timer)
        logger.debug(f"Next scheduled publish in {self.publish_interval_sec} seconds.")

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._publish_task = asyncio.ensure_future(self.perform_scheduled_publish(self._timer_generation))

    def _cancel_timer(self) -> bool:
        if self._timer is None:
            return False
        self._timer.cancel()
        self._timer = None
        return True

    async def _invoke(self, callback: Callable[..., Awaitable[None]], *args) -> bool:
        try:
            await callback(*args)
            return True
        except Exception as e:
            logger.error(f"{ICON_ERROR} Publish callback failed: {e}", exc_info=True)
            return False

    def initialize(self) -> None:
        """Arm the first tick. Calling it again replaces the pending timer."""
        self._closed = False
        if self.publish_interval_sec > 0:
            logger.info(
                f"{ICON_INFO} Initializing scheduled MQTT publishing every {self.publish_interval_sec} seconds."
            )
            self.schedule_next_publish()

    def shutdown(self) -> None:
        """Cancel the timer and drop all cached state. Safe to call repeatedly."""
        self._closed = True
        if self._cancel_timer():
            logger.info("Cleared scheduled publish timer")
        self.clear_cache()

    def clear_cache(self) -> None:
        self._device_cache.clear()
        self._last_gateway_metadata = None
        self._last_gateway_info = None

    def get_cached_device(self, mac_address: str) -> Optional[DeviceObservation]:
        entry = self._device_cache.get(normalize_mac(mac_address))
        return entry.data if entry else None

    def get_cache_entry(self, mac_address: str) -> Optional[CacheEntry]:
        return self._device_cache.get(normalize_mac(mac_address))

    def get_state(self) -> Dict[str, Any]:
        return {
            'device_cache_size': len(self._device_cache),
            'has_scheduled_publish': self._timer is not None,
            'device_macs': list(self._device_cache.keys()),
            'device_cache_retention_sec': self.cache_retention_sec,
            'publish_interval_sec': self.publish_interval_sec,
        }
