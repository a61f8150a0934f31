"""
Tracking Session - top-level lifecycle owner.

Wires the position source into the durable queue (through the protocol
formatter) and runs the uplink controller against that queue.

    [Fix Feed] → [PositionSource] → format_position → [Queue] → [UplinkController] → [Transport]

The queue outlives the session: stop() leaves pending requests on disk for
the next start(), including across process restarts.
"""
from typing import Any, Dict, Optional, Set

import structlog

from tracklink.config import Settings, get_settings
from tracklink.errors import FormatError, PersistenceFailure
from tracklink.events import EventKind, StatusEvents
from tracklink.logging_config import configure_logging
from tracklink.models import AccuracyPolicy, PositionSample
from tracklink.services.position_source import (
    BatteryReader,
    FixFeed,
    PositionSource,
    SourceConfig,
    ZmqFixFeed,
    read_battery,
)
from tracklink.services.protocol import format_position
from tracklink.services.queue import RequestQueue, SqliteRequestQueue
from tracklink.services.transport import HttpTransport, Transport
from tracklink.services.uplink import UplinkController

logger = structlog.get_logger("session")

SOS_ALARM = "sos"


class _SampleSink:
    """PositionObserver that records samples through a session, with an optional alarm tag."""

    def __init__(self, session: "TrackingSession", alarm: Optional[str] = None):
        self.session = session
        self.alarm = alarm

    async def on_position(self, sample: PositionSample) -> None:
        await self.session.on_position(sample, alarm=self.alarm)

    def on_error(self, error: Exception) -> None:
        self.session.on_error(error)


class TrackingSession:
    """
    Owns one tracking session: the periodic position source, the uplink
    controller and the shared durable queue.
    """

    def __init__(
        self,
        settings: Settings,
        queue: Optional[RequestQueue] = None,
        transport: Optional[Transport] = None,
        feed_factory=None,
        events: Optional[StatusEvents] = None,
        battery_reader: Optional[BatteryReader] = read_battery,
    ):
        self.settings = settings
        self.events = events or StatusEvents()
        self.queue = queue or SqliteRequestQueue(
            settings.queue_db_path, settings.queue_synchronous
        )
        self.transport = transport or HttpTransport(
            method=settings.request_method, timeout_s=settings.request_timeout_s
        )
        self._feed_factory = feed_factory
        self.battery_reader = battery_reader

        self.controller = UplinkController(
            self.queue,
            self.transport,
            retry_base_s=settings.retry_base_s,
            retry_max_s=settings.retry_max_s,
            idle_poll_s=settings.idle_poll_s,
            events=self.events,
        )
        self.position_source = self._new_source()
        self._one_shots: Set[PositionSource] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _new_feed(self) -> FixFeed:
        if self._feed_factory is not None:
            return self._feed_factory()
        return ZmqFixFeed(self.settings.sensor_endpoint, self.settings.sensor_topic)

    def _new_source(self) -> PositionSource:
        return PositionSource(
            self._new_feed(),
            _SampleSink(self),
            SourceConfig.from_settings(self.settings),
            battery_reader=self.battery_reader,
        )

    # ============ Lifecycle ============

    @classmethod
    async def launch(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "TrackingSession":
        """
        Process entry point: load settings, configure logging and resume
        tracking if the service switch was left on.
        """
        settings = settings or get_settings()
        configure_logging(settings.log_level, settings.log_format)

        session = cls(settings, **kwargs)
        if settings.service_enabled:
            await session.start()
        else:
            logger.info("Service disabled, not starting", device_id=settings.device_id)
        return session

    async def start(self) -> None:
        """Open the queue, start the uplink and begin periodic sampling."""
        if self._running:
            return

        await self.queue.initialize()
        await self.controller.start()
        await self.position_source.start_updates(SourceConfig.from_settings(self.settings))
        self._running = True

        logger.info(
            "Tracking session started",
            device_id=self.settings.device_id,
            server_url=self.settings.server_url,
            interval_s=self.settings.interval_s,
            pending=await self.queue.count(),
        )
        self.events.emit(EventKind.SERVICE_STARTED, "Service created")

    async def stop(self) -> None:
        """Stop sampling and delivery. Pending requests stay queued."""
        was_running = self._running
        self._running = False

        await self.position_source.stop_updates()
        await self.controller.stop()

        if was_running:
            logger.info("Tracking session stopped")
            self.events.emit(EventKind.SERVICE_STOPPED, "Service destroyed")

    async def close(self) -> None:
        """Stop everything and release the queue and transport."""
        await self.stop()
        for source in list(self._one_shots):
            await source.stop_updates()
        self._one_shots.clear()
        # A send abandoned by stop() may still be using the transport
        await self.controller.wait_abandoned()
        await self.transport.close()
        await self.queue.close()

    async def set_service_status(self, enabled: bool) -> None:
        """Start or stop the session to match the service switch."""
        self.settings = self.settings.model_copy(update={"service_enabled": enabled})
        if enabled:
            await self.start()
        else:
            await self.stop()

    # ============ Sample intake ============

    async def record(self, sample: PositionSample, alarm: Optional[str] = None) -> int:
        """
        Format a sample and commit it to the queue.

        Raises FormatError (sample dropped) or PersistenceFailure (not stored).
        Returns the persisted id on success.
        """
        descriptor = format_position(
            sample, self.settings.server_url, self.settings.device_id, alarm
        )
        persisted_id = await self.queue.append(descriptor)
        self.controller.notify()
        return persisted_id

    async def on_position(self, sample: PositionSample, alarm: Optional[str] = None) -> None:
        """Observer callback: enqueue the sample as the very next step."""
        try:
            persisted_id = await self.record(sample, alarm)
        except FormatError as e:
            logger.error("Dropping sample, cannot format request", error=str(e))
            self.events.emit(EventKind.FORMAT_ERROR, str(e))
            return
        except PersistenceFailure as e:
            logger.error("Failed to queue sample", error=str(e))
            self.events.emit(EventKind.PERSISTENCE_ERROR, str(e), operation="append")
            return

        self.events.emit(
            EventKind.LOCATION_UPDATE,
            "Location update",
            persisted_id=persisted_id,
            lat=sample.latitude,
            lon=sample.longitude,
            direct=sample.direct,
            alarm=alarm,
        )
        try:
            depth = await self.queue.count()
        except PersistenceFailure as e:
            logger.warning("Queue depth unavailable", error=str(e))
            return
        self.events.emit(EventKind.QUEUE_DEPTH_CHANGED, depth=depth)

    def on_error(self, error: Exception) -> None:
        """Observer callback for sensor failures. Not retried here."""
        logger.error("Position source error", error=str(error))
        self.events.emit(EventKind.SENSOR_ERROR, str(error))

    # ============ Direct / remote triggers ============

    async def trigger_sos(self) -> PositionSource:
        """
        Take one direct position on a separate one-shot source and queue it
        with alarm=sos. The periodic source is not touched; the uplink is
        started if needed so the alarm gets delivered.
        """
        self._one_shots = {s for s in self._one_shots if s.is_running}

        await self.queue.initialize()
        await self.controller.start()

        source = PositionSource(
            self._new_feed(),
            _SampleSink(self, alarm=SOS_ALARM),
            SourceConfig(accuracy=AccuracyPolicy.LOW),
            battery_reader=self.battery_reader,
        )
        self._one_shots.add(source)
        await source.request_one_shot()
        logger.info("SOS position requested")
        return source

    def request_position(self) -> bool:
        """Emit the next fix of the running session as a direct sample."""
        if not self._running:
            return False
        self.position_source.request_direct_update()
        return True

    async def handle_remote_command(self, payload: Dict[str, Any]) -> bool:
        """
        Apply a remote command (e.g. from a push notification).

        Supported keys:
            request-position: true   → direct update on the running session
            frequency_preference: N  → new sampling interval in seconds
        Ignored entirely unless remote_control is enabled.
        """
        if not self.settings.remote_control:
            logger.info("Remote control disabled, ignoring command", keys=sorted(payload))
            return False

        handled = False
        if payload.get("request-position") is True:
            handled = self.request_position() or handled

        frequency = payload.get("frequency_preference")
        if isinstance(frequency, int) and not isinstance(frequency, bool) and frequency > 0:
            await self.reconfigure(interval_s=float(frequency))
            handled = True

        return handled

    async def reconfigure(self, **changes: Any) -> None:
        """
        Apply new settings. Sampling restarts in place; already queued
        requests keep the URL they were formatted with.
        """
        unknown = set(changes) - set(Settings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        self.settings = type(self.settings).model_validate(
            {**self.settings.model_dump(), **changes}
        )
        self.controller.retry_base_s = self.settings.retry_base_s
        self.controller.retry_max_s = self.settings.retry_max_s
        self.controller.idle_poll_s = self.settings.idle_poll_s

        logger.info("Session reconfigured", changes=sorted(changes))

        if self._running:
            await self.position_source.stop_updates()
            self.position_source = self._new_source()
            await self.position_source.start_updates()
        else:
            self.position_source = self._new_source()

    # ============ Status ============

    async def queue_depth(self) -> int:
        return await self.queue.count()

    async def status(self) -> Dict[str, Any]:
        """Aggregate status for UI collaborators."""
        return {
            "running": self._running,
            "device_id": self.settings.device_id,
            "uplink_state": self.controller.state.value,
            "consecutive_failures": self.controller.consecutive_failures,
            "retry_delay_s": self.controller.retry_delay,
            "delivered": self.controller.delivered_count,
            "queue_depth": await self.queue.count(),
            "source": self.position_source.stats,
        }
