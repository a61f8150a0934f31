"""
Position Source

Turns raw fixes from a sensor feed into PositionSamples and hands each one
to its observer. The default feed subscribes to the local GPS publisher
over ZeroMQ (tcp://localhost:5558, topic "gps", JSON payload).

Emission rules (periodic mode), a fix qualifies when any of:
    - no sample has been emitted yet
    - interval_s has elapsed since the last emitted sample
    - distance_m > 0 and the device moved at least distance_m
    - angle_deg > 0 and the bearing changed by at least angle_deg
Fixes less accurate than the accuracy policy allows are discarded.

Direct updates bypass all filters and are flagged direct=True. In one-shot
mode the source emits a single direct sample and then stops itself.
"""
import asyncio
import json
import math
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import structlog
import zmq
import zmq.asyncio

from tracklink.errors import SensorUnavailable
from tracklink.models import AccuracyPolicy, MPS_TO_KNOTS, PositionSample
from tracklink.services.geo import bearing_delta, haversine_distance

logger = structlog.get_logger("position_source")

# Rough horizontal error per unit of HDOP for consumer GPS receivers
HDOP_TO_METERS = 5.0
RECEIVE_POLL_S = 0.1
POWER_SUPPLY_DIR = "/sys/class/power_supply"

RawFix = Dict[str, Any]
BatteryReader = Callable[[], Tuple[Optional[float], Optional[bool]]]


# ============ Sensor feeds ============

class FixFeed(Protocol):
    """Port: opaque supplier of raw fixes."""

    async def open(self) -> None: ...

    async def receive(self, timeout_s: float) -> Optional[RawFix]: ...

    async def close(self) -> None: ...


def parse_fix_message(frames: List[bytes]) -> RawFix:
    """Decode [topic, payload] or [payload] frames into a fix dict."""
    if not frames:
        raise ValueError("Empty message")
    payload = frames[1] if len(frames) >= 2 else frames[0]
    fix = json.loads(payload.decode())
    if not isinstance(fix, dict):
        raise ValueError("Fix payload must be a JSON object")
    return fix


class ZmqFixFeed:
    """
    Subscribes to a ZMQ GPS publisher.
    """

    def __init__(
        self,
        endpoint: str = "tcp://localhost:5558",
        topic: str = "gps",
        context: Optional[zmq.asyncio.Context] = None,
    ):
        self.endpoint = endpoint
        self.topic = topic
        self._context = context
        self._owns_context = context is None
        self._socket: Optional[zmq.asyncio.Socket] = None

    async def open(self) -> None:
        """Connect the SUB socket. Raises SensorUnavailable on failure."""
        if self._socket is not None:
            return
        try:
            if self._context is None:
                self._context = zmq.asyncio.Context()
            self._socket = self._context.socket(zmq.SUB)
            self._socket.connect(self.endpoint)
            self._socket.setsockopt_string(zmq.SUBSCRIBE, self.topic)
        except zmq.ZMQError as e:
            await self.close()
            raise SensorUnavailable(f"Cannot subscribe to {self.endpoint}: {e}") from e
        logger.info("ZMQ fix subscriber connected", endpoint=self.endpoint, topic=self.topic)

    async def receive(self, timeout_s: float) -> Optional[RawFix]:
        """Next fix, or None if nothing arrived within timeout_s."""
        if self._socket is None:
            raise SensorUnavailable("Fix feed is not open")
        try:
            if not await self._socket.poll(timeout=int(timeout_s * 1000)):
                return None
            frames = await self._socket.recv_multipart()
        except zmq.ZMQError as e:
            if e.errno == zmq.EAGAIN:
                return None
            raise SensorUnavailable(f"ZMQ error on {self.endpoint}: {e}") from e

        try:
            return parse_fix_message(frames)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Invalid fix message", error=str(e))
            return None

    async def close(self) -> None:
        """Close the socket and, if we created it, the context."""
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
        if self._owns_context and self._context is not None:
            self._context.term()
            self._context = None


# ============ Battery ============

def read_battery(power_supply_dir: str = POWER_SUPPLY_DIR) -> Tuple[Optional[float], Optional[bool]]:
    """Battery percent and charging flag from sysfs, (None, None) if there is no battery."""
    root = Path(power_supply_dir)
    if not root.is_dir():
        return None, None

    for supply in sorted(root.iterdir()):
        try:
            if (supply / "type").read_text().strip() != "Battery":
                continue
            capacity = float((supply / "capacity").read_text().strip())
            status = (supply / "status").read_text().strip()
        except (OSError, ValueError):
            continue
        return capacity, status in ("Charging", "Full")

    return None, None


# ============ Position Source ============

@dataclass
class SourceConfig:
    """Sampling policy."""
    interval_s: float = 300.0
    distance_m: float = 0.0
    angle_deg: float = 0.0
    accuracy: AccuracyPolicy = AccuracyPolicy.MEDIUM

    @classmethod
    def from_settings(cls, settings) -> "SourceConfig":
        return cls(
            interval_s=settings.interval_s,
            distance_m=settings.distance_m,
            angle_deg=settings.angle_deg,
            accuracy=settings.accuracy,
        )


class PositionObserver(Protocol):
    """Receives samples and sensor errors from a PositionSource."""

    async def on_position(self, sample: PositionSample) -> None: ...

    def on_error(self, error: Exception) -> None: ...


def _finite_or_zero(value: Any) -> float:
    """Optional numeric field; missing or non-finite values read as 0.0."""
    if value is None:
        return 0.0
    number = float(value)
    return number if math.isfinite(number) else 0.0


def sample_from_fix(fix: RawFix, direct: bool = False) -> PositionSample:
    """
    Build a PositionSample from a raw feed payload.

    Raises KeyError, TypeError or ValueError for a malformed fix. Battery
    fields are taken from the payload only; see PositionSource for sysfs.
    """
    ts_ms = fix.get("ts_utc_ms") or fix.get("ts_ms") or int(time.time() * 1000)
    ts_ms = float(ts_ms)
    if not math.isfinite(ts_ms):
        raise ValueError(f"Non-finite fix timestamp {ts_ms!r}")

    accuracy = fix.get("accuracy_m")
    if accuracy is None and fix.get("hdop") is not None:
        accuracy = _finite_or_zero(fix["hdop"]) * HDOP_TO_METERS

    battery = fix.get("battery")
    if battery is not None:
        battery = float(battery)
        if not math.isfinite(battery):
            battery = None

    return PositionSample(
        time=ts_ms / 1000.0,
        latitude=float(fix["lat"]),
        longitude=float(fix["lon"]),
        altitude=_finite_or_zero(fix.get("altitude_m")),
        speed=_finite_or_zero(fix.get("speed_mps")) * MPS_TO_KNOTS,
        bearing=_finite_or_zero(fix.get("heading_deg")),
        accuracy=_finite_or_zero(accuracy),
        battery=battery,
        charging=fix.get("charging"),
        direct=direct,
    )


class PositionSource:
    """
    Reads fixes from a FixFeed and emits qualifying samples to one observer.

    The observer is awaited inline, so the next fix is not read until the
    previous sample has been handled. Emission order is preserved.
    """

    def __init__(
        self,
        feed: FixFeed,
        observer: PositionObserver,
        config: Optional[SourceConfig] = None,
        battery_reader: Optional[BatteryReader] = read_battery,
    ):
        self.feed = feed
        self.observer = observer
        self.config = config or SourceConfig()
        self.battery_reader = battery_reader

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._one_shot = False
        self._direct_pending = False
        self._last: Optional[PositionSample] = None

        self._stats = {"fixes": 0, "emitted": 0, "discarded": 0}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_sample(self) -> Optional[PositionSample]:
        return self._last

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    async def start_updates(self, config: Optional[SourceConfig] = None) -> None:
        """
        Begin periodic emission. If already running, the config changes in
        place and a pending one-shot becomes a periodic session.
        """
        if config is not None:
            self.config = config

        self._one_shot = False
        if self._running:
            logger.info("Position source reconfigured", interval_s=self.config.interval_s)
            return

        await self._start()

    async def request_one_shot(self) -> None:
        """Emit exactly one direct sample, then stop."""
        if self._running:
            # Periodic session already active: piggyback a direct update on it
            self.request_direct_update()
            return

        self._one_shot = True
        self._direct_pending = True
        await self._start()

    def request_direct_update(self) -> None:
        """Make the next fix bypass all filters and emit it flagged direct."""
        self._direct_pending = True

    async def stop_updates(self) -> None:
        """Halt emission and release the feed."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            await task

    async def _start(self) -> None:
        try:
            await self.feed.open()
        except SensorUnavailable as e:
            logger.error("Position sensor unavailable", error=str(e))
            self.observer.on_error(e)
            return

        self._running = True
        self._task = asyncio.create_task(self._read_loop())
        logger.info(
            "Position updates started",
            one_shot=self._one_shot,
            interval_s=self.config.interval_s,
            distance_m=self.config.distance_m,
            accuracy=self.config.accuracy.value,
        )

    async def _read_loop(self) -> None:
        try:
            while self._running:
                try:
                    fix = await self.feed.receive(RECEIVE_POLL_S)
                    if fix is None:
                        continue

                    self._stats["fixes"] += 1
                    sample = self._qualify(fix)
                    if sample is None:
                        self._stats["discarded"] += 1
                        continue

                    sample = self._with_battery(sample)
                    self._last = sample
                    self._stats["emitted"] += 1
                    await self.observer.on_position(sample)

                    if self._one_shot and sample.direct:
                        logger.info("One-shot position delivered, stopping source")
                        self._running = False

                except SensorUnavailable as e:
                    logger.error("Position sensor lost", error=str(e))
                    self._running = False
                    self.observer.on_error(e)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Malformed fix", error=str(e))
                    self._stats["discarded"] += 1
                except Exception as e:
                    logger.error("Position source error", error=str(e))
                    await asyncio.sleep(RECEIVE_POLL_S)
        finally:
            await self.feed.close()

    def _qualify(self, fix: RawFix) -> Optional[PositionSample]:
        """Apply the sampling policy. Returns the sample to emit, or None."""
        direct = self._direct_pending
        sample = sample_from_fix(fix, direct=direct)

        if not sample.is_valid():
            return None

        if direct:
            self._direct_pending = False
            return sample

        max_accuracy = self.config.accuracy.max_accuracy_m
        if max_accuracy is not None and sample.accuracy > max_accuracy:
            return None

        last = self._last
        if last is None:
            return sample
        if sample.time - last.time >= self.config.interval_s:
            return sample
        if self.config.distance_m > 0 and haversine_distance(
            last.latitude, last.longitude, sample.latitude, sample.longitude
        ) >= self.config.distance_m:
            return sample
        if self.config.angle_deg > 0 and bearing_delta(
            last.bearing, sample.bearing
        ) >= self.config.angle_deg:
            return sample
        return None

    def _with_battery(self, sample: PositionSample) -> PositionSample:
        """Fill battery fields from the local reader for an accepted sample."""
        if sample.battery is not None or self.battery_reader is None:
            return sample
        battery, charging = self.battery_reader()
        return replace(sample, battery=battery, charging=charging)
