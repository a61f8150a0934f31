"""
Uplink Controller State Machine

Drives the durable queue against the transport, one request at a time.

State Machine:
    IDLE → (queue non-empty) → SENDING
    SENDING → (success) → remove head → IDLE (re-checks immediately)
    SENDING → (failure) → BACKOFF
    BACKOFF → (deadline elapsed) → SENDING (same head request)
    * → (stop) → STOPPED

Key Invariants:
    - At most one send is outstanding at any time
    - Requests are sent in strict queue order; a failed head blocks newer ones
    - A request is removed only after the transport confirmed its delivery,
      and that removal completes before any further send
    - Outcomes that arrive after stop() are ignored (generation token)
    - There is no give-up state: retries continue until success or stop()

Backoff after k consecutive failures: min(retry_max_s, retry_base_s * 2**k).
"""
import asyncio
import time
from enum import Enum
from typing import Callable, Optional, Set

import structlog

from tracklink.errors import DeliveryFailure, PersistenceFailure
from tracklink.events import EventKind, StatusEvents
from tracklink.models import DeliveryOutcome, QueueEntry
from tracklink.services.queue import RequestQueue
from tracklink.services.transport import Transport

logger = structlog.get_logger("uplink")

# Caps the exponent so the delay computation never overflows
MAX_BACKOFF_EXPONENT = 32


class UplinkState(str, Enum):
    """Uplink controller states."""
    IDLE = "IDLE"          # Nothing in flight
    SENDING = "SENDING"    # Exactly one request in flight
    BACKOFF = "BACKOFF"    # Waiting for the retry deadline
    STOPPED = "STOPPED"    # Terminal until start() is called again


class UplinkController:
    """
    Single-flight, FIFO delivery loop over a RequestQueue.

    All delivery attempt state lives in memory only. After a restart the
    queue contents alone decide what is still owed.
    """

    def __init__(
        self,
        queue: RequestQueue,
        transport: Transport,
        retry_base_s: float = 15.0,
        retry_max_s: float = 900.0,
        idle_poll_s: float = 30.0,
        events: Optional[StatusEvents] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.transport = transport
        self.retry_base_s = retry_base_s
        self.retry_max_s = retry_max_s
        self.idle_poll_s = idle_poll_s
        self.events = events or StatusEvents()
        self._clock = clock

        self._state = UplinkState.IDLE
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

        self._in_flight: Optional[int] = None
        self._failures = 0
        self._retry_not_before: Optional[float] = None
        self._delivered = 0
        # Persisted id confirmed delivered but not yet removed from the queue
        self._pending_remove: Optional[int] = None

        # Sends abandoned by stop(); must finish before the next send starts
        self._abandoned: Set[asyncio.Task] = set()

    # ============ Public API ============

    @property
    def state(self) -> UplinkState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> Optional[int]:
        """Persisted id of the request currently being sent."""
        return self._in_flight

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def retry_not_before(self) -> Optional[float]:
        """Monotonic deadline of the next retry while in BACKOFF."""
        return self._retry_not_before

    @property
    def delivered_count(self) -> int:
        return self._delivered

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def retry_delay(self) -> float:
        """Delay implied by the current failure count; retry_base_s after a success."""
        exponent = min(self._failures, MAX_BACKOFF_EXPONENT)
        return min(self.retry_max_s, self.retry_base_s * (2 ** exponent))

    async def start(self) -> None:
        """Start draining the queue. No-op while already running."""
        if self.is_running:
            return

        self._generation += 1
        self._failures = 0
        self._retry_not_before = None
        self._in_flight = None
        self._state = UplinkState.IDLE
        self._task = asyncio.create_task(self._run(self._generation))
        logger.info("Uplink started", generation=self._generation)

    def notify(self) -> None:
        """Signal that a request was appended. Wakes an idle controller."""
        self._wakeup.set()

    async def stop(self) -> None:
        """
        Stop from any state. Backoff timers are cancelled; an in-flight send
        runs to completion but its outcome never touches the queue.
        """
        self._generation += 1
        self._state = UplinkState.STOPPED
        self._retry_not_before = None

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Uplink stopped", delivered=self._delivered, abandoned=len(self._abandoned))

    async def wait_abandoned(self) -> None:
        """Wait until sends abandoned by stop() have returned from the transport."""
        if self._abandoned:
            logger.info("Waiting for abandoned send to finish", count=len(self._abandoned))
            await asyncio.wait(set(self._abandoned))

    # ============ Delivery loop ============

    def _is_current(self, generation: int) -> bool:
        return self._generation == generation

    async def _run(self, generation: int) -> None:
        await self.wait_abandoned()

        while self._is_current(generation):
            try:
                # A delivered head is removed before anything else is sent
                if self._pending_remove is not None:
                    await self._finish_delivery()
                    continue

                # Clear before peeking so an append racing the peek is not missed
                self._wakeup.clear()
                entry = await self.queue.peek_oldest()

                if entry is None:
                    self._state = UplinkState.IDLE
                    await self._wait_for_work()
                    continue

                outcome = await self._attempt(entry)

                if not self._is_current(generation):
                    logger.info(
                        "Ignoring outcome from a stopped session",
                        persisted_id=entry.persisted_id,
                        status=outcome.status.value,
                    )
                    return

                if outcome.ok:
                    await self._on_success(entry)
                else:
                    await self._on_failure(entry, outcome)

            except asyncio.CancelledError:
                raise
            except PersistenceFailure as e:
                logger.error("Queue error in uplink loop", error=str(e))
                self.events.emit(EventKind.PERSISTENCE_ERROR, str(e), operation="uplink")
                await self._backoff()
            except Exception as e:
                logger.error("Uplink loop error", error=str(e))
                await self._backoff()

    async def _wait_for_work(self) -> None:
        """Sleep until notify() or the idle poll interval, whichever first."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.idle_poll_s)
        except asyncio.TimeoutError:
            pass

    async def _attempt(self, entry: QueueEntry) -> DeliveryOutcome:
        """Issue exactly one send for the head request."""
        self._state = UplinkState.SENDING
        self._in_flight = entry.persisted_id

        send_task = asyncio.create_task(self.transport.send(entry.descriptor))
        try:
            return await asyncio.shield(send_task)
        except asyncio.CancelledError:
            # stop() while sending: let the request finish, drop its outcome
            if not send_task.done():
                self._abandoned.add(send_task)
                send_task.add_done_callback(self._abandoned_done)
            raise
        except DeliveryFailure as e:
            return DeliveryOutcome.from_failure(e)
        except Exception as e:
            logger.error("Transport raised", persisted_id=entry.persisted_id, error=str(e))
            return DeliveryOutcome.transient(f"Transport error: {e}")
        finally:
            self._in_flight = None

    def _abandoned_done(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Abandoned send raised", error=str(task.exception()))

    async def _on_success(self, entry: QueueEntry) -> None:
        self._pending_remove = entry.persisted_id
        self._failures = 0
        self._retry_not_before = None
        self._delivered += 1

        logger.debug("Delivered", persisted_id=entry.persisted_id)
        self.events.emit(
            EventKind.DELIVERY_SUCCEEDED,
            "Send successfully",
            persisted_id=entry.persisted_id,
        )
        await self._finish_delivery()

    async def _finish_delivery(self) -> None:
        """Remove the delivered head. On PersistenceFailure the removal is retried after backoff."""
        persisted_id = self._pending_remove
        # Shielded: a delivered request must not survive a stop() mid-delete
        await asyncio.shield(self.queue.remove(persisted_id))
        self._pending_remove = None
        self._state = UplinkState.IDLE

        depth = await self.queue.count()
        logger.debug("Removed delivered request", persisted_id=persisted_id, queue_depth=depth)
        self.events.emit(EventKind.QUEUE_DEPTH_CHANGED, depth=depth)

    async def _on_failure(self, entry: QueueEntry, outcome: DeliveryOutcome) -> None:
        # Permanent failures are retried like transient ones
        logger.warning(
            "Delivery failed, backing off",
            persisted_id=entry.persisted_id,
            status=outcome.status.value,
            reason=outcome.reason,
            failures=self._failures + 1,
        )
        self.events.emit(
            EventKind.DELIVERY_FAILED,
            "Send failed",
            persisted_id=entry.persisted_id,
            status=outcome.status.value,
            reason=outcome.reason,
        )
        await self._backoff(entry.persisted_id)

    async def _backoff(self, persisted_id: Optional[int] = None) -> None:
        self._failures += 1
        delay = self.retry_delay
        self._retry_not_before = self._clock() + delay
        self._state = UplinkState.BACKOFF

        self.events.emit(
            EventKind.BACKOFF,
            persisted_id=persisted_id,
            failures=self._failures,
            delay_s=delay,
            retry_not_before=self._retry_not_before,
        )
        await asyncio.sleep(delay)
