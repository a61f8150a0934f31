"""
Single-shot HTTP delivery of one request descriptor.

No retry logic lives here: each send() is exactly one attempt, and the
uplink controller decides what happens next.
"""
from typing import Optional, Protocol

import httpx
import structlog

from tracklink.errors import (
    DeliveryFailure,
    PermanentDeliveryFailure,
    TransientDeliveryFailure,
)
from tracklink.models import DeliveryOutcome, RequestDescriptor

logger = structlog.get_logger("transport")


class Transport(Protocol):
    """
    Port: performs one delivery attempt and reports the outcome.

    Implementations may raise DeliveryFailure instead of returning a failed
    outcome; the uplink controller maps it with DeliveryOutcome.from_failure.
    """

    async def send(self, descriptor: RequestDescriptor) -> DeliveryOutcome: ...

    async def close(self) -> None: ...


def check_status(status_code: int) -> None:
    """Raise the DeliveryFailure matching a non-2xx HTTP status code."""
    if 200 <= status_code < 300:
        return
    if status_code == 429:
        raise TransientDeliveryFailure("Rate limited by server", status_code)
    if 400 <= status_code < 500:
        raise PermanentDeliveryFailure(f"HTTP {status_code}", status_code)
    raise TransientDeliveryFailure(f"HTTP {status_code}", status_code)


def classify_status(status_code: int) -> DeliveryOutcome:
    """Map an HTTP status code to a delivery outcome."""
    try:
        check_status(status_code)
    except DeliveryFailure as e:
        return DeliveryOutcome.from_failure(e)
    return DeliveryOutcome.success(status_code)


class HttpTransport:
    """Sends OsmAnd requests to the tracking server with httpx."""

    def __init__(
        self,
        method: str = "GET",
        timeout_s: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.method = method.upper()
        self.timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s),
                limits=httpx.Limits(max_connections=1),
            )
        return self._client

    async def send(self, descriptor: RequestDescriptor) -> DeliveryOutcome:
        """Perform one request. Never raises for network or HTTP errors."""
        try:
            response = await self._get_client().request(self.method, descriptor.url)

        except httpx.ConnectError as e:
            logger.warning("Network unreachable - request stays queued", error=str(e))
            return DeliveryOutcome.transient(f"Network unreachable: {e}")

        except httpx.TimeoutException:
            logger.warning("Request timeout - will retry")
            return DeliveryOutcome.transient("Timeout")

        except httpx.InvalidURL as e:
            logger.error("Queued request has an invalid URL", error=str(e))
            return DeliveryOutcome.permanent(f"Invalid URL: {e}")

        except httpx.HTTPError as e:
            logger.warning("Request error", error=str(e))
            return DeliveryOutcome.transient(f"Transport error: {e}")

        outcome = classify_status(response.status_code)
        if outcome.ok:
            logger.debug("Delivery success", status_code=response.status_code)
        else:
            logger.warning(
                "Delivery failed",
                status_code=response.status_code,
                status=outcome.status.value,
            )
        return outcome

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
