"""
OsmAnd / Traccar protocol formatter.

Maps a PositionSample to a fully formed request URL. Pure and deterministic:
the same sample, URL and tag always produce the same descriptor.

Wire format:
    <base_url>?id=<device>&lat=..&lon=..&speed=..&bearing=..&altitude=..
              &accuracy=..&timestamp=<epoch s>[&batt=..][&charge=..][&alarm=..]
"""
import math
from typing import List, Optional, Tuple

import httpx

from tracklink.errors import FormatError
from tracklink.models import PositionSample, RequestDescriptor

NUMBER_PRECISION = 8


def format_number(value) -> str:
    """
    Locale-independent number text: '.' decimal point, no grouping, no exponent.
    Integers stay integers, floats keep at least one decimal digit.
    NaN and infinity have no wire form and raise FormatError.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        raise FormatError(f"Non-finite number {value!r}")

    text = f"{value:.{NUMBER_PRECISION}f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    if text == "-0.0":
        text = "0.0"
    return text


def _parse_base_url(base_url: str) -> httpx.URL:
    try:
        url = httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError) as e:
        raise FormatError(f"Invalid server URL {base_url!r}: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise FormatError(f"Server URL must be absolute http(s) with a host: {base_url!r}")
    return url


def format_position(
    sample: PositionSample,
    base_url: str,
    device_id: str,
    alarm: Optional[str] = None,
) -> RequestDescriptor:
    """Build the outbound request for one sample. Raises FormatError on a bad base URL or field."""
    if not math.isfinite(sample.time):
        raise FormatError(f"Non-finite timestamp {sample.time!r}")
    url = _parse_base_url(base_url)

    params: List[Tuple[str, str]] = [
        ("id", device_id),
        ("lat", format_number(sample.latitude)),
        ("lon", format_number(sample.longitude)),
        ("speed", format_number(sample.speed)),
        ("bearing", format_number(sample.bearing)),
        ("altitude", format_number(sample.altitude)),
        ("accuracy", format_number(sample.accuracy)),
        ("timestamp", str(int(sample.time))),
    ]
    if sample.battery is not None:
        params.append(("batt", format_number(sample.battery)))
    if sample.charging is not None:
        params.append(("charge", format_number(sample.charging)))
    if alarm:
        params.append(("alarm", alarm))

    return RequestDescriptor(url=str(url.copy_merge_params(params)))
