"""
Protocol formatter tests.

Tests to verify:
1. Request URL carries every wire field in a stable order
2. Numbers are formatted without locale effects or exponents
3. Alarm / battery parameters are optional
4. Malformed base URLs and non-finite numbers raise FormatError

Run with: pytest tests/test_protocol.py -v
"""
import pytest

from tracklink.errors import FormatError
from tracklink.models import PositionSample
from tracklink.services.protocol import format_number, format_position


def make_sample(**overrides) -> PositionSample:
    values = dict(time=1706000000.5, latitude=10.0, longitude=20.0, speed=5)
    values.update(overrides)
    return PositionSample(**values)


# ============================================
# Test: Request URL
# ============================================

class TestFormatPosition:

    def test_reference_request(self):
        """Reference sample produces the documented query string."""
        descriptor = format_position(make_sample(), "https://example.com/report", "123456")

        assert descriptor.url.startswith("https://example.com/report?")
        assert "id=123456&lat=10.0&lon=20.0&speed=5" in descriptor.url
        assert descriptor.persisted_id is None

    def test_all_fields_present(self):
        sample = make_sample(
            altitude=120.5, bearing=270.0, accuracy=8.0, battery=87.0, charging=True,
        )
        url = format_position(sample, "http://demo.traccar.org:5055", "dev1").url

        for param in (
            "bearing=270.0", "altitude=120.5", "accuracy=8.0",
            "timestamp=1706000000", "batt=87.0", "charge=true",
        ):
            assert param in url, f"{param} missing from {url}"
        assert "alarm=" not in url

    def test_alarm_tag_appended_last(self):
        url = format_position(make_sample(), "https://example.com/report", "1", alarm="sos").url
        assert url.endswith("&alarm=sos")

    def test_unknown_battery_omitted(self):
        url = format_position(make_sample(), "https://example.com", "1").url
        assert "batt=" not in url
        assert "charge=" not in url

    def test_existing_query_kept(self):
        url = format_position(make_sample(), "https://example.com/r?key=abc", "1").url
        assert "key=abc" in url
        assert "id=1" in url

    def test_deterministic(self):
        sample = make_sample(bearing=12.25)
        first = format_position(sample, "https://example.com", "9")
        second = format_position(sample, "https://example.com", "9")
        assert first == second


# ============================================
# Test: Number formatting
# ============================================

class TestFormatNumber:

    @pytest.mark.parametrize("value,expected", [
        (10.0, "10.0"),
        (-116.5678, "-116.5678"),
        (0.00001, "0.00001"),
        (1234567.25, "1234567.25"),
        (5, "5"),
        (-0.0, "0.0"),
        (True, "true"),
        (False, "false"),
    ])
    def test_fixed_format(self, value, expected):
        assert format_number(value) == expected

    def test_no_exponent_or_grouping(self):
        text = format_number(1e-7)
        assert "e" not in text
        assert "," not in format_number(1e7)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_rejected(self, value):
        with pytest.raises(FormatError):
            format_number(value)


# ============================================
# Test: Malformed base URL
# ============================================

class TestFormatErrors:

    @pytest.mark.parametrize("base_url", [
        "",
        "example.com/report",
        "/report",
        "ftp://example.com/report",
        "http://",
    ])
    def test_invalid_base_url(self, base_url):
        with pytest.raises(FormatError):
            format_position(make_sample(), base_url, "123456")

    @pytest.mark.parametrize("overrides", [
        {"speed": float("nan")},
        {"altitude": float("inf")},
        {"time": float("nan")},
    ])
    def test_non_finite_field(self, overrides):
        with pytest.raises(FormatError):
            format_position(make_sample(**overrides), "https://example.com/report", "123456")
