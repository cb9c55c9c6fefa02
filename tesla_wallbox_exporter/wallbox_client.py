"""Tesla Wall Connector local API client module.

This module handles:
- Fetching instantaneous vitals from /api/1/vitals
- Fetching cumulative lifetime statistics from /api/1/lifetime
- Decoding the JSON payloads into immutable reading dataclasses

Both endpoints are plain unauthenticated HTTP GETs on the wallbox's
local network address. A zero-valued reading (``VitalsReading()``,
``LifetimeStatsReading()``) stands in for a fetch that failed.
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import requests

# Configure module logger
logger = logging.getLogger(__name__)


class WallboxError(Exception):
    """Base exception for wallbox client errors."""
    pass


class WallboxConnectionError(WallboxError):
    """Exception raised when the wallbox cannot be reached or answers with an error status."""
    pass


class WallboxResponseError(WallboxError):
    """Exception raised when the wallbox answers with a payload we cannot decode."""
    pass


@dataclass(frozen=True)
class VitalsReading:
    """Point-in-time snapshot of the wallbox.

    Attributes:
        contactor_closed: Whether the contactor is closed (power flowing)
        vehicle_connected: Whether a vehicle is plugged in
        session_duration: Duration of the current session in seconds
        session_energy: Energy delivered in the current session in Wh
        uptime: Seconds since the wallbox last booted
        config_status: Raw configuration status code
        evse_state: Raw EVSE state code
    """
    contactor_closed: bool = False
    vehicle_connected: bool = False
    session_duration: int = 0
    session_energy: float = 0.0
    grid_voltage: float = 0.0
    grid_frequency: float = 0.0
    vehicle_current: float = 0.0
    phase_a_current: float = 0.0
    phase_b_current: float = 0.0
    phase_c_current: float = 0.0
    neutral_current: float = 0.0
    phase_a_voltage: float = 0.0
    phase_b_voltage: float = 0.0
    phase_c_voltage: float = 0.0
    relay_coil_voltage: float = 0.0
    pcb_temperature: float = 0.0
    handle_temperature: float = 0.0
    mcu_temperature: float = 0.0
    uptime: int = 0
    proximity_voltage: float = 0.0
    pilot_high_voltage: float = 0.0
    pilot_low_voltage: float = 0.0
    config_status: int = 0
    evse_state: int = 0


@dataclass(frozen=True)
class LifetimeStatsReading:
    """Cumulative counters since manufacture or reset.

    Attributes:
        started_charging_sessions: Number of charging sessions started
        dispensed_energy: Total energy delivered in Wh
        total_uptime: Total powered-on time in seconds
        charging_time: Total time spent charging in seconds
        average_startup_temperature: Average temperature at startup in Celsius
    """
    contactor_cycles: int = 0
    contactor_cycles_loaded: int = 0
    connector_cycles: int = 0
    thermal_foldbacks: int = 0
    average_startup_temperature: float = 0.0
    started_charging_sessions: int = 0
    dispensed_energy: int = 0
    total_uptime: int = 0
    charging_time: int = 0


# Dataclass field -> JSON key as served by the Gen 3 firmware
VITALS_KEYS = {
    "contactor_closed": "contactor_closed",
    "vehicle_connected": "vehicle_connected",
    "session_duration": "session_s",
    "session_energy": "session_energy_wh",
    "grid_voltage": "grid_v",
    "grid_frequency": "grid_hz",
    "vehicle_current": "vehicle_current_a",
    "phase_a_current": "currentA_a",
    "phase_b_current": "currentB_a",
    "phase_c_current": "currentC_a",
    "neutral_current": "currentN_a",
    "phase_a_voltage": "voltageA_v",
    "phase_b_voltage": "voltageB_v",
    "phase_c_voltage": "voltageC_v",
    "relay_coil_voltage": "relay_coil_v",
    "pcb_temperature": "pcba_temp_c",
    "handle_temperature": "handle_temp_c",
    "mcu_temperature": "mcu_temp_c",
    "uptime": "uptime_s",
    "proximity_voltage": "prox_v",
    "pilot_high_voltage": "pilot_high_v",
    "pilot_low_voltage": "pilot_low_v",
    "config_status": "config_status",
    "evse_state": "evse_state",
}

LIFETIME_KEYS = {
    "contactor_cycles": "contactor_cycles",
    "contactor_cycles_loaded": "contactor_cycles_loaded",
    "connector_cycles": "connector_cycles",
    "thermal_foldbacks": "thermal_foldbacks",
    "average_startup_temperature": "avg_startup_temp",
    "started_charging_sessions": "charge_starts",
    "dispensed_energy": "energy_wh",
    "total_uptime": "uptime_s",
    "charging_time": "charging_time_s",
}


def _coerce(raw: Any, field_type: type):
    """Convert a JSON value to a reading field type.

    Booleans must be JSON booleans, integers must be integral numbers and
    floats any JSON number.

    Raises:
        TypeError: If the JSON type does not match
        ValueError: If an integer field carries a fractional or non-finite number
    """
    if field_type is bool:
        if not isinstance(raw, bool):
            raise TypeError(f"expected a boolean, got {type(raw).__name__}")
        return raw

    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise TypeError(f"expected a number, got {type(raw).__name__}")

    if field_type is int:
        if isinstance(raw, float) and not raw.is_integer():
            raise ValueError("expected an integral number")
        return int(raw)

    return float(raw)


def _decode(cls, payload: Dict[str, Any], keys: Dict[str, str]):
    """Build a reading dataclass from a decoded JSON object.

    Missing keys keep the field default, unknown keys are ignored.

    Raises:
        WallboxResponseError: If a value cannot be coerced to the field type
    """
    values = {}
    for f in fields(cls):
        key = keys[f.name]
        if key not in payload or payload[key] is None:
            continue
        raw = payload[key]
        try:
            values[f.name] = _coerce(raw, f.type)
        except (TypeError, ValueError, OverflowError) as e:
            raise WallboxResponseError(f"Invalid value for {key!r}: {raw!r} ({e})") from e
    return cls(**values)


def parse_vitals(payload: Dict[str, Any]) -> VitalsReading:
    """Decode a /api/1/vitals JSON object."""
    return _decode(VitalsReading, payload, VITALS_KEYS)


def parse_lifetime_stats(payload: Dict[str, Any]) -> LifetimeStatsReading:
    """Decode a /api/1/lifetime JSON object."""
    return _decode(LifetimeStatsReading, payload, LIFETIME_KEYS)


class WallboxClient:
    """Client for the Tesla Wall Connector local HTTP API.

    Every fetch is a single attempt, bounded only by the client timeout.
    Each fetch opens its own requests.Session, so one client can be shared
    by concurrent request threads.

    Attributes:
        address: Network address (IP or hostname, optionally with port) of the wallbox
        timeout: Per-request timeout in seconds
    """

    VITALS_PATH = "/api/1/vitals"
    LIFETIME_PATH = "/api/1/lifetime"

    DEFAULT_TIMEOUT = 5.0  # seconds

    def __init__(self, address: str, timeout: Optional[float] = None):
        """Initialize the client.

        Args:
            address: Network address of the wallbox
            timeout: Request timeout in seconds (default: DEFAULT_TIMEOUT)
        """
        self.address = address
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self.base_url = f"http://{address}"

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({"Accept": "application/json"})
        return session

    def _get_json(self, path: str) -> Dict[str, Any]:
        """GET a path on the wallbox and return the decoded JSON object.

        Raises:
            WallboxConnectionError: On transport failure or non-2xx status
            WallboxResponseError: If the body is not a JSON object
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"Fetching {url}")

        try:
            with self._new_session() as session:
                response = session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise WallboxConnectionError(f"Request to {url} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise WallboxResponseError(f"Invalid JSON from {url}: {e}") from e

        if not isinstance(payload, dict):
            raise WallboxResponseError(f"Unexpected payload type from {url}: {type(payload).__name__}")

        return payload

    def fetch_vitals(self) -> VitalsReading:
        """Fetch the current vitals.

        Returns:
            VitalsReading decoded from the device

        Raises:
            WallboxError: If the fetch or decode fails
        """
        return parse_vitals(self._get_json(self.VITALS_PATH))

    def fetch_lifetime_stats(self) -> LifetimeStatsReading:
        """Fetch the lifetime statistics.

        Returns:
            LifetimeStatsReading decoded from the device

        Raises:
            WallboxError: If the fetch or decode fails
        """
        return parse_lifetime_stats(self._get_json(self.LIFETIME_PATH))


def fetch_vitals(address: str) -> VitalsReading:
    """Fetch vitals from the wallbox at ``address`` with a one-off client."""
    return WallboxClient(address).fetch_vitals()


def fetch_lifetime_stats(address: str) -> LifetimeStatsReading:
    """Fetch lifetime statistics from the wallbox at ``address`` with a one-off client."""
    return WallboxClient(address).fetch_lifetime_stats()


if __name__ == "__main__":
    # Test block: decode sample payloads and fake HTTP responses
    import sys
    from unittest import mock

    SAMPLE_VITALS = {
        "contactor_closed": True,
        "vehicle_connected": True,
        "session_s": 3723,
        "grid_v": 229.8,
        "grid_hz": 49.973,
        "vehicle_current_a": 15.9,
        "currentA_a": 15.8,
        "currentB_a": 15.9,
        "currentC_a": 15.7,
        "currentN_a": 0.2,
        "voltageA_v": 231.2,
        "voltageB_v": 230.4,
        "voltageC_v": 229.1,
        "relay_coil_v": 11.9,
        "pcba_temp_c": 31.4,
        "handle_temp_c": 22.6,
        "mcu_temp_c": 38.2,
        "uptime_s": 86400,
        "input_thermopile_uv": -176,
        "prox_v": 1.5,
        "pilot_high_v": 8.9,
        "pilot_low_v": -11.8,
        "session_energy_wh": 10934.7,
        "config_status": 5,
        "evse_state": 11,
        "current_alerts": [],
    }

    SAMPLE_LIFETIME = {
        "contactor_cycles": 412,
        "contactor_cycles_loaded": 3,
        "alert_count": 32,
        "thermal_foldbacks": 1,
        "avg_startup_temp": 26.4,
        "charge_starts": 405,
        "energy_wh": 4114006,
        "connector_cycles": 198,
        "uptime_s": 31379789,
        "charging_time_s": 1562028,
    }

    def fake_response(payload=None, status=200, body=None):
        """Build a requests.Response carrying a JSON payload."""
        import json
        response = requests.Response()
        response.status_code = status
        if body is None:
            body = json.dumps(payload)
        response._content = body.encode("utf-8")
        response.url = "http://wallbox.test/"
        return response

    def test_parse_vitals():
        """Test decoding a full vitals payload."""
        print("Testing parse_vitals...", end=" ")

        vitals = parse_vitals(SAMPLE_VITALS)
        assert vitals.contactor_closed is True
        assert vitals.vehicle_connected is True
        assert vitals.session_duration == 3723
        assert vitals.session_energy == 10934.7
        assert vitals.phase_b_current == 15.9
        assert vitals.neutral_current == 0.2
        assert vitals.pilot_low_voltage == -11.8
        assert vitals.uptime == 86400
        assert vitals.evse_state == 11

        print("OK")

    def test_parse_lifetime_stats():
        """Test decoding a full lifetime payload."""
        print("Testing parse_lifetime_stats...", end=" ")

        stats = parse_lifetime_stats(SAMPLE_LIFETIME)
        assert stats.contactor_cycles == 412
        assert stats.started_charging_sessions == 405
        assert stats.dispensed_energy == 4114006
        assert stats.average_startup_temperature == 26.4
        assert stats.charging_time == 1562028

        print("OK")

    def test_parse_partial_payload():
        """Test that missing keys keep their zero defaults."""
        print("Testing partial payload...", end=" ")

        vitals = parse_vitals({"grid_v": 230.0, "uptime_s": 12})
        assert vitals.grid_voltage == 230.0
        assert vitals.uptime == 12
        assert vitals.session_energy == 0.0
        assert vitals.contactor_closed is False

        assert parse_lifetime_stats({}) == LifetimeStatsReading()

        print("OK")

    def test_parse_invalid_value():
        """Test that uncoercible values raise WallboxResponseError."""
        print("Testing invalid value...", end=" ")

        try:
            parse_vitals({"grid_v": "not-a-number"})
            assert False, "Should have raised WallboxResponseError"
        except WallboxResponseError as e:
            assert "grid_v" in str(e)

        print("OK")

    def test_parse_strict_types():
        """Test that booleans and integers are not loosely coerced."""
        print("Testing strict field types...", end=" ")

        bad_payloads = [
            {"contactor_closed": "false"},
            {"vehicle_connected": 1},
            {"session_s": 12.9},
            {"session_s": "12"},
            {"grid_v": True},
        ]
        for payload in bad_payloads:
            try:
                parse_vitals(payload)
                assert False, f"Should have raised WallboxResponseError for {payload}"
            except WallboxResponseError:
                pass

        # Integral floats and ints for float fields are accepted
        vitals = parse_vitals({"session_s": 12.0, "grid_v": 230})
        assert vitals.session_duration == 12
        assert isinstance(vitals.session_duration, int)
        assert vitals.grid_voltage == 230.0

        print("OK")

    def test_parse_non_finite():
        """Test that Infinity and NaN in integer fields raise WallboxResponseError."""
        print("Testing non-finite values...", end=" ")

        for value in (float("inf"), float("-inf"), float("nan")):
            try:
                parse_vitals({"uptime_s": value})
                assert False, f"Should have raised WallboxResponseError for {value}"
            except WallboxResponseError as e:
                assert "uptime_s" in str(e)

        with mock.patch.object(requests.Session, "get",
                               return_value=fake_response(body='{"uptime_s": Infinity}')):
            try:
                WallboxClient("192.0.2.10").fetch_vitals()
                assert False, "Should have raised WallboxResponseError"
            except WallboxResponseError:
                pass

        print("OK")

    def test_client_fetch():
        """Test fetching both endpoints through a stubbed session."""
        print("Testing WallboxClient fetch...", end=" ")

        client = WallboxClient("192.0.2.10", timeout=2.0)

        def fake_get(url, timeout=None):
            assert timeout == 2.0
            if url == "http://192.0.2.10/api/1/vitals":
                return fake_response(SAMPLE_VITALS)
            if url == "http://192.0.2.10/api/1/lifetime":
                return fake_response(SAMPLE_LIFETIME)
            raise AssertionError(f"Unexpected URL {url}")

        with mock.patch.object(requests.Session, "get", side_effect=fake_get), \
                mock.patch.object(requests.Session, "close") as close:
            vitals = client.fetch_vitals()
            stats = client.fetch_lifetime_stats()

            # One session per fetch, closed afterwards
            assert close.call_count == 2

        assert vitals.session_energy == 10934.7
        assert stats.dispensed_energy == 4114006

        print("OK")

    def test_module_fetch_functions():
        """Test the one-off fetch_vitals/fetch_lifetime_stats helpers."""
        print("Testing module-level fetch functions...", end=" ")

        urls = []

        def fake_get(url, timeout=None):
            urls.append(url)
            assert timeout == WallboxClient.DEFAULT_TIMEOUT
            if url.endswith("/api/1/vitals"):
                return fake_response(SAMPLE_VITALS)
            return fake_response(SAMPLE_LIFETIME)

        with mock.patch.object(requests.Session, "get", side_effect=fake_get), \
                mock.patch.object(requests.Session, "close") as close:
            vitals = fetch_vitals("192.0.2.10")
            stats = fetch_lifetime_stats("192.0.2.10:8080")
            assert close.call_count == 2

        assert urls == ["http://192.0.2.10/api/1/vitals", "http://192.0.2.10:8080/api/1/lifetime"]
        assert vitals.evse_state == 11
        assert stats.contactor_cycles == 412

        with mock.patch.object(requests.Session, "get",
                               side_effect=requests.Timeout("timed out")), \
                mock.patch.object(requests.Session, "close") as close:
            try:
                fetch_vitals("192.0.2.10")
                assert False, "Should have raised WallboxConnectionError"
            except WallboxConnectionError:
                pass
            assert close.call_count == 1

        print("OK")

    def test_client_errors():
        """Test that transport and decode failures map to WallboxError subclasses."""
        print("Testing WallboxClient errors...", end=" ")

        client = WallboxClient("192.0.2.10")

        with mock.patch.object(requests.Session, "get",
                               side_effect=requests.ConnectionError("unreachable")):
            try:
                client.fetch_vitals()
                assert False, "Should have raised WallboxConnectionError"
            except WallboxConnectionError as e:
                assert "unreachable" in str(e)

        with mock.patch.object(requests.Session, "get", return_value=fake_response({}, status=500)):
            try:
                client.fetch_lifetime_stats()
                assert False, "Should have raised WallboxConnectionError"
            except WallboxConnectionError:
                pass

        with mock.patch.object(requests.Session, "get", return_value=fake_response(body="<html>")):
            try:
                client.fetch_vitals()
                assert False, "Should have raised WallboxResponseError"
            except WallboxResponseError:
                pass

        with mock.patch.object(requests.Session, "get", return_value=fake_response([1, 2, 3])):
            try:
                client.fetch_vitals()
                assert False, "Should have raised WallboxResponseError"
            except WallboxResponseError as e:
                assert "list" in str(e)

        print("OK")

    # Run all tests
    print("=" * 60)
    print("Wallbox Client Unit Tests")
    print("=" * 60)

    tests = [
        test_parse_vitals,
        test_parse_lifetime_stats,
        test_parse_partial_payload,
        test_parse_invalid_value,
        test_parse_strict_types,
        test_parse_non_finite,
        test_client_fetch,
        test_module_fetch_functions,
        test_client_errors,
    ]

    failed = 0
    for test in tests:
        try:
            test()
        except Exception as e:
            print(f"FAILED: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print("=" * 60)
    if failed:
        print(f"FAILED: {failed} test(s)")
        sys.exit(1)
    else:
        print("All tests passed!")
        sys.exit(0)
