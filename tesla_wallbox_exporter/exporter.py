"""Scrape request handler module.

This module handles:
- Fetching vitals and lifetime stats from the wallbox on every /query scrape
- Recovering from fetch failures with zero-valued readings
- Applying the stale-value guard and rendering the exposition body
- Exposing the exporter's own operational metrics on /metrics
"""

import logging
import time
from typing import Optional

from prometheus_client import Counter, Gauge, REGISTRY, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

try:
    from tesla_wallbox_exporter.wallbox_client import (
        WallboxClient, WallboxError, VitalsReading, LifetimeStatsReading
    )
    from tesla_wallbox_exporter.guard import StaleValueGuard
    from tesla_wallbox_exporter.formatter import format_query_response
except ImportError:
    from wallbox_client import WallboxClient, WallboxError, VitalsReading, LifetimeStatsReading
    from guard import StaleValueGuard
    from formatter import format_query_response

# Configure module logger
logger = logging.getLogger(__name__)

QUERY_PATH = "/query"
METRICS_PATH = "/metrics"


class WallboxExporter:
    """Answers scrapes with freshly fetched wallbox readings.

    Each call to query() is one best-effort fetch of both endpoints. Device
    errors are logged and never reach the scraper.

    Exposes the following operational metrics on its registry:
    - tesla_wallbox_exporter_queries_total: Number of /query scrapes answered
    - tesla_wallbox_exporter_fetch_errors_total: Failed fetches per endpoint
    - tesla_wallbox_exporter_query_duration_seconds: Duration of the last query
    - tesla_wallbox_exporter_last_query_timestamp: Unix timestamp of the last query

    Attributes:
        client: Wallbox client used for fetching
        guard: Stale-value guard applied to every reading pair
        registry: Registry holding the operational metrics
    """

    def __init__(
        self,
        client: WallboxClient,
        guard: Optional[StaleValueGuard] = None,
        registry: Optional[CollectorRegistry] = None
    ):
        """Initialize the exporter.

        Args:
            client: Object with fetch_vitals() and fetch_lifetime_stats()
            guard: Stale-value guard. If None, a disabled guard is used.
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.client = client
        self.guard = guard if guard is not None else StaleValueGuard(enabled=False)
        self.registry = registry if registry is not None else REGISTRY

        self._queries = Counter(
            'tesla_wallbox_exporter_queries',
            'Number of /query scrapes answered',
            registry=self.registry
        )

        self._fetch_errors = Counter(
            'tesla_wallbox_exporter_fetch_errors',
            'Number of failed wallbox fetches',
            ['endpoint'],
            registry=self.registry
        )

        self._query_duration = Gauge(
            'tesla_wallbox_exporter_query_duration_seconds',
            'Duration of the last /query scrape in seconds',
            registry=self.registry
        )

        self._last_query_timestamp = Gauge(
            'tesla_wallbox_exporter_last_query_timestamp',
            'Unix timestamp of the last /query scrape',
            registry=self.registry
        )

        # Pre-create both label values so they are exposed as 0
        self._fetch_errors.labels(endpoint="vitals")
        self._fetch_errors.labels(endpoint="lifetime")

    def _fetch_vitals(self) -> VitalsReading:
        try:
            return self.client.fetch_vitals()
        except WallboxError as e:
            logger.error(f"Vitals error: {e}")
            self._fetch_errors.labels(endpoint="vitals").inc()
            return VitalsReading()

    def _fetch_lifetime_stats(self) -> LifetimeStatsReading:
        try:
            return self.client.fetch_lifetime_stats()
        except WallboxError as e:
            logger.error(f"Stats error: {e}")
            self._fetch_errors.labels(endpoint="lifetime").inc()
            return LifetimeStatsReading()

    def query(self) -> str:
        """Fetch, guard and format one scrape.

        Returns:
            Exposition text with the vitals block followed by the lifetime block
        """
        start_time = time.time()

        vitals = self._fetch_vitals()
        stats = self._fetch_lifetime_stats()

        vitals, stats = self.guard.apply(vitals, stats)

        body = format_query_response(vitals, stats)

        logger.debug(f"Vitals: {vitals}")
        logger.debug(f"Stats: {stats}")

        self._queries.inc()
        self._query_duration.set(time.time() - start_time)
        self._last_query_timestamp.set(time.time())

        return body


def make_app(exporter: WallboxExporter):
    """Build the WSGI application serving /query and /metrics.

    Args:
        exporter: Exporter answering /query scrapes

    Returns:
        WSGI callable
    """
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == QUERY_PATH:
            output = exporter.query().encode("utf-8")
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path == METRICS_PATH:
            output = generate_latest(exporter.registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


if __name__ == "__main__":
    # Test block: drive the exporter with fake clients
    import sys
    from prometheus_client.parser import text_string_to_metric_families

    try:
        from tesla_wallbox_exporter.wallbox_client import WallboxConnectionError
    except ImportError:
        from wallbox_client import WallboxConnectionError

    class FakeClient:
        """Client returning queued results; exceptions in the queue are raised."""

        def __init__(self, vitals=None, stats=None):
            self.vitals = list(vitals or [])
            self.stats = list(stats or [])
            self.calls = []

        def _next(self, queue, name):
            self.calls.append(name)
            result = queue.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        def fetch_vitals(self):
            return self._next(self.vitals, "vitals")

        def fetch_lifetime_stats(self):
            return self._next(self.stats, "lifetime")

    def call_app(app, path):
        """Invoke a WSGI app and return (status, headers, body)."""
        captured = {}

        def start_response(status, headers):
            captured["status"] = status
            captured["headers"] = dict(headers)

        body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": "GET"}, start_response))
        return captured["status"], captured["headers"], body.decode("utf-8")

    def value_of(body, name):
        for line in body.split("\n"):
            if line.startswith(name + " "):
                return line.split(" ")[1]
        return None

    def test_query_guard_disabled():
        """Test that a zero reading is exposed as zero when the guard is off."""
        print("Testing query with guard disabled...", end=" ")

        client = FakeClient(
            vitals=[VitalsReading(session_energy=0.0)],
            stats=[LifetimeStatsReading(dispensed_energy=0)]
        )
        exporter = WallboxExporter(client, StaleValueGuard(enabled=False), registry=CollectorRegistry())

        body = exporter.query()
        assert "session_energy 0.000" in body.split("\n")
        assert "dispensed_energy 0" in body.split("\n")

        print("OK")

    def test_query_guard_carries_value():
        """Test that a failed fetch reuses the last session energy."""
        print("Testing query with guard enabled...", end=" ")

        client = FakeClient(
            vitals=[VitalsReading(session_energy=12.5), WallboxConnectionError("timeout")],
            stats=[LifetimeStatsReading(dispensed_energy=4000), WallboxConnectionError("timeout")]
        )
        guard = StaleValueGuard(enabled=True)
        exporter = WallboxExporter(client, guard, registry=CollectorRegistry())

        first = exporter.query()
        assert value_of(first, "session_energy") == "12.500"
        assert guard.last_session_energy == 12.5

        second = exporter.query()
        assert value_of(second, "session_energy") == "12.500"
        assert value_of(second, "dispensed_energy") == "4000"
        assert value_of(second, "grid_voltage") == "0.000"

        print("OK")

    def test_query_partial_failure():
        """Test that a vitals failure does not prevent the stats fetch."""
        print("Testing query with vitals failure...", end=" ")

        client = FakeClient(
            vitals=[WallboxConnectionError("unreachable")],
            stats=[LifetimeStatsReading(contactor_cycles=412, dispensed_energy=4114006)]
        )
        registry = CollectorRegistry()
        exporter = WallboxExporter(client, registry=registry)

        status, headers, body = call_app(make_app(exporter), "/query")
        assert status == "200 OK"
        assert headers["Content-Type"] == CONTENT_TYPE_LATEST
        assert client.calls == ["vitals", "lifetime"]
        assert value_of(body, "contactor_cycles") == "412"
        assert value_of(body, "dispensed_energy") == "4114006"
        assert value_of(body, "session_energy") == "0.000"
        assert value_of(body, "contactor_closed") == "0"

        assert registry.get_sample_value(
            'tesla_wallbox_exporter_fetch_errors_total', {'endpoint': 'vitals'}) == 1.0
        assert registry.get_sample_value(
            'tesla_wallbox_exporter_fetch_errors_total', {'endpoint': 'lifetime'}) == 0.0

        print("OK")

    def test_query_both_fail():
        """Test that a full outage still answers 200 with zero-valued blocks."""
        print("Testing query with both fetches failing...", end=" ")

        client = FakeClient(
            vitals=[WallboxConnectionError("down")],
            stats=[WallboxConnectionError("down")]
        )
        exporter = WallboxExporter(client, registry=CollectorRegistry())

        status, _, body = call_app(make_app(exporter), "/query")
        assert status == "200 OK"
        families = {f.name: f for f in text_string_to_metric_families(body)}
        assert families["session_energy"].samples[0].value == 0.0
        assert families["total_uptime"].samples[0].value == 0.0

        print("OK")

    def test_query_undecodable_payload():
        """Test that a non-finite integer from the device still answers 200."""
        print("Testing query with undecodable payload...", end=" ")

        import requests
        from unittest import mock

        response = requests.Response()
        response.status_code = 200
        response._content = b'{"session_s": Infinity, "energy_wh": 4000}'

        registry = CollectorRegistry()
        exporter = WallboxExporter(WallboxClient("192.0.2.10"), registry=registry)

        with mock.patch.object(requests.Session, "get", return_value=response):
            status, _, body = call_app(make_app(exporter), "/query")

        assert status == "200 OK"
        assert value_of(body, "session_duration") == "0"
        assert value_of(body, "dispensed_energy") == "4000"
        assert registry.get_sample_value(
            'tesla_wallbox_exporter_fetch_errors_total', {'endpoint': 'vitals'}) == 1.0

        print("OK")

    def test_boolean_rendering():
        """Test that a closed contactor renders as 1."""
        print("Testing boolean rendering...", end=" ")

        client = FakeClient(
            vitals=[VitalsReading(contactor_closed=True, vehicle_connected=True)],
            stats=[LifetimeStatsReading()]
        )
        exporter = WallboxExporter(client, registry=CollectorRegistry())

        body = exporter.query()
        assert "contactor_closed 1" in body.split("\n")
        assert "vehicle_connected 1" in body.split("\n")

        print("OK")

    def test_operational_metrics():
        """Test the /metrics endpoint and query counters."""
        print("Testing operational metrics...", end=" ")

        client = FakeClient(vitals=[VitalsReading()], stats=[LifetimeStatsReading()])
        registry = CollectorRegistry()
        exporter = WallboxExporter(client, registry=registry)
        app = make_app(exporter)

        call_app(app, "/query")

        status, _, body = call_app(app, "/metrics")
        assert status == "200 OK"
        assert "tesla_wallbox_exporter_queries_total 1.0" in body
        assert "tesla_wallbox_exporter_query_duration_seconds" in body
        assert "tesla_wallbox_exporter_last_query_timestamp" in body
        # /metrics never fetches from the wallbox
        assert client.calls == ["vitals", "lifetime"]

        print("OK")

    def test_unknown_path():
        """Test that unknown paths are 404 and do not fetch."""
        print("Testing unknown path...", end=" ")

        client = FakeClient()
        exporter = WallboxExporter(client, registry=CollectorRegistry())

        status, _, _ = call_app(make_app(exporter), "/")
        assert status == "404 Not Found"
        assert client.calls == []

        print("OK")

    # Run all tests
    print("=" * 60)
    print("Wallbox Exporter Unit Tests")
    print("=" * 60)

    tests = [
        test_query_guard_disabled,
        test_query_guard_carries_value,
        test_query_partial_failure,
        test_query_both_fail,
        test_query_undecodable_payload,
        test_boolean_rendering,
        test_operational_metrics,
        test_unknown_path,
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
