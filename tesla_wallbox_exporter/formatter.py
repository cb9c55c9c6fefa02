"""Prometheus text exposition formatter module.

This module handles:
- Rendering VitalsReading and LifetimeStatsReading into metric blocks
- Fixed metric names, kinds and number formats per field

Output format (one entry per field, entries separated by a blank line):

    # TYPE session_energy gauge
    session_energy 10934.700

Metric names and number formats are a stable schema consumed by scrapers.
"""

from typing import List, Tuple

try:
    from tesla_wallbox_exporter.wallbox_client import VitalsReading, LifetimeStatsReading
except ImportError:
    from wallbox_client import VitalsReading, LifetimeStatsReading


# (metric name, metric kind, reading attribute, value format)
# Value format is a format spec, or "bool" for 0/1 rendering.
MetricSpec = Tuple[str, str, str, str]

VITALS_METRICS: List[MetricSpec] = [
    ("contactor_closed", "gauge", "contactor_closed", "bool"),
    ("vehicle_connected", "gauge", "vehicle_connected", "bool"),
    ("session_duration", "gauge", "session_duration", "d"),
    ("session_energy", "gauge", "session_energy", ".3f"),
    ("grid_voltage", "gauge", "grid_voltage", ".3f"),
    ("grid_frequency", "gauge", "grid_frequency", ".3f"),
    ("vehicle_current", "gauge", "vehicle_current", ".3f"),
    ("phase_a_current", "gauge", "phase_a_current", ".3f"),
    ("phase_b_current", "gauge", "phase_b_current", ".3f"),
    ("phase_c_current", "gauge", "phase_c_current", ".3f"),
    ("neutral_current", "gauge", "neutral_current", ".3f"),
    ("phase_a_voltage", "gauge", "phase_a_voltage", ".3f"),
    ("phase_b_voltage", "gauge", "phase_b_voltage", ".3f"),
    ("phase_c_voltage", "gauge", "phase_c_voltage", ".3f"),
    ("relay_coil_voltage", "gauge", "relay_coil_voltage", ".3f"),
    ("pcb_temperature", "gauge", "pcb_temperature", ".1f"),
    ("handle_temperature", "gauge", "handle_temperature", ".1f"),
    ("mcu_temperature", "gauge", "mcu_temperature", ".3f"),
    ("uptime", "gauge", "uptime", "d"),
    ("proximity_voltage", "gauge", "proximity_voltage", ".1f"),
    ("pilot_high_voltage", "gauge", "pilot_high_voltage", ".1f"),
    ("pilot_low_voltage", "gauge", "pilot_low_voltage", ".1f"),
    ("config_status", "gauge", "config_status", "d"),
    ("evse_state", "gauge", "evse_state", "d"),
]

LIFETIME_METRICS: List[MetricSpec] = [
    ("contactor_cycles", "counter", "contactor_cycles", "d"),
    ("contactor_cycles_loaded", "counter", "contactor_cycles_loaded", "d"),
    ("connector_cycles", "counter", "connector_cycles", "d"),
    ("thermal_foldbacks", "counter", "thermal_foldbacks", "d"),
    ("average_startup_temperature", "gauge", "average_startup_temperature", ".1f"),
    ("started_charging_sessions", "counter", "started_charging_sessions", "d"),
    ("dispensed_energy", "counter", "dispensed_energy", "d"),
    ("total_uptime", "counter", "total_uptime", "d"),
    ("total_charging_time", "counter", "charging_time", "d"),
]


def format_value(value, fmt: str) -> str:
    """Render a single metric value.

    Args:
        value: Field value from a reading
        fmt: Format spec ("d", ".1f", ".3f") or "bool"

    Returns:
        The value as exposition text
    """
    if fmt == "bool":
        return "1" if value else "0"
    if fmt == "d":
        return f"{int(value):d}"
    return f"{float(value):{fmt}}"


def _format_block(reading, metrics: List[MetricSpec]) -> str:
    entries = []
    for name, kind, attr, fmt in metrics:
        value = format_value(getattr(reading, attr), fmt)
        entries.append(f"# TYPE {name} {kind}\n{name} {value}")
    return "\n" + "\n\n".join(entries) + "\n"


def format_vitals(vitals: VitalsReading) -> str:
    """Render vitals as a block of gauge metrics."""
    return _format_block(vitals, VITALS_METRICS)


def format_lifetime_stats(stats: LifetimeStatsReading) -> str:
    """Render lifetime statistics as a block of counter and gauge metrics."""
    return _format_block(stats, LIFETIME_METRICS)


def format_query_response(vitals: VitalsReading, stats: LifetimeStatsReading) -> str:
    """Render the full /query body: the vitals block followed by the lifetime block."""
    return format_vitals(vitals) + "\n" + format_lifetime_stats(stats) + "\n"


if __name__ == "__main__":
    # Test block: verify exposition output
    import sys
    from prometheus_client.parser import text_string_to_metric_families

    def value_lines(text):
        """Map metric name -> rendered value text for every sample line."""
        result = {}
        for line in text.split("\n"):
            if line and not line.startswith("#"):
                name, value = line.split(" ")
                result[name] = value
        return result

    def test_zero_vitals():
        """Test the zero-valued vitals block."""
        print("Testing format_vitals zero reading...", end=" ")

        output = format_vitals(VitalsReading())
        assert "session_energy 0.000" in output.split("\n")
        assert "contactor_closed 0" in output.split("\n")
        assert "pcb_temperature 0.0" in output.split("\n")
        assert "uptime 0" in output.split("\n")

        print("OK")

    def test_vitals_formats():
        """Test per-field number formats."""
        print("Testing format_vitals number formats...", end=" ")

        vitals = VitalsReading(
            contactor_closed=True,
            vehicle_connected=False,
            session_duration=3723,
            session_energy=12.5,
            grid_voltage=229.8,
            grid_frequency=49.973,
            pcb_temperature=31.44,
            handle_temperature=22.66,
            mcu_temperature=38.2,
            uptime=86400,
            pilot_low_voltage=-11.8,
            config_status=5,
            evse_state=11,
        )
        values = value_lines(format_vitals(vitals))

        assert values["contactor_closed"] == "1"
        assert values["vehicle_connected"] == "0"
        assert values["session_duration"] == "3723"
        assert values["session_energy"] == "12.500"
        assert values["grid_voltage"] == "229.800"
        assert values["grid_frequency"] == "49.973"
        assert values["pcb_temperature"] == "31.4"
        assert values["handle_temperature"] == "22.7"
        assert values["mcu_temperature"] == "38.200"
        assert values["uptime"] == "86400"
        assert values["pilot_low_voltage"] == "-11.8"
        assert values["evse_state"] == "11"
        assert len(values) == len(VITALS_METRICS)

        print("OK")

    def test_lifetime_formats():
        """Test lifetime block names, kinds and formats."""
        print("Testing format_lifetime_stats...", end=" ")

        stats = LifetimeStatsReading(
            contactor_cycles=412,
            average_startup_temperature=26.44,
            dispensed_energy=4114006,
            charging_time=1562028,
        )
        output = format_lifetime_stats(stats)
        values = value_lines(output)

        assert values["contactor_cycles"] == "412"
        assert values["average_startup_temperature"] == "26.4"
        assert values["dispensed_energy"] == "4114006"
        assert values["total_charging_time"] == "1562028"
        assert "# TYPE dispensed_energy counter" in output
        assert "# TYPE average_startup_temperature gauge" in output

        print("OK")

    def test_type_precedes_value():
        """Test that every value line directly follows its TYPE comment."""
        print("Testing TYPE comment ordering...", end=" ")

        output = format_query_response(VitalsReading(), LifetimeStatsReading())
        lines = [line for line in output.split("\n") if line]
        assert len(lines) == 2 * (len(VITALS_METRICS) + len(LIFETIME_METRICS))
        for type_line, value_line in zip(lines[::2], lines[1::2]):
            _, _, name, kind = type_line.split(" ")
            assert kind in ("gauge", "counter")
            assert value_line.startswith(name + " ")

        print("OK")

    def test_output_parses():
        """Test that the full body is valid Prometheus exposition text."""
        print("Testing exposition parsing...", end=" ")

        output = format_query_response(
            VitalsReading(session_energy=12.5, contactor_closed=True),
            LifetimeStatsReading(dispensed_energy=4000)
        )
        families = {f.name: f for f in text_string_to_metric_families(output)}

        assert families["session_energy"].type == "gauge"
        assert families["session_energy"].samples[0].value == 12.5
        assert families["contactor_closed"].samples[0].value == 1.0
        assert families["dispensed_energy"].type == "counter"
        assert families["dispensed_energy"].samples[0].value == 4000.0

        print("OK")

    def test_idempotent():
        """Test that formatting the same reading twice is byte-identical."""
        print("Testing formatter idempotence...", end=" ")

        vitals = VitalsReading(session_energy=1.2345, grid_voltage=230.1)
        stats = LifetimeStatsReading(dispensed_energy=99)
        assert format_query_response(vitals, stats) == format_query_response(vitals, stats)

        print("OK")

    # Run all tests
    print("=" * 60)
    print("Formatter Unit Tests")
    print("=" * 60)

    tests = [
        test_zero_vitals,
        test_vitals_formats,
        test_lifetime_formats,
        test_type_precedes_value,
        test_output_parses,
        test_idempotent,
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
