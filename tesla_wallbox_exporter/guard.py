"""Stale-value guard module.

When the wallbox is briefly unreachable its readings come back zero-valued,
which makes energy graphs drop to zero and jump back. The guard carries the
last observed session energy and dispensed energy across requests and
substitutes them for exact zero readings.

A genuine zero (for example a session that has not delivered any energy
yet) cannot be told apart from a failed fetch, so it is replaced by the
carried value as well.
"""

import logging
import threading
from dataclasses import replace
from typing import Tuple

try:
    from tesla_wallbox_exporter.wallbox_client import VitalsReading, LifetimeStatsReading
except ImportError:
    from wallbox_client import VitalsReading, LifetimeStatsReading

# Configure module logger
logger = logging.getLogger(__name__)


class StaleValueGuard:
    """Carries energy meters across zero readings.

    The carried pair is shared by all concurrent requests; every
    read-modify-write of it happens under a lock.

    Attributes:
        enabled: Whether substitution is active. A disabled guard passes
            readings through and never writes its carried state.
    """

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._last_session_energy = 0.0
        self._last_dispensed_energy = 0

    @property
    def last_session_energy(self) -> float:
        with self._lock:
            return self._last_session_energy

    @property
    def last_dispensed_energy(self) -> int:
        with self._lock:
            return self._last_dispensed_energy

    def apply(
        self,
        vitals: VitalsReading,
        stats: LifetimeStatsReading
    ) -> Tuple[VitalsReading, LifetimeStatsReading]:
        """Substitute carried values for zero energy readings.

        Args:
            vitals: Freshly fetched vitals (zero-valued if the fetch failed)
            stats: Freshly fetched lifetime stats (zero-valued if the fetch failed)

        Returns:
            Tuple of (vitals, stats), patched when the guard is enabled
        """
        if not self.enabled:
            return vitals, stats

        with self._lock:
            if vitals.session_energy == 0:
                if self._last_session_energy:
                    logger.debug(f"Session energy is zero, reusing {self._last_session_energy}")
                vitals = replace(vitals, session_energy=self._last_session_energy)

            if stats.dispensed_energy == 0:
                if self._last_dispensed_energy:
                    logger.debug(f"Dispensed energy is zero, reusing {self._last_dispensed_energy}")
                stats = replace(stats, dispensed_energy=self._last_dispensed_energy)

            self._last_session_energy = vitals.session_energy
            self._last_dispensed_energy = stats.dispensed_energy

        return vitals, stats


if __name__ == "__main__":
    # Test block: verify substitution and carried state
    import sys

    def test_guard_disabled():
        """Test that a disabled guard passes readings through untouched."""
        print("Testing StaleValueGuard disabled...", end=" ")

        guard = StaleValueGuard(enabled=False)
        vitals = VitalsReading(session_energy=12.5)
        stats = LifetimeStatsReading(dispensed_energy=4000)

        out_vitals, out_stats = guard.apply(vitals, stats)
        assert out_vitals is vitals
        assert out_stats is stats

        # Carried state is never written while disabled
        assert guard.last_session_energy == 0.0
        assert guard.last_dispensed_energy == 0

        out_vitals, out_stats = guard.apply(VitalsReading(), LifetimeStatsReading())
        assert out_vitals.session_energy == 0.0
        assert out_stats.dispensed_energy == 0

        print("OK")

    def test_guard_nonzero_updates_state():
        """Test that nonzero readings pass through and become the carried values."""
        print("Testing StaleValueGuard nonzero readings...", end=" ")

        guard = StaleValueGuard(enabled=True)
        out_vitals, out_stats = guard.apply(
            VitalsReading(session_energy=12.5, grid_voltage=230.0),
            LifetimeStatsReading(dispensed_energy=4000, contactor_cycles=7)
        )

        assert out_vitals.session_energy == 12.5
        assert out_vitals.grid_voltage == 230.0
        assert out_stats.dispensed_energy == 4000
        assert out_stats.contactor_cycles == 7
        assert guard.last_session_energy == 12.5
        assert guard.last_dispensed_energy == 4000

        print("OK")

    def test_guard_zero_reuses_carried():
        """Test that zero readings are replaced by the carried values."""
        print("Testing StaleValueGuard zero readings...", end=" ")

        guard = StaleValueGuard(enabled=True)
        guard.apply(VitalsReading(session_energy=12.5), LifetimeStatsReading(dispensed_energy=4000))

        out_vitals, out_stats = guard.apply(VitalsReading(), LifetimeStatsReading())
        assert out_vitals.session_energy == 12.5
        assert out_stats.dispensed_energy == 4000

        # Other fields are left alone
        assert out_vitals.grid_voltage == 0.0
        assert out_stats.contactor_cycles == 0

        # Carried values survive repeated failures
        out_vitals, out_stats = guard.apply(VitalsReading(), LifetimeStatsReading())
        assert out_vitals.session_energy == 12.5
        assert out_stats.dispensed_energy == 4000

        print("OK")

    def test_guard_zero_without_history():
        """Test that zero stays zero when nothing was ever carried."""
        print("Testing StaleValueGuard zero without history...", end=" ")

        guard = StaleValueGuard(enabled=True)
        out_vitals, out_stats = guard.apply(VitalsReading(), LifetimeStatsReading())
        assert out_vitals.session_energy == 0.0
        assert out_stats.dispensed_energy == 0
        assert guard.last_session_energy == 0.0

        print("OK")

    def test_guard_fields_independent():
        """Test that each energy field is substituted on its own."""
        print("Testing StaleValueGuard independent fields...", end=" ")

        guard = StaleValueGuard(enabled=True)
        guard.apply(VitalsReading(session_energy=5.0), LifetimeStatsReading(dispensed_energy=100))

        out_vitals, out_stats = guard.apply(VitalsReading(session_energy=7.25), LifetimeStatsReading())
        assert out_vitals.session_energy == 7.25
        assert out_stats.dispensed_energy == 100
        assert guard.last_session_energy == 7.25

        out_vitals, out_stats = guard.apply(VitalsReading(), LifetimeStatsReading(dispensed_energy=150))
        assert out_vitals.session_energy == 7.25
        assert out_stats.dispensed_energy == 150
        assert guard.last_dispensed_energy == 150

        print("OK")

    def test_guard_concurrent():
        """Test that concurrent applies leave a consistent carried state."""
        print("Testing StaleValueGuard concurrency...", end=" ")

        guard = StaleValueGuard(enabled=True)

        def worker(value):
            for _ in range(200):
                guard.apply(VitalsReading(session_energy=value), LifetimeStatsReading())

        threads = [threading.Thread(target=worker, args=(float(i),)) for i in range(1, 9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert guard.last_session_energy in [float(i) for i in range(1, 9)]
        assert guard.last_dispensed_energy == 0

        print("OK")

    # Run all tests
    print("=" * 60)
    print("Stale-Value Guard Unit Tests")
    print("=" * 60)

    tests = [
        test_guard_disabled,
        test_guard_nonzero_updates_state,
        test_guard_zero_reuses_carried,
        test_guard_zero_without_history,
        test_guard_fields_independent,
        test_guard_concurrent,
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
