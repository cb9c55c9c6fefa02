"""Main entry point for Tesla Wallbox Exporter.

This module handles:
- Loading configuration from environment variables
- Wiring the wallbox client, stale-value guard and exporter together
- Serving /query and /metrics from a threading WSGI server
"""

import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from socketserver import ThreadingMixIn
from typing import Mapping, Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from dotenv import load_dotenv

try:
    from tesla_wallbox_exporter.wallbox_client import WallboxClient
    from tesla_wallbox_exporter.guard import StaleValueGuard
    from tesla_wallbox_exporter.exporter import WallboxExporter, make_app
except ImportError:
    from wallbox_client import WallboxClient
    from guard import StaleValueGuard
    from exporter import WallboxExporter, make_app

# Configure module logger
logger = logging.getLogger(__name__)

# Environment variable containing the wallbox IP address
ENV_TESLA_WALLBOX_IP = "TESLA_WALLBOX_IP"

# Enable or disable debug output
ENV_DEBUG = "DEBUG"

# Keep power meter stats when wallbox becomes unreachable
ENV_KEEP_POWER_METER = "KEEP_POWER_METER"

ENV_EXPORTER_PORT = "EXPORTER_PORT"
ENV_WALLBOX_TIMEOUT = "WALLBOX_TIMEOUT"

DEFAULT_PORT = 8420
DEFAULT_TIMEOUT = 5.0


@dataclass
class ExporterConfig:
    """Runtime configuration read from the environment.

    Attributes:
        wallbox_ip: Network address of the wallbox
        debug: Whether debug logging is enabled
        keep_power_meter: Whether the stale-value guard is enabled
        port: Port to serve /query on
        timeout: Wallbox request timeout in seconds
    """
    wallbox_ip: str
    debug: bool = False
    keep_power_meter: bool = False
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


def load_config(environ: Optional[Mapping[str, str]] = None) -> Optional[ExporterConfig]:
    """Load configuration from environment variables.

    Required:
        TESLA_WALLBOX_IP: Network address of the wallbox

    Optional:
        DEBUG: "true" enables debug logging
        KEEP_POWER_METER: "true" keeps the last energy meters when the wallbox is unreachable
        EXPORTER_PORT: HTTP port (default: 8420)
        WALLBOX_TIMEOUT: Wallbox request timeout in seconds (default: 5)

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        ExporterConfig if all required config loaded, None otherwise
    """
    if environ is None:
        environ = os.environ

    wallbox_ip = environ.get(ENV_TESLA_WALLBOX_IP, "")
    if not wallbox_ip:
        logger.error(f"Env variable {ENV_TESLA_WALLBOX_IP} not found")
        return None

    config = ExporterConfig(
        wallbox_ip=wallbox_ip,
        debug=environ.get(ENV_DEBUG) == "true",
        keep_power_meter=environ.get(ENV_KEEP_POWER_METER) == "true",
    )

    try:
        config.port = int(environ.get(ENV_EXPORTER_PORT, str(DEFAULT_PORT)))
    except ValueError:
        logger.warning(f"Invalid {ENV_EXPORTER_PORT}, using default: {DEFAULT_PORT}")

    try:
        config.timeout = float(environ.get(ENV_WALLBOX_TIMEOUT, str(DEFAULT_TIMEOUT)))
    except ValueError:
        logger.warning(f"Invalid {ENV_WALLBOX_TIMEOUT}, using default: {DEFAULT_TIMEOUT}")

    return config


def main() -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load and validate configuration
    3. Build client, guard and exporter
    4. Serve /query and /metrics (blocks)

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logger.info("Starting tesla_wallbox_exporter")

    load_dotenv()

    config = load_config()
    if config is None:
        logger.error("Configuration failed, exiting")
        return 1

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if config.keep_power_meter:
        logger.info("Keeping last power meter stats when wallbox becomes unreachable")

    logger.debug(f"Looking for a Tesla wallbox under {config.wallbox_ip}")

    client = WallboxClient(config.wallbox_ip, timeout=config.timeout)
    exporter = WallboxExporter(client, StaleValueGuard(enabled=config.keep_power_meter))
    app = make_app(exporter)

    try:
        httpd = make_server(
            "",
            config.port,
            app,
            server_class=ThreadingWSGIServer,
            handler_class=QuietHandler,
        )
    except OSError as e:
        logger.error(f"Failed to start HTTP server on port {config.port}: {e}")
        return 1

    def _sig(*_):
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)

    logger.info(f"Metrics available at http://localhost:{config.port}/query")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        httpd.server_close()

    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    if "--self-test" not in sys.argv:
        run()

    # Test block: verify configuration loading and startup failures
    from unittest import mock

    def test_load_config_minimal():
        """Test that only the wallbox address is required."""
        print("Testing load_config minimal...", end=" ")

        config = load_config({"TESLA_WALLBOX_IP": "192.0.2.10"})
        assert config is not None
        assert config.wallbox_ip == "192.0.2.10"
        assert config.debug is False
        assert config.keep_power_meter is False
        assert config.port == 8420
        assert config.timeout == 5.0

        print("OK")

    def test_load_config_flags():
        """Test that flags are enabled only by the exact value "true"."""
        print("Testing load_config flags...", end=" ")

        config = load_config({
            "TESLA_WALLBOX_IP": "wallbox.local",
            "DEBUG": "true",
            "KEEP_POWER_METER": "true",
        })
        assert config.debug is True
        assert config.keep_power_meter is True

        config = load_config({
            "TESLA_WALLBOX_IP": "wallbox.local",
            "DEBUG": "1",
            "KEEP_POWER_METER": "True",
        })
        assert config.debug is False
        assert config.keep_power_meter is False

        print("OK")

    def test_load_config_missing_address():
        """Test that a missing or empty address fails without exiting."""
        print("Testing load_config missing address...", end=" ")

        assert load_config({}) is None
        assert load_config({"TESLA_WALLBOX_IP": "", "DEBUG": "true"}) is None

        print("OK")

    def test_load_config_invalid_numbers():
        """Test that invalid optional numbers fall back to defaults."""
        print("Testing load_config invalid numbers...", end=" ")

        config = load_config({
            "TESLA_WALLBOX_IP": "192.0.2.10",
            "EXPORTER_PORT": "eighty",
            "WALLBOX_TIMEOUT": "soon",
        })
        assert config.port == 8420
        assert config.timeout == 5.0

        config = load_config({
            "TESLA_WALLBOX_IP": "192.0.2.10",
            "EXPORTER_PORT": "9100",
            "WALLBOX_TIMEOUT": "2.5",
        })
        assert config.port == 9100
        assert config.timeout == 2.5

        print("OK")

    def test_main_missing_address():
        """Test that main exits with 1 before opening a listener."""
        print("Testing main without address...", end=" ")

        with mock.patch.dict(os.environ, {}, clear=True), \
                mock.patch(f"{__name__}.load_dotenv"), \
                mock.patch(f"{__name__}.make_server") as server:
            assert main() == 1
            server.assert_not_called()

        print("OK")

    def test_main_bind_failure():
        """Test that a listener error exits with 1."""
        print("Testing main with bind failure...", end=" ")

        with mock.patch.dict(os.environ, {"TESLA_WALLBOX_IP": "192.0.2.10"}, clear=True), \
                mock.patch(f"{__name__}.load_dotenv"), \
                mock.patch(f"{__name__}.WallboxExporter"), \
                mock.patch(f"{__name__}.make_server", side_effect=OSError("Address already in use")):
            assert main() == 1

        print("OK")

    def run_main_until_interrupt(env):
        """Run main() against a server that stops at once; return (exit code, exporter mock, server)."""
        server = mock.Mock()
        server.serve_forever.side_effect = KeyboardInterrupt

        with mock.patch.dict(os.environ, env, clear=True), \
                mock.patch(f"{__name__}.load_dotenv"), \
                mock.patch("signal.signal"), \
                mock.patch(f"{__name__}.WallboxExporter") as exporter_cls, \
                mock.patch(f"{__name__}.make_server", return_value=server) as make:
            code = main()
            assert make.call_args[0][1] == int(env.get("EXPORTER_PORT", DEFAULT_PORT))

        return code, exporter_cls, server

    def test_main_flags():
        """Test that DEBUG and KEEP_POWER_METER reach the logger and the guard."""
        print("Testing main flag wiring...", end=" ")

        root = logging.getLogger()
        previous_level = root.level
        try:
            root.setLevel(logging.INFO)
            code, exporter_cls, server = run_main_until_interrupt({
                "TESLA_WALLBOX_IP": "192.0.2.10",
                "DEBUG": "true",
                "KEEP_POWER_METER": "true",
                "WALLBOX_TIMEOUT": "3",
            })
            assert code == 0
            assert root.level == logging.DEBUG
            server.server_close.assert_called_once()

            client, guard = exporter_cls.call_args[0]
            assert client.address == "192.0.2.10"
            assert client.timeout == 3.0
            assert isinstance(guard, StaleValueGuard)
            assert guard.enabled is True
        finally:
            root.setLevel(previous_level)

        print("OK")

    def test_main_flags_off():
        """Test that absent flags keep INFO logging and a disabled guard."""
        print("Testing main with flags off...", end=" ")

        root = logging.getLogger()
        previous_level = root.level
        try:
            root.setLevel(logging.INFO)
            code, exporter_cls, _ = run_main_until_interrupt({
                "TESLA_WALLBOX_IP": "192.0.2.10",
                "EXPORTER_PORT": "9100",
            })
            assert code == 0
            assert root.level == logging.INFO

            _, guard = exporter_cls.call_args[0]
            assert guard.enabled is False
        finally:
            root.setLevel(previous_level)

        print("OK")

    # Run all tests
    print("=" * 60)
    print("Main Unit Tests")
    print("=" * 60)

    tests = [
        test_load_config_minimal,
        test_load_config_flags,
        test_load_config_missing_address,
        test_load_config_invalid_numbers,
        test_main_missing_address,
        test_main_bind_failure,
        test_main_flags,
        test_main_flags_off,
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
