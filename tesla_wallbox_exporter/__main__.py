"""Allow running the exporter with ``python -m tesla_wallbox_exporter``."""

from tesla_wallbox_exporter.main import run

run()
