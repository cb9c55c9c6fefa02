"""Tesla Wallbox Exporter package.

A small exporter that polls a Tesla Wall Connector over its local HTTP API
and re-exposes vitals and lifetime statistics in the Prometheus text format.
"""

__version__ = "0.1.0"
