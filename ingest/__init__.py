"""
Event ingest service.

Accepts events over HTTP, keeps them in memory and exposes health and
Prometheus metrics endpoints.
"""

__version__ = "0.1.0"
