"""Prometheus exporter for the Starlink user terminal ("Dishy")."""

__version__ = "0.3.0"
