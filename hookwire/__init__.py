"""Hookwire - multi-provider webhook ingestion, verification, and dispatch."""

__version__ = "0.1.0"
