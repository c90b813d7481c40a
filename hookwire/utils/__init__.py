"""Utility modules for Hookwire."""

from hookwire.utils.logging import delivery_context, get_logger, setup_logging

__all__ = ["delivery_context", "get_logger", "setup_logging"]
