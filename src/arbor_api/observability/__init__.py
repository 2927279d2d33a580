"""Observability helpers for arbor API."""

from arbor_api.observability.logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
