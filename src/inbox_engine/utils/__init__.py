"""Utility functions for the inbox engine."""

from .logging import configure_logging

__all__ = ["configure_logging"]
