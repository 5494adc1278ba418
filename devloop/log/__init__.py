"""
Logging module for devloop.
This module provides the console and supervisor-file logging setup.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
