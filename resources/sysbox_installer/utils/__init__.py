"""
Utility modules for dstack-sysbox-installer.

This module provides logging setup and value validation.
"""

from .logger import get_logger
from .validators import Validator

__all__ = ["get_logger", "Validator"]
