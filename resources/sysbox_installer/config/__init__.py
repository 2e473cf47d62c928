"""
Configuration module for dstack-sysbox-installer.

This module handles installer settings, host layout defaults, and
configuration file management with validation.
"""

from .settings import AppConfig

__all__ = ["AppConfig"]
