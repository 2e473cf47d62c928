"""
Data models for dstack-sysbox-installer.

This module contains the host state snapshot, installation state, and the
outcome and error types shared by every service.
"""

from .host_state import HostState, MountEntry, OverlayLayer
from .installation_state import InstallationState, PipelineProgress
from .outcome import Outcome, InstallerError

__all__ = [
    "HostState",
    "MountEntry",
    "OverlayLayer",
    "InstallationState",
    "PipelineProgress",
    "Outcome",
    "InstallerError",
]
