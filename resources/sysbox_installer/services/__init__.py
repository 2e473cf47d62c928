"""
Service modules for dstack-sysbox-installer.

This module provides the host gateway and the services that each own one
pipeline step: detection, binaries, overlay, runtime configuration, units,
startup and status reporting.
"""

from .host_gateway import HostGateway, create_gateway
from .installation_service import InstallationService

__all__ = ["HostGateway", "create_gateway", "InstallationService"]
