"""
Installation state detection for dstack-sysbox-installer.

Detection is recomputed on every invocation. If the daemons are already
present in any form, the orchestrator reports their status and exits without
touching the host; re-running the installer is a no-op, not an upgrade.
"""

import logging
from typing import Callable, List, Optional

from .host_gateway import HostGateway
from ..models.installation_state import InstallationState


class DetectionService:
    """Determines whether the Sysbox units are installed and running."""

    def __init__(self, gateway: HostGateway, units: List[str],
                 unit_dirs: List[str], manager_unit: str):
        """
        Initialize detection service.

        Args:
            gateway: Host gateway for probes
            units: Unit names that indicate an installation
            unit_dirs: Runtime and persistent unit directories to search
            manager_unit: Unit whose liveness means the installation is running
        """
        self.gateway = gateway
        self.units = list(units)
        self.unit_dirs = list(unit_dirs)
        self.manager_unit = manager_unit
        self.output_callback: Optional[Callable[[str], None]] = None
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def _in_unit_catalog(self) -> bool:
        result = self.gateway.run(["systemctl", "list-unit-files", "--no-legend", "--no-pager"])
        if not result.success:
            return False
        listed = {line.split()[0] for line in result.stdout.splitlines() if line.split()}
        return any(unit in listed for unit in self.units)

    def _unit_file_present(self) -> bool:
        for unit_dir in self.unit_dirs:
            for unit in self.units:
                if self.gateway.exists(f"{unit_dir.rstrip('/')}/{unit}"):
                    self._logger.debug(f"Found unit file {unit} in {unit_dir}")
                    return True
        return False

    def detect(self) -> InstallationState:
        """
        Detect the installation state.

        Returns:
            ABSENT when neither the unit catalog nor any unit directory knows the
            units, INSTALLED_RUNNING when the manager unit is active, otherwise
            INSTALLED_STOPPED
        """
        self._logger.info("Checking existing installation...")

        if not (self._in_unit_catalog() or self._unit_file_present()):
            return InstallationState.ABSENT

        if self.gateway.probe(["systemctl", "is-active", "--quiet", self.manager_unit]):
            return InstallationState.INSTALLED_RUNNING

        return InstallationState.INSTALLED_STOPPED

    def report_existing(self, state: InstallationState) -> None:
        """Print current status and manual removal guidance."""
        self._log_output("Sysbox services already installed - skipping installation")

        for unit in self.units:
            result = self.gateway.run(["systemctl", "status", unit, "--no-pager"])
            for line in result.stdout.splitlines()[:5]:
                self._log_output(f"  {line}")

        names = " ".join(unit.replace(".service", "") for unit in self.units)
        if state == InstallationState.INSTALLED_RUNNING:
            self._log_output("Sysbox is installed and running")
        else:
            self._log_output("Sysbox is installed but not running. Start with:")
            self._log_output(f"  systemctl start {names}")

        self._log_output("To reinstall, first remove existing services:")
        self._log_output(f"  systemctl stop {names}")
        self._log_output(f"  systemctl disable {names}")
        self._log_output(f"  rm {self.unit_dirs[0].rstrip('/')}/sysbox-*.service")
        self._log_output("  systemctl daemon-reload")
        self._log_output("or run this installer with the 'remove' command")
