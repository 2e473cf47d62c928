"""
Transient service unit provisioning for dstack-sysbox-installer.

Units are copied into the runtime-only unit directory (/run/systemd/system),
never the persistent one, which may be read-only on this host class. They are
not enabled and do not survive a reboot.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .host_gateway import HostGateway
from ..models.outcome import InstallerError, PreconditionError

UNIT_FILE_MODE = 0o644


class UnitService:
    """Installs and removes transient systemd units on the host."""

    def __init__(self, gateway: HostGateway):
        self.gateway = gateway
        self.output_callback: Optional[Callable[[str], None]] = None
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def reload_catalog(self) -> None:
        self.gateway.mutate(["systemctl", "daemon-reload"])

    def install_units(self, unit_files: Sequence[Path], runtime_unit_dir: str) -> List[str]:
        """
        Copy unit definitions into the runtime unit directory and reload.

        Each copy is verified by checking the file exists afterwards. If a
        copy cannot be verified, the units already placed are removed again.

        Args:
            unit_files: Unit files visible to the installer
            runtime_unit_dir: Runtime-only unit directory on the host

        Returns:
            Names of the installed units, in the given order

        Raises:
            PreconditionError: If a source file is missing or a copy is not
                present on the host afterwards
            HostCommandError: If a host write fails; units placed so far are
                removed again
        """
        self._log_output("Creating systemd services...")

        unit_files = [Path(p) for p in unit_files]
        missing = [str(p) for p in unit_files if not p.is_file()]
        if missing:
            raise PreconditionError(f"Unit files not found: {', '.join(missing)}")

        unit_dir = runtime_unit_dir.rstrip('/')
        self.gateway.make_dirs(unit_dir)

        installed: List[str] = []
        for unit_file in unit_files:
            host_path = f"{unit_dir}/{unit_file.name}"
            try:
                self.gateway.copy_in(unit_file, host_path, mode=UNIT_FILE_MODE)
                if not self.gateway.is_file(host_path):
                    raise PreconditionError(f"Failed to copy {unit_file.name} to {unit_dir}/")
            except InstallerError as e:
                self._logger.error(str(e))
                # a failed write may leave a truncated file behind
                self._rollback(installed + [unit_file.name], unit_dir)
                raise

            installed.append(unit_file.name)

        self._log_output(f"Service files copied to {unit_dir}/")
        self.reload_catalog()

        self._log_output("Systemd services created (transient until reboot)")
        self._log_output(f"Services: {', '.join(u.replace('.service', '') for u in installed)}")
        return installed

    def _rollback(self, installed: List[str], unit_dir: str) -> None:
        if not installed:
            return
        self._logger.warning(f"Removing partially installed units: {', '.join(installed)}")
        for unit in installed:
            self.gateway.remove(f"{unit_dir}/{unit}", best_effort=True)
        self.gateway.mutate(["systemctl", "daemon-reload"], best_effort=True)

    def remove_units(self, units: Sequence[str], runtime_unit_dir: str) -> List[str]:
        """
        Stop units and delete their transient definitions.

        Units are stopped in reverse start order. Stopping is best-effort since
        a unit may already be inactive.

        Returns:
            Names of the unit files that were removed
        """
        unit_dir = runtime_unit_dir.rstrip('/')
        removed = []

        for unit in reversed(list(units)):
            self.gateway.mutate(["systemctl", "stop", unit], best_effort=True)

        for unit in units:
            host_path = f"{unit_dir}/{unit}"
            if not self.gateway.exists(host_path):
                continue
            self.gateway.remove(host_path)
            removed.append(unit)
            self._log_output(f"Removed {host_path}")

        self.reload_catalog()
        return removed
