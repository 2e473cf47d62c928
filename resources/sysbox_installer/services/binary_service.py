"""
Binary provisioning for dstack-sysbox-installer.

Copies the prebuilt Sysbox binaries and the statically linked rsync onto the
host's executable path, sets their permission bits, and links optional host
dependencies the daemons expect under fixed names.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .host_gateway import HostGateway
from ..models.outcome import PreconditionError

EXECUTABLE_MODE = 0o755


class BinaryService:
    """Places daemon binaries on the host."""

    def __init__(self, gateway: HostGateway):
        self.gateway = gateway
        self.output_callback: Optional[Callable[[str], None]] = None
        self.warnings: List[str] = []
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def _warn(self, message: str) -> None:
        self._logger.warning(message)
        self.warnings.append(message)

    def find_binaries(self, source_dir: Path, prefix: str, sync_tool: str) -> List[Path]:
        """
        Collect the files to provision.

        Raises:
            PreconditionError: If no daemon binary or the sync tool is missing
        """
        if not source_dir.is_dir():
            raise PreconditionError(f"Binary source directory not found: {source_dir}")

        binaries = sorted(p for p in source_dir.glob(f"{prefix}*") if p.is_file())
        if not binaries:
            raise PreconditionError(f"No {prefix}* binaries found in {source_dir}")

        sync_binary = source_dir / sync_tool
        if not sync_binary.is_file():
            raise PreconditionError(f"Sync tool not found: {sync_binary}")

        return [sync_binary] + binaries

    def provision(self, source_dir: Path, host_bin_dir: str, prefix: str = "sysbox-",
                  sync_tool: str = "rsync") -> List[str]:
        """
        Copy binaries into a writable host directory on the search path.

        Copying does not guarantee execute bits, so they are set explicitly.

        Args:
            source_dir: Directory holding the prebuilt binaries
            host_bin_dir: Destination directory on the host
            prefix: Name prefix of the daemon binary family
            sync_tool: File name of the statically linked sync helper

        Returns:
            Host paths of the installed binaries
        """
        self._log_output("Copying Sysbox binaries to host...")
        installed = []

        for binary in self.find_binaries(Path(source_dir), prefix, sync_tool):
            host_path = f"{host_bin_dir.rstrip('/')}/{binary.name}"
            self.gateway.copy_in(binary, host_path, mode=EXECUTABLE_MODE)
            installed.append(host_path)
            self._logger.debug(f"Installed {host_path}")

        return installed

    def link_dependencies(self, links: Sequence[Sequence[str]]) -> None:
        """
        Create convenience symlinks for external tools, best-effort.

        Args:
            links: (target, link name) pairs; existing link names are left alone
        """
        for target, link_name in links:
            if self.gateway.exists(link_name):
                self._logger.debug(f"{link_name} already present")
                continue
            if not self.gateway.exists(target):
                self._warn(f"{target} not found on host - skipping {link_name} link")
                continue
            outcome = self.gateway.symlink(target, link_name, best_effort=True)
            if not outcome.succeeded:
                self._warn(f"Could not link {link_name} -> {target}: {outcome.reason}")

    def resolve_fuse_unmount(self, expected: str, alternatives: Sequence[str],
                             host_bin_dir: str = "/usr/bin") -> Optional[str]:
        """
        Make the FUSE unmount helper available under the expected name.

        Some distributions ship only a versioned name (fusermount3). The FUSE
        feature is optional, so a missing helper is a warning.

        Returns:
            The tool name the expected name resolves to, or None if unavailable
        """
        if self.gateway.which(expected):
            return expected

        for alternative in alternatives:
            result = self.gateway.run(["which", alternative])
            if not result.success:
                continue
            source = result.stdout.strip() or f"{host_bin_dir.rstrip('/')}/{alternative}"
            link_name = f"{host_bin_dir.rstrip('/')}/{expected}"
            self._log_output(f"Creating symlink: {expected} -> {alternative}")
            outcome = self.gateway.symlink(source, link_name, best_effort=True)
            if outcome.succeeded:
                return alternative
            self._warn(f"Could not link {link_name} -> {source}: {outcome.reason}")
            return None

        self._warn(f"Neither {expected} nor {', '.join(alternatives)} found - FUSE operations may fail")
        return None
