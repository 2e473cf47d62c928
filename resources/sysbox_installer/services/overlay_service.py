"""
Overlay composition for dstack-sysbox-installer.

The host's /etc is read-only. This module mounts a writable overlay over it
without losing configuration owned by other subsystems:

1. Skip entirely if an overlay already covers the target.
2. Create the upper/work directories for the new layer.
3. Copy preserved subtrees (VPN, Docker) from older per-subsystem upper
   layers into the new upper layer, before anything is unmounted.
4. Unmount the per-subsystem overlays the general layer subsumes.
5. Mount the general overlay (fatal on failure).
6. Re-mount the account-data subtree from its persistent store on top, so it
   survives even when the general layer is volatile.
"""

import logging
from typing import Callable, Dict, List, Optional

from .host_gateway import HostGateway
from ..config.settings import OverlayConfig
from ..models.host_state import HostState, OverlayLayer


class OverlayService:
    """Composes the writable configuration overlay on the host."""

    def __init__(self, gateway: HostGateway, config: OverlayConfig):
        """
        Initialize overlay service.

        Args:
            gateway: Host gateway for mounts and file copies
            config: Overlay layout and policy
        """
        self.gateway = gateway
        self.config = config
        self.output_callback: Optional[Callable[[str], None]] = None
        self.mounted_layers: List[OverlayLayer] = []
        self.preserved: Dict[str, str] = {}
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def general_layer(self) -> OverlayLayer:
        target = self.config.target
        return OverlayLayer(
            lower_dir=target,
            upper_dir=self.config.upper_dir(),
            work_dir=self.config.work_dir(),
            mount_point=target,
        )

    def persistent_layer(self) -> Optional[OverlayLayer]:
        subtree = self.config.persistent_subtree
        if not subtree:
            return None
        store = self.config.persistent_subtree_store.rstrip('/')
        return OverlayLayer(
            lower_dir=subtree,
            upper_dir=f"{store}/upper",
            work_dir=f"{store}/work",
            mount_point=subtree,
        )

    def compose_config_overlay(self, state: HostState) -> HostState:
        """
        Compose the configuration overlay.

        Args:
            state: Observed host state before composition

        Returns:
            Host state with the mounts added or removed by this call

        Raises:
            HostCommandError: If the general overlay or the persistent subtree
                overlay cannot be mounted
        """
        target = self.config.target

        if state.is_overlay_mounted(target):
            self._log_output(f"{target} already has overlay mounted - skipping mount")
            return state

        layer = self.general_layer()
        self._log_output(f"Setting up {self.config.policy.value} {target} overlay...")
        self.gateway.make_dirs(layer.upper_dir, layer.work_dir)

        self._preserve_subtrees(layer.upper_dir)
        state = self._unmount_subsumed(state)
        self._warn_shadowed_mounts(state)

        self.gateway.mutate(layer.mount_command())
        state = state.with_mount(layer.as_mount_entry())
        self.mounted_layers.append(layer)
        self._log_output(f"{self.config.policy.value.capitalize()} {target} overlay mounted")

        return self._mount_persistent_subtree(state)

    def _preserve_subtrees(self, upper_dir: str) -> None:
        for name, source in self.config.preserved_subtrees.items():
            if not self.gateway.is_dir(source) or not self.gateway.list_dir(source):
                self._logger.debug(f"No previous {name} layer at {source}")
                continue

            destination = f"{upper_dir.rstrip('/')}/{name}"
            self._log_output(f"Preserving existing {name} configuration...")
            outcome = self.gateway.copy_tree(source, destination, best_effort=True)
            if outcome.succeeded:
                self.preserved[name] = destination
            else:
                self._logger.warning(f"Could not fully preserve {name}: {outcome.reason}")

    def _unmount_subsumed(self, state: HostState) -> HostState:
        if self.config.subsumed_mounts:
            self._log_output("Unmounting individual overlays...")

        for mount_point in self.config.subsumed_mounts:
            outcome = self.gateway.mutate(["umount", mount_point], best_effort=True)
            if outcome.succeeded:
                self._logger.debug(f"Unmounted {mount_point}")
                state = state.without_mount(mount_point)
        return state

    def _warn_shadowed_mounts(self, state: HostState) -> None:
        prefix = self.config.target.rstrip('/') + '/'
        for entry in state.mounts:
            if entry.target.startswith(prefix):
                self._logger.warning(
                    f"{entry.target} ({entry.fstype}) is still mounted under "
                    f"{self.config.target} and will be shadowed by the overlay"
                )

    def _mount_persistent_subtree(self, state: HostState) -> HostState:
        layer = self.persistent_layer()
        if layer is None:
            return state

        if not self.gateway.is_dir(self.config.persistent_subtree_store):
            self._logger.debug(f"No persistent store at {self.config.persistent_subtree_store}")
            return state

        self._log_output(f"Remounting {layer.mount_point} as persistent overlay...")
        self.gateway.make_dirs(layer.upper_dir, layer.work_dir)
        if not self.gateway.is_dir(layer.mount_point):
            self.gateway.make_dirs(layer.mount_point)

        self.gateway.mutate(layer.mount_command())
        self.mounted_layers.append(layer)
        self._log_output(f"{layer.mount_point} mounted as persistent overlay")
        return state.with_mount(layer.as_mount_entry())
