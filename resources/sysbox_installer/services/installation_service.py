"""
Installation orchestration service for dstack-sysbox-installer.

This module drives the linear provisioning pipeline: detection, optional
attestation, binaries, /etc overlay, sub-ID mapping, Docker runtime
registration, transient units, startup and the final report. Each step gates
the next; any InstallerError aborts the rest of the run.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .host_gateway import HostGateway
from .detection_service import DetectionService
from .attestation_service import AttestationService
from .binary_service import BinaryService
from .overlay_service import OverlayService
from .identity_service import IdentityService
from .runtime_config_service import RuntimeConfigService
from .unit_service import UnitService
from .startup_service import StartupResult, StartupService
from .status_service import StatusReport, StatusService
from ..config.settings import AppConfig
from ..models.host_state import HostState
from ..models.installation_state import InstallationState, PipelineProgress
from ..models.outcome import InstallerError


@dataclass
class InstallationProgress:
    """Progress information for pipeline steps."""
    step: str
    progress_percentage: float
    message: str


@dataclass
class InstallationResult:
    """What a single orchestrator run did."""
    detected_state: InstallationState
    progress: PipelineProgress
    already_installed: bool = False
    startup: Optional[StartupResult] = None
    status: Optional[StatusReport] = None
    host_state: Optional[HostState] = None

    @property
    def fully_active(self) -> bool:
        return self.startup is not None and self.startup.all_active

    def to_dict(self) -> Dict[str, Any]:
        summary = self.progress.get_summary()
        summary["already_installed"] = self.already_installed
        summary["status"] = self.status.to_dict() if self.status else None
        summary["inactive_units"] = list(self.startup.inactive) if self.startup else []
        summary["host_state"] = self.host_state.to_dict() if self.host_state else None
        return summary


class InstallationService:
    """
    Main installation orchestration service.

    Holds one host gateway for the whole run and hands it to every
    component; nothing else talks to the host.
    """

    def __init__(self, config: AppConfig, gateway: HostGateway,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize installation service.

        Args:
            config: Application configuration
            gateway: Host gateway used by every step
            clock: Monotonic time source for startup polling
            sleep: Sleep function for startup polling
        """
        self.config = config
        self.gateway = gateway

        paths = config.paths
        services = config.services
        self.unit_dirs = [paths.runtime_unit_dir, paths.persistent_unit_dir]

        self.detector = DetectionService(
            gateway, services.ordered_units(), self.unit_dirs, services.manager_unit
        )
        self.attestation = AttestationService(config.attestation)
        self.binaries = BinaryService(gateway)
        self.overlay = OverlayService(gateway, config.overlay)
        self.identity = IdentityService(gateway, config.identity)
        self.runtime = RuntimeConfigService(gateway, config.runtime)
        self.units = UnitService(gateway)
        self.startup = StartupService(
            gateway,
            settle_delays=services.unit_settle_delays(),
            poll_interval=services.poll_interval,
            readiness_timeout=services.readiness_timeout,
            clock=clock,
            sleep=sleep,
        )
        self.status = StatusService(gateway)

        self.progress: Optional[PipelineProgress] = None
        self.current_step: Optional[str] = None

        self.progress_callback: Optional[Callable[[InstallationProgress], None]] = None
        self.output_callback: Optional[Callable[[str], None]] = None

        self._logger = logging.getLogger(__name__)

    def set_progress_callback(self, callback: Callable[[InstallationProgress], None]) -> None:
        """Set progress callback for pipeline updates."""
        self.progress_callback = callback

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        """Set output callback for operator messages, on every component."""
        self.output_callback = callback
        for service in (self.detector, self.binaries, self.overlay, self.runtime,
                        self.units, self.startup, self.status):
            service.set_output_callback(callback)

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def _begin(self, step: str) -> None:
        self.current_step = step
        self.progress.start_step(step)
        if self.progress_callback:
            description = self.progress.get_step(step).description
            self.progress_callback(InstallationProgress(
                step=step,
                progress_percentage=self.progress.get_progress_percentage(),
                message=description,
            ))

    def _end(self, step: str, warnings: Optional[List[str]] = None) -> None:
        if warnings:
            self.progress.warn_step(step, "; ".join(warnings))
        else:
            self.progress.complete_step(step)
        self.current_step = None

    def run(self) -> InstallationResult:
        """
        Run the installation pipeline.

        Returns:
            InstallationResult; already_installed is set when detection
            short-circuited the run

        Raises:
            InstallerError: If a step fails; later steps are not run
        """
        self.progress = PipelineProgress()
        result: Optional[InstallationResult] = None

        try:
            self._begin("detection")
            state = self.detector.detect()
            self.progress.detected_state = state
            self._end("detection")
            result = InstallationResult(detected_state=state, progress=self.progress)

            if state.is_installed:
                self.detector.report_existing(state)
                self.progress.skip_remaining("already installed")
                result.already_installed = True
                return result

            self._begin("attestation")
            if self.config.attestation.verify_before_install:
                verified = self.attestation.verify_configured()
                self._log_output(f"Attestation passed: {', '.join(verified)}")
                self._end("attestation")
            else:
                self.progress.skip_step("attestation", "not requested")

            self._begin("binaries")
            self._provision_binaries()

            self._begin("etc_overlay")
            host_state = self.gateway.observe(self.config.services.ordered_units(), self.unit_dirs)
            host_state = self.overlay.compose_config_overlay(host_state)
            result.host_state = host_state
            self._end("etc_overlay")

            self._begin("subid_mapping")
            if self.config.identity.enabled:
                self.identity.configure()
                self._end("subid_mapping")
            else:
                self.progress.skip_step("subid_mapping", "disabled")

            self._begin("runtime_config")
            self.runtime.register_runtime()
            self._end("runtime_config")

            self._begin("service_units")
            installed = self.units.install_units(
                self.config.get_unit_source_paths(), self.config.paths.runtime_unit_dir
            )
            host_state = host_state.with_unit_files(installed)
            result.host_state = host_state
            self._end("service_units")

            self._begin("startup")
            self._log_output("Creating Sysbox data directory...")
            self.gateway.make_dirs(self.config.paths.data_dir)
            startup = self.startup.start_all(self.config.services.ordered_units())
            result.startup = startup
            result.host_state = StartupService.apply(host_state, startup)
            self._end("startup", [f"{unit} is not active" for unit in startup.inactive])

            self._begin("report")
            result.status = self.status.report(
                self.config.services.ordered_units(),
                self.config.paths.data_dir,
                runtime_name=self.config.runtime.runtime_name,
                runtime_configured=True,
            )
            self.status.print_report(result.status)
            self._end("report")

            return result

        except InstallerError as e:
            step = self.current_step or "detection"
            self.progress.fail_step(step, str(e))
            self.progress.skip_remaining("aborted")
            self._logger.error(f"Installation failed at {step}: {e}")
            self._report_manual_cleanup()
            raise

        finally:
            self.current_step = None
            self.progress.finish()

    def _provision_binaries(self) -> None:
        paths = self.config.paths
        self.binaries.warnings.clear()

        self.binaries.provision(
            paths.binary_source_dir, paths.host_bin_dir,
            prefix=paths.binary_prefix, sync_tool=paths.sync_tool,
        )
        self.binaries.link_dependencies(paths.dependency_links)
        self.binaries.resolve_fuse_unmount(
            paths.fuse_unmount_tool, paths.fuse_unmount_alternatives, paths.host_bin_dir
        )
        self._log_output("Binaries installed")
        self._end("binaries", list(self.binaries.warnings))

    def _report_manual_cleanup(self) -> None:
        if not self.overlay.mounted_layers:
            return
        self._logger.warning("The host was left partially configured. To clean up manually:")
        for layer in reversed(self.overlay.mounted_layers):
            self._logger.warning(f"  umount {layer.mount_point}")

    def remove(self) -> List[str]:
        """
        Stop the units and delete their transient definitions.

        The /etc overlay and the Docker configuration are left in place.

        Returns:
            Names of the removed unit files
        """
        self._log_output("Removing Sysbox services...")
        removed = self.units.remove_units(
            self.config.services.ordered_units(), self.config.paths.runtime_unit_dir
        )
        if removed:
            self._log_output(f"Removed {len(removed)} unit(s); restart Docker if it still lists "
                             f"{self.config.runtime.runtime_name}")
        else:
            self._log_output("No transient Sysbox units found")
        return removed

    def report_status(self) -> StatusReport:
        """Report current unit liveness without changing anything."""
        report = self.status.report(
            self.config.services.ordered_units(),
            self.config.paths.data_dir,
            runtime_name=self.config.runtime.runtime_name,
            runtime_configured=self.runtime.is_registered(),
        )
        self.status.print_report(report, title="Sysbox Status")
        return report


# Global installation service instance
_global_installation_service: Optional[InstallationService] = None


def get_installation_service() -> InstallationService:
    """
    Get the global installation service instance.

    Raises:
        RuntimeError: If installation service hasn't been initialized
    """
    global _global_installation_service
    if _global_installation_service is None:
        raise RuntimeError("Installation service not initialized. Call init_installation_service() first.")
    return _global_installation_service


def init_installation_service(config: AppConfig, gateway: HostGateway) -> InstallationService:
    """Initialize the global installation service."""
    global _global_installation_service
    _global_installation_service = InstallationService(config, gateway)
    return _global_installation_service
