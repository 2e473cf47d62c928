"""
Status reporting for dstack-sysbox-installer.

Read-only: queries unit liveness and prints the fixed-format summary with
usage and management hints.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .host_gateway import HostGateway


@dataclass
class StatusReport:
    """Final state of the Sysbox units."""
    unit_states: Dict[str, str] = field(default_factory=dict)
    runtime_name: str = "sysbox-runc"
    runtime_configured: bool = False
    data_dir: str = ""

    @property
    def all_active(self) -> bool:
        return all(state == "active" for state in self.unit_states.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "units": dict(self.unit_states),
            "all_active": self.all_active,
            "runtime": self.runtime_name,
            "runtime_configured": self.runtime_configured,
            "data_dir": self.data_dir,
        }


class StatusService:
    """Summarizes the installation for the operator."""

    LABELS = {
        "sysbox-mgr.service": "Sysbox Manager",
        "sysbox-fs.service": "Sysbox FS",
    }

    def __init__(self, gateway: HostGateway):
        self.gateway = gateway
        self.output_callback: Optional[Callable[[str], None]] = None
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _emit(self, message: str = "") -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def unit_state(self, unit: str) -> str:
        result = self.gateway.run(["systemctl", "is-active", unit])
        return result.stdout.strip() or "unknown"

    def report(self, units: Sequence[str], data_dir: str,
               runtime_name: str = "sysbox-runc",
               runtime_configured: bool = False) -> StatusReport:
        """
        Query unit liveness and build the summary.

        Args:
            units: Units to report, in start order
            data_dir: Sysbox data directory on the host
            runtime_name: Docker runtime name
            runtime_configured: Whether the runtime was registered in this run

        Returns:
            StatusReport with one state string per unit
        """
        return StatusReport(
            unit_states={unit: self.unit_state(unit) for unit in units},
            runtime_name=runtime_name,
            runtime_configured=runtime_configured,
            data_dir=data_dir,
        )

    def render(self, report: StatusReport, title: str = "Sysbox Installation Complete!") -> List[str]:
        """Format a report as operator-facing lines."""
        names = " ".join(u.replace(".service", "") for u in report.unit_states)
        journal = " ".join(f"-u {u.replace('.service', '')}" for u in report.unit_states)
        width = max(len(self.LABELS.get(u, u)) for u in report.unit_states) if report.unit_states else 0

        lines = ["", "=" * 42, title, "=" * 42, "", "Status:"]
        for unit, state in report.unit_states.items():
            label = f"{self.LABELS.get(unit, unit)}:".ljust(width + 1)
            lines.append(f"  - {label} {state}")
        if report.runtime_configured:
            lines.append("  - Docker Runtime: Configured (restart required)")
            lines += [
                "",
                f"IMPORTANT: Restart Docker to enable the {report.runtime_name} runtime:",
                "    systemctl restart docker",
                "",
                "Usage (after Docker restart):",
                f"  docker run --runtime={report.runtime_name} -it ubuntu bash",
                f"  docker run --runtime={report.runtime_name} -d docker:dind  # Docker-in-Docker",
            ]
        lines += [
            "",
            "Management:",
            f"  systemctl status {names}    # Check status",
            f"  systemctl restart {names}   # Restart services",
            f"  journalctl {journal}    # View logs",
            "",
            "Units are transient and will not survive a reboot; re-run the installer after boot.",
            "",
            "Data Location:",
            f"  - Sysbox data: {report.data_dir}",
            "",
        ]
        return lines

    def print_report(self, report: StatusReport, title: str = "Sysbox Installation Complete!") -> None:
        for line in self.render(report, title):
            self._emit(line)
