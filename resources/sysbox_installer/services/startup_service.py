"""
Service startup sequencing for dstack-sysbox-installer.

Units are started strictly in order. After each start the sequencer waits the
unit's minimum settle delay, then polls liveness until the unit is active or
the readiness timeout runs out. The clock and sleep functions are injectable
so tests can run without real delays.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .host_gateway import HostGateway
from ..models.host_state import HostState


@dataclass
class StartupResult:
    """Outcome of a start sequence."""
    started: List[str] = field(default_factory=list)
    active: List[str] = field(default_factory=list)
    inactive: List[str] = field(default_factory=list)

    @property
    def all_active(self) -> bool:
        return not self.inactive

    def remediation(self) -> List[str]:
        names = " ".join(u.replace(".service", "") for u in self.inactive)
        journal = " ".join(f"-u {u.replace('.service', '')}" for u in self.inactive)
        return [
            f"Check status with: systemctl status {names}",
            f"Check logs with: journalctl {journal}",
        ]


class StartupService:
    """Starts units in dependency order and verifies liveness."""

    def __init__(self, gateway: HostGateway,
                 settle_delays: Optional[Dict[str, float]] = None,
                 poll_interval: float = 0.5,
                 readiness_timeout: float = 15.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize startup service.

        Args:
            gateway: Host gateway for systemctl calls
            settle_delays: Minimum wait after starting each unit, by unit name
            poll_interval: Seconds between liveness probes
            readiness_timeout: Maximum seconds to wait for a unit to become active
            clock: Monotonic time source
            sleep: Sleep function
        """
        self.gateway = gateway
        self.settle_delays = dict(settle_delays or {})
        self.poll_interval = poll_interval
        self.readiness_timeout = readiness_timeout
        self.clock = clock
        self.sleep = sleep
        self.output_callback: Optional[Callable[[str], None]] = None
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def is_active(self, unit: str) -> bool:
        return self.gateway.probe(["systemctl", "is-active", "--quiet", unit])

    def wait_until_active(self, unit: str) -> bool:
        """
        Wait for a unit to report active.

        Returns:
            True if the unit became active within the readiness timeout
        """
        settle = self.settle_delays.get(unit, 0.0)
        if settle > 0:
            self.sleep(settle)

        deadline = self.clock() + self.readiness_timeout
        while True:
            if self.is_active(unit):
                return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                return False
            self.sleep(min(self.poll_interval, remaining))

    def start_all(self, ordered_units: Sequence[str]) -> StartupResult:
        """
        Start units in the given order.

        A failed systemctl start aborts the sequence; a unit that does not become
        active in time is reported, not raised, since it may still converge
        after the installer exits.

        Args:
            ordered_units: Units in start order

        Returns:
            StartupResult listing active and inactive units

        Raises:
            HostCommandError: If systemctl start fails
        """
        self._log_output("Starting Sysbox services...")
        result = StartupResult()

        for unit in ordered_units:
            self._log_output(f"Starting {unit}...")
            self.gateway.mutate(["systemctl", "start", unit])
            result.started.append(unit)

            if not self.wait_until_active(unit):
                self._logger.warning(f"{unit} is not active after {self.readiness_timeout:.0f}s")

        for unit in ordered_units:
            if self.is_active(unit):
                result.active.append(unit)
            else:
                result.inactive.append(unit)

        if result.all_active:
            self._log_output("Sysbox services started successfully")
        else:
            self._logger.warning("Some services may not have started correctly")
            for line in result.remediation():
                self._log_output(line)

        return result

    @staticmethod
    def apply(state: HostState, result: StartupResult) -> HostState:
        """Record the observed activity in a host state."""
        for unit in result.active:
            state = state.with_unit_active(unit, True)
        for unit in result.inactive:
            state = state.with_unit_active(unit, False)
        return state
