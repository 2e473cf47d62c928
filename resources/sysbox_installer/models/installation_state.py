"""
Installation state management for dstack-sysbox-installer.

This module holds the InstallationState enumeration produced by the detector
and the PipelineProgress tracker that records each orchestration step, its
status, timing and error so the final report (text or JSON) can show exactly
how far a run got.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class InstallationState(Enum):
    """Installation state of the target daemons on the host."""
    ABSENT = "absent"
    INSTALLED_STOPPED = "installed_stopped"
    INSTALLED_RUNNING = "installed_running"

    @property
    def is_installed(self) -> bool:
        return self != InstallationState.ABSENT


class StageStatus(Enum):
    """Status of individual pipeline steps."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WARNING = "warning"


@dataclass
class StageStep:
    """Individual step of the installation pipeline."""
    name: str
    description: str
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def start(self) -> None:
        """Mark step as started."""
        self.status = StageStatus.IN_PROGRESS
        self.started_at = datetime.now()

    def complete(self) -> None:
        """Mark step as completed successfully."""
        self.status = StageStatus.COMPLETED
        self.completed_at = datetime.now()
        self.error_message = None

    def warn(self, message: str) -> None:
        """Mark step as completed with a non-fatal problem."""
        self.status = StageStatus.WARNING
        self.completed_at = datetime.now()
        self.error_message = message

    def fail(self, error_message: str) -> None:
        """Mark step as failed with error message."""
        self.status = StageStatus.FAILED
        self.completed_at = datetime.now()
        self.error_message = error_message

    def skip(self, reason: str = "") -> None:
        """Mark step as skipped."""
        self.status = StageStatus.SKIPPED
        self.completed_at = datetime.now()
        self.error_message = reason

    def is_complete(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.WARNING)

    def is_failed(self) -> bool:
        return self.status == StageStatus.FAILED

    def duration_seconds(self) -> Optional[float]:
        """Get step duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }


# Pipeline order; each step gates the next
PIPELINE_STEPS = [
    ("detection", "Detect existing Sysbox installation"),
    ("attestation", "Verify source artifact attestation"),
    ("binaries", "Copy Sysbox binaries and link dependencies"),
    ("etc_overlay", "Compose writable /etc overlay"),
    ("subid_mapping", "Configure subuid/subgid mappings"),
    ("runtime_config", "Register sysbox-runc with Docker"),
    ("service_units", "Install transient systemd units"),
    ("startup", "Start Sysbox services"),
    ("report", "Report final status"),
]


class PipelineProgress:
    """
    Tracks step status for a single orchestrator run.

    The tracker is never persisted: the installer is not a long-running
    process and detection is recomputed on every invocation.
    """

    def __init__(self):
        self.steps: List[StageStep] = [StageStep(name, desc) for name, desc in PIPELINE_STEPS]
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.detected_state: Optional[InstallationState] = None
        self.last_error: Optional[str] = None
        self.warnings: List[str] = []
        self._logger = logging.getLogger(__name__)

    def get_step(self, step_name: str) -> StageStep:
        for step in self.steps:
            if step.name == step_name:
                return step
        raise KeyError(f"Unknown pipeline step: {step_name}")

    def start_step(self, step_name: str) -> StageStep:
        if self.started_at is None:
            self.started_at = datetime.now()
        step = self.get_step(step_name)
        step.start()
        self._logger.debug(f"Started step: {step_name}")
        return step

    def complete_step(self, step_name: str) -> None:
        self.get_step(step_name).complete()
        self._logger.debug(f"Completed step: {step_name}")

    def warn_step(self, step_name: str, message: str) -> None:
        self.get_step(step_name).warn(message)
        self.warnings.append(message)
        self._logger.debug(f"Step finished with warning: {step_name} - {message}")

    def fail_step(self, step_name: str, error_message: str) -> None:
        self.get_step(step_name).fail(error_message)
        self.last_error = error_message
        self._logger.debug(f"Step failed: {step_name} - {error_message}")

    def skip_step(self, step_name: str, reason: str = "") -> None:
        self.get_step(step_name).skip(reason)
        self._logger.debug(f"Skipped step: {step_name} - {reason}")

    def skip_remaining(self, reason: str) -> None:
        """Skip every step still pending."""
        for step in self.steps:
            if step.status == StageStatus.PENDING:
                step.skip(reason)

    def finish(self) -> None:
        self.finished_at = datetime.now()

    @property
    def failed(self) -> bool:
        return any(step.is_failed() for step in self.steps)

    def get_progress_percentage(self) -> float:
        done = sum(1 for step in self.steps
                   if step.is_complete() or step.status == StageStatus.SKIPPED)
        return (done / len(self.steps)) * 100.0

    def get_summary(self) -> Dict[str, Any]:
        """Get a machine-readable summary of the run."""
        return {
            "detected_state": self.detected_state.value if self.detected_state else None,
            "failed": self.failed,
            "last_error": self.last_error,
            "warnings": list(self.warnings),
            "progress_percentage": self.get_progress_percentage(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [step.to_dict() for step in self.steps],
        }
