"""
Operation outcomes and error types for dstack-sysbox-installer.

Every host-mutating call reports an Outcome so call sites state explicitly
whether a failure is fatal or best-effort, instead of relying on blanket
error suppression.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..services.host_gateway import CommandResult


class InstallerError(Exception):
    """Base class for fatal installer errors."""
    pass


class IntegrityError(InstallerError):
    """Checksum or commit mismatch on an external artifact."""
    pass


class PreconditionError(InstallerError):
    """A file or directory a mutation depends on is missing or unusable."""
    pass


class RuntimeConfigError(InstallerError):
    """The container runtime configuration could not be updated."""
    pass


class HostCommandError(InstallerError):
    """A mutating host command exited non-zero."""

    def __init__(self, message: str, result: Optional["CommandResult"] = None,
                 outcome: Optional["Outcome"] = None):
        super().__init__(message)
        self.result = result
        self.outcome = outcome or Outcome.hard_failure(message)


class OutcomeKind(Enum):
    """Classification of a host operation result."""
    OK = "ok"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class Outcome:
    """Result of a host-mutating operation."""
    kind: OutcomeKind
    reason: str = ""

    @classmethod
    def ok(cls) -> "Outcome":
        return cls(OutcomeKind.OK)

    @classmethod
    def soft_failure(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.SOFT_FAILURE, reason)

    @classmethod
    def hard_failure(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.HARD_FAILURE, reason)

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.OK

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind.value}: {self.reason}"
        return self.kind.value
