"""
Input validation utilities for dstack-sysbox-installer.

This module provides validation functions for host paths, systemd unit
names, digests and commit hashes used by the configuration and attestation
layers.
"""

import re
import logging
from pathlib import PurePosixPath
from typing import Optional, Dict, Any


class ValidationResult:
    """Result of a validation operation."""

    def __init__(self, is_valid: bool, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.is_valid = is_valid
        self.message = message
        self.details = details or {}

    def __bool__(self) -> bool:
        return self.is_valid

    def __str__(self) -> str:
        return f"ValidationResult(valid={self.is_valid}, message='{self.message}')"


class Validator:
    """
    Validator for installer configuration values.

    Host paths are validated as POSIX paths regardless of where the installer
    runs, since they always refer to the target host.
    """

    def __init__(self):
        self._logger = logging.getLogger(__name__)

        self.unit_pattern = re.compile(r'^[A-Za-z0-9:_.@-]+\.(service|mount|socket|target|timer|path)$')
        self.sha256_pattern = re.compile(r'^[0-9a-f]{64}$')
        self.commit_pattern = re.compile(r'^[0-9a-f]{40}$')

    def validate_host_path(self, path: Optional[str]) -> ValidationResult:
        """
        Validate an absolute host path.

        Args:
            path: Path on the target host

        Returns:
            ValidationResult with validation status
        """
        if not path:
            return ValidationResult(False, "Host path cannot be empty")

        posix_path = PurePosixPath(path)
        if not posix_path.is_absolute():
            return ValidationResult(False, f"Host path must be absolute: {path}")

        if ".." in posix_path.parts:
            return ValidationResult(False, f"Host path must not contain '..': {path}")

        return ValidationResult(True, "Valid host path", {"path": str(posix_path)})

    def validate_unit_name(self, unit: Optional[str]) -> ValidationResult:
        """Validate a systemd unit file name."""
        if not unit:
            return ValidationResult(False, "Unit name cannot be empty")

        if "/" in unit:
            return ValidationResult(False, f"Unit name must not contain '/': {unit}")

        if not self.unit_pattern.match(unit):
            return ValidationResult(False, f"Invalid systemd unit name: {unit}")

        return ValidationResult(True, "Valid unit name")

    def validate_sha256(self, digest: Optional[str]) -> ValidationResult:
        if not digest or not self.sha256_pattern.match(digest):
            return ValidationResult(False, f"Invalid SHA256 digest: {digest}")
        return ValidationResult(True, "Valid SHA256 digest")

    def validate_commit_hash(self, commit: Optional[str]) -> ValidationResult:
        if not commit or not self.commit_pattern.match(commit):
            return ValidationResult(False, f"Invalid commit hash: {commit}")
        return ValidationResult(True, "Valid commit hash")


# Global validator instance
_global_validator: Optional[Validator] = None


def get_validator() -> Validator:
    """
    Get the global validator instance.

    Returns:
        Global Validator instance
    """
    global _global_validator
    if _global_validator is None:
        _global_validator = Validator()
    return _global_validator
