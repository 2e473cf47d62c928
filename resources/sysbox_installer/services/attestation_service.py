"""
Source artifact attestation for dstack-sysbox-installer.

Checks the pinned (file, checksum) and (version, commit) pairs of the external
sources the installer image was built from. These checks run in the installer
environment, not on the host, and any mismatch is fatal.
"""

import hashlib
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from ..config.settings import AttestationConfig
from ..models.outcome import IntegrityError

CHUNK_SIZE = 65536


def sha256_of(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Union[str, Path], expected_sha256: str) -> str:
    """
    Verify a file against a pinned SHA256 digest.

    Args:
        path: File to check
        expected_sha256: Expected hex digest

    Returns:
        The actual digest

    Raises:
        IntegrityError: If the file is missing or the digest differs
    """
    logger = logging.getLogger(__name__)
    path = Path(path)
    if not path.is_file():
        raise IntegrityError(f"File not found: {path}")

    actual = sha256_of(path)
    logger.info(f"Expected SHA256: {expected_sha256}")
    logger.info(f"Actual SHA256:   {actual}")

    if actual != expected_sha256.lower():
        raise IntegrityError(f"Checksum mismatch for {path.name}")

    logger.info(f"{path.name} checksum verified")
    return actual


def _git(source_dir: Path, args: List[str]) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=source_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise IntegrityError(f"git is not available: {e}")
    if proc.returncode != 0:
        return None
    return proc.stdout.strip()


def verify_source_tree(source_dir: Union[str, Path], expected_commit: str,
                       expected_version: Optional[str] = None) -> str:
    """
    Verify a cloned source tree is checked out at the pinned commit.

    The version tag is informational; only the commit hash is binding.

    Args:
        source_dir: Root of the cloned repository
        expected_commit: Full commit hash
        expected_version: Release tag expected at that commit

    Returns:
        The checked-out commit hash

    Raises:
        IntegrityError: If the tree is missing, not at the pinned commit, or
            lacks its build file
    """
    logger = logging.getLogger(__name__)
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise IntegrityError(f"Source directory not found: {source_dir}")

    commit = _git(source_dir, ["rev-parse", "HEAD"])
    if commit is None:
        raise IntegrityError(f"{source_dir} is not a git checkout")

    logger.info(f"Expected commit: {expected_commit}")
    logger.info(f"Actual commit:   {commit}")
    if commit != expected_commit.lower():
        raise IntegrityError(f"Commit mismatch in {source_dir}")
    logger.info("Commit hash verified")

    if expected_version:
        tag = _git(source_dir, ["describe", "--tags", "--exact-match"])
        if tag == expected_version:
            logger.info(f"Version tag verified: {tag}")
        else:
            logger.info(f"Tag check: expected {expected_version}, found {tag or 'no exact tag'}")

    if not (source_dir / "Makefile").is_file():
        raise IntegrityError(f"Makefile not found in {source_dir}")

    return commit


class AttestationService:
    """Runs the configured attestation checks as one gate."""

    def __init__(self, config: AttestationConfig):
        self.config = config
        self._logger = logging.getLogger(__name__)

    def verify_rsync(self, archive: Union[str, Path, None] = None) -> str:
        archive = archive or self.config.rsync_archive
        if not archive:
            raise IntegrityError("No rsync archive configured")
        self._logger.info(f"Verifying rsync {self.config.rsync_version} source archive...")
        return verify_checksum(archive, self.config.rsync_sha256)

    def verify_sysbox(self, source_dir: Union[str, Path, None] = None) -> str:
        source_dir = source_dir or self.config.sysbox_source_dir
        if not source_dir:
            raise IntegrityError("No Sysbox source directory configured")
        self._logger.info(f"Verifying Sysbox {self.config.sysbox_version} source tree...")
        return verify_source_tree(source_dir, self.config.sysbox_commit, self.config.sysbox_version)

    def verify_configured(self) -> List[str]:
        """
        Verify every artifact that has a configured location.

        Returns:
            Names of the artifacts verified

        Raises:
            IntegrityError: On any mismatch, or if nothing is configured
        """
        verified = []
        if self.config.rsync_archive:
            self.verify_rsync()
            verified.append("rsync")
        if self.config.sysbox_source_dir:
            self.verify_sysbox()
            verified.append("sysbox")
        if not verified:
            raise IntegrityError("Attestation requested but no artifact locations are configured")
        return verified
