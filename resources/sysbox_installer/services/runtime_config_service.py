"""
Docker runtime registration for dstack-sysbox-installer.

Adds the sysbox-runc entry to the Docker daemon configuration. The current
file is always backed up to a sibling .backup file first; if any later step
fails the backup is restored, so the configuration is either untouched or
known-upgraded.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from .host_gateway import HostGateway
from ..config.settings import MergeStrategy, RuntimeConfig
from ..models.outcome import InstallerError, PreconditionError, RuntimeConfigError


def merge_runtime_entry(document: Dict[str, Any], runtime_name: str,
                        runtime_path: str) -> Dict[str, Any]:
    """
    Return a copy of document with the runtime registered.

    Other top-level keys and other runtimes are preserved. An existing entry
    with the same name keeps its extra keys; only its path is updated. An
    existing entry that is not an object is replaced.

    Raises:
        RuntimeConfigError: If "runtimes" exists but is not an object
    """
    merged = dict(document)
    runtimes = merged.get("runtimes", {})
    if not isinstance(runtimes, dict):
        raise RuntimeConfigError("'runtimes' in the Docker daemon configuration is not an object")

    runtimes = dict(runtimes)
    entry = runtimes.get(runtime_name)
    entry = dict(entry) if isinstance(entry, dict) else {}
    entry["path"] = runtime_path
    runtimes[runtime_name] = entry
    merged["runtimes"] = runtimes
    return merged


class RuntimeConfigService:
    """Registers the Sysbox runtime in the Docker daemon configuration."""

    def __init__(self, gateway: HostGateway, config: RuntimeConfig):
        self.gateway = gateway
        self.config = config
        self.output_callback: Optional[Callable[[str], None]] = None
        self.backup_path: Optional[str] = None
        self._logger = logging.getLogger(__name__)

    def set_output_callback(self, callback: Callable[[str], None]) -> None:
        self.output_callback = callback

    def _log_output(self, message: str) -> None:
        if self.output_callback:
            self.output_callback(message)
        else:
            self._logger.info(message)

    def template_document(self) -> Dict[str, Any]:
        return {
            "log-driver": self.config.log_driver,
            "log-opts": dict(self.config.log_opts),
            "runtimes": {
                self.config.runtime_name: {"path": self.config.runtime_path}
            },
        }

    @staticmethod
    def _render(document: Dict[str, Any]) -> str:
        return json.dumps(document, indent=2) + "\n"

    def create_backup(self, config_path: str) -> Optional[bytes]:
        """
        Back up the current configuration file, if present.

        Returns:
            The original content, or None if there was no file
        """
        if not self.gateway.is_file(config_path):
            self.backup_path = None
            return None

        original = self.gateway.read_bytes(config_path)
        self.backup_path = f"{config_path}{self.config.backup_suffix}"
        self.gateway.copy_file(config_path, self.backup_path)
        self._log_output(f"Backed up existing Docker configuration to {self.backup_path}")
        return original

    def restore_backup(self, config_path: str, original: Optional[bytes]) -> None:
        """Put the configuration back to its pre-call content."""
        if original is None:
            self.gateway.remove(config_path, best_effort=True)
            self._logger.warning(f"Removed partially written {config_path}")
            return
        self.gateway.write_bytes(config_path, original)
        self._logger.warning(f"Restored {config_path} from backup")

    def register_runtime(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Register the runtime in the Docker daemon configuration.

        Args:
            config_path: Host path of daemon.json (default from configuration)

        Returns:
            The resulting configuration document

        Raises:
            PreconditionError: If the existing document is not valid JSON
            RuntimeConfigError: If the update failed and the backup was restored
        """
        config_path = config_path or self.config.daemon_config_path
        config_dir = config_path.rsplit('/', 1)[0] or '/'
        strategy = self.config.strategy

        self._log_output(f"Configuring Docker runtime ({strategy.value})...")
        self.gateway.make_dirs(config_dir)
        original = self.create_backup(config_path)

        try:
            if strategy == MergeStrategy.TEMPLATE:
                document = self._write_template(config_path, original)
            elif strategy == MergeStrategy.HELPER:
                document = self._run_merge_helper(config_path)
            else:
                document = self._merge(config_path, original)
        except PreconditionError:
            # Nothing was written
            raise
        except InstallerError as e:
            self.restore_backup(config_path, original)
            raise RuntimeConfigError(f"Docker configuration update failed: {e}") from e

        self._log_output("Docker configuration updated")
        return document

    def is_registered(self, config_path: Optional[str] = None) -> bool:
        """Check whether the runtime entry is present. Read-only."""
        config_path = config_path or self.config.daemon_config_path
        if not self.gateway.is_file(config_path):
            return False
        try:
            document = self._parse(self.gateway.read_bytes(config_path), config_path)
        except PreconditionError as e:
            self._logger.warning(f"Cannot inspect Docker configuration: {e}")
            return False
        runtimes = document.get("runtimes")
        return isinstance(runtimes, dict) and self.config.runtime_name in runtimes

    def _parse(self, original: Optional[bytes], config_path: str) -> Dict[str, Any]:
        if original is None or not original.strip():
            return {}
        try:
            document = json.loads(original.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise PreconditionError(f"{config_path} is not valid JSON: {e}")
        if not isinstance(document, dict):
            raise PreconditionError(f"{config_path} does not contain a JSON object")
        return document

    def _merge(self, config_path: str, original: Optional[bytes]) -> Dict[str, Any]:
        document = merge_runtime_entry(
            self._parse(original, config_path),
            self.config.runtime_name,
            self.config.runtime_path,
        )
        self.gateway.write_text(config_path, self._render(document))
        return document

    def _write_template(self, config_path: str, original: Optional[bytes]) -> Dict[str, Any]:
        if original is not None and original.strip():
            # Known limitation of the template strategy: unknown keys are dropped
            self._logger.warning(
                f"Overwriting existing {config_path}; previous content kept in {self.backup_path}"
            )
        document = self.template_document()
        self.gateway.write_text(config_path, self._render(document))
        return document

    def _run_merge_helper(self, config_path: str) -> Dict[str, Any]:
        helper = self.config.merge_helper
        if not helper:
            raise PreconditionError("No merge helper configured")

        self.gateway.mutate([helper, config_path, self.config.runtime_name, self.config.runtime_path])

        try:
            document = json.loads(self.gateway.read_text(config_path))
        except (PreconditionError, UnicodeDecodeError, ValueError) as e:
            raise RuntimeConfigError(f"Merge helper left unreadable configuration: {e}")

        runtimes = document.get("runtimes") if isinstance(document, dict) else None
        if not isinstance(runtimes, dict) or self.config.runtime_name not in runtimes:
            raise RuntimeConfigError(
                f"Merge helper did not register {self.config.runtime_name}"
            )
        return document
