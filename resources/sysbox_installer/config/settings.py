"""
Configuration management system for dstack-sysbox-installer.

This module handles installer settings, default host layout values, and
configuration file loading/saving with proper error handling. Settings can be
overridden from a JSON file and from SYSBOX_* environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Union
from dataclasses import dataclass, asdict, field
from enum import Enum


def _get_version_from_file() -> str:
    """Read version from VERSION file in the package directory."""
    try:
        version_file = Path(__file__).parent.parent / "VERSION"
        if version_file.exists():
            return version_file.read_text().strip()
    except OSError:
        pass
    return "0.6.7"


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


class LogLevel(Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AccessMode(Enum):
    """How commands reach the host."""
    NSENTER = "nsenter"
    CHROOT = "chroot"
    SSH = "ssh"


class OverlayPolicy(Enum):
    """Where the general /etc overlay keeps its upper layer."""
    VOLATILE = "volatile"
    PERSISTENT = "persistent"


class MergeStrategy(Enum):
    """How the Docker daemon configuration is updated."""
    MERGE = "merge"
    TEMPLATE = "template"
    HELPER = "helper"


@dataclass
class HostConfig:
    """Host access configuration."""
    access_mode: AccessMode = AccessMode.NSENTER
    host_root: str = "/host"
    target_pid: int = 1
    command_timeout: int = 120

    # SSH access (access_mode == ssh)
    ssh_host: Optional[str] = None
    ssh_user: str = "root"
    ssh_password: Optional[str] = None
    ssh_key_file: Optional[str] = None
    ssh_port: int = 22
    connection_timeout: int = 10
    max_connection_attempts: int = 3
    retry_delay: int = 2


@dataclass
class PathConfig:
    """File and directory path configuration."""
    # Inside the installer container
    binary_source_dir: str = "/usr/local/bin"
    binary_prefix: str = "sysbox-"
    sync_tool: str = "rsync"
    unit_source_dir: str = "/usr/local/share"

    # On the host
    host_bin_dir: str = "/usr/bin"
    runtime_unit_dir: str = "/run/systemd/system"
    persistent_unit_dir: str = "/etc/systemd/system"
    persistent_root: str = "/dstack/persistent"
    data_dir: str = "/dstack/persistent/sysbox-data"

    # (target, link name) symlinks created on the host when missing
    dependency_links: List[List[str]] = field(default_factory=lambda: [
        ["/usr/sbin/modprobe", "/usr/bin/modprobe"],
        ["/usr/sbin/iptables", "/usr/bin/iptables"],
    ])
    fuse_unmount_tool: str = "fusermount"
    fuse_unmount_alternatives: List[str] = field(default_factory=lambda: ["fusermount3"])


@dataclass
class OverlayConfig:
    """Configuration overlay composition."""
    target: str = "/etc"
    policy: OverlayPolicy = OverlayPolicy.VOLATILE
    volatile_root: str = "/var/volatile/overlay"
    persistent_overlay_root: str = "/dstack/persistent/overlay"
    layer_name: str = "sysbox"

    # subtree name under target -> previous per-subsystem upper layer
    preserved_subtrees: Dict[str, str] = field(default_factory=lambda: {
        "wireguard": "/var/volatile/overlay/etc/wireguard/upper",
        "docker": "/var/volatile/overlay/etc/docker/upper",
    })
    subsumed_mounts: List[str] = field(default_factory=lambda: ["/etc/wireguard", "/etc/docker"])

    # Subtree that must stay persistent even when the general layer is volatile
    persistent_subtree: Optional[str] = "/etc/users"
    persistent_subtree_store: str = "/dstack/persistent/overlay/etc/users"

    def layer_root(self) -> str:
        root = self.volatile_root if self.policy == OverlayPolicy.VOLATILE else self.persistent_overlay_root
        return f"{root.rstrip('/')}{self.target}/{self.layer_name}"

    def upper_dir(self) -> str:
        return f"{self.layer_root()}/upper"

    def work_dir(self) -> str:
        return f"{self.layer_root()}/work"


@dataclass
class RuntimeConfig:
    """Docker runtime registration."""
    daemon_config_path: str = "/etc/docker/daemon.json"
    runtime_name: str = "sysbox-runc"
    runtime_path: str = "/usr/bin/sysbox-runc"
    strategy: MergeStrategy = MergeStrategy.MERGE
    merge_helper: Optional[str] = None
    backup_suffix: str = ".backup"

    # Used by the template strategy only
    log_driver: str = "json-file"
    log_opts: Dict[str, str] = field(default_factory=lambda: {
        "max-size": "100m",
        "max-file": "10",
    })


@dataclass
class ServiceConfig:
    """Service unit names and startup timing."""
    manager_unit: str = "sysbox-mgr.service"
    fs_unit: str = "sysbox-fs.service"
    overlay_unit: Optional[str] = None

    # Keyed by role: overlay, manager, fs
    settle_delays: Dict[str, float] = field(default_factory=lambda: {
        "overlay": 0.0,
        "manager": 3.0,
        "fs": 2.0,
    })
    poll_interval: float = 0.5
    readiness_timeout: float = 15.0

    def ordered_units(self) -> List[str]:
        """Units in start order: overlay activation, manager, filesystem."""
        units = [self.overlay_unit] if self.overlay_unit else []
        return units + [self.manager_unit, self.fs_unit]

    def unit_settle_delays(self) -> Dict[str, float]:
        """Minimum settle delay per configured unit name."""
        roles = {self.overlay_unit: "overlay", self.manager_unit: "manager", self.fs_unit: "fs"}
        return {unit: float(self.settle_delays.get(role, 0.0))
                for unit, role in roles.items() if unit}


@dataclass
class IdentityConfig:
    """subuid/subgid mapping for the sysbox user."""
    enabled: bool = True
    user: str = "sysbox"
    start: int = 200000
    count: int = 65536
    files: List[str] = field(default_factory=lambda: ["/etc/subuid", "/etc/subgid"])

    def mapping_line(self) -> str:
        return f"{self.user}:{self.start}:{self.count}"


@dataclass
class AttestationConfig:
    """Pinned versions and digests of the external sources."""
    rsync_version: str = "3.2.7"
    rsync_url: str = "https://download.samba.org/pub/rsync/src/rsync-3.2.7.tar.gz"
    rsync_sha256: str = "4e7d9d3f6ed10878c58c5fb724a67dacf4b6aac7340b13e488fb2dc41346f2bb"

    sysbox_version: str = "v0.6.7"
    sysbox_url: str = "https://github.com/nestybox/sysbox.git"
    sysbox_commit: str = "3a69811f54f8f83264ebb36dcaf51708e80b9e84"

    # Optional gate run before any host mutation
    verify_before_install: bool = False
    rsync_archive: Optional[str] = None
    sysbox_source_dir: Optional[str] = None


@dataclass
class AppConfig:
    """Main application configuration container."""

    host: HostConfig = field(default_factory=HostConfig)
    paths: PathConfig = field(default_factory=PathConfig)
    overlay: OverlayConfig = field(default_factory=OverlayConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)

    # Application metadata
    version: str = field(default_factory=_get_version_from_file)
    app_name: str = "dstack-sysbox-installer"
    config_version: str = "1.0"

    # Runtime settings
    debug_mode: bool = False
    log_level: LogLevel = LogLevel.INFO

    def __post_init__(self):
        """Post-initialization processing."""
        self._load_environment_variables()
        self._validate_config()

    def _load_environment_variables(self) -> None:
        """Load configuration from environment variables."""
        if env_mode := os.getenv("SYSBOX_ACCESS_MODE"):
            try:
                self.host.access_mode = AccessMode(env_mode.lower())
            except ValueError:
                logging.warning(f"Invalid access mode in environment: {env_mode}")

        if env_root := os.getenv("SYSBOX_HOST_ROOT"):
            self.host.host_root = env_root

        if env_ssh_host := os.getenv("SYSBOX_SSH_HOST"):
            self.host.ssh_host = env_ssh_host

        if env_ssh_password := os.getenv("SYSBOX_SSH_PASSWORD"):
            self.host.ssh_password = env_ssh_password

        if env_policy := os.getenv("SYSBOX_OVERLAY_POLICY"):
            try:
                self.overlay.policy = OverlayPolicy(env_policy.lower())
            except ValueError:
                logging.warning(f"Invalid overlay policy in environment: {env_policy}")

        if env_strategy := os.getenv("SYSBOX_RUNTIME_STRATEGY"):
            try:
                self.runtime.strategy = MergeStrategy(env_strategy.lower())
            except ValueError:
                logging.warning(f"Invalid runtime strategy in environment: {env_strategy}")

        if env_debug := os.getenv("SYSBOX_DEBUG"):
            self.debug_mode = _env_flag(env_debug)
            if self.debug_mode:
                self.log_level = LogLevel.DEBUG

        if env_log_level := os.getenv("SYSBOX_LOG_LEVEL"):
            try:
                self.log_level = LogLevel(env_log_level.upper())
            except ValueError:
                logging.warning(f"Invalid log level in environment: {env_log_level}")

    def _validate_config(self) -> None:
        """Validate configuration values."""
        from ..utils.validators import get_validator
        validator = get_validator()

        if self.host.command_timeout <= 0:
            raise ValueError("Command timeout must be positive")

        if self.host.access_mode == AccessMode.SSH:
            if self.host.connection_timeout <= 0:
                raise ValueError("Connection timeout must be positive")
            if self.host.max_connection_attempts <= 0:
                raise ValueError("Max connection attempts must be positive")
        elif not validator.validate_host_path(self.host.host_root):
            raise ValueError(f"Host root must be an absolute path: {self.host.host_root}")

        for path in (self.paths.host_bin_dir, self.paths.runtime_unit_dir,
                     self.paths.persistent_unit_dir, self.paths.data_dir,
                     self.overlay.target, self.runtime.daemon_config_path):
            result = validator.validate_host_path(path)
            if not result:
                raise ValueError(result.message)

        for unit in self.services.ordered_units():
            result = validator.validate_unit_name(unit)
            if not result:
                raise ValueError(result.message)

        unknown_roles = set(self.services.settle_delays) - {"overlay", "manager", "fs"}
        if unknown_roles:
            raise ValueError(f"Unknown settle delay roles: {', '.join(sorted(unknown_roles))}")

        if self.services.poll_interval <= 0:
            raise ValueError("Poll interval must be positive")

        if self.services.readiness_timeout < 0:
            raise ValueError("Readiness timeout cannot be negative")

        if self.runtime.strategy == MergeStrategy.HELPER and not self.runtime.merge_helper:
            raise ValueError("The helper strategy requires runtime.merge_helper")

        if not validator.validate_sha256(self.attestation.rsync_sha256):
            raise ValueError("rsync checksum must be a SHA256 hex digest")

        if not validator.validate_commit_hash(self.attestation.sysbox_commit):
            raise ValueError("Sysbox commit must be a full 40-character hash")

    def save_to_file(self, file_path: Union[str, Path]) -> None:
        """
        Save configuration to a JSON file.

        Args:
            file_path: Path to save the config file

        Raises:
            IOError: If the file cannot be written
        """
        file_path = Path(file_path)

        try:
            config_dict = self._to_serializable_dict()
            file_path.parent.mkdir(parents=True, exist_ok=True)

            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logging.info(f"Configuration saved to {file_path}")

        except (OSError, TypeError) as e:
            raise IOError(f"Failed to save configuration to {file_path}: {e}")

    def _to_serializable_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON-serializable dictionary."""
        config_dict = asdict(self)

        config_dict['host']['access_mode'] = self.host.access_mode.value
        config_dict['overlay']['policy'] = self.overlay.policy.value
        config_dict['runtime']['strategy'] = self.runtime.strategy.value
        config_dict['log_level'] = self.log_level.value

        # Never write credentials to disk
        config_dict['host']['ssh_password'] = None

        return config_dict

    @classmethod
    def load_from_file(cls, file_path: Union[str, Path]) -> 'AppConfig':
        """
        Load configuration from a JSON file.

        Args:
            file_path: Path to load the config file from

        Returns:
            AppConfig instance loaded from file

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ValueError: If the config file is invalid
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                config_dict = json.load(f)

            return cls._from_dict(config_dict)

        except (OSError, TypeError, ValueError) as e:
            raise ValueError(f"Failed to load configuration from {file_path}: {e}")

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> 'AppConfig':
        """Create AppConfig instance from dictionary."""
        host_dict = dict(config_dict.get('host', {}))
        if mode := host_dict.get('access_mode'):
            host_dict['access_mode'] = AccessMode(mode)

        overlay_dict = dict(config_dict.get('overlay', {}))
        if policy := overlay_dict.get('policy'):
            overlay_dict['policy'] = OverlayPolicy(policy)

        runtime_dict = dict(config_dict.get('runtime', {}))
        if strategy := runtime_dict.get('strategy'):
            runtime_dict['strategy'] = MergeStrategy(strategy)

        services_dict = dict(config_dict.get('services', {}))
        if delays := services_dict.get('settle_delays'):
            services_dict['settle_delays'] = {**ServiceConfig().settle_delays, **delays}

        log_level = LogLevel.INFO
        if log_level_str := config_dict.get('log_level'):
            try:
                log_level = LogLevel(log_level_str)
            except ValueError:
                logging.warning(f"Invalid log level in config: {log_level_str}")

        return cls(
            host=HostConfig(**host_dict),
            paths=PathConfig(**config_dict.get('paths', {})),
            overlay=OverlayConfig(**overlay_dict),
            runtime=RuntimeConfig(**runtime_dict),
            services=ServiceConfig(**services_dict),
            identity=IdentityConfig(**config_dict.get('identity', {})),
            attestation=AttestationConfig(**config_dict.get('attestation', {})),
            version=config_dict.get('version', _get_version_from_file()),
            app_name=config_dict.get('app_name', 'dstack-sysbox-installer'),
            config_version=config_dict.get('config_version', '1.0'),
            debug_mode=config_dict.get('debug_mode', False),
            log_level=log_level,
        )

    def get_unit_source_paths(self) -> List[Path]:
        """Get the container-side paths of the unit files to install."""
        source_dir = Path(self.paths.unit_source_dir)
        return [source_dir / unit for unit in self.services.ordered_units()]


# Global configuration instance
_global_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance.

    Returns:
        Global AppConfig instance

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _global_config
    if _global_config is None:
        raise RuntimeError("Configuration not initialized. Call init_config() first.")
    return _global_config


def init_config(config_file: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Initialize the global configuration.

    Args:
        config_file: Optional path to config file. If None, defaults are used.

    Returns:
        Initialized AppConfig instance

    Raises:
        FileNotFoundError: If config_file was given but does not exist
        ValueError: If config_file is invalid
    """
    global _global_config

    if config_file:
        _global_config = AppConfig.load_from_file(config_file)
    else:
        _global_config = AppConfig()

    return _global_config
