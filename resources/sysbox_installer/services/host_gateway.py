"""
Host access gateway for dstack-sysbox-installer.

Every command and file operation against the target host goes through one
HostGateway per run. The gateway enters the host's namespaces with nsenter,
chroots into the bind-mounted host root, or talks to a remote host over SSH
with paramiko, depending on the configured access mode.

File primitives are expressed as host commands (cat, test, cp, ...) so that
reads and writes see the host's own mount namespace, including overlays the
installer mounts during the run.
"""

import shlex
import socket
import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

import paramiko
from paramiko import SSHClient, SFTPClient
from paramiko.ssh_exception import (
    SSHException,
    AuthenticationException,
    NoValidConnectionsError,
    BadHostKeyException
)

from ..config.settings import AccessMode, HostConfig
from ..models.host_state import HostState, parse_mount_table
from ..models.outcome import HostCommandError, Outcome, PreconditionError


class CommandResult:
    """Result of a host command execution."""

    def __init__(self, command: str, exit_code: int, stdout: str, stderr: str,
                 execution_time: float = 0.0):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.execution_time = execution_time

    @property
    def success(self) -> bool:
        """Check if command executed successfully."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Get combined stdout/stderr output."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def __str__(self) -> str:
        return f"Command: {self.command}\nExit Code: {self.exit_code}\nOutput: {self.output}"


@dataclass
class RawResult:
    """Undecoded process result."""
    exit_code: int
    stdout: bytes
    stderr: bytes


class HostGateway(ABC):
    """
    Executes commands against the target host.

    Subclasses only implement _execute_raw; everything else, including file
    access, is built on top of it.
    """

    mode: AccessMode

    def __init__(self, command_timeout: int = 120):
        self.command_timeout = command_timeout
        self._logger = logging.getLogger(__name__)

    @abstractmethod
    def _execute_raw(self, args: Sequence[str], input_data: Optional[bytes] = None,
                     timeout: Optional[int] = None) -> RawResult:
        """Run args on the host and return the raw result."""

    def describe(self) -> str:
        return self.mode.value

    def run(self, args: Sequence[str], input_data: Optional[bytes] = None,
            timeout: Optional[int] = None) -> CommandResult:
        """
        Execute a command on the host.

        A non-zero exit is reported in the result, never raised.

        Args:
            args: Command and arguments
            input_data: Optional bytes fed to the command's stdin
            timeout: Command timeout in seconds (default: command_timeout)

        Returns:
            CommandResult with execution details
        """
        command = shlex.join(args)
        self._logger.debug(f"Executing on host ({self.describe()}): {command}")
        start_time = time.time()

        raw = self._execute_raw(args, input_data, timeout or self.command_timeout)

        execution_time = time.time() - start_time
        result = CommandResult(
            command=command,
            exit_code=raw.exit_code,
            stdout=raw.stdout.decode('utf-8', errors='replace'),
            stderr=raw.stderr.decode('utf-8', errors='replace'),
            execution_time=execution_time
        )

        if result.success:
            self._logger.debug(f"Command completed successfully in {execution_time:.2f}s")
        else:
            self._logger.debug(f"Command exited {result.exit_code}: {result.stderr.strip()}")

        return result

    def probe(self, args: Sequence[str]) -> bool:
        """Run an existence or liveness check; any failure means False."""
        return self.run(args).success

    def mutate(self, args: Sequence[str], best_effort: bool = False,
               input_data: Optional[bytes] = None) -> Outcome:
        """
        Run a host-mutating command.

        Args:
            args: Command and arguments
            best_effort: Whether failure is tolerated
            input_data: Optional stdin bytes

        Returns:
            Outcome.ok() or, for best-effort calls, Outcome.soft_failure()

        Raises:
            HostCommandError: If a non best-effort command fails
        """
        result = self.run(args, input_data=input_data)
        if result.success:
            return Outcome.ok()

        reason = f"'{result.command}' exited {result.exit_code}"
        if result.stderr.strip():
            reason += f": {result.stderr.strip()}"

        if best_effort:
            self._logger.debug(f"Ignoring best-effort failure: {reason}")
            return Outcome.soft_failure(reason)

        self._logger.error(f"Host command failed: {reason}")
        raise HostCommandError(reason, result, Outcome.hard_failure(reason))

    # File primitives, all addressed by host paths

    def exists(self, path: str) -> bool:
        return self.probe(["test", "-e", path])

    def is_dir(self, path: str) -> bool:
        return self.probe(["test", "-d", path])

    def is_file(self, path: str) -> bool:
        return self.probe(["test", "-f", path])

    def which(self, tool: str) -> bool:
        """Check whether a tool is on the host's executable search path."""
        return self.probe(["which", tool])

    def read_bytes(self, path: str) -> bytes:
        """
        Read a host file.

        Raises:
            PreconditionError: If the file cannot be read
        """
        raw = self._execute_raw(["cat", path], None, self.command_timeout)
        if raw.exit_code != 0:
            stderr = raw.stderr.decode('utf-8', errors='replace').strip()
            raise PreconditionError(f"Cannot read {path} on host: {stderr}")
        return raw.stdout

    def read_text(self, path: str) -> str:
        return self.read_bytes(path).decode('utf-8')

    def write_bytes(self, path: str, data: bytes) -> Outcome:
        """Replace a host file's content."""
        return self.mutate(["sh", "-c", 'cat > "$1"', "sh", path], input_data=data)

    def write_text(self, path: str, text: str) -> Outcome:
        return self.write_bytes(path, text.encode('utf-8'))

    def copy_in(self, local_path: Union[str, Path], host_path: str,
                mode: Optional[int] = None) -> Outcome:
        """
        Copy a file from the installer environment onto the host.

        Args:
            local_path: File visible to the installer process
            host_path: Destination path on the host
            mode: Optional permission bits set after the copy

        Raises:
            PreconditionError: If the local file does not exist
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            raise PreconditionError(f"Local file does not exist: {local_path}")

        self._logger.debug(f"Copying {local_path} to host:{host_path}")
        self.write_bytes(host_path, local_path.read_bytes())
        if mode is not None:
            self.chmod(host_path, mode)
        return Outcome.ok()

    def chmod(self, path: str, mode: int, best_effort: bool = False) -> Outcome:
        return self.mutate(["chmod", format(mode, "o"), path], best_effort=best_effort)

    def make_dirs(self, *paths: str, best_effort: bool = False) -> Outcome:
        return self.mutate(["mkdir", "-p", *paths], best_effort=best_effort)

    def remove(self, path: str, best_effort: bool = False) -> Outcome:
        return self.mutate(["rm", "-f", path], best_effort=best_effort)

    def copy_file(self, source: str, destination: str) -> Outcome:
        """Copy a file from one host path to another, preserving attributes."""
        return self.mutate(["cp", "-p", source, destination])

    def copy_tree(self, source: str, destination: str, best_effort: bool = False) -> Outcome:
        """Copy the contents of a host directory into another host directory."""
        outcome = self.make_dirs(destination, best_effort=best_effort)
        if not outcome.succeeded:
            return outcome
        return self.mutate(["cp", "-a", f"{source.rstrip('/')}/.", destination],
                           best_effort=best_effort)

    def symlink(self, target: str, link_name: str, best_effort: bool = False) -> Outcome:
        return self.mutate(["ln", "-sf", target, link_name], best_effort=best_effort)

    def list_dir(self, path: str) -> List[str]:
        result = self.run(["ls", "-A", path])
        if not result.success:
            return []
        return [line for line in result.stdout.splitlines() if line]

    # State observation

    def read_mount_table(self) -> str:
        result = self.run(["cat", "/proc/self/mounts"])
        if result.success:
            return result.stdout
        result = self.run(["mount"])
        return result.stdout if result.success else ""

    def observe(self, units: Iterable[str] = (), unit_dirs: Iterable[str] = ()) -> HostState:
        """
        Snapshot the host mount table and unit catalog.

        Args:
            units: Unit names whose activity and unit files are recorded
            unit_dirs: Directories searched for unit files

        Returns:
            HostState as currently observed on the host
        """
        units = list(units)
        unit_dirs = list(unit_dirs)
        mounts = parse_mount_table(self.read_mount_table())
        active = frozenset(u for u in units if self.probe(["systemctl", "is-active", "--quiet", u]))
        files = frozenset(
            u for u in units
            if any(self.exists(f"{d.rstrip('/')}/{u}") for d in unit_dirs)
        )
        return HostState(mounts=mounts, active_units=active, unit_files=files)

    def close(self) -> None:
        """Release resources held by the gateway."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class _SubprocessGateway(HostGateway):
    """Gateway running a local command prefix in front of every host command."""

    def _prefix(self) -> List[str]:
        raise NotImplementedError

    def _execute_raw(self, args: Sequence[str], input_data: Optional[bytes] = None,
                     timeout: Optional[int] = None) -> RawResult:
        full_args = self._prefix() + list(args)
        try:
            proc = subprocess.run(
                full_args,
                input=input_data,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return RawResult(127, b"", str(e).encode())
        except subprocess.TimeoutExpired:
            return RawResult(-1, b"", f"Command timed out after {timeout} seconds".encode())
        return RawResult(proc.returncode, proc.stdout, proc.stderr)


class NamespaceGateway(_SubprocessGateway):
    """Runs commands inside the mount, PID and network namespaces of a host process."""

    mode = AccessMode.NSENTER

    def __init__(self, target_pid: int = 1, command_timeout: int = 120):
        super().__init__(command_timeout)
        self.target_pid = target_pid

    def _prefix(self) -> List[str]:
        return ["nsenter", "-t", str(self.target_pid), "-m", "-p", "-n"]


class ChrootGateway(_SubprocessGateway):
    """Runs commands chrooted into the bind-mounted host root."""

    mode = AccessMode.CHROOT

    def __init__(self, host_root: str = "/host", command_timeout: int = 120):
        super().__init__(command_timeout)
        self.host_root = host_root

    def describe(self) -> str:
        return f"chroot {self.host_root}"

    def _prefix(self) -> List[str]:
        return ["chroot", self.host_root]


class SSHGateway(HostGateway):
    """
    Runs commands on a remote host over SSH.

    Connects lazily on first use and reconnects if the transport drops.
    """

    mode = AccessMode.SSH

    def __init__(self, hostname: str, username: str = "root",
                 password: Optional[str] = None, key_filename: Optional[str] = None,
                 port: int = 22, connection_timeout: int = 10,
                 max_retries: int = 3, retry_delay: int = 2,
                 command_timeout: int = 120):
        super().__init__(command_timeout)
        self.hostname = hostname
        self.username = username
        self.password = password
        self.key_filename = key_filename
        self.port = port
        self.connection_timeout = connection_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.ssh_client: Optional[SSHClient] = None
        self.sftp_client: Optional[SFTPClient] = None
        self.last_error: Optional[str] = None
        self._connection_lock = threading.Lock()

    def describe(self) -> str:
        return f"ssh {self.username}@{self.hostname}:{self.port}"

    def is_connected(self) -> bool:
        """Check if SSH connection is active."""
        return (self.ssh_client is not None and
                self.ssh_client.get_transport() is not None and
                self.ssh_client.get_transport().is_active())

    def connect(self) -> None:
        """
        Establish the SSH connection.

        Raises:
            PreconditionError: If the host cannot be reached or authentication fails
        """
        with self._connection_lock:
            if self.is_connected():
                return

            self._logger.info(f"Connecting to {self.hostname}:{self.port} as {self.username}")

            for attempt in range(self.max_retries):
                try:
                    self.ssh_client = SSHClient()
                    self.ssh_client.load_system_host_keys()
                    self.ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
                    self.ssh_client.connect(
                        hostname=self.hostname,
                        port=self.port,
                        username=self.username,
                        password=self.password,
                        key_filename=self.key_filename,
                        timeout=self.connection_timeout,
                        banner_timeout=self.connection_timeout,
                        auth_timeout=self.connection_timeout,
                        look_for_keys=self.password is None and self.key_filename is None,
                        allow_agent=self.password is None,
                    )
                    self.last_error = None
                    self._logger.info(f"Successfully connected to {self.hostname}")
                    return

                except AuthenticationException as e:
                    self.last_error = f"Authentication failed: {e}"
                    break

                except BadHostKeyException as e:
                    self.last_error = f"Host key verification failed: {e}"
                    break

                except (NoValidConnectionsError, socket.timeout, socket.error, SSHException) as e:
                    self.last_error = f"Connection failed: {e}"
                    if attempt < self.max_retries - 1:
                        self._logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                        self._logger.info(f"Retrying in {self.retry_delay} seconds...")
                        time.sleep(self.retry_delay)

            self._close_clients()
            self._logger.error(self.last_error)
            raise PreconditionError(f"Cannot connect to {self.hostname}: {self.last_error}")

    def _execute_raw(self, args: Sequence[str], input_data: Optional[bytes] = None,
                     timeout: Optional[int] = None) -> RawResult:
        self.connect()
        command = shlex.join(args)
        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(command, timeout=timeout)
            if input_data is not None:
                stdin.write(input_data)
                stdin.flush()
            stdin.channel.shutdown_write()

            stdout_data = stdout.read()
            stderr_data = stderr.read()
            exit_code = stdout.channel.recv_exit_status()
            return RawResult(exit_code, stdout_data, stderr_data)

        except socket.timeout:
            return RawResult(-1, b"", f"Command timed out after {timeout} seconds".encode())
        except SSHException as e:
            return RawResult(-1, b"", f"Command execution failed: {e}".encode())

    def copy_in(self, local_path: Union[str, Path], host_path: str,
                mode: Optional[int] = None) -> Outcome:
        """Upload a file over SFTP."""
        local_path = Path(local_path)
        if not local_path.is_file():
            raise PreconditionError(f"Local file does not exist: {local_path}")

        self.connect()
        if self.sftp_client is None:
            self.sftp_client = self.ssh_client.open_sftp()

        self._logger.debug(f"Uploading {local_path} to {self.hostname}:{host_path}")
        try:
            self.sftp_client.put(str(local_path), host_path)
        except (IOError, SSHException) as e:
            raise HostCommandError(f"Upload of {local_path} to {host_path} failed: {e}")

        if mode is not None:
            self.chmod(host_path, mode)
        return Outcome.ok()

    def _close_clients(self) -> None:
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, SSHException):
                pass
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, SSHException):
                pass
            self.ssh_client = None

    def close(self) -> None:
        """Close SSH and SFTP connections."""
        with self._connection_lock:
            self._close_clients()
        self._logger.debug("SSH connection closed")


def create_gateway(host: HostConfig) -> HostGateway:
    """
    Build the gateway selected by the host configuration.

    Args:
        host: Host access configuration

    Returns:
        HostGateway for the configured access mode

    Raises:
        PreconditionError: If SSH mode is selected without a host name
    """
    if host.access_mode == AccessMode.NSENTER:
        return NamespaceGateway(target_pid=host.target_pid, command_timeout=host.command_timeout)

    if host.access_mode == AccessMode.CHROOT:
        return ChrootGateway(host_root=host.host_root, command_timeout=host.command_timeout)

    if not host.ssh_host:
        raise PreconditionError("SSH access mode requires host.ssh_host")

    return SSHGateway(
        hostname=host.ssh_host,
        username=host.ssh_user,
        password=host.ssh_password,
        key_filename=host.ssh_key_file,
        port=host.ssh_port,
        connection_timeout=host.connection_timeout,
        max_retries=host.max_connection_attempts,
        retry_delay=host.retry_delay,
        command_timeout=host.command_timeout,
    )


# Global gateway instance, fixed for the whole run
_global_gateway: Optional[HostGateway] = None


def get_host_gateway() -> HostGateway:
    """
    Get the global host gateway instance.

    Raises:
        RuntimeError: If the gateway hasn't been initialized
    """
    global _global_gateway
    if _global_gateway is None:
        raise RuntimeError("Host gateway not initialized. Call init_host_gateway() first.")
    return _global_gateway


def init_host_gateway(host: HostConfig) -> HostGateway:
    """Initialize the global host gateway from configuration."""
    global _global_gateway
    _global_gateway = create_gateway(host)
    return _global_gateway
