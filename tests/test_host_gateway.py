"""
Tests for the host access gateway: command results, outcomes, access-mode
prefixes and the SSH transport.
"""

import subprocess
import tempfile
import shutil
import unittest
from pathlib import Path
from unittest import mock

from sysbox_installer.config.settings import AccessMode, HostConfig
from sysbox_installer.models.outcome import HostCommandError, OutcomeKind, PreconditionError
from sysbox_installer.services.host_gateway import (
    ChrootGateway, NamespaceGateway, SSHGateway, create_gateway
)

from fakes import FakeHostGateway


def completed(args, returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args, returncode, stdout, stderr)


class TestSubprocessGateways(unittest.TestCase):
    """Namespace-enter and chroot gateways."""

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_namespace_gateway_enters_pid1_namespaces(self, run):
        run.return_value = completed([], stdout=b"ok\n")
        gateway = NamespaceGateway(target_pid=1)

        result = gateway.run(["systemctl", "daemon-reload"])

        self.assertTrue(result.success)
        self.assertEqual(result.stdout, "ok\n")
        called_args = run.call_args[0][0]
        self.assertEqual(called_args, ["nsenter", "-t", "1", "-m", "-p", "-n",
                                       "systemctl", "daemon-reload"])

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_chroot_gateway_uses_host_root(self, run):
        run.return_value = completed([])
        ChrootGateway(host_root="/host").run(["true"])
        self.assertEqual(run.call_args[0][0], ["chroot", "/host", "true"])

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_probe_failure_is_false_not_error(self, run):
        run.return_value = completed([], returncode=1)
        self.assertFalse(NamespaceGateway().probe(["test", "-e", "/nowhere"]))

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_missing_executable_maps_to_127(self, run):
        run.side_effect = FileNotFoundError("nsenter")
        result = NamespaceGateway().run(["true"])
        self.assertEqual(result.exit_code, 127)
        self.assertFalse(result.success)

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_timeout_is_reported_as_failure(self, run):
        run.side_effect = subprocess.TimeoutExpired(cmd="sleep", timeout=1)
        result = NamespaceGateway().run(["sleep", "10"], timeout=1)
        self.assertEqual(result.exit_code, -1)
        self.assertIn("timed out", result.stderr)

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_mutate_raises_on_hard_failure(self, run):
        run.return_value = completed([], returncode=32, stderr=b"mount failed")
        with self.assertRaises(HostCommandError) as ctx:
            NamespaceGateway().mutate(["mount", "-t", "overlay"])
        self.assertIn("mount failed", str(ctx.exception))
        self.assertEqual(ctx.exception.result.exit_code, 32)
        self.assertEqual(ctx.exception.outcome.kind, OutcomeKind.HARD_FAILURE)

    @mock.patch("sysbox_installer.services.host_gateway.subprocess.run")
    def test_best_effort_mutate_returns_soft_failure(self, run):
        run.return_value = completed([], returncode=32, stderr=b"not mounted")
        outcome = NamespaceGateway().mutate(["umount", "/etc/wireguard"], best_effort=True)
        self.assertEqual(outcome.kind, OutcomeKind.SOFT_FAILURE)
        self.assertIn("not mounted", outcome.reason)
        self.assertFalse(outcome.succeeded)


class TestGatewayFilePrimitives(unittest.TestCase):
    """File primitives built on host commands."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp(prefix="sysbox_gateway_test_"))
        self.gateway = FakeHostGateway(self.test_dir / "host")
        self.gateway.path("/etc").mkdir(parents=True)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_write_and_read_round_trip_through_commands(self):
        self.gateway.write_text("/etc/subuid", "root:100000:65536\n")
        self.assertEqual(self.gateway.read_text("/etc/subuid"), "root:100000:65536\n")
        self.assertIn(["cat", "/etc/subuid"], self.gateway.commands)

    def test_read_missing_file_is_precondition_error(self):
        with self.assertRaises(PreconditionError):
            self.gateway.read_bytes("/etc/missing")

    def test_best_effort_copy_tree_tolerates_mkdir_failure(self):
        self.gateway.path("/var/wireguard").mkdir(parents=True)
        self.gateway.fail("mkdir")

        outcome = self.gateway.copy_tree("/var/wireguard", "/etc/sysbox/wireguard", best_effort=True)

        self.assertEqual(outcome.kind, OutcomeKind.SOFT_FAILURE)
        self.assertEqual(self.gateway.commands_named("cp"), [])

    def test_copy_tree_mkdir_failure_is_fatal_by_default(self):
        self.gateway.fail("mkdir")
        with self.assertRaises(HostCommandError):
            self.gateway.copy_tree("/var/wireguard", "/etc/sysbox/wireguard")

    def test_copy_in_sets_mode(self):
        local = self.test_dir / "tool"
        local.write_bytes(b"#!/bin/sh\n")
        self.gateway.make_dirs("/usr/bin")

        self.gateway.copy_in(local, "/usr/bin/tool", mode=0o755)

        self.assertEqual(self.gateway.read("/usr/bin/tool"), b"#!/bin/sh\n")
        self.assertIn(["chmod", "755", "/usr/bin/tool"], self.gateway.commands)

    def test_copy_in_missing_local_file(self):
        with self.assertRaises(PreconditionError):
            self.gateway.copy_in(self.test_dir / "absent", "/usr/bin/absent")

    def test_observe_reads_mounts_and_units(self):
        self.gateway.add_mount("/etc", "overlay")
        self.gateway.write("/run/systemd/system/sysbox-mgr.service", "[Unit]\n")
        self.gateway.active.add("sysbox-mgr.service")

        state = self.gateway.observe(["sysbox-mgr.service", "sysbox-fs.service"],
                                     ["/run/systemd/system"])

        self.assertTrue(state.is_overlay_mounted("/etc"))
        self.assertTrue(state.is_unit_active("sysbox-mgr.service"))
        self.assertTrue(state.has_unit_file("sysbox-mgr.service"))
        self.assertFalse(state.has_unit_file("sysbox-fs.service"))


class TestCreateGateway(unittest.TestCase):
    """Access mode selection."""

    def test_default_is_namespace_entry(self):
        gateway = create_gateway(HostConfig())
        self.assertIsInstance(gateway, NamespaceGateway)
        self.assertEqual(gateway.mode, AccessMode.NSENTER)

    def test_chroot_mode(self):
        gateway = create_gateway(HostConfig(access_mode=AccessMode.CHROOT, host_root="/mnt/host"))
        self.assertIsInstance(gateway, ChrootGateway)
        self.assertEqual(gateway.host_root, "/mnt/host")

    def test_ssh_mode_requires_host(self):
        with self.assertRaises(PreconditionError):
            create_gateway(HostConfig(access_mode=AccessMode.SSH))

    def test_ssh_mode(self):
        gateway = create_gateway(HostConfig(access_mode=AccessMode.SSH, ssh_host="10.0.0.5"))
        self.assertIsInstance(gateway, SSHGateway)
        self.assertEqual(gateway.hostname, "10.0.0.5")


class TestSSHGateway(unittest.TestCase):
    """SSH transport over a mocked paramiko client."""

    def _channel_streams(self, stdout=b"", stderr=b"", exit_code=0):
        stdin = mock.MagicMock()
        out = mock.MagicMock()
        out.read.return_value = stdout
        out.channel.recv_exit_status.return_value = exit_code
        err = mock.MagicMock()
        err.read.return_value = stderr
        return stdin, out, err

    @mock.patch("sysbox_installer.services.host_gateway.SSHClient")
    def test_run_executes_quoted_command(self, client_cls):
        client = client_cls.return_value
        client.exec_command.return_value = self._channel_streams(stdout=b"active\n")

        gateway = SSHGateway("10.0.0.5", password="secret")
        result = gateway.run(["systemctl", "is-active", "sysbox mgr"])

        self.assertTrue(result.success)
        self.assertEqual(result.stdout, "active\n")
        command = client.exec_command.call_args[0][0]
        self.assertEqual(command, "systemctl is-active 'sysbox mgr'")
        client.connect.assert_called_once()

    @mock.patch("sysbox_installer.services.host_gateway.SSHClient")
    def test_stdin_is_forwarded(self, client_cls):
        client = client_cls.return_value
        stdin, out, err = self._channel_streams()
        client.exec_command.return_value = (stdin, out, err)

        gateway = SSHGateway("10.0.0.5", password="secret")
        gateway.write_bytes("/etc/subuid", b"sysbox:200000:65536\n")

        stdin.write.assert_called_once_with(b"sysbox:200000:65536\n")
        stdin.channel.shutdown_write.assert_called_once()

    @mock.patch("sysbox_installer.services.host_gateway.time.sleep")
    @mock.patch("sysbox_installer.services.host_gateway.SSHClient")
    def test_authentication_failure_is_not_retried(self, client_cls, _sleep):
        from paramiko.ssh_exception import AuthenticationException

        client_cls.return_value.connect.side_effect = AuthenticationException("denied")
        gateway = SSHGateway("10.0.0.5", password="wrong", max_retries=3)

        with self.assertRaises(PreconditionError):
            gateway.connect()
        self.assertEqual(client_cls.return_value.connect.call_count, 1)

    @mock.patch("sysbox_installer.services.host_gateway.time.sleep")
    @mock.patch("sysbox_installer.services.host_gateway.SSHClient")
    def test_network_failure_is_retried(self, client_cls, sleep):
        client_cls.return_value.connect.side_effect = OSError("unreachable")
        gateway = SSHGateway("10.0.0.5", password="pw", max_retries=3, retry_delay=1)

        with self.assertRaises(PreconditionError):
            gateway.connect()
        self.assertEqual(client_cls.return_value.connect.call_count, 3)
        self.assertEqual(sleep.call_count, 2)


if __name__ == "__main__":
    unittest.main()
