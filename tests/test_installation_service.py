"""
End-to-end tests for the installation pipeline against a fake host.
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from sysbox_installer.config.settings import PathConfig
from sysbox_installer.models.installation_state import InstallationState, StageStatus
from sysbox_installer.models.outcome import HostCommandError, IntegrityError
from sysbox_installer.services.installation_service import InstallationService

from fakes import FakeClock, FakeHostGateway, make_config


MGR = "sysbox-mgr.service"
FS = "sysbox-fs.service"
DAEMON_JSON = "/etc/docker/daemon.json"


class InstallerTestCase(unittest.TestCase):
    """Fake host plus a prepared installer image layout."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp(prefix="sysbox_install_test_"))
        self.clock = FakeClock()
        self.gateway = FakeHostGateway(self.test_dir / "host", clock=self.clock)
        for directory in ("/etc", "/usr/bin", "/usr/sbin"):
            self.gateway.path(directory).mkdir(parents=True)
        self.gateway.write(DAEMON_JSON, json.dumps({
            "log-opts": {"max-size": "20m"},
            "runtimes": {"nvidia": {"path": "/usr/bin/nvidia-container-runtime"}},
        }))
        self.gateway.write("/var/volatile/overlay/etc/wireguard/upper/wg0.conf", b"[Interface]\n")

        bin_dir = self.test_dir / "image" / "bin"
        share_dir = self.test_dir / "image" / "share"
        bin_dir.mkdir(parents=True)
        share_dir.mkdir(parents=True)
        for name in ("sysbox-mgr", "sysbox-fs", "sysbox-runc", "rsync"):
            (bin_dir / name).write_bytes(b"binary")
        for unit in (MGR, FS):
            (share_dir / unit).write_text(f"[Service]\nExecStart=/usr/bin/{unit[:-8]}\n")

        self.config = make_config(paths=PathConfig(
            binary_source_dir=str(bin_dir),
            unit_source_dir=str(share_dir),
        ))
        self.lines = []

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def installer(self) -> InstallationService:
        service = InstallationService(self.config, self.gateway,
                                      clock=self.clock, sleep=self.clock.sleep)
        service.set_output_callback(self.lines.append)
        return service


class TestInstallationPipeline(InstallerTestCase):

    def test_fresh_install(self):
        result = self.installer().run()

        self.assertEqual(result.detected_state, InstallationState.ABSENT)
        self.assertFalse(result.already_installed)
        self.assertTrue(result.fully_active)
        self.assertFalse(result.progress.failed)

        self.assertEqual([m.target for m in self.gateway.mounts], ["/etc"])
        self.assertTrue(self.gateway.path("/usr/bin/sysbox-runc").is_file())
        self.assertEqual(self.gateway.read("/etc/subuid"), b"sysbox:200000:65536\n")
        self.assertTrue(self.gateway.path("/dstack/persistent/sysbox-data").is_dir())
        self.assertEqual(
            self.gateway.read("/var/volatile/overlay/etc/sysbox/upper/wireguard/wg0.conf"),
            b"[Interface]\n",
        )

        document = json.loads(self.gateway.read(DAEMON_JSON))
        self.assertEqual(set(document["runtimes"]), {"nvidia", "sysbox-runc"})
        self.assertEqual(document["log-opts"], {"max-size": "20m"})

        self.assertEqual([u for u, _ in self.gateway.start_log], [MGR, FS])
        self.assertEqual(result.status.unit_states, {MGR: "active", FS: "active"})
        self.assertTrue(result.host_state.is_overlay_mounted("/etc"))
        self.assertTrue(result.host_state.is_unit_active(FS))

    def test_pipeline_order(self):
        self.installer().run()

        def first(predicate):
            return next(i for i, c in enumerate(self.gateway.commands) if predicate(c))

        copy_binaries = first(lambda c: c[0] == "sh" and c[-1].startswith("/usr/bin/"))
        mount_etc = first(lambda c: c[0] == "mount")
        write_daemon = first(lambda c: c[0] == "sh" and c[-1] == DAEMON_JSON)
        copy_units = first(lambda c: c[0] == "sh" and c[-1].startswith("/run/systemd/system/"))
        start = first(lambda c: c[:2] == ["systemctl", "start"])

        self.assertLess(copy_binaries, mount_etc)
        self.assertLess(mount_etc, write_daemon)
        self.assertLess(write_daemon, copy_units)
        self.assertLess(copy_units, start)

    def test_second_run_is_a_no_op(self):
        self.installer().run()
        daemon_json = self.gateway.read(DAEMON_JSON)
        first_run_commands = len(self.gateway.commands)

        result = self.installer().run()

        second_run = self.gateway.commands[first_run_commands:]
        self.assertTrue(result.already_installed)
        self.assertEqual(result.detected_state, InstallationState.INSTALLED_RUNNING)
        self.assertFalse(any(c[0] in ("mount", "umount", "sh", "cp", "mkdir") for c in second_run))
        self.assertEqual(self.gateway.read(DAEMON_JSON), daemon_json)
        self.assertEqual(len(self.gateway.mounts), 1)
        self.assertEqual(result.progress.get_step("etc_overlay").status, StageStatus.SKIPPED)

    def test_stopped_installation_is_not_reinstalled(self):
        self.gateway.write(f"/etc/systemd/system/{MGR}", "[Unit]\n")

        result = self.installer().run()

        self.assertEqual(result.detected_state, InstallationState.INSTALLED_STOPPED)
        self.assertTrue(result.already_installed)
        self.assertEqual(self.gateway.commands_named("mount"), [])
        self.assertTrue(any("systemctl start" in line for line in self.lines))

    def test_partial_startup_is_a_warning(self):
        self.gateway.never_active.add(FS)

        result = self.installer().run()

        self.assertFalse(result.fully_active)
        self.assertEqual(result.startup.inactive, [FS])
        self.assertFalse(result.progress.failed)
        self.assertEqual(result.progress.get_step("startup").status, StageStatus.WARNING)
        self.assertEqual(result.progress.get_step("report").status, StageStatus.COMPLETED)

    def test_mount_failure_aborts_remaining_steps(self):
        self.gateway.fail("mount")
        service = self.installer()

        with self.assertRaises(HostCommandError):
            service.run()

        progress = service.progress
        self.assertEqual(progress.get_step("etc_overlay").status, StageStatus.FAILED)
        self.assertEqual(progress.get_step("runtime_config").status, StageStatus.SKIPPED)
        self.assertEqual(self.gateway.systemctl_calls("start"), [])
        self.assertIsNotNone(progress.finished_at)

    def test_attestation_gate_runs_before_host_mutation(self):
        self.config.attestation.verify_before_install = True
        archive = self.test_dir / "rsync-3.2.7.tar.gz"
        archive.write_bytes(b"tampered")
        self.config.attestation.rsync_archive = str(archive)

        with self.assertRaises(IntegrityError):
            self.installer().run()

        mutating = {"sh", "mkdir", "mount", "umount", "cp", "chmod", "ln"}
        self.assertFalse(any(c[0] in mutating for c in self.gateway.commands))

    def test_remove_and_status(self):
        self.installer().run()
        service = self.installer()

        report = service.report_status()
        self.assertTrue(report.runtime_configured)
        self.assertTrue(report.all_active)

        removed = service.remove()
        self.assertEqual(removed, [MGR, FS])
        self.assertEqual(self.gateway.active, set())
        self.assertEqual(service.detector.detect(), InstallationState.ABSENT)

    def test_summary_is_json_serializable(self):
        result = self.installer().run()
        summary = json.loads(json.dumps(result.to_dict()))
        self.assertEqual(summary["detected_state"], "absent")
        self.assertEqual(summary["status"]["units"][MGR], "active")


if __name__ == "__main__":
    unittest.main()
