"""
Tests for host state snapshots, outcomes and pipeline progress.
"""

import unittest

from sysbox_installer.models.host_state import (
    HostState, MountEntry, OverlayLayer, parse_mount_table
)
from sysbox_installer.models.installation_state import (
    InstallationState, PipelineProgress, StageStatus
)
from sysbox_installer.models.outcome import HostCommandError, Outcome, OutcomeKind


PROC_MOUNTS = """\
/dev/vda1 / ext4 ro,relatime 0 0
overlay /etc/wireguard overlay rw,lowerdir=/etc/wireguard,upperdir=/var/volatile/overlay/etc/wireguard/upper,workdir=/var/volatile/overlay/etc/wireguard/work 0 0
tmpfs /run/my\\040dir tmpfs rw 0 0
"""

MOUNT_OUTPUT = """\
/dev/vda1 on / type ext4 (ro,relatime)
overlay on /etc type overlay (rw,lowerdir=/etc,upperdir=/u,workdir=/w)
"""


class TestMountTable(unittest.TestCase):
    """Mount table parsing."""

    def test_parse_proc_mounts(self):
        entries = parse_mount_table(PROC_MOUNTS)
        self.assertEqual(len(entries), 3)
        self.assertEqual(entries[1].target, "/etc/wireguard")
        self.assertTrue(entries[1].is_overlay)
        self.assertEqual(entries[1].option("upperdir"),
                         "/var/volatile/overlay/etc/wireguard/upper")
        self.assertEqual(entries[2].target, "/run/my dir")

    def test_parse_mount_command_output(self):
        entries = parse_mount_table(MOUNT_OUTPUT)
        self.assertEqual([e.target for e in entries], ["/", "/etc"])
        self.assertEqual(entries[1].fstype, "overlay")
        self.assertEqual(entries[1].option("workdir"), "/w")

    def test_missing_option(self):
        entry = MountEntry("tmpfs", "/tmp", "tmpfs", "rw")
        self.assertIsNone(entry.option("upperdir"))


class TestOverlayLayer(unittest.TestCase):

    def test_mount_command(self):
        layer = OverlayLayer("/etc", "/v/upper", "/v/work", "/etc")
        self.assertEqual(
            layer.mount_command(),
            ["mount", "-t", "overlay", "overlay", "-o",
             "lowerdir=/etc,upperdir=/v/upper,workdir=/v/work", "/etc"],
        )
        self.assertTrue(layer.as_mount_entry().is_overlay)


class TestHostState(unittest.TestCase):
    """HostState returns new values instead of mutating."""

    def test_overlay_detection_is_exact_mount_point(self):
        state = HostState(mounts=parse_mount_table(PROC_MOUNTS))
        self.assertFalse(state.is_overlay_mounted("/etc"))
        self.assertTrue(state.is_overlay_mounted("/etc/wireguard"))

    def test_with_and_without_mount(self):
        base = HostState()
        entry = MountEntry("overlay", "/etc", "overlay")
        mounted = base.with_mount(entry)

        self.assertFalse(base.is_mounted("/etc"))
        self.assertTrue(mounted.is_overlay_mounted("/etc"))
        self.assertFalse(mounted.without_mount("/etc").is_mounted("/etc"))

    def test_without_mount_removes_top_of_stack(self):
        state = HostState(mounts=(
            MountEntry("/dev/vda2", "/etc", "ext4"),
            MountEntry("overlay", "/etc", "overlay"),
        ))
        after = state.without_mount("/etc")
        self.assertEqual(after.top_mount("/etc").fstype, "ext4")

    def test_unit_tracking(self):
        state = HostState().with_unit_files(["a.service"]).with_unit_active("a.service")
        self.assertTrue(state.has_unit_file("a.service"))
        self.assertTrue(state.is_unit_active("a.service"))
        self.assertFalse(state.with_unit_active("a.service", False).is_unit_active("a.service"))
        self.assertEqual(state.to_dict()["active_units"], ["a.service"])


class TestOutcome(unittest.TestCase):

    def test_kinds(self):
        self.assertTrue(Outcome.ok().succeeded)
        soft = Outcome.soft_failure("not mounted")
        self.assertFalse(soft.succeeded)
        self.assertEqual(str(soft), "soft_failure: not mounted")
        self.assertEqual(HostCommandError("mount failed").outcome.kind, OutcomeKind.HARD_FAILURE)


class TestPipelineProgress(unittest.TestCase):
    """Step tracking for a single run."""

    def test_installed_states(self):
        self.assertFalse(InstallationState.ABSENT.is_installed)
        self.assertTrue(InstallationState.INSTALLED_STOPPED.is_installed)
        self.assertTrue(InstallationState.INSTALLED_RUNNING.is_installed)

    def test_failure_and_skip_remaining(self):
        progress = PipelineProgress()
        progress.start_step("detection")
        progress.complete_step("detection")
        progress.start_step("attestation")
        progress.fail_step("attestation", "Checksum mismatch")
        progress.skip_remaining("aborted")
        progress.finish()

        self.assertTrue(progress.failed)
        self.assertEqual(progress.last_error, "Checksum mismatch")
        self.assertEqual(progress.get_step("report").status, StageStatus.SKIPPED)

        summary = progress.get_summary()
        self.assertTrue(summary["failed"])
        self.assertEqual(summary["steps"][0]["status"], "completed")

    def test_warning_counts_as_complete(self):
        progress = PipelineProgress()
        progress.start_step("startup")
        progress.warn_step("startup", "sysbox-fs.service is not active")
        self.assertTrue(progress.get_step("startup").is_complete())
        self.assertEqual(progress.warnings, ["sysbox-fs.service is not active"])
        self.assertFalse(progress.failed)

    def test_unknown_step(self):
        with self.assertRaises(KeyError):
            PipelineProgress().get_step("compile")


if __name__ == "__main__":
    unittest.main()
