"""
Tests for composing the writable /etc overlay.
"""

import shutil
import tempfile
import unittest
from pathlib import Path

from sysbox_installer.config.settings import OverlayConfig, OverlayPolicy
from sysbox_installer.models.host_state import HostState
from sysbox_installer.models.outcome import HostCommandError
from sysbox_installer.services.overlay_service import OverlayService

from fakes import FakeHostGateway


WG_CONF = b"[Interface]\nPrivateKey = abc=\nAddress = 10.8.0.2/32\n"


class TestOverlayService(unittest.TestCase):
    """Overlay composition against a fake host."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp(prefix="sysbox_overlay_test_"))
        self.gateway = FakeHostGateway(self.test_dir / "host")
        self.gateway.path("/etc").mkdir(parents=True)
        self.config = OverlayConfig()
        self.service = OverlayService(self.gateway, self.config)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _compose(self) -> HostState:
        return self.service.compose_config_overlay(self.gateway.observe())

    def _mount_points(self):
        return [c[-1] for c in self.gateway.commands_named("mount")]

    def test_existing_overlay_is_left_alone(self):
        self.gateway.add_mount("/etc", "overlay")
        state = self._compose()

        self.assertTrue(state.is_overlay_mounted("/etc"))
        self.assertEqual(self.gateway.commands_named("mount"), [])
        self.assertEqual(self.gateway.commands_named("umount"), [])
        self.assertEqual(self.gateway.commands_named("mkdir"), [])

    def test_general_overlay_is_mounted_on_volatile_storage(self):
        state = self._compose()

        self.assertTrue(state.is_overlay_mounted("/etc"))
        self.assertTrue(self.gateway.path("/var/volatile/overlay/etc/sysbox/upper").is_dir())
        self.assertTrue(self.gateway.path("/var/volatile/overlay/etc/sysbox/work").is_dir())
        entry = state.top_mount("/etc")
        self.assertEqual(entry.option("lowerdir"), "/etc")
        self.assertEqual(entry.option("upperdir"), "/var/volatile/overlay/etc/sysbox/upper")

    def test_persistent_policy_uses_persistent_root(self):
        self.service = OverlayService(self.gateway, OverlayConfig(policy=OverlayPolicy.PERSISTENT))
        state = self._compose()
        self.assertEqual(state.top_mount("/etc").option("upperdir"),
                         "/dstack/persistent/overlay/etc/sysbox/upper")

    def test_preserved_config_is_byte_identical(self):
        self.gateway.write("/var/volatile/overlay/etc/wireguard/upper/wg0.conf", WG_CONF)

        self._compose()

        copied = self.gateway.read("/var/volatile/overlay/etc/sysbox/upper/wireguard/wg0.conf")
        self.assertEqual(copied, WG_CONF)
        self.assertIn("wireguard", self.service.preserved)
        self.assertNotIn("docker", self.service.preserved)

    def test_preservation_failure_does_not_abort(self):
        self.gateway.write("/var/volatile/overlay/etc/wireguard/upper/wg0.conf", WG_CONF)
        self.gateway.fail("mkdir", "-p", "/var/volatile/overlay/etc/sysbox/upper/wireguard")

        state = self._compose()

        self.assertTrue(state.is_overlay_mounted("/etc"))
        self.assertNotIn("wireguard", self.service.preserved)

    def test_preservation_happens_before_unmount(self):
        self.gateway.write("/var/volatile/overlay/etc/docker/upper/daemon.json", b"{}")
        self.gateway.path("/etc/docker").mkdir()
        self.gateway.add_mount("/etc/docker", "overlay")

        self._compose()

        names = [c[0] for c in self.gateway.commands]
        self.assertLess(names.index("cp"), names.index("umount"))
        self.assertLess(names.index("umount"), names.index("mount"))

    def test_unmount_failures_are_ignored(self):
        # Neither per-subsystem overlay is mounted
        state = self._compose()
        self.assertEqual(len(self.gateway.commands_named("umount")), 2)
        self.assertTrue(state.is_overlay_mounted("/etc"))

    def test_subsumed_mounts_are_removed_from_state(self):
        self.gateway.path("/etc/wireguard").mkdir()
        self.gateway.add_mount("/etc/wireguard", "overlay")

        state = self._compose()

        self.assertFalse(state.is_mounted("/etc/wireguard"))
        self.assertEqual([m.target for m in self.gateway.mounts], ["/etc"])

    def test_general_mount_failure_is_fatal(self):
        self.gateway.fail("mount")
        with self.assertRaises(HostCommandError):
            self._compose()

    def test_persistent_subtree_mounts_after_general_layer(self):
        self.gateway.path("/dstack/persistent/overlay/etc/users").mkdir(parents=True)

        state = self._compose()

        self.assertEqual(self._mount_points(), ["/etc", "/etc/users"])
        users = state.top_mount("/etc/users")
        self.assertEqual(users.option("upperdir"), "/dstack/persistent/overlay/etc/users/upper")
        self.assertEqual(users.option("lowerdir"), "/etc/users")
        self.assertTrue(self.gateway.path("/etc/users").is_dir())
        self.assertEqual([layer.mount_point for layer in self.service.mounted_layers],
                         ["/etc", "/etc/users"])

    def test_persistent_subtree_skipped_without_store(self):
        self._compose()
        self.assertEqual(self._mount_points(), ["/etc"])


if __name__ == "__main__":
    unittest.main()
