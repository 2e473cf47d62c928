"""
Observed host state for dstack-sysbox-installer.

This module contains immutable snapshots of the host-global resources the
installer touches: the mount table and the service unit catalog. Components
receive a HostState and return a new one describing what they changed, which
keeps them testable against a fake host.
"""

from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional, Tuple


@dataclass(frozen=True)
class MountEntry:
    """Single line of the host mount table."""
    source: str
    target: str
    fstype: str
    options: str = ""

    @property
    def is_overlay(self) -> bool:
        return self.fstype == "overlay"

    def option(self, name: str) -> Optional[str]:
        """Get the value of a key=value mount option."""
        for opt in self.options.split(","):
            key, _, value = opt.partition("=")
            if key == name:
                return value
        return None


@dataclass(frozen=True)
class OverlayLayer:
    """
    An overlay mount description.

    The mount point must exist before mounting; its previous content becomes
    the read-only lower layer.
    """
    lower_dir: str
    upper_dir: str
    work_dir: str
    mount_point: str

    def mount_options(self) -> str:
        return f"lowerdir={self.lower_dir},upperdir={self.upper_dir},workdir={self.work_dir}"

    def mount_command(self) -> List[str]:
        return ["mount", "-t", "overlay", "overlay", "-o", self.mount_options(), self.mount_point]

    def as_mount_entry(self) -> MountEntry:
        return MountEntry("overlay", self.mount_point, "overlay", self.mount_options())


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts octal-escapes spaces, tabs, newlines and backslashes
    for escaped, plain in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, plain)
    return value


def parse_mount_table(text: str) -> Tuple[MountEntry, ...]:
    """
    Parse mount table text.

    Accepts both the /proc/mounts format ("src target type opts 0 0") and the
    output of the mount command ("src on target type fstype (opts)").

    Args:
        text: Raw mount table text

    Returns:
        Tuple of MountEntry in table order
    """
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 6 and parts[1] == "on" and parts[3] == "type":
            options = parts[5].strip("()") if len(parts) > 5 else ""
            entries.append(MountEntry(parts[0], parts[2], parts[4], options))
        elif len(parts) >= 3:
            options = parts[3] if len(parts) > 3 else ""
            entries.append(MountEntry(
                _unescape_mount_field(parts[0]),
                _unescape_mount_field(parts[1]),
                parts[2],
                options,
            ))
    return tuple(entries)


@dataclass(frozen=True)
class HostState:
    """Snapshot of the mount table and unit catalog of the target host."""
    mounts: Tuple[MountEntry, ...] = ()
    active_units: FrozenSet[str] = frozenset()
    unit_files: FrozenSet[str] = frozenset()

    def mounts_at(self, target: str) -> List[MountEntry]:
        return [m for m in self.mounts if m.target == target]

    def top_mount(self, target: str) -> Optional[MountEntry]:
        """Get the most recently stacked mount at a target, if any."""
        entries = self.mounts_at(target)
        return entries[-1] if entries else None

    def is_overlay_mounted(self, target: str) -> bool:
        """Check whether an overlay filesystem is mounted exactly at target."""
        return any(m.is_overlay for m in self.mounts_at(target))

    def is_mounted(self, target: str) -> bool:
        return bool(self.mounts_at(target))

    def is_unit_active(self, unit: str) -> bool:
        return unit in self.active_units

    def has_unit_file(self, unit: str) -> bool:
        return unit in self.unit_files

    def with_mount(self, entry: MountEntry) -> "HostState":
        return replace(self, mounts=self.mounts + (entry,))

    def without_mount(self, target: str) -> "HostState":
        """Drop the top-most mount at target."""
        mounts = list(self.mounts)
        for index in range(len(mounts) - 1, -1, -1):
            if mounts[index].target == target:
                del mounts[index]
                break
        return replace(self, mounts=tuple(mounts))

    def with_unit_active(self, unit: str, active: bool = True) -> "HostState":
        if active:
            return replace(self, active_units=self.active_units | {unit})
        return replace(self, active_units=self.active_units - {unit})

    def with_unit_files(self, units: List[str], present: bool = True) -> "HostState":
        if present:
            return replace(self, unit_files=self.unit_files | frozenset(units))
        return replace(self, unit_files=self.unit_files - frozenset(units))

    def to_dict(self) -> Dict[str, object]:
        return {
            "mounts": [
                {"source": m.source, "target": m.target, "fstype": m.fstype}
                for m in self.mounts
            ],
            "active_units": sorted(self.active_units),
            "unit_files": sorted(self.unit_files),
        }
