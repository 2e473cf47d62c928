"""
subuid/subgid mapping for dstack-sysbox-installer.

Sysbox allocates user-namespace ID ranges from the sysbox user's entry in
/etc/subuid and /etc/subgid. Writes go through the composed /etc overlay and
keep every other user's entries.
"""

import logging
from typing import List

from .host_gateway import HostGateway
from ..config.settings import IdentityConfig


def ensure_mapping(content: str, user: str, line: str) -> str:
    """
    Return content with exactly one entry for user, equal to line.

    Entries for other users and their order are kept.
    """
    kept = [entry for entry in content.splitlines()
            if entry.strip() and entry.split(":", 1)[0] != user]
    return "\n".join(kept + [line]) + "\n"


class IdentityService:
    """Maintains the sysbox user's subordinate ID ranges."""

    def __init__(self, gateway: HostGateway, config: IdentityConfig):
        self.gateway = gateway
        self.config = config
        self._logger = logging.getLogger(__name__)

    def configure(self) -> List[str]:
        """
        Ensure each mapping file carries the sysbox range.

        Returns:
            Files that were changed
        """
        if not self.config.enabled:
            return []

        self._logger.info("Setting up subuid/subgid...")
        line = self.config.mapping_line()
        changed = []

        for path in self.config.files:
            current = self.gateway.read_text(path) if self.gateway.is_file(path) else ""
            updated = ensure_mapping(current, self.config.user, line)
            if updated == current:
                self._logger.debug(f"{path} already maps {line}")
                continue
            self.gateway.write_text(path, updated)
            changed.append(path)

        self._logger.info(f"Created subuid/subgid mappings ({line})")
        return changed
