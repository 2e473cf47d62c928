"""
dstack-sysbox-installer

Provisions the Sysbox container runtime onto dstack hosts whose /etc is
read-only, from inside a privileged helper container.
"""

from .config.settings import _get_version_from_file

__version__ = _get_version_from_file()
__description__ = "Sysbox installer for dstack hosts"

# Package-level imports for convenience
from .config.settings import AppConfig
from .models.installation_state import InstallationState
from .models.outcome import InstallerError
from .utils.logger import get_logger
from .utils.validators import Validator

__all__ = [
    "AppConfig",
    "InstallationState",
    "InstallerError",
    "get_logger",
    "Validator",
]
