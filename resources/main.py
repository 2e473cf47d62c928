"""
dstack-sysbox-installer - Main Application Entry Point

Provisions the Sysbox container runtime onto a dstack host from a privileged
helper container: binaries, a writable /etc overlay, Docker runtime
registration and transient systemd units.
"""

import sys
import json
import argparse
import logging
import traceback
from typing import Any, Dict, Optional

from sysbox_installer.config.settings import (
    init_config, AppConfig, AccessMode, LogLevel, MergeStrategy, OverlayPolicy
)
from sysbox_installer.models.outcome import InstallerError
from sysbox_installer.utils.logger import setup_logging, get_logger
from sysbox_installer.services.host_gateway import init_host_gateway, get_host_gateway
from sysbox_installer.services.attestation_service import AttestationService
from sysbox_installer.services.installation_service import (
    init_installation_service, get_installation_service
)


class SysboxInstallerApp:
    """Main application class for dstack-sysbox-installer."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.logger: Optional[logging.Logger] = None
        self.output_logger: Optional[logging.Logger] = None
        self.json_output = False
        self.summary: Dict[str, Any] = {}

    def initialize(self, args: argparse.Namespace) -> None:
        """
        Load configuration, apply command line overrides and set up logging.

        Raises:
            FileNotFoundError: If --config names a missing file
            ValueError: If the configuration is invalid
        """
        self.config = init_config(args.config)
        self.apply_arguments(args)

        self.logger = setup_logging(level=self.config.log_level, log_file=args.log_file)
        self.output_logger = get_logger("cli")
        self.logger.info(f"Starting {self.config.app_name} v{self.config.version}")

    def apply_arguments(self, args: argparse.Namespace) -> None:
        """Update configuration from command line arguments."""
        config = self.config

        if args.debug:
            config.debug_mode = True
            config.log_level = LogLevel.DEBUG

        if args.access_mode:
            config.host.access_mode = AccessMode(args.access_mode)
        if args.host_root:
            config.host.host_root = args.host_root
        if args.ssh_host:
            config.host.ssh_host = args.ssh_host
            if not args.access_mode:
                config.host.access_mode = AccessMode.SSH
        if args.ssh_key:
            config.host.ssh_key_file = args.ssh_key

        if args.overlay_policy:
            config.overlay.policy = OverlayPolicy(args.overlay_policy)
        if args.strategy:
            config.runtime.strategy = MergeStrategy(args.strategy)
        if args.merge_helper:
            config.runtime.merge_helper = args.merge_helper
        if args.verify_sources:
            config.attestation.verify_before_install = True

        self.json_output = args.json

        # Re-run validation after overrides
        config._validate_config()

    def _output(self, message: str) -> None:
        self.output_logger.info(message)

    def _start_services(self) -> None:
        gateway = init_host_gateway(self.config.host)
        service = init_installation_service(self.config, gateway)
        service.set_output_callback(self._output)
        service.set_progress_callback(
            lambda progress: self.logger.debug(
                f"[{progress.progress_percentage:.0f}%] {progress.message}"
            )
        )

    def run_install(self) -> int:
        """Run the installation pipeline."""
        self._start_services()
        service = get_installation_service()
        try:
            result = service.run()
        except InstallerError:
            if service.progress:
                self.summary = service.progress.get_summary()
            raise

        self.summary = result.to_dict()
        if result.already_installed:
            self.logger.info("Nothing to do")
        elif not result.fully_active:
            self.logger.warning("Installation finished with warnings")
        return 0

    def run_remove(self) -> int:
        self._start_services()
        removed = get_installation_service().remove()
        self.summary = {"removed_units": removed}
        return 0

    def run_status(self) -> int:
        self._start_services()
        report = get_installation_service().report_status()
        self.summary = report.to_dict()
        return 0

    def run_verify_rsync(self, path: str) -> int:
        digest = AttestationService(self.config.attestation).verify_rsync(path)
        self.summary = {"file": path, "sha256": digest, "verified": True}
        return 0

    def run_verify_sysbox(self, path: str) -> int:
        commit = AttestationService(self.config.attestation).verify_sysbox(path)
        self.summary = {"source_dir": path, "commit": commit, "verified": True}
        return 0

    def print_summary(self, exit_code: int) -> None:
        if not self.json_output:
            return
        summary = dict(self.summary)
        summary["exit_code"] = exit_code
        print(json.dumps(summary, indent=2, default=str))

    def cleanup(self) -> None:
        """Release the host connection."""
        try:
            gateway = get_host_gateway()
        except RuntimeError:
            return
        gateway.close()
        if self.logger:
            self.logger.debug("Application shutdown completed")


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the command line argument parser."""
    parser = argparse.ArgumentParser(
        description="dstack-sysbox-installer - Install Sysbox on a dstack host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Install (default command)
  %(prog)s status                           # Show Sysbox service status
  %(prog)s remove                           # Stop and remove transient units
  %(prog)s verify-rsync rsync-3.2.7.tar.gz  # Check the rsync source checksum
  %(prog)s verify-sysbox ./sysbox           # Check the Sysbox source commit
  %(prog)s --access-mode chroot install     # Use chroot into /host
  %(prog)s --json install                   # Print a JSON summary on stdout
        """)

    parser.add_argument(
        'command',
        nargs='?',
        default='install',
        choices=['install', 'status', 'remove', 'verify-rsync', 'verify-sysbox'],
        help='Operation to run (default: install)'
    )
    parser.add_argument(
        'path',
        nargs='?',
        help='Archive or source directory for the verify commands'
    )

    host_group = parser.add_argument_group('Host Access')
    host_group.add_argument(
        '--access-mode',
        choices=[m.value for m in AccessMode],
        help='How commands reach the host (default: nsenter)'
    )
    host_group.add_argument(
        '--host-root',
        metavar='PATH',
        help='Bind-mounted host root for chroot mode (default: /host)'
    )
    host_group.add_argument(
        '--ssh-host',
        metavar='HOST',
        help='Remote host for ssh mode (implies --access-mode ssh)'
    )
    host_group.add_argument(
        '--ssh-key',
        metavar='KEY_FILE',
        help='Private key for ssh mode'
    )

    install_group = parser.add_argument_group('Installation Options')
    install_group.add_argument(
        '--overlay-policy',
        choices=[p.value for p in OverlayPolicy],
        help='Where the /etc overlay keeps its writes (default: volatile)'
    )
    install_group.add_argument(
        '--strategy',
        choices=[s.value for s in MergeStrategy],
        help='Docker configuration update strategy (default: merge)'
    )
    install_group.add_argument(
        '--merge-helper',
        metavar='PATH',
        help='Host path of the merge helper for --strategy helper'
    )
    install_group.add_argument(
        '--verify-sources',
        action='store_true',
        help='Verify configured source artifacts before touching the host'
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument(
        '--config',
        metavar='CONFIG_FILE',
        help='Path to configuration file'
    )
    config_group.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    config_group.add_argument(
        '--log-file',
        metavar='PATH',
        help='Also write a debug log to PATH'
    )
    config_group.add_argument(
        '--json',
        action='store_true',
        help='Print a machine-readable summary on stdout'
    )

    return parser


def main(argv=None) -> int:
    """Main application entry point."""
    app = SysboxInstallerApp()
    exit_code = 0

    parser = create_argument_parser()
    args = parser.parse_args(argv)
    if args.command.startswith('verify-') and not args.path:
        parser.error(f"{args.command} requires a path")

    try:
        app.initialize(args)

        if args.command == 'status':
            exit_code = app.run_status()
        elif args.command == 'remove':
            exit_code = app.run_remove()
        elif args.command == 'verify-rsync':
            exit_code = app.run_verify_rsync(args.path)
        elif args.command == 'verify-sysbox':
            exit_code = app.run_verify_sysbox(args.path)
        else:
            exit_code = app.run_install()

    except KeyboardInterrupt:
        if app.logger:
            app.logger.info("Installation interrupted by user")
        else:
            print("\nInstallation interrupted by user", file=sys.stderr)
        exit_code = 130

    except InstallerError as e:
        app.logger.error(f"ERROR: {e}")
        app.summary.setdefault("error", str(e))
        exit_code = 1

    except (FileNotFoundError, ValueError) as e:
        if app.logger:
            app.logger.error(f"Configuration error: {e}")
        else:
            print(f"Configuration error: {e}", file=sys.stderr)
        exit_code = 1

    except Exception as e:
        if app.logger:
            app.logger.error(f"Unexpected error: {e}")
            app.logger.debug(traceback.format_exc())
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
        exit_code = 1

    finally:
        app.cleanup()

    app.print_summary(exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
