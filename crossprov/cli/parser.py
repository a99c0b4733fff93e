"""
crossprov CLI argument parser.

This module implements the command-line interface for crossprov using argparse.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from crossprov.core.exceptions import ConfigError, ProvisionError

# Get version from package
try:
    from importlib.metadata import version

    __version__ = version("crossprov")
except Exception:
    __version__ = "0.1.0"

logger = logging.getLogger(__name__)


class CLI:
    """crossprov command-line interface."""

    def __init__(self):
        """Initialize CLI with argument parser."""
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """
        Create argument parser with all subcommands.

        Returns:
            Configured ArgumentParser instance
        """
        parser = argparse.ArgumentParser(
            prog="crossprov",
            description="crossprov - cross-compilation toolchain provisioning",
            epilog='Use "crossprov COMMAND --help" for command-specific help',
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        # Global options
        parser.add_argument(
            "--version", action="version", version=f"crossprov {__version__}"
        )
        parser.add_argument(
            "--verbose", "-v", action="store_true", help="Enable verbose output"
        )
        parser.add_argument(
            "--quiet",
            "-q",
            action="store_true",
            help="Enable minimal output (errors only)",
        )
        parser.add_argument(
            "--config",
            type=Path,
            metavar="PATH",
            help="Path to configuration file "
            "(default: ./crossprov.yaml, else the bundled CI layout)",
        )

        # Subcommands
        subparsers = parser.add_subparsers(
            dest="command", help="Available commands", metavar="COMMAND"
        )

        self._add_provision_command(subparsers)
        self._add_env_command(subparsers)
        self._add_exec_command(subparsers)

        return parser

    @staticmethod
    def _add_output_arguments(parser):
        parser.add_argument(
            "--format",
            choices=["shell", "json"],
            default="shell",
            help="Environment output format (default: shell)",
        )
        parser.add_argument(
            "--output",
            "-o",
            type=Path,
            metavar="FILE",
            help="Write the environment to FILE instead of stdout",
        )

    def _add_provision_command(self, subparsers):
        """Add 'provision' subcommand."""
        parser = subparsers.add_parser(
            "provision",
            help="Fetch and install toolchain artifacts",
            description="Fetch and install every configured artifact, then print "
            "the resulting environment",
        )
        parser.add_argument(
            "--jobs",
            "-j",
            type=int,
            metavar="N",
            help="Install up to N artifacts concurrently (default: from config)",
        )
        self._add_output_arguments(parser)

    def _add_env_command(self, subparsers):
        """Add 'env' subcommand."""
        parser = subparsers.add_parser(
            "env",
            help="Print the environment for installed artifacts",
            description="Build the environment from artifacts that are already "
            "installed, without fetching anything",
        )
        self._add_output_arguments(parser)

    def _add_exec_command(self, subparsers):
        """Add 'exec' subcommand."""
        parser = subparsers.add_parser(
            "exec",
            help="Run a command with the environment injected",
            description="Provision (unless --no-provision) and run COMMAND with "
            "the toolchain environment",
        )
        parser.add_argument(
            "--no-provision",
            action="store_true",
            help="Use already installed artifacts instead of fetching",
        )
        parser.add_argument(
            "--jobs",
            "-j",
            type=int,
            metavar="N",
            help="Install up to N artifacts concurrently (default: from config)",
        )
        parser.add_argument(
            "cmd",
            nargs=argparse.REMAINDER,
            metavar="COMMAND",
            help="Command to run (prefix with -- to pass options)",
        )

    def parse_args(self, args: Optional[List[str]] = None):
        """
        Parse command-line arguments.

        Args:
            args: Arguments to parse (uses sys.argv if None)

        Returns:
            Parsed arguments namespace
        """
        return self.parser.parse_args(args)

    def run(self, args: Optional[List[str]] = None) -> int:
        """
        Run CLI with given arguments.

        Args:
            args: Arguments to parse (uses sys.argv if None)

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        parsed_args = self.parse_args(args)

        self._configure_logging(parsed_args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        try:
            return self._dispatch_command(parsed_args)
        except KeyboardInterrupt:
            logger.info("Operation cancelled by user")
            return 130  # Standard exit code for SIGINT
        except ConfigError as e:
            logger.error(f"Configuration error: {e}")
            return 1
        except ProvisionError as e:
            logger.error(f"Provisioning failed: {e}")
            if parsed_args.verbose:
                import traceback

                traceback.print_exc()
            return 1

    def _configure_logging(self, args):
        """
        Configure logging based on verbose/quiet flags.

        Args:
            args: Parsed arguments with verbose/quiet flags
        """
        if args.verbose:
            level = logging.DEBUG
            format_str = "%(levelname)s [%(name)s] %(message)s"
        elif args.quiet:
            level = logging.ERROR
            format_str = "%(levelname)s: %(message)s"
        else:
            level = logging.INFO
            format_str = "%(message)s"

        # Logs go to stderr so stdout stays usable for `eval "$(crossprov provision)"`
        logging.basicConfig(
            level=level,
            format=format_str,
            stream=sys.stderr,
            force=True,
        )

    def _dispatch_command(self, args) -> int:
        """
        Dispatch to appropriate command handler.

        Args:
            args: Parsed arguments with command field

        Returns:
            Exit code from command handler
        """
        from crossprov.cli.commands import env, exec_, provision

        command_map = {
            "provision": provision.run,
            "env": env.run,
            "exec": exec_.run,
        }

        handler = command_map.get(args.command)
        if not handler:
            logger.error(f"Unknown command: {args.command}")
            return 1

        return handler(args)


def main():
    """Main entry point for CLI."""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
