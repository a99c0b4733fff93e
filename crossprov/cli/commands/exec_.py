"""
Exec command implementation.

Runs a command with the toolchain environment injected. This is the only
command that hands the environment to another process.
"""

import logging

from crossprov.cli.utils import load_configuration
from crossprov.cross.environment import run_with_environment
from crossprov.toolchain.provisioner import Provisioner

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the exec command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code of the executed command, or 1 if no command was given or
        it could not be started
    """
    command = list(args.cmd or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        logger.error("No command given. Usage: crossprov exec [--no-provision] -- COMMAND")
        return 1

    config = load_configuration(args)
    provisioner = Provisioner(config, jobs=args.jobs)
    if args.no_provision:
        environment = provisioner.environment()
    else:
        environment = provisioner.provision().environment

    try:
        return run_with_environment(command, environment)
    except OSError as e:
        logger.error(f"Cannot run {command[0]}: {e}")
        return 1
