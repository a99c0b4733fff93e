"""
Provision command implementation.

Fetches and installs every configured artifact, then writes the environment.
"""

import logging

from crossprov.cli.utils import load_configuration, write_environment
from crossprov.toolchain.provisioner import Provisioner

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the provision command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    config = load_configuration(args)
    result = Provisioner(config, jobs=args.jobs).provision()
    write_environment(result.environment, args.format, args.output)
    return 0
