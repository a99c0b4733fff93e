"""
Env command implementation.

Prints the environment for artifacts that are already installed.
"""

from crossprov.cli.utils import load_configuration, write_environment
from crossprov.toolchain.provisioner import Provisioner


def run(args) -> int:
    """Run the env command."""
    config = load_configuration(args)
    write_environment(Provisioner(config).environment(), args.format, args.output)
    return 0
