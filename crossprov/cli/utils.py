"""
Shared utilities for CLI commands.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from crossprov.config.parser import ProvisionConfig, find_config, load_config
from crossprov.cross.environment import EnvironmentConfig

logger = logging.getLogger(__name__)


def load_configuration(args) -> ProvisionConfig:
    """
    Load the configuration selected on the command line.

    Raises:
        ConfigError: If the configuration is missing or invalid
    """
    config_path = args.config if getattr(args, "config", None) else find_config()
    logger.debug(f"Using configuration: {config_path}")
    return load_config(config_path)


def render_environment(environment: EnvironmentConfig, output_format: str) -> str:
    """Render the environment in the requested format."""
    if output_format == "json":
        return environment.to_json()
    return environment.to_shell()


def write_environment(
    environment: EnvironmentConfig,
    output_format: str = "shell",
    output: Optional[Path] = None,
) -> None:
    """
    Write the environment to a file, or to stdout when output is None.

    Args:
        environment: Environment to write
        output_format: 'shell' or 'json'
        output: Destination file
    """
    text = render_environment(environment, output_format) + "\n"
    if output is None:
        sys.stdout.write(text)
        return

    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    logger.info(f"Environment written to {output}")
