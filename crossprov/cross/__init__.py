"""
Cross-compilation environment support for crossprov.

This module builds the per-target environment variables a downstream build
reads, and injects them into child processes.
"""

from crossprov.cross.environment import (
    FlagBundle,
    VariableSpec,
    TargetSpec,
    EnvironmentSpec,
    EnvironmentConfig,
    build_environment,
    run_with_environment,
    variable_name,
)

__all__ = [
    "FlagBundle",
    "VariableSpec",
    "TargetSpec",
    "EnvironmentSpec",
    "EnvironmentConfig",
    "build_environment",
    "run_with_environment",
    "variable_name",
]
