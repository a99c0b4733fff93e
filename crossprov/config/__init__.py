"""Configuration loading for crossprov."""

from crossprov.config.parser import (
    ArtifactDescriptor,
    ManifestSettings,
    ProvisionConfig,
    BUNDLED_CONFIG,
    find_config,
    load_config,
    parse_config,
)

__all__ = [
    "ArtifactDescriptor",
    "ManifestSettings",
    "ProvisionConfig",
    "BUNDLED_CONFIG",
    "find_config",
    "load_config",
    "parse_config",
]
