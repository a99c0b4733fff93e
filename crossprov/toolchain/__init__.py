"""
Toolchain provisioning for crossprov.

This package fetches toolchain artifacts, installs them, and builds the
environment configuration for the downstream build.
"""

from crossprov.toolchain.provisioner import (
    Provisioner,
    ProvisionResult,
    InstallResult,
)
from crossprov.toolchain.manifest import (
    ManifestRecord,
    BuiltinManifestFetcher,
    CommandManifestFetcher,
    read_manifest,
)

__all__ = [
    "Provisioner",
    "ProvisionResult",
    "InstallResult",
    "ManifestRecord",
    "BuiltinManifestFetcher",
    "CommandManifestFetcher",
    "read_manifest",
]
