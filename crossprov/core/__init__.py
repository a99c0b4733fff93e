"""
Core functionality for crossprov.

This package contains the foundational modules that the provisioner depends on.
"""

from .exceptions import (
    ProvisionError,
    ConfigError,
    InvalidLocator,
    FetchExhausted,
    ManifestFetchFailure,
    CorruptArchive,
    WriteFailure,
    MissingArtifact,
    ProvisionTimeout,
    LockTimeout,
)

from .download import (
    RetryPolicy,
    download_file,
    validate_url,
)

from .filesystem import (
    extract_archive,
    detect_archive_format,
    safe_rmtree,
)

from .locking import destination_lock

__all__ = [
    "ProvisionError",
    "ConfigError",
    "InvalidLocator",
    "FetchExhausted",
    "ManifestFetchFailure",
    "CorruptArchive",
    "WriteFailure",
    "MissingArtifact",
    "ProvisionTimeout",
    "LockTimeout",
    "RetryPolicy",
    "download_file",
    "validate_url",
    "extract_archive",
    "detect_archive_format",
    "safe_rmtree",
    "destination_lock",
]
