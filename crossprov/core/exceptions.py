"""
Centralized exception hierarchy for crossprov.

Every failure during a provisioning run is fatal. Each exception records the
artifact and the step it failed in so the CLI can point at the culprit.
"""

from typing import Optional


# ============================================================================
# Base Exceptions
# ============================================================================


class ProvisionError(Exception):
    """Base exception for all provisioning errors."""

    step = "provision"

    def __init__(self, message: str, artifact: Optional[str] = None):
        self.artifact = artifact
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        if self.artifact:
            return f"[{self.artifact}] {self.step}: {self.message}"
        return f"{self.step}: {self.message}"


class ConfigError(Exception):
    """Configuration parsing or validation error."""

    pass


# ============================================================================
# Fetch Exceptions
# ============================================================================


class InvalidLocator(ProvisionError):
    """Raised when an artifact URL or manifest path is malformed."""

    step = "fetch"


class FetchExhausted(ProvisionError):
    """Raised when every retry attempt failed without a successful transfer."""

    step = "fetch"

    def __init__(self, message: str, artifact: Optional[str] = None, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, artifact)


class ManifestFetchFailure(ProvisionError):
    """Raised when a manifest-driven fetch fails."""

    step = "manifest"


# ============================================================================
# Extraction Exceptions
# ============================================================================


class CorruptArchive(ProvisionError):
    """Raised when an archive cannot be decompressed or unpacked."""

    step = "extract"


class WriteFailure(ProvisionError):
    """Raised when the extraction destination is not writable."""

    step = "extract"


# ============================================================================
# Environment Exceptions
# ============================================================================


class MissingArtifact(ProvisionError):
    """Raised when a variable references an artifact path that is absent."""

    step = "environment"


# ============================================================================
# Run Control Exceptions
# ============================================================================


class ProvisionTimeout(ProvisionError):
    """Raised when the run exceeds its overall deadline."""

    step = "deadline"


class LockTimeout(ProvisionError):
    """Raised when a destination lock cannot be acquired within timeout."""

    step = "lock"
