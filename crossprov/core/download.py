"""
Network download with bounded retry and streaming digest verification.

This module provides the single HTTP transfer path used by the provisioner:
- HTTP/HTTPS downloads with TLS verification
- Fixed attempt count with a fixed delay between attempts
- Per-attempt time budget (checked per chunk) and an optional overall deadline
- Digest verification while streaming (sha256, sha512)
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from requests.exceptions import RequestException

from crossprov.core.exceptions import (
    FetchExhausted,
    InvalidLocator,
    ProvisionTimeout,
    WriteFailure,
)

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https")
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for a fetch path."""

    max_attempts: int = 6
    """Total attempts, including the first one"""

    delay_seconds: float = 10.0
    """Fixed delay between two attempts"""

    timeout_seconds: float = 300.0
    """Timeout applied to each attempt"""

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {self.delay_seconds}")
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"timeout_seconds must be > 0, got {self.timeout_seconds}"
            )


class ChecksumError(Exception):
    """Exception raised when a downloaded payload does not match its digest."""

    pass


class TransferTimeout(Exception):
    """Exception raised when one transfer attempt runs past its time budget."""

    pass


class StreamingHasher:
    """Compute hash incrementally for streaming downloads."""

    def __init__(self, algorithm: str = "sha256"):
        """
        Initialize streaming hasher.

        Args:
            algorithm: Hash algorithm ('sha256', 'sha512')

        Raises:
            ValueError: If algorithm is not supported
        """
        self.algorithm = algorithm.lower()

        if self.algorithm == "sha256":
            self.hasher = hashlib.sha256()
        elif self.algorithm == "sha512":
            self.hasher = hashlib.sha512()
        else:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    def update(self, data: bytes):
        """Add data to hash computation."""
        self.hasher.update(data)

    def finalize(self) -> str:
        """Get final hash value as hex string."""
        return self.hasher.hexdigest()

    def verify(self, expected_hash: str) -> bool:
        """Check if computed hash matches expected value (case-insensitive)."""
        return self.finalize().lower() == expected_hash.lower()


def validate_url(url: str, artifact: Optional[str] = None) -> None:
    """
    Check that a URL can be fetched over HTTP.

    Raises:
        InvalidLocator: If the URL is empty, has no host, or an unsupported scheme
    """
    if not url or not isinstance(url, str):
        raise InvalidLocator("URL cannot be empty", artifact)

    parsed = urlparse(url.strip())
    if parsed.scheme not in SUPPORTED_SCHEMES:
        raise InvalidLocator(
            f"Unsupported URL scheme '{parsed.scheme}' in {url!r} "
            f"(expected one of: {', '.join(SUPPORTED_SCHEMES)})",
            artifact,
        )
    if not parsed.netloc:
        raise InvalidLocator(f"URL has no host: {url!r}", artifact)


def download_file(
    url: str,
    destination: Path,
    policy: Optional[RetryPolicy] = None,
    expected_digest: Optional[str] = None,
    algorithm: str = "sha256",
    deadline: Optional[float] = None,
    artifact: Optional[str] = None,
) -> Path:
    """
    Download a URL to destination, retrying according to policy.

    Args:
        url: URL to download from
        destination: Local path to write; truncated on every attempt
        policy: Retry policy (defaults to RetryPolicy())
        expected_digest: Optional hex digest verified while streaming
        algorithm: Digest algorithm for expected_digest
        deadline: Optional time.monotonic() value bounding the whole download
        artifact: Artifact name used in error messages

    Returns:
        Path to downloaded file

    Raises:
        InvalidLocator: If the URL is malformed
        FetchExhausted: If all attempts failed
        ProvisionTimeout: If the deadline passed before or during an attempt
        WriteFailure: If the destination cannot be written

    Example:
        >>> policy = RetryPolicy(max_attempts=3, delay_seconds=1)
        >>> download_file("https://example.com/cctools.tar.zst", Path("/tmp/x"), policy)
    """
    validate_url(url, artifact)
    policy = policy or RetryPolicy()

    destination = Path(destination)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteFailure(f"Cannot create {destination.parent}: {e}", artifact) from e

    last_error: Optional[Exception] = None
    for attempt in range(1, policy.max_attempts + 1):
        started = time.monotonic()
        timeout = policy.timeout_seconds
        if deadline is not None:
            remaining = deadline - started
            if remaining <= 0:
                raise ProvisionTimeout(
                    f"Deadline reached before attempt {attempt} of {url}", artifact
                )
            timeout = min(timeout, remaining)

        try:
            return _download_once(
                url=url,
                destination=destination,
                timeout=timeout,
                stop_at=started + timeout,
                expected_digest=expected_digest,
                algorithm=algorithm,
            )
        except (RequestException, ChecksumError, TransferTimeout) as e:
            last_error = e
            if deadline is not None and time.monotonic() >= deadline:
                raise ProvisionTimeout(
                    f"Deadline reached while downloading {url}: {e}", artifact
                ) from e
            if attempt == policy.max_attempts:
                break

            delay = policy.delay_seconds
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - time.monotonic()))
            logger.warning(
                f"Download attempt {attempt}/{policy.max_attempts} of {url} failed: {e}. "
                f"Retrying in {delay:g}s..."
            )
            time.sleep(delay)
        except OSError as e:
            # RequestException is an OSError too, so this only sees local I/O
            raise WriteFailure(f"Cannot write {destination}: {e}", artifact) from e

    raise FetchExhausted(
        f"Download of {url} failed after {policy.max_attempts} attempts: {last_error}",
        artifact,
        attempts=policy.max_attempts,
    ) from last_error


def _download_once(
    url: str,
    destination: Path,
    timeout: float,
    stop_at: float,
    expected_digest: Optional[str],
    algorithm: str,
) -> Path:
    """
    Perform a single streamed transfer.

    timeout bounds each socket operation; stop_at (a time.monotonic() value)
    bounds the whole transfer and is checked after every received chunk.

    Raises:
        ChecksumError: If the payload does not match expected_digest
        RequestException: If the HTTP request fails
        TransferTimeout: If the transfer is still running at stop_at
    """
    logger.info(f"Downloading {url}")

    hasher = StreamingHasher(algorithm) if expected_digest else None
    downloaded = 0

    with requests.get(
        url, stream=True, timeout=timeout, allow_redirects=True
    ) as response:
        response.raise_for_status()
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
                    downloaded += len(chunk)
                    if hasher:
                        hasher.update(chunk)
                if time.monotonic() > stop_at:
                    raise TransferTimeout(
                        f"Transfer of {url} exceeded {timeout:g}s "
                        f"after {format_size(downloaded)}"
                    )

    if hasher and not hasher.verify(expected_digest):
        raise ChecksumError(
            f"{algorithm} mismatch for {url}: "
            f"expected {expected_digest}, got {hasher.finalize()}"
        )

    logger.debug(f"Downloaded {format_size(downloaded)} to {destination}")
    return destination


def format_size(num_bytes: int) -> str:
    """
    Format a byte count for log output.

    Example:
        >>> format_size(52428800)
        '50.0 MB'
    """
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / 1024 / 1024:.1f} MB"
