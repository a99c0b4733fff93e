"""
Manifest-driven artifact retrieval.

A manifest is a JSON list of records describing files stored by digest on a
tooltool-style server::

    [
      {
        "filename": "MacOSX10.12.sdk.tar.xz",
        "size": 61234567,
        "digest": "8a2b...",
        "algorithm": "sha512",
        "unpack": true
      }
    ]

Two fetchers are available. BuiltinManifestFetcher downloads every record
from ``<base_url>/<algorithm>/<digest>`` and verifies it. CommandManifestFetcher
delegates to an external retrieval utility (``tooltool.py ... fetch``). Both
write into a staging directory chosen by the caller.
"""

import json
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from crossprov.core.download import RetryPolicy, download_file, validate_url
from crossprov.core.exceptions import (
    FetchExhausted,
    InvalidLocator,
    ManifestFetchFailure,
    ProvisionTimeout,
)
from crossprov.core.filesystem import detect_archive_format, extract_archive, safe_rmtree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestRecord:
    """One file listed in a manifest."""

    filename: str
    digest: str
    algorithm: str = "sha512"
    size: Optional[int] = None
    unpack: bool = False


def read_manifest(manifest_path: Path, artifact: Optional[str] = None) -> List[ManifestRecord]:
    """
    Read and validate a manifest file.

    Raises:
        InvalidLocator: If the manifest file does not exist
        ManifestFetchFailure: If the manifest cannot be parsed
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.is_file():
        raise InvalidLocator(f"Manifest not found: {manifest_path}", artifact)

    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestFetchFailure(f"Cannot read manifest {manifest_path}: {e}", artifact) from e

    if not isinstance(data, list) or not data:
        raise ManifestFetchFailure(
            f"Manifest {manifest_path} must be a non-empty list of records", artifact
        )

    records = []
    for entry in data:
        if not isinstance(entry, dict) or "filename" not in entry or "digest" not in entry:
            raise ManifestFetchFailure(
                f"Manifest record needs 'filename' and 'digest': {entry!r}", artifact
            )
        filename = str(entry["filename"])
        if "/" in filename or "\\" in filename or filename in ("", ".", ".."):
            raise ManifestFetchFailure(f"Invalid manifest filename: {filename!r}", artifact)

        records.append(
            ManifestRecord(
                filename=filename,
                digest=str(entry["digest"]),
                algorithm=str(entry.get("algorithm", "sha512")).lower(),
                size=entry.get("size"),
                unpack=bool(entry.get("unpack", False)),
            )
        )
    return records


class BuiltinManifestFetcher:
    """Fetch manifest records directly over HTTP."""

    def __init__(
        self,
        base_url: str,
        policy: Optional[RetryPolicy] = None,
        deadline: Optional[float] = None,
    ):
        """
        Initialize fetcher.

        Args:
            base_url: Server root; records live at <base_url>/<algorithm>/<digest>
            policy: Retry policy for each record download
            deadline: Optional time.monotonic() deadline for the whole run
        """
        self.base_url = base_url
        self.policy = policy or RetryPolicy()
        self.deadline = deadline

    def record_url(self, record: ManifestRecord) -> str:
        return f"{self.base_url.rstrip('/')}/{record.algorithm}/{record.digest}"

    def fetch(self, manifest_path: Path, staging: Path, artifact: Optional[str] = None) -> None:
        """
        Download, verify and optionally unpack every record into staging.

        Raises:
            InvalidLocator: If the manifest or base URL is malformed
            ManifestFetchFailure: If a record cannot be retrieved or verified
            CorruptArchive: If an unpack record cannot be extracted
        """
        validate_url(self.base_url, artifact)
        records = read_manifest(manifest_path, artifact)

        for record in records:
            target = Path(staging) / record.filename
            try:
                download_file(
                    self.record_url(record),
                    target,
                    policy=self.policy,
                    expected_digest=record.digest,
                    algorithm=record.algorithm,
                    deadline=self.deadline,
                    artifact=artifact,
                )
            except FetchExhausted as e:
                raise ManifestFetchFailure(
                    f"Could not retrieve {record.filename}: {e.message}", artifact
                ) from e
            except ValueError as e:
                # Unsupported digest algorithm
                raise ManifestFetchFailure(f"{record.filename}: {e}", artifact) from e

            if record.size is not None and target.stat().st_size != record.size:
                raise ManifestFetchFailure(
                    f"Size mismatch for {record.filename}: expected {record.size}, "
                    f"got {target.stat().st_size}",
                    artifact,
                )

            if record.unpack:
                archive_format = detect_archive_format(record.filename)
                if archive_format is None:
                    raise ManifestFetchFailure(
                        f"Cannot unpack {record.filename}: unknown archive format", artifact
                    )
                extract_archive(
                    target, staging, archive_format, artifact, deadline=self.deadline
                )

            logger.info(f"Fetched {record.filename} from manifest")


class CommandManifestFetcher:
    """Fetch a manifest through an external retrieval utility."""

    def __init__(
        self,
        command: Sequence[str],
        base_url: str = "",
        policy: Optional[RetryPolicy] = None,
        variables: Optional[Mapping[str, str]] = None,
        deadline: Optional[float] = None,
    ):
        """
        Initialize fetcher.

        Args:
            command: Command template; '{base_url}', '{manifest}' and any
                configuration variable are substituted in each part
            base_url: Server URL passed to the utility
            policy: Retry policy for the whole command
            variables: Extra template values
            deadline: Optional time.monotonic() deadline for the whole run
        """
        if not command:
            raise ValueError("Manifest command cannot be empty")
        self.command = tuple(command)
        self.base_url = base_url
        self.policy = policy or RetryPolicy(max_attempts=1)
        self.variables = dict(variables or {})
        self.deadline = deadline

    def build_command(self, manifest_path: Path) -> List[str]:
        values = {**self.variables, "base_url": self.base_url, "manifest": str(manifest_path)}
        try:
            return [part.format_map(values) for part in self.command]
        except (KeyError, ValueError) as e:
            raise ManifestFetchFailure(f"Invalid manifest command template: {e}") from e

    def fetch(self, manifest_path: Path, staging: Path, artifact: Optional[str] = None) -> None:
        """
        Run the utility with staging as working directory.

        Raises:
            InvalidLocator: If the manifest file does not exist
            ManifestFetchFailure: If the utility is missing or keeps failing
        """
        manifest_path = Path(manifest_path)
        if not manifest_path.is_file():
            raise InvalidLocator(f"Manifest not found: {manifest_path}", artifact)

        args = self.build_command(manifest_path)
        staging = Path(staging)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            timeout = self.policy.timeout_seconds
            if self.deadline is not None:
                remaining = self.deadline - time.monotonic()
                if remaining <= 0:
                    raise ProvisionTimeout("Deadline reached before manifest fetch", artifact)
                timeout = min(timeout, remaining)

            logger.info(f"Running manifest fetch: {' '.join(args)}")
            try:
                subprocess.run(args, cwd=staging, check=True, timeout=timeout)
                return
            except FileNotFoundError as e:
                raise ManifestFetchFailure(
                    f"Retrieval utility not found: {args[0]}", artifact
                ) from e
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                last_error = e

            if attempt < self.policy.max_attempts:
                delay = self.policy.delay_seconds
                if self.deadline is not None:
                    delay = max(0.0, min(delay, self.deadline - time.monotonic()))
                logger.warning(
                    f"Manifest fetch attempt {attempt}/{self.policy.max_attempts} failed: "
                    f"{last_error}. Retrying in {delay:g}s..."
                )
                _clear_directory(staging)
                time.sleep(delay)

        raise ManifestFetchFailure(
            f"Manifest fetch of {manifest_path} failed after "
            f"{self.policy.max_attempts} attempt(s): {last_error}",
            artifact,
        ) from last_error


def _clear_directory(path: Path) -> None:
    """Remove leftovers of a failed attempt."""
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            safe_rmtree(entry)
        else:
            entry.unlink()
