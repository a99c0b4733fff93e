"""
Toolchain provisioning.

This module orchestrates the whole provisioning run:
1. Fetch each artifact (HTTP with bounded retry, or manifest-driven)
2. Extract it into a staging directory beside its destination
3. Move the result into place and check the expected files
4. Build the environment configuration from the installed locations

Each fetch+extract pair is an atomic unit: a destination is either the
previous complete install or the new complete install, never a half-written
one. Units run sequentially by default, or in a thread pool when jobs > 1.
"""

import logging
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from crossprov.config.parser import ArtifactDescriptor, ProvisionConfig
from crossprov.core.download import download_file
from crossprov.core.exceptions import (
    CorruptArchive,
    InvalidLocator,
    LockTimeout,
    ManifestFetchFailure,
    MissingArtifact,
    ProvisionError,
    ProvisionTimeout,
    WriteFailure,
)
from crossprov.core.filesystem import (
    detect_archive_format,
    ensure_writable_directory,
    extract_archive,
    is_empty_directory,
    make_staging_directory,
    replace_directory,
    safe_rmtree,
)
from crossprov.core.locking import destination_lock
from crossprov.cross.environment import EnvironmentConfig, build_environment
from crossprov.toolchain.manifest import BuiltinManifestFetcher, CommandManifestFetcher

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    """Result of installing one artifact."""

    name: str
    """Artifact name"""

    path: Path
    """Directory the artifact was installed into"""

    fetch_time: float
    """Time spent fetching in seconds"""

    extraction_time: float
    """Time spent extracting and moving into place in seconds"""


@dataclass
class ProvisionResult:
    """Result of a complete provisioning run."""

    environment: EnvironmentConfig
    installs: List[InstallResult] = field(default_factory=list)

    @property
    def installed_paths(self) -> Dict[str, Path]:
        return {result.name: result.path for result in self.installs}


class Provisioner:
    """
    Provisions the artifacts listed in a ProvisionConfig.

    Example:
        >>> config = load_config(Path("crossprov.yaml"))
        >>> result = Provisioner(config).provision()
        >>> print(result.environment.to_shell())
    """

    def __init__(self, config: ProvisionConfig, jobs: Optional[int] = None):
        """
        Initialize provisioner.

        Args:
            config: Parsed configuration
            jobs: Number of artifacts installed concurrently (default: config.jobs)
        """
        self.config = config
        self.jobs = jobs or config.jobs
        self._deadline: Optional[float] = None
        self._cancelled = threading.Event()

    # ------------------------------------------------------------------
    # Single artifact operations
    # ------------------------------------------------------------------

    def fetch_artifact(self, descriptor: ArtifactDescriptor, staging: Optional[Path] = None) -> Path:
        """
        Fetch one artifact into a temporary location.

        For URL artifacts the archive is written to a new temporary file and
        its path returned. For manifest artifacts the manifest's files are
        written into a staging directory and that directory is returned.
        The caller removes what this returns.

        Args:
            descriptor: Artifact to fetch
            staging: Directory for the temporary file (default: a new
                staging directory beside the destination)

        Raises:
            InvalidLocator: If the URL or manifest path is malformed
            FetchExhausted: If all download attempts failed
            ManifestFetchFailure: If the manifest-driven fetch failed
        """
        if staging is None:
            staging = self._make_staging(descriptor)

        if descriptor.is_manifest:
            self._manifest_fetcher().fetch(descriptor.manifest, staging, descriptor.name)
            return staging

        if not descriptor.url:
            raise InvalidLocator("Artifact has no URL", descriptor.name)

        archive_format = self._archive_format(descriptor)
        try:
            fd, temp_name = tempfile.mkstemp(
                prefix=f"{descriptor.name}-", suffix=f".{archive_format}", dir=staging
            )
        except OSError as e:
            raise WriteFailure(
                f"Cannot create a download file in {staging}: {e}", descriptor.name
            ) from e
        os.close(fd)
        archive_path = Path(temp_name)

        try:
            return download_file(
                descriptor.url,
                archive_path,
                policy=self.config.retry,
                expected_digest=descriptor.sha256,
                deadline=self._deadline,
                artifact=descriptor.name,
            )
        except BaseException:
            archive_path.unlink(missing_ok=True)
            raise

    def install(self, descriptor: ArtifactDescriptor) -> InstallResult:
        """
        Fetch, extract and move one artifact into place.

        The deadline (and cancellation of a parallel run) is checked between
        steps, per downloaded chunk and per extracted member.

        Raises:
            ProvisionError: On any failure; the destination is left untouched
        """
        self._check_deadline(descriptor.name)
        logger.info(f"Provisioning {descriptor.name} into {descriptor.destination}")

        try:
            with destination_lock(
                descriptor.destination,
                timeout=self._lock_timeout(),
                shared_root=descriptor.is_manifest,
                artifact=descriptor.name,
            ):
                self._check_deadline(descriptor.name)
                staging = self._make_staging(descriptor)
                try:
                    fetch_start = time.time()
                    fetched = self.fetch_artifact(descriptor, staging)
                    fetch_time = time.time() - fetch_start
                    self._check_deadline(descriptor.name)

                    extraction_start = time.time()
                    if descriptor.is_manifest:
                        self._place_manifest_files(descriptor, fetched)
                    else:
                        self._place_archive(descriptor, fetched, staging)
                    extraction_time = time.time() - extraction_start
                finally:
                    safe_rmtree(staging)

                self._verify_installed(descriptor)
        except LockTimeout as e:
            if self._deadline_passed():
                raise ProvisionTimeout(
                    f"Deadline reached while waiting for {descriptor.destination}",
                    descriptor.name,
                ) from e
            raise

        logger.info(
            f"Installed {descriptor.name} (fetch {fetch_time:.2f}s, "
            f"extract {extraction_time:.2f}s)"
        )
        return InstallResult(
            name=descriptor.name,
            path=descriptor.destination,
            fetch_time=fetch_time,
            extraction_time=extraction_time,
        )

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    def provision(self) -> ProvisionResult:
        """
        Install every artifact and build the environment.

        Raises:
            ProvisionError: If any artifact fails; no environment is returned
        """
        start = time.monotonic()
        if self.config.deadline_seconds:
            self._deadline = start + self.config.deadline_seconds

        if self.jobs > 1 and len(self.config.artifacts) > 1:
            installs = self._install_parallel()
        else:
            installs = [self.install(d) for d in self.config.artifacts]

        environment = build_environment(
            {result.name: result.path for result in installs},
            self.config.environment,
            self.config.variables,
        )
        logger.info(
            f"Provisioned {len(installs)} artifact(s) in {time.monotonic() - start:.2f}s"
        )
        return ProvisionResult(environment=environment, installs=installs)

    def environment(self) -> EnvironmentConfig:
        """
        Build the environment from artifacts that are already installed.

        Raises:
            MissingArtifact: If an artifact is not installed
        """
        for descriptor in self.config.artifacts:
            try:
                self._verify_installed(descriptor)
            except ProvisionError as e:
                raise MissingArtifact(
                    f"Not installed at {descriptor.destination}: {e.message}",
                    descriptor.name,
                ) from e

        return build_environment(
            {d.name: d.destination for d in self.config.artifacts},
            self.config.environment,
            self.config.variables,
        )

    def _install_parallel(self) -> List[InstallResult]:
        """
        Install artifacts concurrently.

        Every unit runs to completion; if any failed, the first failure in
        configuration order is raised after all failures are logged. When the
        deadline passes, units still running are cancelled and stop at their
        next check.
        """
        artifacts = self.config.artifacts
        timeout = None
        if self._deadline is not None:
            timeout = max(0.0, self._deadline - time.monotonic())

        executor = ThreadPoolExecutor(
            max_workers=min(self.jobs, len(artifacts)), thread_name_prefix="crossprov"
        )
        try:
            futures = [executor.submit(self.install, d) for d in artifacts]
            done, not_done = wait(futures, timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if not_done:
            self._cancelled.set()
            pending = [d.name for d, f in zip(artifacts, futures) if f in not_done]
            raise ProvisionTimeout(
                f"Deadline of {self.config.deadline_seconds}s reached; "
                f"still running: {', '.join(pending)}"
            )

        failures = []
        results = []
        for descriptor, future in zip(artifacts, futures):
            error = future.exception()
            if error is not None:
                logger.error(f"{descriptor.name} failed: {error}")
                failures.append(error)
            else:
                results.append(future.result())

        if failures:
            raise failures[0]
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _manifest_fetcher(self):
        settings = self.config.manifest
        if settings.fetcher == "command":
            return CommandManifestFetcher(
                settings.command,
                base_url=settings.base_url,
                policy=settings.retry,
                variables=self.config.variables,
                deadline=self._deadline,
            )
        return BuiltinManifestFetcher(
            settings.base_url, policy=settings.retry, deadline=self._deadline
        )

    @staticmethod
    def _archive_format(descriptor: ArtifactDescriptor) -> str:
        archive_format = descriptor.format or detect_archive_format(descriptor.url or "")
        if archive_format is None:
            raise InvalidLocator(
                f"Cannot infer archive format from {descriptor.url!r}; set 'format'",
                descriptor.name,
            )
        return archive_format

    @staticmethod
    def _make_staging(descriptor: ArtifactDescriptor) -> Path:
        """Staging lives beside a destination, or inside a shared root."""
        if descriptor.is_manifest:
            root = ensure_writable_directory(descriptor.destination, descriptor.name)
            try:
                return Path(tempfile.mkdtemp(prefix=".crossprov-staging-", dir=root))
            except OSError as e:
                raise WriteFailure(f"Cannot create staging directory in {root}: {e}", descriptor.name) from e
        return make_staging_directory(descriptor.destination, descriptor.name)

    def _place_archive(self, descriptor: ArtifactDescriptor, archive_path: Path, staging: Path) -> None:
        content = staging / "content"
        extract_archive(
            archive_path,
            content,
            self._archive_format(descriptor),
            descriptor.name,
            deadline=self._deadline,
        )

        source = content / descriptor.subdir if descriptor.subdir else content
        if not source.is_dir():
            raise CorruptArchive(
                f"Archive does not contain directory '{descriptor.subdir}'", descriptor.name
            )
        if is_empty_directory(source):
            raise CorruptArchive("Archive is empty", descriptor.name)

        replace_directory(source, descriptor.destination, descriptor.name)

    @staticmethod
    def _place_manifest_files(descriptor: ArtifactDescriptor, staging: Path) -> None:
        entries = list(staging.iterdir())
        if not entries:
            raise ManifestFetchFailure("Manifest fetch produced no files", descriptor.name)
        for entry in entries:
            replace_directory(entry, descriptor.destination / entry.name, descriptor.name)

    @staticmethod
    def _verify_installed(descriptor: ArtifactDescriptor) -> None:
        destination = descriptor.destination
        if not destination.is_dir() or is_empty_directory(destination):
            raise CorruptArchive(f"Destination is missing or empty: {destination}", descriptor.name)

        error = ManifestFetchFailure if descriptor.is_manifest else CorruptArchive
        for relative in descriptor.expect:
            if not (destination / relative).exists():
                raise error(f"Expected path is missing: {destination / relative}", descriptor.name)

    def _deadline_passed(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _check_deadline(self, artifact: str) -> None:
        if self._cancelled.is_set():
            raise ProvisionTimeout("Cancelled after the run deadline", artifact)
        if self._deadline_passed():
            raise ProvisionTimeout(
                f"Deadline of {self.config.deadline_seconds}s reached", artifact
            )

    def _lock_timeout(self) -> float:
        timeout = self.config.lock_timeout_seconds
        if self._deadline is not None:
            timeout = min(timeout, max(0.0, self._deadline - time.monotonic()))
        return timeout
