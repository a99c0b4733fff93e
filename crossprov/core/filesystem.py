"""
File system utilities for crossprov.

This module provides the archive and directory operations the provisioner
needs:
- Archive extraction (tar.zst, tar.xz, tar.gz, tar.bz2, tar, zip)
- Path traversal protection for archive members
- Staging directories and atomic replacement of a destination
- Safe recursive deletion
"""

import errno
import logging
import lzma
import os
import shutil
import stat
import sys
import tarfile
import tempfile
import time
import zipfile
import zlib
from pathlib import Path
from typing import Optional, Union

import zstandard

from crossprov.core.exceptions import CorruptArchive, ProvisionTimeout, WriteFailure

logger = logging.getLogger(__name__)

ARCHIVE_FORMATS = ("tar.zst", "tar.xz", "tar.gz", "tar.bz2", "tar", "zip")

_FORMAT_SUFFIXES = {
    ".tar.zst": "tar.zst",
    ".tzst": "tar.zst",
    ".tar.xz": "tar.xz",
    ".txz": "tar.xz",
    ".tar.gz": "tar.gz",
    ".tgz": "tar.gz",
    ".tar.bz2": "tar.bz2",
    ".tbz2": "tar.bz2",
    ".tar": "tar",
    ".zip": "zip",
}

_TAR_MODES = {
    "tar.xz": "r:xz",
    "tar.gz": "r:gz",
    "tar.bz2": "r:bz2",
    "tar": "r:",
}

_WRITE_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS, errno.ENOSPC}

# Toolchains ship symlinks (e.g. clang++ -> clang), so use the "tar" filter
# rather than "data" where the interpreter supports extraction filters.
_TAR_FILTER = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}

# Errors raised by the decompressors and archive readers on malformed input
_CORRUPTION_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    zstandard.ZstdError,
    lzma.LZMAError,
    zlib.error,
    EOFError,
    OSError,
)


# ============================================================================
# Path Utilities
# ============================================================================


def is_relative_to(path: Path, parent: Path) -> bool:
    """Check whether path is parent or lies below it."""
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def detect_archive_format(name: str) -> Optional[str]:
    """
    Infer the archive format from a file name or URL.

    Example:
        >>> detect_archive_format("https://host/artifacts/public/build/cctools.tar.zst")
        'tar.zst'
    """
    name = name.lower().split("?", 1)[0]
    for suffix, archive_format in _FORMAT_SUFFIXES.items():
        if name.endswith(suffix):
            return archive_format
    return None


def is_empty_directory(path: Union[str, Path]) -> bool:
    """Return True if path is a directory with no entries."""
    path = Path(path)
    if not path.is_dir():
        return False
    return not any(path.iterdir())


def ensure_writable_directory(path: Union[str, Path], artifact: Optional[str] = None) -> Path:
    """
    Create path if needed and check that it is writable.

    Raises:
        WriteFailure: If the directory cannot be created or written
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteFailure(f"Cannot create directory {path}: {e}", artifact) from e

    if not path.is_dir():
        raise WriteFailure(f"Not a directory: {path}", artifact)
    if not os.access(path, os.W_OK | os.X_OK):
        raise WriteFailure(f"Directory is not writable: {path}", artifact)
    return path


# ============================================================================
# Archive Extraction
# ============================================================================


def _validate_archive_path(name: str, destination: Path, artifact: Optional[str]) -> None:
    """
    Validate that an archive member path stays inside destination.

    Links already extracted under destination are followed, so a member
    written through a symlink is checked against where it would land.

    Raises:
        CorruptArchive: If the member attempts directory traversal
    """
    root = os.path.realpath(destination)
    member_path = os.path.realpath(os.path.join(root, name))
    if not is_relative_to(Path(member_path), Path(root)):
        raise CorruptArchive(
            f"Archive member '{name}' escapes the extraction directory", artifact
        )


def _validate_link_target(
    member: tarfile.TarInfo, destination: Path, artifact: Optional[str]
) -> None:
    """
    Validate that a symlink or hard link member points inside destination.

    Symlink targets are relative to the member's directory, hard link
    targets to the archive root.

    Raises:
        CorruptArchive: If the link target is outside destination
    """
    root = os.path.realpath(destination)
    if member.issym():
        target = os.path.join(root, os.path.dirname(member.name), member.linkname)
    else:
        target = os.path.join(root, member.linkname)
    if not is_relative_to(Path(os.path.realpath(target)), Path(root)):
        raise CorruptArchive(
            f"Archive member '{member.name}' links outside the extraction "
            f"directory: {member.linkname}",
            artifact,
        )


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
    archive_format: Optional[str] = None,
    artifact: Optional[str] = None,
    remove_archive: bool = True,
    deadline: Optional[float] = None,
) -> Path:
    """
    Extract an archive into a destination directory.

    The source archive is deleted once extraction succeeds, unless
    remove_archive is False.

    Args:
        archive_path: Path to the archive file
        destination: Directory to extract into (created if missing)
        archive_format: One of ARCHIVE_FORMATS; inferred from the file name if None
        artifact: Artifact name used in error messages
        remove_archive: Delete the archive after a successful extraction
        deadline: Optional time.monotonic() value checked before each member

    Returns:
        The destination directory

    Raises:
        CorruptArchive: If the archive cannot be decompressed or unpacked, or
            a member or link target lies outside destination
        WriteFailure: If the destination is not writable
        ProvisionTimeout: If the deadline passes during extraction

    Example:
        >>> extract_archive("cctools.tar.zst", "/builds/worker", "tar.zst")
    """
    archive_path = Path(archive_path)
    destination = Path(destination)

    archive_format = archive_format or detect_archive_format(archive_path.name)
    if archive_format not in ARCHIVE_FORMATS:
        raise CorruptArchive(
            f"Unsupported archive format: {archive_format}. "
            f"Supported: {', '.join(ARCHIVE_FORMATS)}",
            artifact,
        )

    if not archive_path.is_file():
        raise CorruptArchive(f"Archive not found: {archive_path}", artifact)

    ensure_writable_directory(destination, artifact)

    logger.debug(f"Extracting {archive_path} ({archive_format}) into {destination}")

    try:
        if archive_format == "zip":
            _extract_zip(archive_path, destination, artifact, deadline)
        elif archive_format == "tar.zst":
            _extract_tar_zst(archive_path, destination, artifact, deadline)
        else:
            _extract_tar(
                archive_path, destination, _TAR_MODES[archive_format], artifact, deadline
            )
    except (CorruptArchive, WriteFailure):
        raise
    except _CORRUPTION_ERRORS as e:
        if isinstance(e, PermissionError) or (
            isinstance(e, OSError) and e.errno in _WRITE_ERRNOS
        ):
            raise WriteFailure(f"Cannot write into {destination}: {e}", artifact) from e
        raise CorruptArchive(f"Failed to extract {archive_path.name}: {e}", artifact) from e

    if remove_archive:
        archive_path.unlink()

    return destination


def _check_deadline(deadline: Optional[float], artifact: Optional[str]) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise ProvisionTimeout("Deadline reached during extraction", artifact)


def _extract_zip(
    archive_path: Path, destination: Path, artifact: Optional[str], deadline: Optional[float]
) -> None:
    """Extract a ZIP archive."""
    with zipfile.ZipFile(archive_path, "r") as zf:
        for member in zf.namelist():
            _check_deadline(deadline, artifact)
            _validate_archive_path(member, destination, artifact)
            zf.extract(member, destination)


def _extract_tar_zst(
    archive_path: Path, destination: Path, artifact: Optional[str], deadline: Optional[float]
) -> None:
    """Extract a zstd-compressed tar archive via an intermediate .tar file."""
    tar_path = archive_path.with_name(archive_path.name + ".tar")
    dctx = zstandard.ZstdDecompressor()
    try:
        with open(archive_path, "rb") as ifh, open(tar_path, "wb") as ofh:
            dctx.copy_stream(ifh, ofh)
        _extract_tar(tar_path, destination, "r:", artifact, deadline)
    finally:
        if tar_path.exists():
            tar_path.unlink()


def _extract_tar(
    archive_path: Path,
    destination: Path,
    mode: str,
    artifact: Optional[str],
    deadline: Optional[float] = None,
) -> None:
    """
    Extract a tar archive with specified compression.

    Members are extracted one at a time, each checked against what is
    already on disk, so a symlink planted by an earlier member cannot
    redirect a later one outside destination.
    """
    symlinks = []
    with tarfile.open(archive_path, mode) as tar:
        for member in tar:
            _check_deadline(deadline, artifact)
            _validate_archive_path(member.name, destination, artifact)
            if member.issym() or member.islnk():
                _validate_link_target(member, destination, artifact)
            if member.issym():
                symlinks.append(member.name)

            # Directory modes stay at their defaults so that a read-only
            # directory does not block the members extracted into it.
            tar.extract(member, destination, set_attrs=not member.isdir(), **_TAR_FILTER)

    # A link may point through another link extracted after it
    for name in symlinks:
        try:
            _validate_archive_path(name, destination, artifact)
        except CorruptArchive:
            os.unlink(os.path.join(destination, name))
            raise


# ============================================================================
# ============================================================================


def make_staging_directory(destination: Path, artifact: Optional[str] = None) -> Path:
    """
    Create a staging directory next to destination (same filesystem).

    Raises:
        WriteFailure: If the parent directory is not writable
    """
    parent = ensure_writable_directory(destination.parent, artifact)
    try:
        staging = tempfile.mkdtemp(prefix=f".{destination.name}-staging-", dir=parent)
    except OSError as e:
        raise WriteFailure(f"Cannot create staging directory in {parent}: {e}", artifact) from e
    return Path(staging)


def replace_directory(source: Path, destination: Path, artifact: Optional[str] = None) -> None:
    """
    Move source to destination, replacing any previous destination.

    The previous destination is renamed aside first and restored if the move
    fails, so destination is always either the old or the new content.

    Raises:
        WriteFailure: If the move fails
    """
    previous = None
    try:
        if destination.is_symlink() or destination.exists():
            previous = destination.with_name(f".{destination.name}-old-{os.getpid()}")
            _remove_path(previous)
            os.replace(destination, previous)
        os.replace(source, destination)
    except OSError as e:
        if previous is not None and not destination.exists() and previous.exists():
            os.replace(previous, destination)
        raise WriteFailure(f"Cannot move {source} to {destination}: {e}", artifact) from e

    if previous is not None:
        _remove_path(previous)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        safe_rmtree(path)
    else:
        path.unlink(missing_ok=True)


def safe_rmtree(path: Union[str, Path], missing_ok: bool = True) -> None:
    """
    Recursively delete a directory, clearing read-only bits when needed.

    Args:
        path: Directory to delete
        missing_ok: Do not raise if path does not exist
    """
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        if missing_ok:
            return
        raise FileNotFoundError(f"Path not found: {path}")

    def handle_remove_readonly(func, failed_path, exc):
        os.chmod(failed_path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
        func(failed_path)

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=handle_remove_readonly)
    else:
        shutil.rmtree(path, onerror=handle_remove_readonly)


__all__ = [
    "ARCHIVE_FORMATS",
    "is_relative_to",
    "detect_archive_format",
    "is_empty_directory",
    "ensure_writable_directory",
    "extract_archive",
    "make_staging_directory",
    "replace_directory",
    "safe_rmtree",
]
