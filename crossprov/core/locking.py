"""
Cross-process locking for install destinations.

Two provisioning runs sharing an installation root (for example two CI jobs on
one worker) must not unpack into the same destination at the same time. Each
install unit holds a file lock next to its destination while it works.

Usage:
    from crossprov.core.locking import destination_lock

    with destination_lock(Path("/builds/worker/clang"), timeout=600):
        # Safely replace the directory
        pass
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from crossprov.core.exceptions import LockTimeout

logger = logging.getLogger(__name__)


def lock_path_for(destination: Path, shared_root: bool = False) -> Path:
    """
    Get the lock file used for a destination.

    Args:
        destination: Directory being installed
        shared_root: True when destination is a shared root (e.g. /tmp) that is
            populated rather than replaced; the lock then lives inside it.
    """
    destination = Path(destination)
    if shared_root:
        return destination / ".crossprov.lock"
    return destination.parent / f".{destination.name}.lock"


@contextmanager
def destination_lock(
    destination: Path,
    timeout: float = 600,
    shared_root: bool = False,
    artifact: Optional[str] = None,
):
    """
    Hold an exclusive lock on destination.

    Args:
        destination: Directory being installed
        timeout: Maximum wait time in seconds
        shared_root: See lock_path_for()
        artifact: Artifact name used in error messages

    Raises:
        LockTimeout: If the lock can't be acquired within timeout
    """
    lock_path = lock_path_for(destination, shared_root)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path), timeout=timeout)

    try:
        lock.acquire()
    except Timeout as e:
        raise LockTimeout(
            f"Could not lock {destination} after {timeout}s. "
            "Another provisioning run may be using it.",
            artifact,
        ) from e

    logger.debug(f"Acquired lock: {lock_path}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Released lock: {lock_path}")
