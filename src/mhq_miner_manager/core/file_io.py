"""Durable file activation and content hashing.

Everything the manager leaves on disk (artifacts, unit files, plists, the
pointer file, the installation record) becomes visible through a single
rename, so a reader sees either the previous file or the complete new one.

- atomic_write: stage bytes beside the target, fsync, rename over it
- move_into_place: rename an already-complete staged file over its target
- compute_file_hash: SHA-256 of a file as 'sha256:<hex>'

On Windows the rename is retried briefly because scanners and indexers hold
freshly written executables open; elsewhere the parent directory is fsynced
so the rename itself survives a crash.
"""

import hashlib
import os
import sys
import tempfile
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

HASH_PREFIX = 'sha256:'

PathLike = str | os.PathLike


def compute_file_hash(file_path: PathLike) -> str:
    """SHA-256 of a file's bytes as 'sha256:<hex>', read in blocks.

    Raises:
        OSError: If the file is missing or unreadable
    """
    with Path(file_path).open('rb') as stream:
        return HASH_PREFIX + hashlib.file_digest(stream, 'sha256').hexdigest()


@retry(
    retry=retry_if_exception_type(PermissionError),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=0.5),
    reraise=True,
)
def _rename_windows(src: str, dst: str) -> None:
    os.replace(src, dst)


def _rename(src: Path, dst: Path) -> None:
    if sys.platform == 'win32':
        _rename_windows(str(src), str(dst))
        return
    os.replace(src, dst)
    _sync_directory(dst.parent)


def _sync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # not supported on every filesystem
        pass
    finally:
        os.close(fd)


def atomic_write(target_path: PathLike, content: bytes) -> None:
    """Replace ``target_path`` with ``content`` in one rename.

    The staging file lives in the target's directory so the rename never
    crosses filesystems. It is removed again if anything fails.

    Raises:
        OSError: If the directory is missing or the write/rename fails
    """
    target = Path(target_path)
    fd, staged_name = tempfile.mkstemp(dir=target.parent, prefix=f'.{target.name}.', suffix='.tmp')
    staged = Path(staged_name)
    try:
        with os.fdopen(fd, 'wb') as stream:
            stream.write(content)
            stream.flush()
            os.fsync(stream.fileno())
        _rename(staged, target)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise


def move_into_place(src: PathLike, dst: PathLike) -> None:
    """Activate a fully written, already fsynced file at ``dst``.

    ``src`` and ``dst`` must be on the same filesystem.
    """
    _rename(Path(src), Path(dst))
