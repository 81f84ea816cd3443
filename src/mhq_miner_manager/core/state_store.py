"""Pointer file persistence and the single installed/not-installed query.

The pointer file (``~/.mhqpath``) holds nothing but the absolute install
path. It is the only thing trusted to locate a prior installation: when it
is missing the system is "not installed", whatever is left on disk.

The installation record (``installation.json`` inside the install
directory) describes what was installed so uninstall knows which services
to remove.
"""

from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from ..config import RECORD_FILE_NAME
from ..daemon.paths import get_pointer_file_path
from ..errors import NotFoundError, StatePersistError
from ..models import InstallationRecord
from .file_io import atomic_write


class StateStore:
    """Reads and writes the pointer file and the installation record."""

    def __init__(self, pointer_path: Path | str):
        self._pointer_path = Path(pointer_path)

    @classmethod
    def for_home(cls, home_dir: Path | str) -> "StateStore":
        """Build a store for the default pointer file under ``home_dir``."""
        return cls(get_pointer_file_path(home_dir))

    @property
    def pointer_path(self) -> Path:
        return self._pointer_path

    def write(self, install_path: Path | str) -> None:
        """Atomically replace the pointer file's content with ``install_path``.

        Raises:
            StatePersistError: If the file cannot be written
        """
        try:
            atomic_write(self._pointer_path, str(install_path).encode('utf-8'))
        except OSError as e:
            raise StatePersistError(
                f"could not write pointer file {self._pointer_path}", cause=e
            ) from e
        logger.debug(f"Pointer file {self._pointer_path} -> {install_path}")

    def read(self) -> str:
        """Return the stored install path with surrounding whitespace trimmed.

        Raises:
            NotFoundError: If the file is missing, unreadable or empty
        """
        try:
            content = self._pointer_path.read_text(encoding='utf-8').strip()
        except FileNotFoundError as e:
            raise NotFoundError(f"pointer file {self._pointer_path} does not exist") from e
        except OSError as e:
            raise NotFoundError(
                f"pointer file {self._pointer_path} is not readable", cause=e
            ) from e
        if not content:
            raise NotFoundError(f"pointer file {self._pointer_path} is empty")
        return content

    def remove(self) -> bool:
        """Delete the pointer file, tolerating its absence.

        Returns:
            True if a file was removed, False if it was already gone
        """
        try:
            self._pointer_path.unlink()
        except FileNotFoundError:
            logger.debug(f"Pointer file {self._pointer_path} already absent")
            return False
        return True

    @staticmethod
    def record_path(install_path: Path | str) -> Path:
        return Path(install_path) / RECORD_FILE_NAME

    def write_record(self, record: InstallationRecord) -> None:
        """Persist the installation record inside its install directory.

        Raises:
            StatePersistError: If the file cannot be written
        """
        target = self.record_path(record.install_path)
        try:
            atomic_write(target, record.model_dump_json(indent=2).encode('utf-8'))
        except OSError as e:
            raise StatePersistError(f"could not write installation record {target}", cause=e) from e

    def read_record(self, install_path: Path | str) -> InstallationRecord | None:
        """Load the installation record, or None if it is absent or corrupt."""
        target = self.record_path(install_path)
        try:
            return InstallationRecord.model_validate_json(target.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable installation record {target}: {e}")
            return None

    def current_record(self) -> InstallationRecord | None:
        """Return the record of a live installation, or None.

        An installation is live when the pointer file names a directory
        whose record matches that directory and whose artifacts all exist.
        """
        try:
            install_path = self.read()
        except NotFoundError:
            return None

        record = self.read_record(install_path)
        if record is None:
            logger.debug(f"No installation record under {install_path}")
            return None
        if Path(record.install_path) != Path(install_path):
            logger.warning(
                f"Installation record points at {record.install_path}, "
                f"pointer file at {install_path}"
            )
            return None
        missing = [name for name in record.artifacts if not (Path(install_path) / name).is_file()]
        if missing:
            logger.info(f"Installation at {install_path} is missing artifacts: {', '.join(missing)}")
            return None
        return record

    def is_installed(self) -> bool:
        return self.current_record() is not None
