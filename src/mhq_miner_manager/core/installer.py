"""Install and uninstall orchestration for the MiningHQ services.

The Installer is the only component with business logic. It drives the
platform adapter, the artifact fetcher and the state store in a fixed
order:

Install:
    1. Resolve the install directory
    2. Short-circuit if the pointer file names a live installation
    3. Fetch and verify every artifact (parallel, bounded)
    4. Register the services, one at a time
    5. Write the installation record, then the pointer file last

Uninstall:
    1. Stop and unregister each service (absent services are fine)
    2. Remove the install directory (absent directory is fine)
    3. Remove the pointer file (absent file is fine)

There is no automatic rollback: re-running install_sync converges because
verified artifacts are reused and registration is idempotent.
"""

import os
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator
from urllib.parse import urlparse

from loguru import logger

from ..config import SUPPORTED_OPERATING_SYSTEMS, Settings
from ..daemon.platforms import PlatformAdapter, get_adapter
from ..errors import (
    BusyError,
    ConfigurationError,
    NotFoundError,
    NotInstalledError,
    OperationCancelledError,
    RegistrationError,
    StatePersistError,
    UninstallError,
)
from ..models import InstallationRecord, ProgressEvent, ProgressStage
from .fetcher import ArtifactFetcher
from .state_store import StateStore

ProgressCallback = Callable[[ProgressEvent], None]


class Installer:
    """Installs and removes the MiningHQ services for one user.

    A handle runs at most one lifecycle operation at a time; a second call
    made while one is in flight raises BusyError immediately.
    """

    def __init__(
        self,
        home_dir: Path | str,
        operating_system: str,
        api_endpoint: str,
        *,
        settings: Settings | None = None,
        adapter: PlatformAdapter | None = None,
        fetcher: ArtifactFetcher | None = None,
        state_store: StateStore | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Validate inputs and wire up collaborators.

        Args:
            home_dir: Writable home directory services are installed for
            operating_system: One of SUPPORTED_OPERATING_SYSTEMS
            api_endpoint: Base API URL serving the artifact manifest
            settings: Optional settings (fetch policy); defaults are used otherwise
            adapter: Override the platform adapter (selected from operating_system)
            fetcher: Override the artifact fetcher
            state_store: Override the pointer file store
            progress: Advisory callback invoked at install phase boundaries

        Raises:
            ConfigurationError: If any input is unusable
        """
        self._home_dir = self._validate_home_dir(home_dir)
        if operating_system not in SUPPORTED_OPERATING_SYSTEMS:
            raise ConfigurationError(
                f"unsupported operating system {operating_system!r} "
                f"(expected one of: {', '.join(SUPPORTED_OPERATING_SYSTEMS)})"
            )
        self._validate_endpoint(api_endpoint)

        self._operating_system = operating_system
        self._api_endpoint = api_endpoint
        settings = settings or Settings()

        self._adapter = adapter or get_adapter(operating_system, self._home_dir)
        self._fetcher = fetcher or ArtifactFetcher(
            api_endpoint, operating_system, config=settings.fetch
        )
        self._state = state_store or StateStore.for_home(self._home_dir)
        self._progress = progress
        self._lock = threading.Lock()

    @staticmethod
    def _validate_home_dir(home_dir: Path | str) -> Path:
        if not home_dir or not str(home_dir).strip():
            raise ConfigurationError("home directory is empty")
        path = Path(home_dir)
        if not path.is_dir():
            raise ConfigurationError(f"home directory {path} does not exist")
        if not os.access(path, os.W_OK):
            raise ConfigurationError(f"home directory {path} is not writable")
        return path

    @staticmethod
    def _validate_endpoint(api_endpoint: str) -> None:
        parsed = urlparse(api_endpoint or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError(f"API endpoint {api_endpoint!r} is not an http(s) URL")

    @property
    def home_dir(self) -> Path:
        return self._home_dir

    @property
    def operating_system(self) -> str:
        return self._operating_system

    @property
    def api_endpoint(self) -> str:
        return self._api_endpoint

    @property
    def state_file_path(self) -> Path:
        return self._state.pointer_path

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def install_directory(self) -> Path:
        """Directory a fresh install_sync would use."""
        return self._adapter.resolve_install_directory()

    def is_installed(self) -> bool:
        """Single installed/not-installed query shared by both flows."""
        return self._state.is_installed()

    def current_record(self) -> InstallationRecord | None:
        return self._state.current_record()

    def service_status(self) -> dict[str, str]:
        """Map each recorded service to its service-manager status."""
        record = self._state.current_record()
        if record is None:
            return {}
        return {name: self._adapter.status(name) for name in record.service_identifiers}

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise BusyError(f"cannot start {operation}: another operation is in progress")
        try:
            yield
        finally:
            self._lock.release()

    def _notify(self, stage: ProgressStage, message: str = '') -> None:
        if self._progress is None:
            return
        try:
            self._progress(ProgressEvent(stage=stage, message=message))
        except Exception as e:
            logger.warning(f"Progress callback failed at {stage}: {e}")

    def install_sync(self, cancel_event: threading.Event | None = None) -> InstallationRecord:
        """Install the services, or confirm an existing installation.

        Args:
            cancel_event: Optional signal honoured until service registration
                starts; registration itself always runs to completion or failure

        Returns:
            InstallationRecord describing the live installation

        Raises:
            BusyError: If another operation is running on this handle
            FetchError: If the manifest or an artifact cannot be downloaded
            ArtifactIntegrityError: If an artifact fails checksum verification
            RegistrationError: If the OS service manager rejects a service
            StatePersistError: If the install directory, record or pointer file
                cannot be written
            OperationCancelledError: If cancelled before registration
        """
        with self._exclusive('install'):
            return self._install(cancel_event)

    def _install(self, cancel_event: threading.Event | None) -> InstallationRecord:
        existing = self._state.current_record()
        if existing is not None:
            logger.info(f"Already installed at {existing.install_path}, nothing to do")
            self._notify(ProgressStage.DONE, 'already installed')
            return existing

        install_dir = self._adapter.resolve_install_directory()
        logger.info(f"Installing MiningHQ services into {install_dir}")

        self._notify(ProgressStage.FETCH_STARTED, f'fetching artifacts for {self._operating_system}')
        manifest = self._fetcher.fetch_manifest(cancel_event)
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatePersistError(f"could not create install directory {install_dir}", cause=e) from e
        artifacts = self._fetcher.fetch_all(manifest.artifacts, install_dir, cancel_event)
        self._notify(ProgressStage.FETCH_DONE, f'{len(artifacts)} artifact(s) staged')

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("install cancelled before service registration")

        self._notify(ProgressStage.REGISTERING, f'registering {len(manifest.services)} service(s)')
        registered: list[str] = []
        for service in manifest.services:
            try:
                self._adapter.register_service(service, install_dir)
            except RegistrationError:
                logger.error(
                    f"Registration of {service.name} failed; registered before it: "
                    f"{', '.join(registered) or 'none'}"
                )
                raise
            registered.append(service.name)

        record = InstallationRecord(
            install_path=str(install_dir),
            operating_system=self._operating_system,
            service_identifiers=registered,
            artifacts=[artifact.name for artifact in manifest.artifacts],
            version=manifest.version,
        )
        self._state.write_record(record)
        self._state.write(install_dir)

        logger.info(f"Installed {len(registered)} service(s) into {install_dir}")
        self._notify(ProgressStage.DONE, str(install_dir))
        return record

    def uninstall_sync(
        self,
        installed_path: Path | str | None = None,
        state_file_path: Path | str | None = None,
    ) -> None:
        """Remove the services, the install directory and the pointer file.

        Every step tolerates its target already being gone, so this is safe
        to repeat or to run after manual partial cleanup.

        Unlike install_sync, which treats only a pointer plus a readable
        installation record as installed, this needs nothing but the pointer
        file: a missing or unreadable record does not prevent removal.

        Args:
            installed_path: Install directory; read from the pointer file if None
            state_file_path: Pointer file to remove; the default one if None

        Raises:
            BusyError: If another operation is running on this handle
            NotInstalledError: If installed_path is None and no pointer file exists
            RegistrationError: If a still-registered service cannot be removed
            UninstallError: If a still-existing file or directory cannot be removed
        """
        with self._exclusive('uninstall'):
            state = self._state if state_file_path is None else StateStore(state_file_path)
            if installed_path is None:
                try:
                    installed_path = state.read()
                except NotFoundError as e:
                    raise NotInstalledError(
                        f"no installation recorded in {state.pointer_path}"
                    ) from e
            self._uninstall(Path(str(installed_path).strip()), state)

    def _uninstall(self, install_dir: Path, state: StateStore) -> None:
        logger.info(f"Uninstalling MiningHQ services from {install_dir}")
        self._guard_removal_target(install_dir)

        for name in self._services_to_remove(install_dir, state):
            self._adapter.unregister_service(name)

        self._remove_tree(install_dir)

        try:
            state.remove()
        except OSError as e:
            raise UninstallError(f"could not remove pointer file {state.pointer_path}", cause=e) from e

        logger.info("Uninstall complete")

    def _services_to_remove(self, install_dir: Path, state: StateStore) -> list[str]:
        """Recorded services first, then any orphans the OS still knows about."""
        names: list[str] = []
        record = state.read_record(install_dir)
        if record is not None:
            names.extend(record.service_identifiers)
        else:
            logger.debug(f"No installation record in {install_dir}, looking for orphaned services")
        for name in self._adapter.registered_services():
            if name not in names:
                names.append(name)
        return names

    def _guard_removal_target(self, install_dir: Path) -> None:
        if not install_dir.is_absolute():
            raise UninstallError(f"refusing to remove relative path {install_dir}")
        resolved = install_dir.resolve()
        home = self._home_dir.resolve()
        if resolved == Path(resolved.anchor) or resolved == home or resolved in home.parents:
            raise UninstallError(f"refusing to remove {install_dir}: not an install directory")

    @staticmethod
    def _remove_tree(install_dir: Path) -> None:
        if not install_dir.exists():
            logger.debug(f"Install directory {install_dir} already absent")
            return
        try:
            shutil.rmtree(install_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            if install_dir.exists():
                raise UninstallError(f"could not remove {install_dir}", cause=e) from e


def new_installer(
    home_dir: Path | str,
    operating_system: str,
    api_endpoint: str,
    **kwargs,
) -> Installer:
    """Create an Installer; see Installer.__init__ for the keyword arguments."""
    return Installer(home_dir, operating_system, api_endpoint, **kwargs)
