"""Bridge between an interactive front end and the blocking installer.

A GUI (or the CLI's interactive mode) must never block its event loop on
install_sync/uninstall_sync. The bridge runs the operation on a worker
thread and publishes ProgressEvents on a queue the front end drains at its
own pace. Everything the front end needs comes from an explicit
BridgeConfig; nothing is read from process-wide globals.

Usage:
    bridge = InstallerBridge(BridgeConfig(home_dir=..., operating_system='linux',
                                          api_endpoint=...))
    bridge.start_install()
    for event in bridge.iter_events():
        render(event)
    record = bridge.wait()
"""

import queue
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .config import APP_NAME, DEFAULT_API_ENDPOINT, Settings
from .core.installer import Installer
from .errors import BusyError
from .models import ProgressEvent

_FINISHED = object()


class BridgeConfig(BaseModel):
    """Startup configuration handed to the bridge by its front end."""

    model_config = ConfigDict(frozen=True)

    app_name: str = APP_NAME
    home_dir: Path
    operating_system: str
    api_endpoint: str = DEFAULT_API_ENDPOINT
    debug: bool = False
    asset_dir: Path | None = Field(default=None, description="Front-end assets (icons, pages)")


class InstallerBridge:
    """Runs one lifecycle operation at a time off the caller's thread."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        settings: Settings | None = None,
        **installer_kwargs: Any,
    ) -> None:
        """Build the bridge and its Installer.

        Args:
            config: Front-end startup configuration
            settings: Optional settings forwarded to the Installer
            **installer_kwargs: Collaborator overrides forwarded to the Installer

        Raises:
            ConfigurationError: If the Installer rejects the configuration
        """
        self.config = config
        self._events: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._result: Any = None
        self._error: BaseException | None = None
        self.installer = Installer(
            config.home_dir,
            config.operating_system,
            config.api_endpoint,
            settings=settings,
            progress=self._publish,
            **installer_kwargs,
        )

    def _publish(self, event: ProgressEvent) -> None:
        self._events.put(event)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_install(self) -> None:
        """Start install_sync on a worker thread."""
        self._start('install', self.installer.install_sync, self._cancel)

    def start_uninstall(
        self,
        installed_path: Path | str | None = None,
        state_file_path: Path | str | None = None,
    ) -> None:
        """Start uninstall_sync on a worker thread."""
        self._start('uninstall', self.installer.uninstall_sync, installed_path, state_file_path)

    def cancel(self) -> None:
        """Ask a running install to stop before it registers services."""
        self._cancel.set()

    def _start(self, name: str, operation: Callable[..., Any], *args: Any) -> None:
        if self.running:
            raise BusyError(f"cannot start {name}: another operation is in progress")
        self._cancel.clear()
        self._result = None
        self._error = None
        self._events = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            args=(name, operation, args),
            name=f'{APP_NAME}-{name}',
            daemon=True,
        )
        self._thread.start()

    def _run(self, name: str, operation: Callable[..., Any], args: tuple) -> None:
        try:
            self._result = operation(*args)
        except Exception as e:
            logger.error(f"{name} failed: {e}")
            self._error = e
        finally:
            self._events.put(_FINISHED)

    def iter_events(self, poll_interval: float = 0.1) -> Iterator[ProgressEvent]:
        """Yield progress events until the running operation finishes."""
        if self._thread is None:
            return
        while True:
            try:
                item = self._events.get(timeout=poll_interval)
            except queue.Empty:
                if not self.running and self._events.empty():
                    return
                continue
            if item is _FINISHED:
                return
            yield item

    def wait(self, timeout: float | None = None) -> Any:
        """Block until the operation finishes; return its result or raise its error.

        Raises:
            TimeoutError: If the operation is still running after ``timeout``
        """
        if self._thread is None:
            return None
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("installer operation still running")
        if self._error is not None:
            raise self._error
        return self._result
