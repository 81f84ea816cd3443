"""Artifact retrieval: manifest lookup, bounded parallel downloads, staging.

Each artifact is streamed into ``<install>/.staging/<name>.part`` while its
SHA-256 is computed, verified against the manifest checksum, and only then
moved onto ``<install>/<name>``. A file at its final name is therefore
always complete; partial downloads are deleted on every failure path.

Retry policy (tenacity):
- Transient failures (connection errors, timeouts, HTTP 5xx/429) are
  retried with exponential backoff up to ``FetchConfig.max_attempts``
- HTTP 4xx and checksum mismatches are never retried
- A set cancel signal stops retrying between attempts
"""

import hashlib
import os
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, TypeVar
from urllib.parse import urljoin

import requests
from loguru import logger
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from ..config import APP_NAME, FetchConfig
from ..daemon.paths import get_staging_dir
from ..errors import ArtifactIntegrityError, FetchError, OperationCancelledError, StatePersistError
from ..models import Artifact, Manifest
from .file_io import compute_file_hash, move_into_place

MANIFEST_NAME = 'manifest'

T = TypeVar('T')


class _Aborted(Exception):
    """A sibling download failed; this one stops without reporting."""


def _is_transient(exc: BaseException) -> bool:
    """Return True for network failures worth retrying."""
    if isinstance(exc, (requests.ConnectionError, requests.Timeout,
                        requests.exceptions.ChunkedEncodingError)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


class ArtifactFetcher:
    """Downloads and verifies the artifacts published for one OS."""

    def __init__(
        self,
        api_endpoint: str,
        operating_system: str,
        *,
        config: FetchConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._endpoint = api_endpoint.rstrip('/') + '/'
        self._operating_system = operating_system
        self._config = config or FetchConfig()
        self._session = session or requests.Session()
        self._session.headers.setdefault('User-Agent', f'{APP_NAME}-installer')

    @property
    def manifest_url(self) -> str:
        return urljoin(self._endpoint, f'installer/manifest/{self._operating_system}')

    def resolve_url(self, location: str) -> str:
        """Resolve an artifact location against the API endpoint."""
        return urljoin(self._endpoint, location)

    def fetch_manifest(self, cancel_event: threading.Event | None = None) -> Manifest:
        """Retrieve the artifact/service manifest for this OS.

        Raises:
            FetchError: If the manifest cannot be downloaded or parsed
            OperationCancelledError: If cancelled between attempts
        """
        abort = threading.Event()
        url = self.manifest_url
        logger.info(f"Fetching manifest from {url}")

        def _get_manifest() -> Manifest:
            self._check_interrupted(cancel_event, abort)
            response = self._session.get(url, timeout=self._config.timeout_seconds)
            try:
                response.raise_for_status()
                return Manifest.model_validate(response.json())
            finally:
                response.close()

        try:
            return self._with_retry(MANIFEST_NAME, _get_manifest, cancel_event, abort)
        except (ValidationError, ValueError) as e:
            raise FetchError(MANIFEST_NAME, f"invalid manifest from {url}", cause=e) from e

    def fetch_all(
        self,
        artifacts: list[Artifact],
        install_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> list[Path]:
        """Download every artifact into ``install_dir`` using a bounded pool.

        The first hard failure stops the remaining downloads and is raised.

        Returns:
            Final artifact paths, in manifest order

        Raises:
            StatePersistError: If the install directory cannot be created
            FetchError: If an artifact cannot be downloaded or staged
            ArtifactIntegrityError: If an artifact fails checksum verification
            OperationCancelledError: If cancelled between attempts
        """
        if not artifacts:
            return []

        install_dir = Path(install_dir)
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatePersistError(f"could not create install directory {install_dir}", cause=e) from e

        abort = threading.Event()
        workers = min(len(artifacts), self._config.max_workers)
        results: dict[str, Path] = {}
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='mhq-fetch')
        try:
            futures = {
                executor.submit(self.fetch_artifact, artifact, install_dir, cancel_event, abort): artifact
                for artifact in artifacts
            }
            for future in as_completed(futures):
                error = future.exception()
                if error is not None:
                    abort.set()
                    for pending in futures:
                        pending.cancel()
                    raise error
                results[futures[future].name] = future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
            self._remove_staging(install_dir)

        return [results[artifact.name] for artifact in artifacts]

    def fetch_artifact(
        self,
        artifact: Artifact,
        install_dir: Path,
        cancel_event: threading.Event | None = None,
        abort: threading.Event | None = None,
    ) -> Path:
        """Download, verify and activate a single artifact.

        Raises:
            FetchError: If the staging directory cannot be created or the
                download fails after all retries
            ArtifactIntegrityError: If the checksum does not match
            OperationCancelledError: If cancelled between attempts
        """
        abort = abort or threading.Event()
        target = Path(install_dir) / artifact.name

        if self._is_current(target, artifact):
            logger.debug(f"Reusing verified artifact {target}")
            return target

        staging_dir = get_staging_dir(install_dir)
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FetchError(artifact.name, f"could not create staging directory {staging_dir}", cause=e) from e
        part_path = staging_dir / f'{artifact.name}.part'
        url = self.resolve_url(artifact.url)

        try:
            actual = self._with_retry(
                artifact.name,
                lambda: self._download_once(url, part_path, cancel_event, abort),
                cancel_event,
                abort,
            )
            if actual != artifact.checksum:
                raise ArtifactIntegrityError(artifact.name, artifact.checksum, actual)
            try:
                if artifact.executable and self._operating_system != 'windows':
                    os.chmod(part_path, 0o755)
                move_into_place(part_path, target)
            except OSError as e:
                raise FetchError(artifact.name, f"could not move into {target}", cause=e) from e
        except BaseException:
            try:
                part_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise

        logger.info(f"Staged {artifact.name} ({actual})")
        return target

    def _download_once(
        self,
        url: str,
        part_path: Path,
        cancel_event: threading.Event | None,
        abort: threading.Event,
    ) -> str:
        """Stream one download attempt into ``part_path``; return its hash."""
        self._check_interrupted(cancel_event, abort)
        hasher = hashlib.sha256()
        response = self._session.get(url, stream=True, timeout=self._config.timeout_seconds)
        try:
            response.raise_for_status()
            with open(part_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=self._config.chunk_size):
                    self._check_interrupted(cancel_event, abort)
                    if chunk:
                        f.write(chunk)
                        hasher.update(chunk)
                f.flush()
                os.fsync(f.fileno())
        finally:
            response.close()
        return f'sha256:{hasher.hexdigest()}'

    def _with_retry(
        self,
        name: str,
        operation: Callable[[], T],
        cancel_event: threading.Event | None,
        abort: threading.Event,
    ) -> T:
        """Run ``operation`` under the retry policy, mapping failures to FetchError."""
        stop = stop_after_attempt(self._config.max_attempts) | stop_when_event_set(abort)
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)
        attempts = 0

        def _attempt() -> T:
            nonlocal attempts
            attempts += 1
            return operation()

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self._config.max_attempts} "
                f"for {name} failed: {exc}; retrying"
            )

        retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop,
            wait=wait_exponential(
                multiplier=self._config.backoff_multiplier, max=self._config.backoff_max
            ),
            sleep=lambda seconds: self._interruptible_sleep(seconds, cancel_event, abort),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return retrying(_attempt)
        except requests.RequestException as e:
            # Retrying stopped early because of a cancel or a sibling failure
            self._check_interrupted(cancel_event, abort)
            raise FetchError(name, f"download failed after {attempts} attempt(s)", cause=e) from e
        except OSError as e:
            raise FetchError(name, "could not write staged file", cause=e) from e

    @staticmethod
    def _is_current(target: Path, artifact: Artifact) -> bool:
        """True if a verified copy of ``artifact`` is already in place."""
        if not target.is_file():
            return False
        try:
            return compute_file_hash(target) == artifact.checksum
        except OSError:
            return False

    @staticmethod
    def _check_interrupted(cancel_event: threading.Event | None, abort: threading.Event) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("install cancelled during artifact fetch")
        if abort.is_set():
            raise _Aborted()

    @staticmethod
    def _interruptible_sleep(
        seconds: float, cancel_event: threading.Event | None, abort: threading.Event
    ) -> None:
        deadline = time.monotonic() + seconds
        while not abort.is_set() and not (cancel_event is not None and cancel_event.is_set()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            abort.wait(min(remaining, 0.1))

    @staticmethod
    def _remove_staging(install_dir: Path) -> None:
        staging_dir = get_staging_dir(install_dir)
        if not staging_dir.is_dir():
            return
        try:
            shutil.rmtree(staging_dir)
        except OSError as e:
            logger.warning(f"Could not remove staging directory {staging_dir}: {e}")
