"""Tests for manifest lookup and artifact download/verification."""

import hashlib
import os
import threading
import time

import pytest
import requests

from mhq_miner_manager.config import FetchConfig
from mhq_miner_manager.core.fetcher import ArtifactFetcher, _is_transient
from mhq_miner_manager.errors import (
    ArtifactIntegrityError,
    FetchError,
    OperationCancelledError,
    StatePersistError,
)
from mhq_miner_manager.models import Artifact

ENDPOINT = "https://api.example.com/v1"
MANIFEST_URL = f"{ENDPOINT}/installer/manifest/linux"

MINER = b"\x7fELF miner binary"
UPDATER = b"\x7fELF updater binary"


def _sha(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class FakeResponse:
    """Just enough of requests.Response for the fetcher."""

    def __init__(self, status_code=200, chunks=(), json_data=None):
        self.status_code = status_code
        self.chunks = list(chunks)
        self.json_data = json_data
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def json(self):
        if isinstance(self.json_data, Exception):
            raise self.json_data
        return self.json_data

    def close(self):
        self.closed = True


class SlowResponse(FakeResponse):
    """Streams empty keep-alive chunks for a while before the real body."""

    def __init__(self, body, stalls=300):
        super().__init__()
        self.body = body
        self.stalls = stalls
        self.finished = False

    def iter_content(self, chunk_size=1):
        for _ in range(self.stalls):
            time.sleep(0.01)
            yield b""
        yield self.body
        self.finished = True


class FakeSession:
    """Serves queued responses (or exceptions) per URL and records calls.

    A queued callable is invoked on request and its result served instead.
    """

    def __init__(self, routes):
        self.routes = {url: list(items) for url, items in routes.items()}
        self.headers = {}
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, **kwargs):
        with self._lock:
            self.calls.append(url)
            queue = self.routes.get(url)
            if not queue:
                item = FakeResponse(404)
            elif len(queue) == 1:
                item = queue[0]
            else:
                item = queue.pop(0)
        if callable(item):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item

    def count(self, url):
        return self.calls.count(url)


FAST = FetchConfig(max_attempts=3, backoff_multiplier=0.0, backoff_max=0.0)


def _fetcher(routes, config=FAST):
    session = FakeSession(routes)
    return ArtifactFetcher(ENDPOINT, "linux", config=config, session=session), session


def _artifact(name, data, executable=False, url=None):
    return Artifact(name=name, url=url or f"files/{name}", checksum=_sha(data), executable=executable)


class TestUrls:
    """Tests for endpoint-relative URL handling."""

    def test_manifest_url(self):
        fetcher, _ = _fetcher({})
        assert fetcher.manifest_url == MANIFEST_URL

    def test_trailing_slash_on_endpoint(self):
        fetcher = ArtifactFetcher(ENDPOINT + "/", "darwin", session=FakeSession({}))
        assert fetcher.manifest_url == f"{ENDPOINT}/installer/manifest/darwin"

    def test_relative_and_absolute_artifact_urls(self):
        fetcher, _ = _fetcher({})
        assert fetcher.resolve_url("files/miner") == f"{ENDPOINT}/files/miner"
        assert fetcher.resolve_url("https://cdn.example.com/miner") == "https://cdn.example.com/miner"

    def test_sets_user_agent(self):
        _, session = _fetcher({})
        assert session.headers["User-Agent"] == "mhq-miner-manager-installer"


@pytest.mark.parametrize("exc,expected", [
    (requests.ConnectionError("reset"), True),
    (requests.Timeout("slow"), True),
    (requests.exceptions.ChunkedEncodingError("truncated"), True),
    (requests.HTTPError("503", response=FakeResponse(503)), True),
    (requests.HTTPError("429", response=FakeResponse(429)), True),
    (requests.HTTPError("404", response=FakeResponse(404)), False),
    (requests.HTTPError("403", response=FakeResponse(403)), False),
    (ValueError("bad"), False),
])
def test_is_transient(exc, expected):
    assert _is_transient(exc) is expected


class TestFetchManifest:
    """Tests for fetch_manifest."""

    MANIFEST = {
        "version": "2.1.0",
        "artifacts": [{"name": "mininghq-miner", "url": "files/mininghq-miner",
                       "checksum": _sha(MINER), "executable": True}],
        "services": [{"name": "mininghq-miner", "executable": "mininghq-miner"}],
    }

    def test_parses_manifest(self):
        fetcher, _ = _fetcher({MANIFEST_URL: [FakeResponse(json_data=self.MANIFEST)]})

        manifest = fetcher.fetch_manifest()

        assert manifest.version == "2.1.0"
        assert [a.name for a in manifest.artifacts] == ["mininghq-miner"]
        assert manifest.services[0].executable == "mininghq-miner"

    def test_retries_server_error(self):
        fetcher, session = _fetcher({MANIFEST_URL: [
            FakeResponse(503),
            FakeResponse(json_data=self.MANIFEST),
        ]})

        assert fetcher.fetch_manifest().version == "2.1.0"
        assert session.count(MANIFEST_URL) == 2

    def test_not_found_is_not_retried(self):
        fetcher, session = _fetcher({MANIFEST_URL: [FakeResponse(404)]})

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch_manifest()

        assert exc_info.value.artifact == "manifest"
        assert session.count(MANIFEST_URL) == 1

    def test_invalid_manifest(self):
        bad = {"artifacts": [{"name": "../escape", "url": "x", "checksum": _sha(MINER)}]}
        fetcher, _ = _fetcher({MANIFEST_URL: [FakeResponse(json_data=bad)]})

        with pytest.raises(FetchError, match="invalid manifest"):
            fetcher.fetch_manifest()

    def test_cancelled_before_request(self):
        fetcher, session = _fetcher({MANIFEST_URL: [FakeResponse(json_data=self.MANIFEST)]})
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            fetcher.fetch_manifest(cancel)
        assert session.calls == []


class TestFetchArtifact:
    """Tests for single-artifact download, verification and staging."""

    def test_downloads_and_verifies(self, tmp_path):
        artifact = _artifact("mininghq-miner", MINER, executable=True)
        fetcher, _ = _fetcher({f"{ENDPOINT}/files/mininghq-miner": [
            FakeResponse(chunks=[MINER[:5], b"", MINER[5:]]),
        ]})

        path = fetcher.fetch_artifact(artifact, tmp_path)

        assert path == tmp_path / "mininghq-miner"
        assert path.read_bytes() == MINER
        if os.name != "nt":
            assert os.stat(path).st_mode & 0o777 == 0o755

    def test_response_is_closed(self, tmp_path):
        response = FakeResponse(chunks=[MINER])
        fetcher, _ = _fetcher({f"{ENDPOINT}/files/mininghq-miner": [response]})

        fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert response.closed is True

    def test_reuses_verified_artifact(self, tmp_path):
        (tmp_path / "mininghq-miner").write_bytes(MINER)
        fetcher, session = _fetcher({})

        fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert session.calls == []

    def test_replaces_stale_artifact(self, tmp_path):
        (tmp_path / "mininghq-miner").write_bytes(b"old version")
        fetcher, _ = _fetcher({f"{ENDPOINT}/files/mininghq-miner": [FakeResponse(chunks=[MINER])]})

        fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert (tmp_path / "mininghq-miner").read_bytes() == MINER

    def test_checksum_mismatch_is_rejected(self, tmp_path):
        url = f"{ENDPOINT}/files/mininghq-miner"
        fetcher, session = _fetcher({url: [FakeResponse(chunks=[b"tampered"])]})

        with pytest.raises(ArtifactIntegrityError) as exc_info:
            fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert exc_info.value.expected == _sha(MINER)
        assert exc_info.value.actual == _sha(b"tampered")
        assert not (tmp_path / "mininghq-miner").exists()
        assert not list(tmp_path.rglob("*.part"))
        assert session.count(url) == 1

    def test_gives_up_after_max_attempts(self, tmp_path):
        url = f"{ENDPOINT}/files/mininghq-miner"
        fetcher, session = _fetcher({url: [requests.ConnectionError("connection reset")]})

        with pytest.raises(FetchError, match="after 3 attempt"):
            fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert session.count(url) == 3
        assert not (tmp_path / "mininghq-miner").exists()
        assert not list(tmp_path.rglob("*.part"))

    def test_truncated_stream_is_retried(self, tmp_path):
        url = f"{ENDPOINT}/files/mininghq-miner"
        fetcher, session = _fetcher({url: [
            FakeResponse(chunks=[MINER[:4], requests.exceptions.ChunkedEncodingError("truncated")]),
            FakeResponse(chunks=[MINER]),
        ]})

        path = fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert path.read_bytes() == MINER
        assert session.count(url) == 2

    def test_client_error_is_not_retried(self, tmp_path):
        url = f"{ENDPOINT}/files/mininghq-miner"
        fetcher, session = _fetcher({url: [FakeResponse(403)]})

        with pytest.raises(FetchError, match="after 1 attempt"):
            fetcher.fetch_artifact(_artifact("mininghq-miner", MINER), tmp_path)

        assert session.count(url) == 1


class TestFetchAll:
    """Tests for the bounded parallel download of every artifact."""

    def test_returns_paths_in_manifest_order(self, tmp_path):
        artifacts = [_artifact("mininghq-updater", UPDATER), _artifact("mininghq-miner", MINER)]
        fetcher, _ = _fetcher({
            f"{ENDPOINT}/files/mininghq-updater": [FakeResponse(chunks=[UPDATER])],
            f"{ENDPOINT}/files/mininghq-miner": [FakeResponse(chunks=[MINER])],
        })

        paths = fetcher.fetch_all(artifacts, tmp_path / "MiningHQ")

        assert paths == [tmp_path / "MiningHQ" / "mininghq-updater", tmp_path / "MiningHQ" / "mininghq-miner"]
        assert not (tmp_path / "MiningHQ" / ".staging").exists()

    def test_empty_artifact_list(self, tmp_path):
        fetcher, _ = _fetcher({})
        assert fetcher.fetch_all([], tmp_path) == []

    def test_first_failure_is_raised(self, tmp_path):
        install_dir = tmp_path / "MiningHQ"
        artifacts = [_artifact("mininghq-miner", MINER), _artifact("mininghq-updater", UPDATER)]
        fetcher, _ = _fetcher({
            f"{ENDPOINT}/files/mininghq-miner": [FakeResponse(404)],
            f"{ENDPOINT}/files/mininghq-updater": [FakeResponse(chunks=[UPDATER])],
        })

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch_all(artifacts, install_dir)

        assert exc_info.value.artifact == "mininghq-miner"
        assert not (install_dir / "mininghq-miner").exists()
        assert not (install_dir / ".staging").exists()

    def test_cancelled(self, tmp_path):
        cancel = threading.Event()
        cancel.set()
        fetcher, session = _fetcher({})

        with pytest.raises(OperationCancelledError):
            fetcher.fetch_all([_artifact("mininghq-miner", MINER)], tmp_path, cancel)

        assert session.calls == []
        assert not (tmp_path / ".staging").exists()

    def test_cancel_during_failed_attempt_stops_retrying(self, tmp_path):
        cancel = threading.Event()
        url = f"{ENDPOINT}/files/mininghq-miner"

        def drop_connection():
            cancel.set()
            return requests.ConnectionError("connection reset")

        fetcher, session = _fetcher({url: [drop_connection]})

        with pytest.raises(OperationCancelledError):
            fetcher.fetch_all([_artifact("mininghq-miner", MINER)], tmp_path, cancel)

        assert session.count(url) == 1
        assert not list(tmp_path.rglob("*.part"))
        assert not (tmp_path / "mininghq-miner").exists()

    def test_cancel_cuts_backoff_short(self, tmp_path):
        cancel = threading.Event()
        url = f"{ENDPOINT}/files/mininghq-miner"
        slow_backoff = FetchConfig(max_attempts=3, backoff_multiplier=30.0, backoff_max=30.0)
        fetcher, session = _fetcher({url: [requests.ConnectionError("connection reset")]}, config=slow_backoff)
        timer = threading.Timer(0.2, cancel.set)

        started = time.monotonic()
        timer.start()
        try:
            with pytest.raises(OperationCancelledError):
                fetcher.fetch_all([_artifact("mininghq-miner", MINER)], tmp_path, cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 10
        assert session.count(url) == 1
        assert not list(tmp_path.rglob("*.part"))

    def test_failure_stops_sibling_downloads(self, tmp_path):
        install_dir = tmp_path / "MiningHQ"
        slow = SlowResponse(MINER)
        artifacts = [_artifact("mininghq-miner", MINER), _artifact("mininghq-updater", UPDATER)]
        fetcher, _ = _fetcher({
            f"{ENDPOINT}/files/mininghq-miner": [slow],
            f"{ENDPOINT}/files/mininghq-updater": [FakeResponse(404)],
        })

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch_all(artifacts, install_dir)

        assert exc_info.value.artifact == "mininghq-updater"
        assert slow.finished is False
        assert slow.closed is True
        assert not (install_dir / "mininghq-miner").exists()
        assert not (install_dir / ".staging").exists()

    def test_staging_path_blocked(self, tmp_path):
        (tmp_path / ".staging").write_text("leftover")
        fetcher, session = _fetcher({})

        with pytest.raises(FetchError, match="could not create staging directory") as exc_info:
            fetcher.fetch_all([_artifact("mininghq-miner", MINER)], tmp_path)

        assert exc_info.value.artifact == "mininghq-miner"
        assert isinstance(exc_info.value.cause, OSError)
        assert session.calls == []
        assert (tmp_path / ".staging").read_text() == "leftover"

    def test_install_directory_not_creatable(self, tmp_path):
        (tmp_path / "blocker").write_text("not a directory")
        fetcher, _ = _fetcher({})

        with pytest.raises(StatePersistError, match="could not create install directory"):
            fetcher.fetch_all([_artifact("mininghq-miner", MINER)], tmp_path / "blocker" / "MiningHQ")
