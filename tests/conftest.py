"""Shared fakes for the installer, bridge and CLI tests.

The platform adapter and the fetcher are replaced with in-memory fakes so
tests exercise ordering, idempotency and failure handling without touching
a service manager or the network.
"""

import hashlib
import threading
from pathlib import Path

import pytest

from mhq_miner_manager.daemon.platforms import PlatformAdapter
from mhq_miner_manager.errors import RegistrationError
from mhq_miner_manager.models import Manifest

CONTENT = {
    "mininghq-miner": b"miner binary",
    "mininghq-updater": b"updater binary",
}


def _manifest() -> Manifest:
    return Manifest.model_validate({
        "version": "1.4.0",
        "artifacts": [
            {"name": name, "url": f"files/{name}",
             "checksum": hashlib.sha256(data).hexdigest(), "executable": True}
            for name, data in CONTENT.items()
        ],
        "services": [
            {"name": "mininghq-miner", "executable": "mininghq-miner"},
            {"name": "mininghq-updater", "executable": "mininghq-updater"},
        ],
    })


class FakeAdapter(PlatformAdapter):
    """In-memory service manager."""

    operating_system = 'linux'

    def __init__(self, home_dir, fail_on=None):
        super().__init__(home_dir)
        self.registered = {}
        self.fail_on = fail_on
        self.calls = []

    def register_service(self, service, install_dir):
        self.calls.append(('register', service.name))
        if service.name == self.fail_on:
            raise RegistrationError(service.name, 'linux', 'rejected by service manager')
        if service.name in self.registered:
            return False
        self.registered[service.name] = install_dir
        return True

    def unregister_service(self, name):
        self.calls.append(('unregister', name))
        return self.registered.pop(name, None) is not None

    def is_service_registered(self, name):
        return name in self.registered

    def status(self, name):
        return 'RUNNING' if name in self.registered else 'NOT_INSTALLED'

    def registered_services(self):
        return sorted(name for name in self.registered if name.startswith('mininghq'))


class FakeFetcher:
    """Writes known artifact content instead of downloading it."""

    def __init__(self, manifest=None, error=None):
        self.manifest = manifest or _manifest()
        self.error = error
        self.manifest_calls = 0
        self.fetch_calls = 0
        self.entered = threading.Event()
        self.gate = None

    def fetch_manifest(self, cancel_event=None):
        self.manifest_calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return self.manifest

    def fetch_all(self, artifacts, install_dir, cancel_event=None):
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        paths = []
        for artifact in artifacts:
            path = Path(install_dir) / artifact.name
            path.write_bytes(CONTENT[artifact.name])
            paths.append(path)
        return paths


@pytest.fixture
def adapter(tmp_path):
    return FakeAdapter(tmp_path)


@pytest.fixture
def fetcher():
    return FakeFetcher()

