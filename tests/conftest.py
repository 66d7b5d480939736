"""
Shared pytest fixtures for depot tests.

Every fixture builds on a fresh SQLite registry in ``tmp_path``.
"""

import io
import threading
from pathlib import Path

import pytest

from depot.api import Depot
from depot.config import DepotConfig
from depot.directory import PersonaDirectory
from depot.files import FileRegistry
from depot.registry import PartitionedRegistry
from depot.types import Caller, FileRecord

TEST_NAMESPACE = "c01e6180-2026-4d21-828a-7239842a2222"
ADMIN_SECRET = "supersecret"


class RecordingBlobStore:
    """In-memory blob store that records deletes and can be told to fail."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_delete = False

    def put(self, stream, name):
        data = stream.read()
        self.blobs[name] = data
        return name, len(data)

    def open(self, handle):
        if handle not in self.blobs:
            raise FileNotFoundError(handle)
        return io.BytesIO(self.blobs[handle])

    def delete(self, handle):
        if self.fail_delete:
            raise OSError(f"simulated failure deleting {handle}")
        self.deleted.append(handle)
        self.blobs.pop(handle, None)


class InterleavingRegistry:
    """
    Registry wrapper that starts a competing operation from another thread
    while the first update's callback runs, then lets the update finish.

    ``blocked`` records whether the competitor was still waiting when the
    callback resumed, i.e. whether it was held off by the open transaction.
    """

    def __init__(self, real, competing):
        self._real = real
        self._competing = competing
        self._thread = None
        self.blocked = None
        self.errors = []

    def __getattr__(self, name):
        return getattr(self._real, name)

    def _run_competing(self):
        try:
            self._competing()
        except Exception as e:
            self.errors.append(e)

    def update(self, partition, namespace, key, fn, place=None):
        def wrapped(value):
            if self._thread is None:
                self._thread = threading.Thread(target=self._run_competing)
                self._thread.start()
                self._thread.join(timeout=0.2)
                self.blocked = self._thread.is_alive()
            return fn(value)

        try:
            return self._real.update(partition, namespace, key, wrapped, place=place)
        finally:
            if self._thread is not None:
                self._thread.join(timeout=10)


def make_record(id: str, name: str = "file.txt", owner_id: str = "", upload_time: int = 1000) -> FileRecord:
    return FileRecord(
        id=id,
        original_name=name,
        stored_path=f"blob-{id}",
        size=10,
        upload_time=upload_time,
        owner_id=owner_id,
        download_link=f"link-{id}",
    )


@pytest.fixture
def interleaving():
    """Wrap a registry so a competing operation races its first update."""
    return InterleavingRegistry


@pytest.fixture
def record_factory():
    """Build FileRecords with predictable blob handles and links."""
    return make_record


@pytest.fixture
def registry(tmp_path: Path):
    """A fresh PartitionedRegistry."""
    reg = PartitionedRegistry(tmp_path / "registry.db")
    yield reg
    reg.close()


@pytest.fixture
def directory(registry):
    return PersonaDirectory(registry)


@pytest.fixture
def files(registry, directory):
    return FileRegistry(registry, directory)


@pytest.fixture
def blobs():
    return RecordingBlobStore()


@pytest.fixture
def config(tmp_path: Path) -> DepotConfig:
    return DepotConfig(path=tmp_path / "data", namespace=TEST_NAMESPACE, admin_secret=ADMIN_SECRET)


@pytest.fixture
def depot(config):
    """A Depot on local stores in tmp_path."""
    d = Depot(config=config, ops_log=False)
    yield d
    d.close()


@pytest.fixture
def named_client(depot):
    """Create a named client persona; return its Caller and recovery code."""
    result = depot.set_name(Caller(persona_id="fresh-browser-id"), "Ada")
    return Caller(persona_id=result["id"]), result["recovery_code"]


@pytest.fixture
def admin_caller(depot):
    """A persona escalated to admin."""
    result = depot.set_name(Caller(persona_id="admin-browser-id"), "Root")
    caller = Caller(persona_id=result["id"])
    depot.activate_admin(caller, ADMIN_SECRET)
    return caller
