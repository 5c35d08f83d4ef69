"""Pytest configuration and fixtures"""

import pytest
import tempfile
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

from habitsync.config import SyncConfig
from habitsync.crypto.cipher import LocalCipher
from habitsync.remote.file_store import FileObjectStore
from habitsync.storage.blob_store import MemoryBlobStore
from habitsync.storage.secure_store import SecureStore
from habitsync.sync.dataset import DatasetSnapshot, Record
from habitsync.sync.local import LocalDataset
from habitsync.sync.tombstone import TombstoneTracker
from habitsync.sync.updater import RemoteUpdater

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
DEVICE_SECRET = b'\x01' * 32


def make_record(record_id, text="Read", minutes=0, completed=False, hidden=False,
                created_minutes=0):
    """Record created at T0 + created_minutes and updated at T0 + minutes"""
    return Record(
        id=record_id,
        text=text,
        created_at=T0 + timedelta(minutes=created_minutes),
        updated_at=T0 + timedelta(minutes=max(minutes, created_minutes)),
        completed=completed,
        hidden=hidden
    )


def make_snapshot(*records, last_sync=T0, settings=None):
    return DatasetSnapshot(
        last_sync=last_sync,
        records=list(records),
        settings=dict(settings or {})
    )


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def temp_keys_dir():
    """Create temporary directory for keys"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def remote_dir():
    """Create temporary directory acting as the shared remote"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(scope="session")
def cipher():
    """Key derivation is slow, share one cipher"""
    return LocalCipher(DEVICE_SECRET)


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def secure_store(blobs, cipher):
    return SecureStore(blobs, cipher)


@pytest.fixture
def tombstones(blobs):
    return TombstoneTracker(blobs)


@pytest.fixture
def local_dataset(secure_store, tombstones):
    return LocalDataset(secure_store, tombstones)


@pytest.fixture
def sync_config():
    """No backoff sleeps in tests"""
    return SyncConfig(retry_delay=0, debounce_delay=0.05)


@pytest.fixture
def make_replica(remote_dir, cipher, sync_config):
    """Factory for independent replicas sharing one remote directory"""
    store = FileObjectStore(remote_dir)

    def factory():
        replica_blobs = MemoryBlobStore()
        replica_store = SecureStore(replica_blobs, cipher)
        replica_tombstones = TombstoneTracker(replica_blobs)
        replica_local = LocalDataset(replica_store, replica_tombstones)
        return RemoteUpdater(
            store, replica_local, replica_tombstones, replica_store,
            config=sync_config
        )

    return factory
