"""Test the read-reconcile-write cycle against a shared directory"""

import pytest
from datetime import timedelta

from habitsync.config import SyncConfig
from habitsync.errors import EncodingError, ResolutionMismatch, StorageError, VersionConflict
from habitsync.remote.codec import decode_snapshot, encode_snapshot
from habitsync.remote.file_store import FileObjectStore
from habitsync.storage.blob_store import MemoryBlobStore
from habitsync.storage.secure_store import SecureStore
from habitsync.sync.dataset import Record, utcnow
from habitsync.sync.local import LocalDataset
from habitsync.sync.tombstone import TombstoneTracker
from habitsync.sync.updater import RemoteUpdater, SyncOutcomeStatus
from conftest import make_record, make_snapshot


class RacingStore(FileObjectStore):
    """Lets another writer update the object right before our write lands"""

    def __init__(self, root, races=0):
        super().__init__(root)
        self.races = races
        self.puts = 0

    async def put(self, path, content, version_token=None):
        if path == "data.json" and self.races > 0:
            self.races -= 1
            current = await self.get(path)
            snapshot = decode_snapshot(current.content) if current else make_snapshot()
            rival = Record.create(f"rival {self.races}")
            await super().put(
                path,
                encode_snapshot(make_snapshot(*snapshot.records, rival)),
                current.version_token if current else None
            )
        self.puts += 1
        return await super().put(path, content, version_token)


class EditingStore(FileObjectStore):
    """Runs a hook just before writing, like a user editing mid-cycle"""

    def __init__(self, root, hook):
        super().__init__(root)
        self.hook = hook

    async def put(self, path, content, version_token=None):
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return await super().put(path, content, version_token)


class ContendedStore(FileObjectStore):
    """Rejects the first writes to the data object as if another writer won"""

    def __init__(self, root, rejections=1):
        super().__init__(root)
        self.rejections = rejections

    async def put(self, path, content, version_token=None):
        if path == "data.json" and self.rejections > 0:
            self.rejections -= 1
            raise VersionConflict(f"{path} changed")
        return await super().put(path, content, version_token)


def replica(store, cipher, config=None):
    blobs = MemoryBlobStore()
    secure = SecureStore(blobs, cipher)
    tombstones = TombstoneTracker(blobs)
    local = LocalDataset(secure, tombstones)
    return RemoteUpdater(store, local, tombstones, secure,
                         config=config or SyncConfig(retry_delay=0))


async def remote_snapshot(store):
    obj = await store.get("data.json")
    return decode_snapshot(obj.content)


def ids(snapshot):
    return [r.id for r in snapshot.records]


class TestSyncOnce:
    """Test single sync cycles"""

    @pytest.mark.asyncio
    async def test_first_sync_creates_remote(self, make_replica, remote_dir):
        """Test a missing remote object is treated as empty and created"""
        updater = make_replica()
        record = updater.local.add_record("Read")

        outcome = await updater.sync_once()

        assert outcome.status is SyncOutcomeStatus.SUCCESS
        assert outcome.synced_records == 1
        assert ids(await remote_snapshot(updater.store)) == [record.id]
        assert (remote_dir / "data.json").exists()

    @pytest.mark.asyncio
    async def test_replicas_converge(self, make_replica):
        """Test additions on two replicas end up on both"""
        a = make_replica()
        b = make_replica()
        first = a.local.add_record("Read")
        await a.sync_once()
        second = b.local.add_record("Walk")
        await b.sync_once()
        await a.sync_once()

        expected = sorted([first.id, second.id])
        assert sorted(ids(a.local.load())) == expected
        assert sorted(ids(b.local.load())) == expected
        assert sorted(ids(await remote_snapshot(a.store))) == expected

    @pytest.mark.asyncio
    async def test_local_and_remote_match_after_success(self, make_replica):
        """Test both sides hold the same merged snapshot"""
        updater = make_replica()
        updater.local.add_record("Méditer 🧘")

        outcome = await updater.sync_once()

        remote = await remote_snapshot(updater.store)
        assert remote.records == updater.local.load().records == outcome.snapshot.records

    @pytest.mark.asyncio
    async def test_conflict_writes_nothing(self, make_replica):
        """Test a text conflict stops the cycle before any write"""
        updater = make_replica()
        original = encode_snapshot(make_snapshot(make_record("h1", text="Read a book", minutes=20)))
        await updater.store.put("data.json", original)
        updater.local.save(make_snapshot(make_record("h1", text="Read", minutes=10)))

        outcome = await updater.sync_once()

        assert outcome.status is SyncOutcomeStatus.CONFLICT
        assert [c.id for c in outcome.conflicts] == ["h1"]
        assert outcome.synced_records == 0
        assert (await updater.store.get("data.json")).content == original
        assert updater.local.load().get("h1").text == "Read"

    @pytest.mark.asyncio
    async def test_tombstoned_record_not_resurrected(self, make_replica):
        """Test a local deletion removes the record remotely"""
        updater = make_replica()
        keep = updater.local.add_record("Keep")
        drop = updater.local.add_record("Drop")
        await updater.sync_once()

        updater.local.delete_record(drop.id)
        await updater.sync_once()

        assert ids(await remote_snapshot(updater.store)) == [keep.id]
        assert updater.local.load().get(drop.id) is None

    @pytest.mark.asyncio
    async def test_delete_again_after_pull_stays_deleted(self, make_replica):
        """Test re-deleting a record whose old tombstone expired removes it remotely"""
        updater = make_replica()
        record = updater.local.add_record("Drop")
        await updater.sync_once()

        updater.local.delete_record(record.id, now=utcnow() - timedelta(days=8))
        await updater.pull()
        assert updater.local.load().get(record.id) is not None

        updater.local.delete_record(record.id)
        await updater.sync_once()

        assert ids(await remote_snapshot(updater.store)) == []
        assert updater.local.load().get(record.id) is None


class TestOptimisticConcurrency:
    """Test version token handling"""

    @pytest.mark.asyncio
    async def test_retry_after_concurrent_write(self, remote_dir, cipher):
        """Test a stale token restarts the cycle and keeps the rival's record"""
        store = RacingStore(remote_dir, races=1)
        updater = replica(store, cipher)
        mine = updater.local.add_record("Mine")

        outcome = await updater.sync_once()

        assert outcome.success
        assert outcome.attempts == 2
        remote = await remote_snapshot(store)
        texts = sorted(r.text for r in remote.records)
        assert texts == ["Mine", "rival 0"]
        assert updater.local.load().get(mine.id) is not None

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, remote_dir, cipher):
        """Test endless contention surfaces a storage error"""
        store = RacingStore(remote_dir, races=5)
        updater = replica(store, cipher, SyncConfig(retry_attempts=3, retry_delay=0))
        updater.local.add_record("Mine")

        with pytest.raises(StorageError) as exc_info:
            await updater.sync_once()

        assert isinstance(exc_info.value.__cause__, VersionConflict)
        assert store.puts == 3

    @pytest.mark.asyncio
    async def test_put_without_token_on_existing_object(self, remote_dir):
        """Test an unconditional write to an existing object is rejected"""
        store = FileObjectStore(remote_dir)
        await store.put("data.json", b"{}")

        with pytest.raises(VersionConflict):
            await store.put("data.json", b"{}")

    @pytest.mark.asyncio
    async def test_edits_during_cycle_survive(self, remote_dir, cipher):
        """Test a local edit made while the cycle writes is not lost"""
        holder = {}

        def edit():
            holder['record'] = updater.local.add_record("Typed mid-sync")

        store = EditingStore(remote_dir, edit)
        updater = replica(store, cipher)
        updater.local.add_record("Before")

        await updater.sync_once()

        local_texts = sorted(r.text for r in updater.local.load().records)
        remote_texts = [r.text for r in (await remote_snapshot(store)).records]
        assert local_texts == ["Before", "Typed mid-sync"]
        assert remote_texts == ["Before"]


class TestEncodingRecovery:
    """Test undecodable remote content"""

    @pytest.mark.asyncio
    async def test_recovers_from_cached_copy(self, make_replica, remote_dir):
        """Test the cached snapshot replaces corrupt content after a backup"""
        updater = make_replica()
        record = updater.local.add_record("Read")
        await updater.sync_once()

        garbage = b'\xff\xfe not json'
        (remote_dir / "data.json").write_bytes(garbage)

        outcome = await updater.sync_once()

        assert outcome.success
        assert ids(await remote_snapshot(updater.store)) == [record.id]
        backups = list((remote_dir / "backups").glob("corrupt-*.json"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == garbage

    @pytest.mark.asyncio
    async def test_one_backup_per_cycle(self, remote_dir, cipher):
        """Test retries within one cycle do not back up the same content again"""
        store = ContendedStore(remote_dir, rejections=0)
        updater = replica(store, cipher)
        updater.local.add_record("Read")
        await updater.sync_once()

        (remote_dir / "data.json").write_bytes(b'\xff\xfe not json')
        store.rejections = 2

        outcome = await updater.sync_once()

        assert outcome.attempts == 3
        assert len(list((remote_dir / "backups").glob("corrupt-*.json"))) == 1

    @pytest.mark.asyncio
    async def test_without_cache_surfaces_error(self, make_replica, remote_dir):
        """Test a fresh replica cannot recover corrupt content"""
        (remote_dir / "data.json").write_bytes(b'{"habits": [')
        updater = make_replica()

        with pytest.raises(EncodingError):
            await updater.sync_once()

        assert (remote_dir / "data.json").read_bytes() == b'{"habits": ['


class TestResolveConflicts:
    """Test resolution writes"""

    async def _conflicted(self, updater):
        await updater.store.put(
            "data.json",
            encode_snapshot(make_snapshot(
                make_record("h1", text="Read a book", minutes=20),
                make_record("h2", text="Remote only", created_minutes=5)
            ))
        )
        updater.local.save(make_snapshot(make_record("h1", text="Read", minutes=10)))
        return await updater.sync_once()

    @pytest.mark.asyncio
    async def test_keep_local(self, make_replica):
        """Test local resolution is written to both sides"""
        updater = make_replica()
        outcome = await self._conflicted(updater)

        resolved = await updater.resolve_conflicts(outcome.conflicts, ["local"])

        assert resolved.success
        remote = await remote_snapshot(updater.store)
        assert remote.get("h1").text == "Read"
        assert remote.get("h2") is not None
        assert updater.local.load().records == remote.records

    @pytest.mark.asyncio
    async def test_merge(self, make_replica):
        """Test merge takes the newer text"""
        updater = make_replica()
        outcome = await self._conflicted(updater)

        await updater.resolve_conflicts(outcome.conflicts, ["merge"])

        assert (await remote_snapshot(updater.store)).get("h1").text == "Read a book"

    @pytest.mark.asyncio
    async def test_remote_edit_after_report_is_not_overwritten(self, make_replica):
        """Test a resolution decided on stale records writes nothing"""
        updater = make_replica()
        outcome = await self._conflicted(updater)

        current = await updater.store.get("data.json")
        edited = make_snapshot(
            make_record("h1", text="Read two books", minutes=30),
            make_record("h2", text="Remote only", created_minutes=5)
        )
        await updater.store.put("data.json", encode_snapshot(edited), current.version_token)

        resolved = await updater.resolve_conflicts(outcome.conflicts, ["remote"])

        assert resolved.status is SyncOutcomeStatus.CONFLICT
        assert [c.id for c in resolved.conflicts] == ["h1"]
        assert resolved.conflicts[0].remote.text == "Read two books"
        assert (await remote_snapshot(updater.store)).get("h1").text == "Read two books"
        assert updater.local.load().get("h1").text == "Read"

        await updater.resolve_conflicts(resolved.conflicts, ["remote"])
        assert updater.local.load().get("h1").text == "Read two books"

    @pytest.mark.asyncio
    async def test_mismatch_before_any_io(self, make_replica):
        """Test wrong resolution count fails without touching storage"""
        updater = make_replica()
        outcome = await self._conflicted(updater)

        with pytest.raises(ResolutionMismatch):
            await updater.resolve_conflicts(outcome.conflicts, ["local", "remote"])

        assert (await remote_snapshot(updater.store)).get("h1").text == "Read a book"


class TestPushPull:
    """Test explicit overwrite actions"""

    @pytest.mark.asyncio
    async def test_push_overwrites_remote(self, make_replica):
        """Test push replaces remote content with local"""
        a = make_replica()
        a.local.add_record("Remote record")
        await a.sync_once()

        b = make_replica()
        mine = b.local.add_record("Local record")
        snapshot, token = await b.push()

        assert ids(await remote_snapshot(b.store)) == [mine.id]
        assert token == (await b.store.get("data.json")).version_token

    @pytest.mark.asyncio
    async def test_pull_overwrites_local(self, make_replica):
        """Test pull replaces local content with remote"""
        a = make_replica()
        theirs = a.local.add_record("Remote record")
        await a.sync_once()

        b = make_replica()
        b.local.add_record("Local record")
        await b.pull()

        assert ids(b.local.load()) == [theirs.id]
