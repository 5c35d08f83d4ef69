"""
sync/updater.py - Read-reconcile-write cycle against the remote store
Optimistic concurrency: every write presents the version token obtained
when the remote snapshot was fetched, and a stale token restarts the cycle
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import logging

from ..config import SyncConfig
from ..errors import (
    EncodingError, ResolutionMismatch, StorageError, SyncError, VersionConflict
)
from ..remote.codec import decode_snapshot, encode_snapshot
from ..remote.store import ObjectStore
from ..storage.secure_store import SecureStore
from .conflict import Conflict, ConflictResolver, Resolution
from .dataset import DatasetSnapshot, format_timestamp, utcnow
from .engine import ReconciliationEngine
from .local import LocalDataset
from .tombstone import TombstoneTracker

logger = logging.getLogger(__name__)

REMOTE_CACHE_KEY = "remote_cache"
BACKUP_DIR = "backups"


class SyncOutcomeStatus(Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


@dataclass
class SyncOutcome:
    """Result of one sync or resolve cycle"""
    status: SyncOutcomeStatus
    snapshot: DatasetSnapshot
    conflicts: List[Conflict] = field(default_factory=list)
    attempts: int = 1
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status == SyncOutcomeStatus.SUCCESS

    @property
    def synced_records(self) -> int:
        return len(self.snapshot.records) if self.success else 0


@dataclass
class _Fetched:
    snapshot: DatasetSnapshot
    token: Optional[str]
    recovered: bool = False


class RemoteUpdater:
    """Runs sync cycles between the local replica and the shared object"""

    def __init__(self, store: ObjectStore, local: LocalDataset,
                 tombstones: TombstoneTracker, cache: SecureStore,
                 engine: Optional[ReconciliationEngine] = None,
                 resolver: Optional[ConflictResolver] = None,
                 config: Optional[SyncConfig] = None):
        self.store = store
        self.local = local
        self.tombstones = tombstones
        self.cache = cache
        self.engine = engine or ReconciliationEngine()
        self.resolver = resolver or ConflictResolver()
        self.config = config or SyncConfig()

    @property
    def path(self) -> str:
        return self.config.remote_path

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_remote(self, backup: bool = True) -> _Fetched:
        """
        Current remote snapshot and its version token
        A missing object is an empty snapshot without a token
        With backup off, undecodable content is not copied aside again
        """
        obj = await self.store.get(self.path)
        if obj is None:
            logger.info(f"Remote object {self.path} does not exist yet")
            return _Fetched(DatasetSnapshot.empty(), None)

        try:
            snapshot = decode_snapshot(obj.content)
        except EncodingError as e:
            snapshot = await self._recover_from_cache(obj.content, e, backup)
            return _Fetched(snapshot, obj.version_token, recovered=True)

        self._cache_remote(snapshot)
        return _Fetched(snapshot, obj.version_token)

    async def _recover_from_cache(self, raw: bytes, error: EncodingError,
                                  backup: bool) -> DatasetSnapshot:
        cached = self._load_cached_remote()
        if cached is None:
            logger.error(f"Remote content undecodable and no cached copy: {error}")
            raise error

        logger.warning(f"Remote content undecodable ({error}), using cached copy")
        if backup:
            backup_path = (f"{BACKUP_DIR}/corrupt-"
                           f"{format_timestamp(utcnow()).replace(':', '-')}.json")
            await self.store.put(backup_path, raw)
            logger.warning(f"Saved undecodable remote content to {backup_path}")
        return cached

    def _load_cached_remote(self) -> Optional[DatasetSnapshot]:
        try:
            data = self.cache.get_item(REMOTE_CACHE_KEY)
            return DatasetSnapshot.from_dict(data) if data is not None else None
        except (StorageError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Cached remote copy unusable: {e}")
            return None

    def _cache_remote(self, snapshot: DatasetSnapshot):
        try:
            self.cache.set_item(REMOTE_CACHE_KEY, snapshot.to_dict())
        except StorageError as e:
            logger.warning(f"Failed to cache remote snapshot: {e}")

    def _load_local(self) -> DatasetSnapshot:
        try:
            # Other processes may have recorded deletions
            self.tombstones.reload()
            return self.local.load()
        except SyncError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read local data: {e}") from e

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def _write(self, merged: DatasetSnapshot, token: Optional[str],
                     local_at_fetch: DatasetSnapshot) -> DatasetSnapshot:
        """Write remote first, then local with the same snapshot"""
        await self.store.put(self.path, encode_snapshot(merged), token)
        self._cache_remote(merged)

        current_local = self._load_local()
        to_save = merged
        if not self._same_content(current_local, local_at_fetch):
            logger.info("Local data changed during the cycle, keeping those edits")
            to_save = self._rebase_local_edits(merged, local_at_fetch, current_local)

        try:
            self.local.save(to_save)
        except SyncError:
            raise
        except Exception as e:
            raise StorageError(
                f"Remote updated but local save failed, next sync will retry: {e}"
            ) from e
        return merged

    @staticmethod
    def _same_content(a: DatasetSnapshot, b: DatasetSnapshot) -> bool:
        return a.record_map() == b.record_map() and a.settings == b.settings

    @staticmethod
    def _rebase_local_edits(merged: DatasetSnapshot, before: DatasetSnapshot,
                            after: DatasetSnapshot) -> DatasetSnapshot:
        """Re-apply edits made locally while a cycle was writing"""
        records = merged.record_map()
        before_map = before.record_map()
        after_map = after.record_map()

        for record_id, record in after_map.items():
            if before_map.get(record_id) != record:
                records[record_id] = record
        for record_id in set(before_map) - set(after_map):
            records.pop(record_id, None)

        return replace(
            merged,
            records=sorted(records.values(), key=lambda r: r.created_at),
            settings={**merged.settings, **after.settings}
        )

    async def _backoff(self, attempt: int):
        delay = self.config.retry_delay * (2 ** (attempt - 1))
        if delay > 0:
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def sync_once(self) -> SyncOutcome:
        """
        Fetch, reconcile and write, retrying on stale version tokens
        Conflicts end the cycle without writing anything
        """
        budget = self.config.retry_attempts
        backed_up = False

        for attempt in range(1, budget + 1):
            fetched = await self.fetch_remote(backup=not backed_up)
            backed_up = backed_up or fetched.recovered
            local_snapshot = self._load_local()

            result = self.engine.merge(local_snapshot, fetched.snapshot, self.tombstones)

            if result.has_conflicts:
                logger.info(
                    f"Sync stopped with {len(result.conflicts)} conflicts: "
                    f"{self.resolver.summarize(result.conflicts)}"
                )
                return SyncOutcome(
                    status=SyncOutcomeStatus.CONFLICT,
                    snapshot=result.snapshot,
                    conflicts=result.conflicts,
                    attempts=attempt
                )

            try:
                merged = await self._write(result.snapshot, fetched.token, local_snapshot)
            except VersionConflict as e:
                self._check_budget(attempt, budget, e)
                await self._backoff(attempt)
                continue

            logger.info(f"✓ Synced {len(merged.records)} records (attempt {attempt})")
            return SyncOutcome(
                status=SyncOutcomeStatus.SUCCESS,
                snapshot=merged,
                attempts=attempt
            )

        raise StorageError("Retry budget exhausted")  # pragma: no cover

    async def resolve_conflicts(self, conflicts: Sequence[Conflict],
                                resolutions: Sequence[Resolution]) -> SyncOutcome:
        """
        Apply resolutions on top of a fresh merge and write the result
        Nothing is written if the fresh merge finds conflicts on other ids,
        or if either side of a resolved conflict changed since it was reported
        """
        if len(conflicts) != len(resolutions):
            raise ResolutionMismatch(
                f"Got {len(resolutions)} resolutions for {len(conflicts)} conflicts"
            )

        decided = {c.id: (c, r) for c, r in zip(conflicts, resolutions)}
        budget = self.config.retry_attempts
        backed_up = False

        for attempt in range(1, budget + 1):
            fetched = await self.fetch_remote(backup=not backed_up)
            backed_up = backed_up or fetched.recovered
            local_snapshot = self._load_local()
            result = self.engine.merge(local_snapshot, fetched.snapshot, self.tombstones)

            remaining = [c for c in result.conflicts if not self._still_decided(c, decided)]
            if remaining:
                logger.info(
                    f"{len(remaining)} conflicts are new or changed since they were "
                    f"reported: {self.resolver.summarize(remaining)}"
                )
                return SyncOutcome(
                    status=SyncOutcomeStatus.CONFLICT,
                    snapshot=result.snapshot,
                    conflicts=remaining,
                    attempts=attempt
                )

            # Ids that merged cleanly this time keep the merge result
            fresh_ids = {c.id for c in result.conflicts}
            applicable = [decided[i] for i in decided if i in fresh_ids]
            resolved = self.resolver.resolve_conflicts(
                [c for c, _ in applicable], [r for _, r in applicable], result.snapshot
            )

            try:
                merged = await self._write(resolved, fetched.token, local_snapshot)
            except VersionConflict as e:
                self._check_budget(attempt, budget, e)
                await self._backoff(attempt)
                continue

            logger.info(f"✓ Resolved {len(conflicts)} conflicts")
            return SyncOutcome(
                status=SyncOutcomeStatus.SUCCESS,
                snapshot=merged,
                attempts=attempt
            )

        raise StorageError("Retry budget exhausted")  # pragma: no cover

    @staticmethod
    def _still_decided(conflict: Conflict, decided: dict) -> bool:
        entry = decided.get(conflict.id)
        if entry is None:
            return False
        seen = entry[0]
        return seen.local == conflict.local and seen.remote == conflict.remote

    def _check_budget(self, attempt: int, budget: int, error: VersionConflict):
        if attempt >= budget:
            logger.error(f"Giving up after {attempt} attempts: {error}")
            raise StorageError(
                f"Remote kept changing, gave up after {attempt} attempts"
            ) from error
        logger.warning(f"Version conflict on attempt {attempt}/{budget}, retrying: {error}")

    async def push(self) -> Tuple[DatasetSnapshot, str]:
        """Overwrite the remote object with the local snapshot"""
        fetched = await self.fetch_remote()
        snapshot = replace(self._load_local(), last_sync=utcnow())
        token = await self.store.put(self.path, encode_snapshot(snapshot), fetched.token)
        self._cache_remote(snapshot)
        self.local.save(snapshot)
        logger.info(f"Pushed {len(snapshot.records)} records")
        return snapshot, token

    async def pull(self) -> DatasetSnapshot:
        """Overwrite the local snapshot with the remote one"""
        fetched = await self.fetch_remote()
        self.local.save(fetched.snapshot)
        logger.info(f"Pulled {len(fetched.snapshot.records)} records")
        return fetched.snapshot
