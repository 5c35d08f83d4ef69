"""Dataset reconciliation engine"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import logging

from .conflict import Conflict, ConflictDetector, ConflictVerdict
from .dataset import DatasetSnapshot, Record, utcnow
from .tombstone import TombstoneTracker

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Merged snapshot, partial when conflicts were found"""
    snapshot: DatasetSnapshot
    conflicts: List[Conflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class ReconciliationEngine:
    """
    Merges a local and a remote snapshot
    Holds no state between calls; the tombstone tracker is passed in
    """

    def __init__(self, detector: Optional[ConflictDetector] = None):
        self.detector = detector or ConflictDetector()

    def merge(self, local: DatasetSnapshot, remote: DatasetSnapshot,
              tombstones: TombstoneTracker,
              now: Optional[datetime] = None) -> MergeResult:
        """
        Merge both snapshots
        Conflicting ids are reported and left out of the returned snapshot
        """
        now = now or utcnow()

        # Sweep runs to completion before any is_deleted lookup below
        tombstones.sweep_expired(now)

        local_records = local.record_map()
        remote_records = remote.record_map()

        conflicts: List[Conflict] = []
        merged: List[Record] = []

        for record_id in self._ordered_ids(local_records, remote_records):
            local_record = local_records.get(record_id)
            remote_record = remote_records.get(record_id)
            verdict = self.detector.compare(local_record, remote_record)

            if verdict is ConflictVerdict.CONFLICTING:
                conflicts.append(Conflict.modify(local_record, remote_record))
                continue

            if tombstones.is_deleted(record_id, now):
                logger.debug(f"Skipping tombstoned record {record_id}")
                continue

            if verdict is ConflictVerdict.ONE_SIDED:
                merged.append(self._pick_one_sided(
                    local_record, remote_record, local, remote
                ))
            else:
                merged.append(self._pick_newer(local_record, remote_record))

        merged.sort(key=lambda record: record.created_at)

        if conflicts:
            logger.warning(f"Detected {len(conflicts)} conflicts")
            for c in conflicts:
                logger.warning(f"  {c.conflict_type.value}: {c.id}")

        return MergeResult(
            snapshot=self._build_snapshot(local, remote, merged, now),
            conflicts=conflicts
        )

    @staticmethod
    def _ordered_ids(local_records: Dict[str, Record],
                     remote_records: Dict[str, Record]) -> List[str]:
        ids = list(local_records)
        ids.extend(record_id for record_id in remote_records
                   if record_id not in local_records)
        return ids

    @staticmethod
    def _pick_newer(local_record: Record, remote_record: Record) -> Record:
        # Ties favor the replica performing the merge
        if local_record.updated_at >= remote_record.updated_at:
            return local_record
        return remote_record

    @staticmethod
    def _pick_one_sided(local_record: Optional[Record],
                        remote_record: Optional[Record],
                        local: DatasetSnapshot,
                        remote: DatasetSnapshot) -> Record:
        """
        A record known to one side only is always kept
        When it predates the other side's last sync it may be a deletion
        that was never tombstoned here; keeping it avoids losing data from
        a partial remote write
        """
        record = local_record or remote_record
        other = remote if local_record is not None else local

        if record.updated_at <= other.last_sync:
            side = 'local' if local_record is not None else 'remote'
            logger.debug(
                f"Keeping stale {side}-only record {record.id} "
                f"(updated {record.updated_at.isoformat()} before last sync)"
            )
        return record

    @staticmethod
    def _build_snapshot(local: DatasetSnapshot, remote: DatasetSnapshot,
                        records: List[Record], now: datetime) -> DatasetSnapshot:
        newer_meta = local if local.last_sync >= remote.last_sync else remote

        settings = dict(newer_meta.settings)
        settings.update(remote.settings)
        settings.update(local.settings)

        return DatasetSnapshot(
            version=newer_meta.version,
            last_reset_date=newer_meta.last_reset_date,
            settings=settings,
            records=records,
            last_sync=now
        )
