"""
sync/tombstone.py - Deletion tracking with tombstones
A live tombstone keeps a deleted id out of every merge until it expires
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from ..errors import StorageError
from ..storage.blob_store import BlobStore
from .dataset import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TOMBSTONE_KEY = "deleted_habits"
DEFAULT_RETENTION = timedelta(days=7)


@dataclass
class Tombstone:
    """
    Deletion marker for sync propagation
    Records which id was deleted and when
    """
    id: str
    deleted_at: datetime

    def to_dict(self) -> dict:
        return {'id': self.id, 'deletedAt': format_timestamp(self.deleted_at)}

    @classmethod
    def from_dict(cls, data: dict) -> 'Tombstone':
        return cls(id=str(data['id']), deleted_at=parse_timestamp(data['deletedAt']))


class TombstoneTracker:
    """
    Manages deletion tombstones for sync
    The whole set is persisted as one blob and rewritten on every mutation
    """

    def __init__(self, blobs: BlobStore, retention: timedelta = DEFAULT_RETENTION,
                 key: str = TOMBSTONE_KEY):
        self.blobs = blobs
        self.retention = retention
        self.key = key
        self.tombstones: Dict[str, Tombstone] = self._load_tombstones()

    def _load_tombstones(self) -> Dict[str, Tombstone]:
        """Load tombstones from the local store"""
        raw = self.blobs.get_blob(self.key)
        if raw is None:
            return {}

        try:
            data = json.loads(raw.decode('utf-8'))
            tombstones = [Tombstone.from_dict(item) for item in data]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Failed to load tombstones: {e}") from e

        # Keep the first deletion recorded for an id
        result: Dict[str, Tombstone] = {}
        for tomb in tombstones:
            result.setdefault(tomb.id, tomb)
        return result

    def _save_tombstones(self):
        """Save tombstones to the local store"""
        data = [tomb.to_dict() for tomb in self.tombstones.values()]
        self.blobs.set_blob(self.key, json.dumps(data).encode('utf-8'))

    def reload(self):
        """Re-read the persisted set, picking up deletions made by other processes"""
        self.tombstones = self._load_tombstones()

    def mark_deleted(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """
        Record a deletion intent
        Idempotent: returns False when a live tombstone for the id already exists
        An expired tombstone is replaced with a fresh one
        """
        now = now or utcnow()
        existing = self.tombstones.get(record_id)
        if existing is not None and not self._is_expired(existing, now):
            return False

        self.tombstones[record_id] = Tombstone(id=record_id, deleted_at=now)
        self._save_tombstones()

        if existing is None:
            logger.info(f"Created tombstone for {record_id}")
        else:
            logger.info(f"Renewed expired tombstone for {record_id}")
        return True

    def _is_expired(self, tomb: Tombstone, now: datetime) -> bool:
        return now - tomb.deleted_at > self.retention

    def is_deleted(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """Check if a record has a live deletion tombstone"""
        tomb = self.tombstones.get(record_id)
        if tomb is None:
            return False
        return not self._is_expired(tomb, now or utcnow())

    def get_tombstone(self, record_id: str) -> Optional[Tombstone]:
        return self.tombstones.get(record_id)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove tombstones older than the retention window
        Must complete before any is_deleted lookup of the same merge pass
        """
        now = now or utcnow()

        expired = [
            record_id for record_id, tomb in self.tombstones.items()
            if self._is_expired(tomb, now)
        ]

        for record_id in expired:
            del self.tombstones[record_id]

        if expired:
            self._save_tombstones()
            logger.info(f"Swept {len(expired)} expired tombstones")

        return len(expired)

    def get_all_tombstones(self) -> List[Tombstone]:
        """Get all current tombstones"""
        return list(self.tombstones.values())

    def get_statistics(self, now: Optional[datetime] = None) -> dict:
        """Get tombstone statistics"""
        if not self.tombstones:
            return {'count': 0}

        now = now or utcnow()
        ages = [(now - t.deleted_at).total_seconds() for t in self.tombstones.values()]

        return {
            'count': len(self.tombstones),
            'oldest_age_hours': max(ages) / 3600,
            'newest_age_hours': min(ages) / 3600,
            'avg_age_hours': (sum(ages) / len(ages)) / 3600
        }

    def __len__(self) -> int:
        return len(self.tombstones)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self.tombstones
