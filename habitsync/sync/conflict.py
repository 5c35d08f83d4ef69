"""
sync/conflict.py - Conflict detection and user-driven resolution
Detection is pairwise per record id; resolution is applied on top of a
partially merged snapshot
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union
import logging

from ..errors import ResolutionMismatch
from .dataset import DatasetSnapshot, Record, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_WINDOW = timedelta(hours=1)


class ConflictType(Enum):
    """Types of sync conflicts"""
    MODIFY = "modify"  # Both sides hold the id with incompatible edits


class ConflictVerdict(Enum):
    """Outcome of comparing a local and a remote record"""
    SAME = "same"  # Compatible, merge keeps the newest
    CONFLICTING = "conflicting"
    ONE_SIDED = "one_sided"


class ResolutionStrategy(Enum):
    """Conflict resolution strategies"""
    KEEP_LOCAL = "local"
    KEEP_REMOTE = "remote"
    MERGE = "merge"


@dataclass
class Conflict:
    """Represents a sync conflict"""
    id: str
    conflict_type: ConflictType
    local: Optional[Record]
    remote: Optional[Record]
    local_timestamp: Optional[datetime]
    remote_timestamp: Optional[datetime]

    @classmethod
    def modify(cls, local: Record, remote: Record) -> 'Conflict':
        return cls(
            id=local.id,
            conflict_type=ConflictType.MODIFY,
            local=local,
            remote=remote,
            local_timestamp=local.updated_at,
            remote_timestamp=remote.updated_at
        )


class ConflictDetector:
    """
    Pairwise comparator between a local and a remote record
    Text divergence always conflicts; a completion-flag difference only
    conflicts inside the window, outside it the later write wins
    """

    def __init__(self, window: timedelta = DEFAULT_CONFLICT_WINDOW):
        self.window = window

    def compare(self, local: Optional[Record],
                remote: Optional[Record]) -> ConflictVerdict:
        if local is None or remote is None:
            return ConflictVerdict.ONE_SIDED

        if local.text != remote.text:
            return ConflictVerdict.CONFLICTING

        if local.completed != remote.completed:
            time_diff = abs(local.updated_at - remote.updated_at)
            if time_diff < self.window:
                return ConflictVerdict.CONFLICTING

        # hidden never conflicts
        return ConflictVerdict.SAME

    def is_conflict(self, local: Optional[Record],
                    remote: Optional[Record]) -> bool:
        return self.compare(local, remote) is ConflictVerdict.CONFLICTING


Resolution = Union[ResolutionStrategy, str]


class ConflictResolver:
    """
    Applies user resolutions to conflicts
    Works on the partial snapshot produced by a merge that found conflicts
    """

    def resolve_conflicts(self, conflicts: Sequence[Conflict],
                          resolutions: Sequence[Resolution],
                          base: DatasetSnapshot,
                          now: Optional[datetime] = None) -> DatasetSnapshot:
        """
        Resolve every conflict with the parallel resolution
        Returns a new snapshot built from base plus the resolved records
        """
        if len(conflicts) != len(resolutions):
            raise ResolutionMismatch(
                f"Got {len(resolutions)} resolutions for {len(conflicts)} conflicts"
            )

        now = now or utcnow()
        resolved: Dict[str, Record] = base.record_map()

        for conflict, resolution in zip(conflicts, resolutions):
            strategy = ResolutionStrategy(resolution)
            record = self._resolve_one(conflict, strategy, now)

            if record is None:
                resolved.pop(conflict.id, None)
            else:
                resolved[conflict.id] = record

            logger.info(f"Resolved conflict {conflict.id} with {strategy.value}")

        return replace(
            base,
            records=sorted(resolved.values(), key=lambda r: r.created_at),
            last_sync=now,
            settings=dict(base.settings)
        )

    def _resolve_one(self, conflict: Conflict, strategy: ResolutionStrategy,
                     now: datetime) -> Optional[Record]:
        if strategy == ResolutionStrategy.KEEP_LOCAL:
            return conflict.local
        if strategy == ResolutionStrategy.KEEP_REMOTE:
            return conflict.remote

        if conflict.local is None or conflict.remote is None:
            return conflict.local or conflict.remote
        return self.merge_records(conflict.local, conflict.remote, now)

    @staticmethod
    def merge_records(local: Record, remote: Record,
                      now: Optional[datetime] = None) -> Record:
        """Field-level merge: newer record wins, text from the newer non-empty side"""
        now = now or utcnow()

        if local.updated_at >= remote.updated_at:
            newer, older = local, remote
        else:
            newer, older = remote, local

        return newer.touch(now, text=newer.text or older.text)

    @staticmethod
    def summarize(conflicts: List[Conflict]) -> str:
        return ', '.join(f"{c.conflict_type.value}:{c.id}" for c in conflicts)
