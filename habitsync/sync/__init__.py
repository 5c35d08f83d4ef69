from .dataset import DatasetSnapshot, Record
from .conflict import (
    Conflict, ConflictDetector, ConflictResolver, ConflictType, ConflictVerdict,
    ResolutionStrategy
)
from .tombstone import Tombstone, TombstoneTracker
from .engine import MergeResult, ReconciliationEngine
from .local import LocalDataset
from .updater import RemoteUpdater, SyncOutcome, SyncOutcomeStatus
from .scheduler import SyncScheduler, SyncState, SyncStatus

__all__ = [
    'DatasetSnapshot',
    'Record',
    'Conflict',
    'ConflictDetector',
    'ConflictResolver',
    'ConflictType',
    'ConflictVerdict',
    'ResolutionStrategy',
    'Tombstone',
    'TombstoneTracker',
    'MergeResult',
    'ReconciliationEngine',
    'LocalDataset',
    'RemoteUpdater',
    'SyncOutcome',
    'SyncOutcomeStatus',
    'SyncScheduler',
    'SyncState',
    'SyncStatus'
]
