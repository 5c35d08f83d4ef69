"""Local replica of the dataset and its write path"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional
import logging

from ..errors import StorageError
from ..storage.secure_store import SecureStore
from .dataset import DatasetSnapshot, Record, utcnow
from .tombstone import TombstoneTracker

logger = logging.getLogger(__name__)

DATASET_KEY = "habits_data"

ChangeListener = Callable[[], None]


class LocalDataset:
    """
    Loads and saves the local snapshot, and applies user mutations
    Every mutation stamps updatedAt and notifies change listeners
    """

    def __init__(self, store: SecureStore, tombstones: TombstoneTracker,
                 key: str = DATASET_KEY):
        self.store = store
        self.tombstones = tombstones
        self.key = key
        self._listeners: List[ChangeListener] = []

    @property
    def blob_key(self) -> str:
        return self.store.storage_key(self.key)

    def load(self) -> DatasetSnapshot:
        """Current local snapshot, or an empty one for a fresh replica"""
        data = self.store.get_item(self.key)
        if data is None:
            return DatasetSnapshot.empty()

        try:
            return DatasetSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Local dataset is malformed: {e}") from e

    def save(self, snapshot: DatasetSnapshot) -> None:
        self.store.set_item(self.key, snapshot.to_dict())

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Local change listener failed: {e}")

    def _commit(self, snapshot: DatasetSnapshot):
        self.save(snapshot)
        self._notify()

    def _require(self, snapshot: DatasetSnapshot, record_id: str) -> Record:
        record = snapshot.get(record_id)
        if record is None:
            raise KeyError(f"No record with id {record_id}")
        return record

    def add_record(self, text: str, now: Optional[datetime] = None) -> Record:
        snapshot = self.load()
        record = Record.create(text, now=now)

        self._commit(replace(snapshot, records=snapshot.records + [record]))
        logger.info(f"Added record {record.id}")
        return record

    def update_record(self, record_id: str, now: Optional[datetime] = None,
                      **changes) -> Record:
        """Change text/completed/hidden of one record"""
        allowed = {'text', 'completed', 'hidden'}
        invalid = set(changes) - allowed
        if invalid:
            raise ValueError(f"Cannot change fields: {', '.join(sorted(invalid))}")

        snapshot = self.load()
        updated = self._require(snapshot, record_id).touch(now or utcnow(), **changes)

        records = [updated if r.id == record_id else r for r in snapshot.records]
        self._commit(replace(snapshot, records=records))
        return updated

    def toggle_completed(self, record_id: str, now: Optional[datetime] = None) -> Record:
        record = self._require(self.load(), record_id)
        return self.update_record(record_id, now=now, completed=not record.completed)

    def set_hidden(self, record_id: str, hidden: bool = True,
                   now: Optional[datetime] = None) -> Record:
        return self.update_record(record_id, now=now, hidden=hidden)

    def delete_record(self, record_id: str, now: Optional[datetime] = None) -> bool:
        """Remove a record and record the deletion intent"""
        snapshot = self.load()
        records = [r for r in snapshot.records if r.id != record_id]

        # Tombstone first so a crash between the two writes cannot resurrect it
        self.tombstones.mark_deleted(record_id, now)

        if len(records) == len(snapshot.records):
            return False

        self._commit(replace(snapshot, records=records))
        logger.info(f"Deleted record {record_id}")
        return True

    def repair_text(self, repair: Callable[[str], str],
                    now: Optional[datetime] = None) -> int:
        """Apply a text repair function to every record; returns records changed"""
        snapshot = self.load()
        now = now or utcnow()
        changed = 0
        records = []

        for record in snapshot.records:
            fixed = repair(record.text)
            if fixed != record.text:
                record = record.touch(now, text=fixed)
                changed += 1
            records.append(record)

        if changed:
            self._commit(replace(snapshot, records=records))
            logger.info(f"Repaired text of {changed} records")
        return changed
