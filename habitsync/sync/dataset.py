"""Record and dataset snapshot types"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = "1.0"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime"""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Millisecond ISO-8601 in UTC with a ``Z`` suffix"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec='milliseconds')
    return text.replace('+00:00', 'Z')


def today_string(now: Optional[datetime] = None) -> str:
    """Date string in the form stored as lastResetDate, e.g. 'Sun Oct 18 2026'"""
    return (now or utcnow()).strftime('%a %b %d %Y')


@dataclass(frozen=True)
class Record:
    """One user-visible item"""
    id: str
    text: str
    created_at: datetime
    updated_at: datetime
    completed: bool = False
    hidden: bool = False

    def __post_init__(self):
        if self.updated_at < self.created_at:
            raise ValueError(f"Record {self.id}: updatedAt precedes createdAt")

    @classmethod
    def create(cls, text: str, now: Optional[datetime] = None,
               record_id: Optional[str] = None) -> 'Record':
        now = now or utcnow()
        return cls(
            id=record_id or uuid.uuid4().hex,
            text=text,
            created_at=now,
            updated_at=now
        )

    def touch(self, now: Optional[datetime] = None, **changes) -> 'Record':
        """Return a copy with the given field changes and a fresh updatedAt"""
        now = now or utcnow()
        return replace(self, updated_at=max(now, self.created_at), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'text': self.text,
            'completed': self.completed,
            'hidden': self.hidden,
            'createdAt': format_timestamp(self.created_at),
            'updatedAt': format_timestamp(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        created_at = parse_timestamp(data['createdAt'])
        updated_raw = data.get('updatedAt')
        updated_at = parse_timestamp(updated_raw) if updated_raw else created_at

        return cls(
            id=str(data['id']),
            text=data.get('text', ''),
            completed=bool(data.get('completed', False)),
            hidden=bool(data.get('hidden', False)),
            created_at=created_at,
            # Clock skew between devices must not make a record unloadable
            updated_at=max(updated_at, created_at)
        )


@dataclass
class DatasetSnapshot:
    """Point-in-time value of the whole dataset"""
    last_sync: datetime
    records: List[Record] = field(default_factory=list)
    version: str = SCHEMA_VERSION
    last_reset_date: str = ''
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls, now: Optional[datetime] = None) -> 'DatasetSnapshot':
        now = now or utcnow()
        return cls(last_sync=now, last_reset_date=today_string(now))

    def record_map(self) -> Dict[str, Record]:
        return {record.id: record for record in self.records}

    def get(self, record_id: str) -> Optional[Record]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'lastSync': format_timestamp(self.last_sync),
            'lastResetDate': self.last_reset_date,
            'habits': [record.to_dict() for record in self.records],
            'settings': dict(self.settings)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatasetSnapshot':
        raw_records = data.get('habits')
        if raw_records is None:
            raw_records = data.get('records', [])

        last_sync = data.get('lastSync')
        return cls(
            version=str(data.get('version', SCHEMA_VERSION)),
            last_sync=parse_timestamp(last_sync) if last_sync else
            datetime.fromtimestamp(0, timezone.utc),
            last_reset_date=data.get('lastResetDate', ''),
            records=[Record.from_dict(item) for item in raw_records],
            settings=dict(data.get('settings') or {})
        )
