"""
sync/scheduler.py - Sync state machine and trigger handling
Owns the sync state, the debounce timer and the periodic task; runs at
most one cycle at a time on the event loop
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set
import logging

from ..config import SyncConfig
from ..errors import AuthError, NetworkError, ResolutionMismatch, StorageError, SyncError
from ..storage.secure_store import SecureStore
from .conflict import Conflict, Resolution
from .dataset import format_timestamp, parse_timestamp
from .updater import RemoteUpdater, SyncOutcome

logger = logging.getLogger(__name__)

STATE_KEY = "sync_state"
CONFIG_KEY = "sync_config"


class SyncStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"
    OFFLINE = "offline"


@dataclass
class SyncState:
    """What the presentation layer sees"""
    status: SyncStatus = SyncStatus.IDLE
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    pending_changes: bool = False
    conflict_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'lastSyncTime': format_timestamp(self.last_sync_time) if self.last_sync_time else None,
            'lastError': self.last_error,
            'errorKind': self.error_kind,
            'pendingChanges': self.pending_changes,
            'conflictCount': self.conflict_count
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncState':
        last_sync = data.get('lastSyncTime')
        return cls(
            last_sync_time=parse_timestamp(last_sync) if last_sync else None,
            last_error=data.get('lastError'),
            error_kind=data.get('errorKind'),
            pending_changes=bool(data.get('pendingChanges', False)),
            conflict_count=int(data.get('conflictCount', 0))
        )


StateListener = Callable[[SyncState], None]


class SyncScheduler:
    """
    Decides when sync cycles run
    Triggers: local changes (debounced), the periodic timer, network
    restore and manual requests; triggers arriving during a cycle are
    coalesced into it
    """

    def __init__(self, updater: RemoteUpdater, config: Optional[SyncConfig] = None,
                 state_store: Optional[SecureStore] = None,
                 is_authenticated: Callable[[], bool] = lambda: True,
                 online: bool = True):
        self.updater = updater
        self.config = config or updater.config
        self.state_store = state_store
        self.is_authenticated = is_authenticated

        self._online = online
        self._state = SyncState(status=SyncStatus.IDLE if online else SyncStatus.OFFLINE)
        self._listeners: List[StateListener] = []

        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None
        self._background: Set[asyncio.Future] = set()

        self._resync_requested = False
        self._change_seq = 0
        self._conflicts: List[Conflict] = []

    # ------------------------------------------------------------------
    # State surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return replace(self._state)

    @property
    def pending_conflicts(self) -> List[Conflict]:
        return list(self._conflicts)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def debounce_armed(self) -> bool:
        return self._debounce_handle is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register for state changes; returns the unsubscribe handle"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes):
        self._state = replace(self._state, **changes)
        self._notify()

    def _notify(self):
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Sync state listener failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Restore cached state and start the periodic timer"""
        self.restore()
        self._start_periodic()
        logger.info(
            f"Sync scheduler started (interval={self.config.sync_interval:.0f}s, "
            f"debounce={self.config.debounce_delay:.1f}s)"
        )

    async def stop(self):
        """Stop timers and let an in-flight cycle finish"""
        self._disarm_debounce()
        await self._stop_periodic()

        pending = [f for f in self._background if not f.done()]
        if self._in_flight is not None and not self._in_flight.done():
            pending.append(self._in_flight)
        if pending:
            await asyncio.wait(pending)

        self._save_state()
        logger.info("Sync scheduler stopped")

    def _start_periodic(self):
        if self._periodic_task is not None:
            return
        if self.config.auto_sync and self.config.sync_interval > 0:
            self._periodic_task = asyncio.ensure_future(self._periodic_loop())

    async def _stop_periodic(self):
        task, self._periodic_task = self._periodic_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _periodic_loop(self):
        while True:
            await asyncio.sleep(self.config.sync_interval)
            if self._can_auto_sync() and self._state.status == SyncStatus.IDLE:
                await self._run_background("periodic")

    def restore(self):
        """Load persisted config and state; current status is kept"""
        if self.state_store is None:
            return

        try:
            stored_config = self.state_store.get_item(CONFIG_KEY)
            stored_state = self.state_store.get_item(STATE_KEY)
        except SyncError as e:
            logger.warning(f"Could not restore sync state: {e}")
            return

        if stored_config:
            self._apply_config(self.config.updated(**stored_config))
        if stored_state:
            restored = SyncState.from_dict(stored_state)
            self._state = replace(restored, status=self._state.status)

    def _save_state(self):
        if self.state_store is None:
            return
        try:
            self.state_store.set_item(STATE_KEY, self._state.to_dict())
        except SyncError as e:
            logger.warning(f"Failed to save sync state: {e}")

    def _apply_config(self, config: SyncConfig):
        self.config = config
        self.updater.config = config

    async def set_config(self, **changes) -> SyncConfig:
        """Change and persist sync configuration, restarting the periodic timer"""
        self._apply_config(self.config.updated(**changes))

        if self.state_store is not None:
            self.state_store.set_item(CONFIG_KEY, self.config.to_dict())

        await self._stop_periodic()
        self._start_periodic()
        return self.config

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _can_auto_sync(self) -> bool:
        return self.config.auto_sync and self._online and self.is_authenticated()

    def mark_pending_changes(self):
        """Flag unsynced changes made outside the dataset write path"""
        self._change_seq += 1
        if not self._state.pending_changes:
            self._update(pending_changes=True)

    def notify_local_change(self):
        """A local mutation happened: flag it and (re)arm the debounce timer"""
        self.mark_pending_changes()
        if self._online:
            self._arm_debounce()

    def _arm_debounce(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, change will sync on the next cycle")
            return

        self._disarm_debounce()
        self._debounce_handle = loop.call_later(
            self.config.debounce_delay, self._on_debounce_fired
        )

    def _disarm_debounce(self):
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _on_debounce_fired(self):
        self._debounce_handle = None
        if not self._can_auto_sync():
            return
        if self.is_syncing:
            # The running cycle may have fetched before this change
            self._resync_requested = True
            return
        self._spawn("debounce")

    def set_network_available(self, online: bool):
        """Connectivity transition reported by the monitor"""
        if online == self._online:
            return
        self._online = online

        if not online:
            logger.warning("Network unavailable, sync suspended")
            self._disarm_debounce()
            self._update(status=SyncStatus.OFFLINE)
            return

        logger.info("Network restored")
        self._update(status=SyncStatus.SYNCING if self.is_syncing else SyncStatus.IDLE)
        if self._can_auto_sync():
            self._spawn("network-restore")

    async def manual_sync(self) -> SyncOutcome:
        """Sync now, skipping any pending debounce"""
        if not self.is_authenticated():
            raise AuthError("Not authenticated")
        if not self._online:
            raise NetworkError("Network unavailable")

        self._disarm_debounce()
        return await self._start_cycle("manual", self.updater.sync_once)

    async def resolve_conflicts(self, resolutions: Sequence[Resolution],
                                conflicts: Optional[Sequence[Conflict]] = None) -> SyncOutcome:
        """Resolve the conflicts of the last cycle (or the given ones) and write"""
        conflicts = list(self._conflicts if conflicts is None else conflicts)
        if len(conflicts) != len(resolutions):
            raise ResolutionMismatch(
                f"Got {len(resolutions)} resolutions for {len(conflicts)} conflicts"
            )
        if not self.is_authenticated():
            raise AuthError("Not authenticated")
        if not self._online:
            raise NetworkError("Network unavailable")

        if self.is_syncing:
            await asyncio.wait([self._in_flight])

        self._disarm_debounce()
        return await self._start_cycle(
            "resolve", lambda: self.updater.resolve_conflicts(conflicts, resolutions)
        )

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _spawn(self, trigger: str):
        task = asyncio.ensure_future(self._run_background(trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_background(self, trigger: str):
        try:
            await self._start_cycle(trigger, self.updater.sync_once)
        except SyncError as e:
            logger.warning(f"{trigger} sync failed: {e}")

    def _start_cycle(self, trigger: str,
                     work: Callable[[], Awaitable[SyncOutcome]]) -> asyncio.Future:
        if self.is_syncing:
            logger.debug(f"Sync in progress, coalescing {trigger} trigger")
            return self._in_flight

        self._in_flight = asyncio.ensure_future(self._cycle(trigger, work))
        return self._in_flight

    async def _cycle(self, trigger: str,
                     work: Callable[[], Awaitable[SyncOutcome]]) -> SyncOutcome:
        seq = self._change_seq
        logger.info(f"Sync started ({trigger})")
        self._update(status=SyncStatus.SYNCING, last_error=None, error_kind=None)

        try:
            outcome = await work()
        except Exception as e:
            error = e if isinstance(e, SyncError) else StorageError(f"Sync failed: {e}")
            logger.error(f"Sync failed ({error.kind}): {error}",
                         exc_info=not isinstance(e, SyncError))
            self._finish(SyncStatus.ERROR, last_error=str(error), error_kind=error.kind)
            if error is e:
                raise
            raise error from e
        finally:
            self._after_cycle()

        if outcome.success:
            self._conflicts = []
            self._finish(
                SyncStatus.SUCCESS,
                last_sync_time=outcome.finished_at,
                pending_changes=self._change_seq != seq,
                conflict_count=0
            )
        else:
            self._conflicts = list(outcome.conflicts)
            self._finish(SyncStatus.CONFLICT, conflict_count=len(outcome.conflicts))

        return outcome

    def _finish(self, status: SyncStatus, **changes):
        """Publish the terminal state, settle back to idle (or offline) and cache it"""
        self._update(status=status, **changes)
        self._update(status=SyncStatus.IDLE if self._online else SyncStatus.OFFLINE)
        self._save_state()

    def _after_cycle(self):
        if self._resync_requested:
            self._resync_requested = False
            if self._online:
                self._arm_debounce()
