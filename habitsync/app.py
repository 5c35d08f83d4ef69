"""
app.py - Builds the sync engine and its adapters once per process
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional
import logging

from .config import AppConfig, RemoteConfig
from .crypto.cipher import LocalCipher
from .crypto.keystore import DeviceKeyStore
from .errors import AuthError, SyncError
from .network.connectivity import ConnectivityMonitor, interfaces_up
from .remote.file_store import FileObjectStore
from .remote.github import GitHubContentStore
from .remote.store import ObjectStore
from .storage.blob_store import FileBlobStore
from .storage.secure_store import SecureStore
from .storage.watcher import LocalChangeWatcher
from .sync.conflict import ConflictDetector, ConflictResolver
from .sync.engine import ReconciliationEngine
from .sync.local import LocalDataset
from .sync.scheduler import SyncScheduler
from .sync.tombstone import TombstoneTracker
from .sync.updater import RemoteUpdater

logger = logging.getLogger(__name__)


def create_store(remote: RemoteConfig) -> Optional[ObjectStore]:
    """Remote object store for the configured backend, None without credentials"""
    if remote.backend == "file":
        return FileObjectStore(Path(remote.directory))

    if remote.backend == "github":
        if not remote.owner or not remote.repo:
            raise ValueError("GitHub backend needs remote.owner and remote.repo")
        try:
            return GitHubContentStore(
                owner=remote.owner,
                repo=remote.repo,
                token=remote.token,
                branch=remote.branch,
                api_url=remote.api_url
            )
        except AuthError as e:
            logger.warning(f"GitHub sync disabled: {e}")
            return None

    raise ValueError(f"Unknown remote backend: {remote.backend}")


class SyncApp:
    """Holds every collaborator of one replica"""

    def __init__(self, config: AppConfig, store: Optional[ObjectStore] = None,
                 probe: Callable[[], bool] = interfaces_up):
        self.config = config
        self.data_dir = Path(config.storage.data_dir)

        self.keystore = DeviceKeyStore(Path(config.storage.keys_dir))
        self._initialize_keys()

        self.blobs = FileBlobStore(self.data_dir)
        self.secure_store = SecureStore(self.blobs, self.cipher)
        self.tombstones = TombstoneTracker(
            self.blobs, retention=config.sync.tombstone_retention
        )
        self.local = LocalDataset(self.secure_store, self.tombstones)

        self.store = store if store is not None else create_store(config.remote)
        self.engine = ReconciliationEngine(
            ConflictDetector(config.sync.conflict_window_delta)
        )
        self.resolver = ConflictResolver()
        self.updater = RemoteUpdater(
            self.store, self.local, self.tombstones, self.secure_store,
            engine=self.engine, resolver=self.resolver, config=config.sync
        )
        self.scheduler = SyncScheduler(
            self.updater, config.sync,
            state_store=self.secure_store,
            is_authenticated=self.is_authenticated
        )

        self.connectivity = ConnectivityMonitor(config.sync.connectivity_interval, probe)
        self.watcher = LocalChangeWatcher(
            self.blobs, {self.local.blob_key}, self.scheduler.notify_local_change
        )

        self._unsubscribers = [
            self.local.subscribe(self.scheduler.notify_local_change),
            self.connectivity.on_change(self.scheduler.set_network_available)
        ]
        self._background = False

    def _initialize_keys(self):
        """Load or generate the device secret"""
        keys = self.keystore.load_or_create()
        self.identity = keys['identity']
        self.cipher = LocalCipher(keys['secret'])
        logger.info(f"Device identity: {self.identity}")

    def is_authenticated(self) -> bool:
        return self.store is not None

    async def start(self, background: bool = True):
        """
        Restore state and read connectivity
        In background mode also start the timers, the connectivity poll and
        the external change watcher
        """
        if not background:
            self.scheduler.restore()
            self.scheduler.set_network_available(self.connectivity.check())
            return

        online = await self.connectivity.start()
        self.scheduler.set_network_available(online)
        await self.scheduler.start()
        self.watcher.start(asyncio.get_running_loop())
        self._background = True

    async def run(self):
        """Sync in the background until cancelled"""
        await self.start(background=True)

        if self.is_authenticated() and self.scheduler.is_online:
            try:
                await self.scheduler.manual_sync()
            except SyncError as e:
                logger.warning(f"Initial sync failed: {e}")

        logger.info("Sync running. Press Ctrl+C to stop.")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.close()

    async def close(self):
        if self._background:
            self.watcher.stop()
            await self.connectivity.stop()
            self._background = False

        await self.scheduler.stop()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if self.store is not None:
            await self.store.close()


def build_app(config: AppConfig, store: Optional[ObjectStore] = None,
              probe: Callable[[], bool] = interfaces_up) -> SyncApp:
    return SyncApp(config, store=store, probe=probe)
