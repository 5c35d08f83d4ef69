"""
network/connectivity.py - Network reachability monitoring
Polls the host's interfaces and reports online/offline transitions
"""

import asyncio
from typing import Callable, List, Optional
import logging

import psutil

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


def interfaces_up() -> bool:
    """True when any non-loopback interface is up"""
    try:
        stats = psutil.net_if_stats()
    except OSError as e:
        logger.debug(f"Interface query failed: {e}")
        return False

    for name, st in stats.items():
        if not st.isup:
            continue
        lowered = name.lower()
        if lowered == "lo" or lowered.startswith("lo0") or "loopback" in lowered:
            continue
        return True
    return False


class ConnectivityMonitor:
    """
    Background probe of network availability
    Listeners are called only on transitions, never for repeated readings
    """

    def __init__(self, interval: float = 15.0,
                 probe: Callable[[], bool] = interfaces_up):
        self.interval = interval
        self.probe = probe
        self.online: Optional[bool] = None
        self._listeners: List[ConnectivityListener] = []
        self._task: Optional[asyncio.Task] = None

    def on_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition listener; returns the unsubscribe handle"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def check(self) -> bool:
        """Take one reading and fire listeners if the state changed"""
        try:
            online = bool(self.probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        if online != self.online:
            previous, self.online = self.online, online
            if previous is not None:
                logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
                for listener in list(self._listeners):
                    try:
                        listener(online)
                    except Exception as e:
                        logger.warning(f"Connectivity listener failed: {e}")

        return online

    async def start(self) -> bool:
        """Take the initial reading and start polling"""
        online = self.check()
        if self._task is None and self.interval > 0:
            self._task = asyncio.ensure_future(self._poll_loop())
        return online

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            self.check()
