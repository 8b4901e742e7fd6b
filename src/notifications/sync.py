"""Offline sync triggers.

Funnels the three reasons to drain the offline queue (connectivity
restored, app returned to the foreground, manual sync) into
``OfflineDeliveryQueue.process_queue``, whose ``processing`` flag keeps
overlapping triggers down to a single pass.
"""

import asyncio
import logging
from typing import Callable, Optional

from src.notifications.config import AppState
from src.notifications.models import DrainResult
from src.notifications.queue import OfflineDeliveryQueue

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 1.0  # seconds


class _Subscribers:
    """Callback list shared by the event sources below."""

    def __init__(self):
        self._callbacks: list[Callable] = []

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, value) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.error("Subscriber %r failed: %s", callback, e, exc_info=True)

    def __len__(self) -> int:
        return len(self._callbacks)


class NetworkStatus:
    """Edge-triggered connectivity source.

    Subscribers hear about transitions only; repeating the current state
    is silent.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._subscribers = _Subscribers()

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network %s", "online" if online else "offline")
        self._subscribers.notify(online)

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)


class AppLifecycle:
    """App foreground/background transitions."""

    def __init__(self, state: AppState = AppState.ACTIVE):
        self._state = state
        self._subscribers = _Subscribers()

    @property
    def state(self) -> AppState:
        return self._state

    def transition(self, state: AppState) -> None:
        if state == self._state:
            return
        self._state = state
        self._subscribers.notify(state)

    def subscribe(self, callback: Callable[[AppState], None]) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)


class OfflineSyncCoordinator:
    """Drains the offline queue when connectivity or the app state allows."""

    def __init__(
        self,
        queue: OfflineDeliveryQueue,
        network: NetworkStatus,
        lifecycle: Optional[AppLifecycle] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self._queue = queue
        self._network = network
        self._lifecycle = lifecycle
        self._settle_delay = settle_delay
        self._unsubscribers: list[Callable[[], None]] = []
        self._settle_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._last_result: Optional[DrainResult] = None

    @property
    def running(self) -> bool:
        return bool(self._unsubscribers)

    @property
    def last_result(self) -> Optional[DrainResult]:
        return self._last_result

    def start(self) -> None:
        if self._unsubscribers:
            return
        self._queue.set_network_available(self._network.is_online)
        self._unsubscribers.append(self._network.subscribe(self._on_network_change))
        if self._lifecycle is not None:
            self._unsubscribers.append(self._lifecycle.subscribe(self._on_app_state_change))
        logger.info("Offline sync started (online=%s)", self._network.is_online)

    def stop(self) -> None:
        """Unsubscribe and cancel any pending drains."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._cancel_settle()
        for task in list(self._tasks):
            task.cancel()
        logger.info("Offline sync stopped")

    # --- Triggers ---

    def _on_network_change(self, online: bool) -> None:
        self._queue.set_network_available(online)

        if not online:
            self._cancel_settle()
            return

        if len(self._queue) > 0 and self._settle_task is None:
            logger.info("Network restored, syncing %d queued notifications", len(self._queue))
            self._settle_task = self._spawn(self._settle_then_drain())

    def _on_app_state_change(self, state: AppState) -> None:
        if state == AppState.ACTIVE and self._network.is_online and len(self._queue) > 0:
            self._spawn(self._drain("foreground"))

    async def manual_sync(self) -> DrainResult:
        return await self._drain("manual")

    async def _settle_then_drain(self) -> None:
        try:
            await asyncio.sleep(self._settle_delay)
        finally:
            if self._settle_task is asyncio.current_task():
                self._settle_task = None
        await self._drain("network_restored")

    async def _drain(self, trigger: str) -> DrainResult:
        result = await self._queue.process_queue()
        if result.skipped:
            logger.debug("Sync (%s) skipped", trigger)
        else:
            self._last_result = result
            logger.info(
                "Sync (%s): sent=%d failed=%d retrying=%d",
                trigger,
                result.sent,
                result.failed,
                result.retrying,
            )
        return result

    # --- Tasks ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Sync task failed: %s", task.exception(), exc_info=task.exception())

    def _cancel_settle(self) -> None:
        if self._settle_task is not None:
            self._settle_task.cancel()
            self._settle_task = None

    async def wait_idle(self) -> None:
        """Wait for pending sync tasks, including their queue drains."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._queue.wait_idle()
