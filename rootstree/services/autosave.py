from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_EMPTY = object()


class SchedulerState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class AutoSaveScheduler:
    """Trailing-edge debounced saver with at most one save in flight.

    Only the newest snapshot is kept. A timer that fires while a save is
    running is deferred until that save ends. ``cancel`` bumps an epoch so the
    result of a save that is still running is ignored when it lands.
    """

    def __init__(
        self,
        save: Callable[[Any], Awaitable[Any]],
        *,
        delay: float = 0.8,
        guard: Callable[[], bool] | None = None,
        on_saved: Callable[[Any, Any], None] | None = None,
        on_error: Callable[[Exception, Any], None] | None = None,
    ):
        self._save = save
        self.delay = delay
        self._guard = guard
        self._on_saved = on_saved
        self._on_error = on_error
        self._latest: Any = _EMPTY
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._deferred = False
        self._epoch = 0

    @property
    def state(self) -> SchedulerState:
        if self._task is not None:
            return SchedulerState.IN_FLIGHT
        if self._timer is not None:
            return SchedulerState.PENDING
        return SchedulerState.IDLE

    @property
    def has_pending(self) -> bool:
        return self._latest is not _EMPTY

    @property
    def pending(self) -> Any:
        return None if self._latest is _EMPTY else self._latest

    def schedule(self, snapshot: Any) -> None:
        self._latest = snapshot
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def cancel(self) -> None:
        self._epoch += 1
        self._cancel_timer()
        self._latest = _EMPTY
        self._deferred = False

    def discard_pending(self) -> Any:
        dropped = self.pending
        self._cancel_timer()
        self._latest = _EMPTY
        self._deferred = False
        return dropped

    async def wait_idle(self) -> None:
        while self._task is not None:
            await asyncio.wait({self._task})

    async def flush(self) -> None:
        self._cancel_timer()
        await self.wait_idle()
        if self._latest is _EMPTY:
            return
        self._start()
        await self.wait_idle()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _allowed(self) -> bool:
        if self._guard is None:
            return True
        allowed = bool(self._guard())
        if not allowed:
            logger.debug("Auto-save skipped by guard")
        return allowed

    def _on_timer(self) -> None:
        self._timer = None
        if self._latest is _EMPTY:
            return
        if self._task is not None:
            self._deferred = True
            return
        if self._allowed():
            self._start()

    def _start(self) -> None:
        snapshot = self._latest
        self._latest = _EMPTY
        self._deferred = False
        epoch = self._epoch
        self._task = asyncio.get_running_loop().create_task(self._run(snapshot, epoch))

    async def _run(self, snapshot: Any, epoch: int) -> None:
        logger.info("Auto-save started")
        try:
            result = await self._save(snapshot)
        except Exception as exc:  # noqa: BLE001
            if epoch != self._epoch:
                logger.info("Discarded auto-save failure of a cancelled session: %s", exc)
            else:
                if self._latest is _EMPTY:
                    self._latest = snapshot
                logger.warning("Auto-save failed: %s", exc)
                if self._on_error is not None:
                    self._on_error(exc, snapshot)
        else:
            if epoch != self._epoch:
                logger.info("Discarded auto-save result of a cancelled session")
            else:
                logger.info("Auto-save succeeded")
                if self._on_saved is not None:
                    self._on_saved(snapshot, result)
        finally:
            self._task = None
        if self._deferred and self._latest is not _EMPTY and self._timer is None:
            self._deferred = False
            if self._allowed():
                self._start()
