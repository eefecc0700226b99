from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from neurox.core.config import Settings, get_settings
from neurox.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ReconnectPolicy:
    # Linear backoff seeded by the attempt counter, capped and bounded.
    base_delay_s: float
    max_delay_s: float
    max_attempts: int

    def delay_for(self, attempt: int) -> float:
        attempt = max(1, attempt)
        return min(self.base_delay_s * attempt, self.max_delay_s)

    def exhausted(self, attempt: int) -> bool:
        # max_attempts <= 0 means retry forever.
        return self.max_attempts > 0 and attempt > self.max_attempts


def default_reconnect_policy(settings: Settings | None = None) -> ReconnectPolicy:
    settings = settings or get_settings()
    return ReconnectPolicy(
        base_delay_s=settings.ws_reconnect_base_delay_s,
        max_delay_s=max(settings.ws_reconnect_max_delay_s, settings.ws_reconnect_base_delay_s),
        max_attempts=settings.ws_reconnect_max_attempts,
    )


class ReconnectScheduler:
    """Owns at most one pending delayed callback.

    Scheduling while a callback is pending replaces it; ``cancel`` drops it.
    Both keep repeated open/close cycles from leaking timers.
    """

    def __init__(self, *, sleep: Sleep | None = None, name: str = "reconnect") -> None:
        self._sleep = sleep or asyncio.sleep
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._delays: list[float] = []

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def delays(self) -> list[float]:
        # Every delay ever scheduled, oldest first.
        return list(self._delays)

    def schedule(self, delay_s: float, callback: Callable[[], Any]) -> None:
        self.cancel()
        self._delays.append(delay_s)
        increment_counter(f"{self._name}_scheduled_total")
        logger.info("%s_scheduled delay_s=%.2f", self._name, delay_s)
        self._task = asyncio.get_running_loop().create_task(self._fire(delay_s, callback))

    def cancel(self) -> bool:
        task = self._task
        self._task = None
        if task is None or task.done():
            return False
        # Never cancel the task that is currently running the callback.
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    async def _fire(self, delay_s: float, callback: Callable[[], Any]) -> None:
        await self._sleep(delay_s)
        current = asyncio.current_task()
        if self._task is current:
            self._task = None
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001 - a failing callback must not leave a dangling task error
            logger.exception("%s_callback_failed", self._name)

    async def aclose(self) -> None:
        task = self._task
        self.cancel()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
