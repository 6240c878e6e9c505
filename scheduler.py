# scheduler.py
"""
Temporizadores del motor: chequeos de confirmación diferidos, reintentos
y los dos bucles de precios. Todo pasa por aquí para poder cancelarlo
(force close / emergency stop) y para poder sustituirlo en los tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[Any]]


class ScheduledHandle:
    def __init__(self, name: str = "") -> None:
        self.name = name
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def done(self) -> bool:
        return self.cancelled or (self._task is not None and self._task.done())


class Scheduler(ABC):
    @abstractmethod
    def call_later(self, delay: float, callback: AsyncCallback, name: str = "") -> ScheduledHandle:
        """Ejecuta `callback` una sola vez tras `delay` segundos."""

    @abstractmethod
    def every(self, interval: float, callback: AsyncCallback, name: str = "") -> ScheduledHandle:
        """Ejecuta `callback` cada `interval` segundos hasta cancelarlo."""

    @abstractmethod
    def cancel_all(self) -> None:
        ...


class AsyncioScheduler(Scheduler):
    def __init__(self) -> None:
        self._handles: Set[ScheduledHandle] = set()

    def _spawn(self, handle: ScheduledHandle, coro: Awaitable[Any]) -> ScheduledHandle:
        task = asyncio.get_running_loop().create_task(coro, name=handle.name or None)
        handle._task = task
        self._handles.add(handle)
        task.add_done_callback(lambda _t: self._handles.discard(handle))
        return handle

    def call_later(self, delay: float, callback: AsyncCallback, name: str = "") -> ScheduledHandle:
        handle = ScheduledHandle(name)

        async def _run() -> None:
            await asyncio.sleep(delay)
            if handle.cancelled:
                return
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[Scheduler] Error en tarea %s: %r", name, exc)

        return self._spawn(handle, _run())

    def every(self, interval: float, callback: AsyncCallback, name: str = "") -> ScheduledHandle:
        handle = ScheduledHandle(name)

        async def _loop() -> None:
            logger.info("[Scheduler] Bucle %s iniciado (cada %.1fs)", name, interval)
            while not handle.cancelled:
                try:
                    await callback()
                except asyncio.CancelledError:
                    logger.info("[Scheduler] Bucle %s cancelado.", name)
                    raise
                except Exception as exc:
                    # un fallo de un ciclo no mata el bucle
                    logger.exception("[Scheduler] Error en bucle %s: %r", name, exc)
                await asyncio.sleep(interval)

        return self._spawn(handle, _loop())

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    @property
    def pending(self) -> int:
        return len(self._handles)
