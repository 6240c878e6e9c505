# events.py
#
# Bus de eventos de salida. El motor publica y se olvida: Telegram, logs o
# cualquier otro suscriptor no pueden bloquear ni romper una transición.

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    POSITION_OPENED = "position_opened"
    SELL_REQUESTED = "sell_requested"
    SELL_SUBMITTED = "sell_submitted"
    SELL_FAILED = "sell_failed"
    PARTIAL_SELL = "partial_sell"
    POSITION_CLOSED = "position_closed"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    MANUAL_REVIEW = "manual_review"
    EMERGENCY_STOP = "emergency_stop"


@dataclass
class Event:
    type: EventType
    position_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Event], Any]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[Optional[EventType], List[Handler]] = {}
        self._tasks: set = set()
        self.published = 0

    def subscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> None:
        """event_type=None: el handler recibe todos los eventos."""
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: EventType, position_id: Optional[str] = None, **data: Any) -> Event:
        event = Event(type=event_type, position_id=position_id, data=data)
        self.published += 1
        handlers = self._handlers.get(event_type, []) + self._handlers.get(None, [])
        for handler in handlers:
            self._dispatch(handler, event)
        return event

    def _dispatch(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        except Exception as exc:
            logger.exception("[EventBus] Handler falló con %s: %r", event.type.value, exc)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[EventBus] Handler async falló: %r", exc)

    async def drain(self) -> None:
        """Espera a los handlers async en vuelo (apagado y tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
