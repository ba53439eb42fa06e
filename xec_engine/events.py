"""
Event Emitter - Synchronous Lifecycle Notifications
====================================================

Adapters, the connection pool and the engine report lifecycle changes
(commands, connections, tunnels, containers) through an EventEmitter.

Features:
- Typed event names with wildcard ("*") subscribers
- Synchronous delivery: an event is observed before the emitting call returns
- One-shot handlers
- Bounded event history
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events emitted by the execution engine"""
    # Command lifecycle
    COMMAND_START = "command:start"
    COMMAND_COMPLETE = "command:complete"
    COMMAND_ERROR = "command:error"
    COMMAND_RETRY = "command:retry"

    # SSH connections
    SSH_CONNECT = "ssh:connect"
    SSH_DISCONNECT = "ssh:disconnect"
    SSH_KEY_VALIDATED = "ssh:key-validated"

    # Tunnels
    SSH_TUNNEL_CREATED = "ssh:tunnel-created"
    SSH_TUNNEL_CLOSED = "ssh:tunnel-closed"
    TUNNEL_CREATED = "tunnel:created"
    TUNNEL_CLOSED = "tunnel:closed"

    # Containers
    CONTAINER_CREATED = "docker:container-created"
    CONTAINER_STOPPED = "docker:container-stopped"


Handler = Callable[["Event"], None]


@dataclass
class Event:
    """A single emitted event"""
    event_type: str
    data: Dict[str, Any]
    source: str = "engine"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: f"evt_{time.time_ns()}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "data": self.data,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }


class EventEmitter:
    """
    Observer list keyed by event type.

    Handlers run inline in emit(); a failing handler is logged and never
    interrupts the emitter or the other handlers.

    Usage:
        events = EventEmitter()
        events.on(EventType.TUNNEL_CREATED, lambda e: print(e.data["local_port"]))
    """

    def __init__(self, history_size: int = 100):
        self._handlers: Dict[str, List[Handler]] = {}
        self._history: deque = deque(maxlen=history_size)
        self._event_count = 0

    @staticmethod
    def _key(event_type: Union[str, EventType]) -> str:
        return event_type.value if isinstance(event_type, EventType) else event_type

    def on(self, event_type: Union[str, EventType], handler: Handler) -> Handler:
        """Subscribe to an event type (or "*" for all)"""
        self._handlers.setdefault(self._key(event_type), []).append(handler)
        return handler

    def once(self, event_type: Union[str, EventType], handler: Handler) -> Handler:
        key = self._key(event_type)

        def wrapper(event: Event) -> None:
            self.off(key, wrapper)
            handler(event)

        return self.on(key, wrapper)

    def off(self, event_type: Union[str, EventType], handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event_type: Union[str, EventType]) -> int:
        return len(self._handlers.get(self._key(event_type), []))

    def emit(
        self,
        event_type: Union[str, EventType],
        data: Optional[Dict[str, Any]] = None,
        source: str = "engine",
    ) -> Event:
        """Deliver an event to every matching handler before returning"""
        event = Event(event_type=self._key(event_type), data=dict(data or {}), source=source)
        self._history.append(event)
        self._event_count += 1

        handlers = list(self._handlers.get(event.event_type, []))
        handlers.extend(self._handlers.get("*", []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error for {event.event_type}: {e}")

        logger.debug(f"Emitted event: {event.event_type} from {source}")
        return event

    def get_history(self, event_type: Optional[Union[str, EventType]] = None, limit: int = 50) -> List[Event]:
        events = list(self._history)
        if event_type:
            key = self._key(event_type)
            events = [e for e in events if e.event_type == key]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_events": self._event_count,
            "history_size": len(self._history),
            "subscriptions": {k: len(v) for k, v in self._handlers.items() if v},
        }
