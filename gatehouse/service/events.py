from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, DefaultDict, List, Type

from gatehouse.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserLoggedIn:
    """Fired once per completed authentication, after any second factor."""

    user_id: str
    account_id: str
    method: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[object], None]


class EventDispatcher:
    """In-process publish/subscribe for domain events."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: object) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        logger.info("domain_event", event_type=type(event).__name__)
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                # Listener failures must not undo a completed login
                logger.warning(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(exc),
                )


def log_user_logged_in(event: UserLoggedIn) -> None:
    logger.info(
        "user_logged_in",
        user_id=event.user_id,
        account_id=event.account_id,
        method=event.method,
    )
