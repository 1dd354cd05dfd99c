# src/customer_portal_bff/signals.py

import logging
from dataclasses import dataclass
from typing import Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthExpiredEvent:
    message: str
    status: int
    scope: str = "customer"


AuthExpiredListener = Callable[[AuthExpiredEvent], None]


class AuthEventBus:
    """Broadcasts "auth expired" to whoever routes the user back to login."""

    def __init__(self):
        self._listeners: List[AuthExpiredListener] = []

    def subscribe(self, listener: AuthExpiredListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: AuthExpiredEvent) -> None:
        logger.info("SIGNALS: auth expired (scope=%s, status=%s): %s", event.scope, event.status, event.message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # One broken listener must not stop the others from redirecting
                logger.exception("SIGNALS: auth expired listener %r failed", listener)


# Process-wide default bus, consumed by the top-level router
auth_expired_events = AuthEventBus()
