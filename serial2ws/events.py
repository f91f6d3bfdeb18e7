"""Event subscriptions for bridge payload (data) and lifecycle (status) notifications."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("serial2ws.events")


class EventKind(str, Enum):
    DATA = "data"
    STATUS = "status"


@dataclass(frozen=True)
class Status:
    """A lifecycle transition or error of the serial side, the server, or the bridge."""

    source: str
    state: str
    detail: Optional[str] = None

    def __str__(self):
        if self.detail:
            return f"{self.source} {self.state}: {self.detail}"
        return f"{self.source} {self.state}"


@dataclass(frozen=True, eq=False)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""

    kind: EventKind
    callback: Callable[[Any], None]


class EventRegistry:
    """Multi-subscriber dispatch keyed by event kind.

    The same callback may be subscribed more than once; every subscription
    gets its own handle and is removed independently.
    """

    def __init__(self):
        self._subscriptions: Dict[EventKind, List[Subscription]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind, callback: Callable[[Any], None]) -> Subscription:
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {callback!r}")
        subscription = Subscription(EventKind(kind), callback)
        self._subscriptions[subscription.kind].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove one subscription; return False if it was not registered."""
        subscriptions = self._subscriptions[subscription.kind]
        for index, existing in enumerate(subscriptions):
            if existing is subscription:
                del subscriptions[index]
                return True
        return False

    def count(self, kind) -> int:
        return len(self._subscriptions[EventKind(kind)])

    def emit(self, kind, payload):
        for subscription in list(self._subscriptions[EventKind(kind)]):
            try:
                subscription.callback(payload)
            except Exception:
                logger.exception("%s subscriber %r failed", subscription.kind.value, subscription.callback)
