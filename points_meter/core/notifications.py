"""
Balance change notifications.

Consumers subscribe explicitly; the ledger publishes after each committed
balance change.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .outcome import BestEffort


@dataclass(frozen=True)
class BalanceChanged:
    """A committed change to a user's balance."""
    user_id: str
    new_balance: int
    delta: int
    event_id: Optional[str] = None


Subscriber = Callable[[BalanceChanged], None]


class BalanceNotifier:
    """In-process publish/subscribe for balance changes."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            A callable that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, change: BalanceChanged) -> List[BestEffort]:
        """Deliver a change to every subscriber.

        A failing subscriber is logged and does not stop delivery to the
        others.
        """
        with self._lock:
            subscribers = list(self._subscribers)
        return [
            BestEffort.attempt("notify_balance_changed", callback, change)
            for callback in subscribers
        ]
