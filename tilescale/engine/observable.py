"""
Minimal synchronous publish/subscribe used by tasks and conversions.
"""

from typing import Callable, List

from tilescale.core.logging import get_logger

logger = get_logger(__name__)


class Observable:
    """Pushes a notification to every subscriber after each state change."""

    def __init__(self):
        self._subscribers: List[Callable[[object], None]] = []

    def subscribe(self, callback: Callable[[object], None]) -> Callable[[], None]:
        """
        Register ``callback(source)``; returns a function that unsubscribes it.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self):
        for callback in list(self._subscribers):
            try:
                callback(self)
            except Exception as e:
                # Observer errors never reach the publisher
                logger.error(
                    "subscriber_failed",
                    source=type(self).__name__,
                    error=str(e),
                    error_type=type(e).__name__
                )
