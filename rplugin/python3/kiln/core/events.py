"""
Lightweight publish/subscribe channels used between kernel components.

Listeners are plain callables invoked synchronously, in subscription order, on
the thread that fires the event. A failing listener is logged and does not stop
delivery to the remaining listeners.
"""
import logging
from typing import Any, Callable, Generic, List, TypeVar

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """A named, typed event that any number of listeners can subscribe to."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []
        self._disposed = False
        self._logger = logging.getLogger(f"kiln.events.{name}")

    def subscribe(self, listener: Callable[[T], Any]) -> Unsubscribe:
        """
        Register a listener.

        Returns:
            A function that removes the listener again. Calling it twice is harmless.
        """
        if self._disposed:
            self._logger.debug("Subscription to disposed channel ignored")
            return lambda: None

        self._listeners.append(listener)

        def unsubscribe():
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def fire(self, payload: T = None) -> None:
        """Deliver payload to a snapshot of the current listeners."""
        if self._disposed:
            return
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                self._logger.error(f"Listener for '{self.name}' failed: {e}")

    def forward_to(self, other: "EventChannel[T]") -> Unsubscribe:
        """Re-fire every event of this channel on another channel."""
        return self.subscribe(other.fire)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def dispose(self) -> None:
        self._disposed = True
        self._listeners.clear()
