"""Observable values for sync status surfaces."""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[T], None]


class ObservableValue(Generic[T]):
    """
    Holds a single value and notifies listeners when it changes.

    Listeners are called synchronously, in subscription order, only when the
    new value differs from the current one.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._listeners: list[Listener] = []
        self._closed = False

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, new_value: T) -> None:
        if self._closed or new_value == self._value:
            return
        self._value = new_value
        for listener in list(self._listeners):
            try:
                listener(new_value)
            except Exception as e:
                logger.error(f"Observable listener failed: {e}")

    def listen(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def close(self) -> None:
        """Drop all listeners and ignore further updates."""
        self._listeners.clear()
        self._closed = True

    def __repr__(self) -> str:
        return f"ObservableValue({self._value!r})"
