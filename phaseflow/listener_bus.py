"""
Listener bus shared by the transition engine and the calendar integration.

Listeners may be plain callables or coroutine functions. A failing listener
is logged and never affects the publisher or the remaining listeners.
"""

import inspect
import logging
from typing import Any, Callable, List

logger = logging.getLogger("listener_bus")

Listener = Callable[[Any], Any]


class ListenerBus:

    def __init__(self, name: str = "bus"):
        self._name = name
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    async def publish(self, message: Any) -> int:
        """
        Deliver a message to every listener in registration order.

        Returns the number of listeners that raised.
        """
        failures = 0
        for listener in list(self._listeners):
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failures += 1
                logger.error(f"{self._name}: listener {getattr(listener, '__name__', listener)} failed: {e}")
        return failures
