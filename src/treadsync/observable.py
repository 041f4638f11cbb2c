"""
Observable value holder used for the state exposed to collaborators.
"""

import asyncio
import logging
from typing import AsyncGenerator, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """A value whose changes are pushed to subscribers in order.

    Listeners run synchronously inside ``set`` on the caller's event loop,
    so every listener sees every change in the order it happened. Setting
    a value equal to the current one is ignored.
    """

    def __init__(self, value: T) -> None:
        self._value = value
        self._listeners: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener.

        Args:
            callback: Called with each new value

        Returns:
            Function that removes the listener
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def set(self, value: T) -> bool:
        """Store a new value and notify listeners.

        Returns:
            True if the value changed
        """
        if value == self._value:
            return False
        self._value = value
        for callback in list(self._listeners):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"Listener error: {e}")
        return True

    async def updates(self, maxsize: int = 10) -> AsyncGenerator[T, None]:
        """Async generator over future values.

        Slow consumers lose the oldest values once ``maxsize`` are queued.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def enqueue(value: T) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)

        unsubscribe = self.subscribe(enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
