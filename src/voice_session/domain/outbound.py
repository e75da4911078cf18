import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DropOldestQueue(Generic[T]):
    """Bounded asyncio queue that evicts the oldest item instead of blocking the producer."""

    def __init__(self, maxsize: int = 8) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, item: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning("Outbound queue full, dropped oldest frame (total dropped=%d)", self.dropped)
        self._queue.put_nowait(item)

    async def get(self) -> T:
        return await self._queue.get()

    def clear(self) -> int:
        cleared = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            cleared += 1
        return cleared
