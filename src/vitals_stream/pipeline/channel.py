"""
Result Channel
==============

Async output channel carrying ordered results to the consumer.

This module provides the ResultChannel class, which is the interface
between the StreamProcessor and whoever consumes results (the service
drain task, a CLI, a test).

Design Rules:
    - Unbounded by default; with a positive maxsize drops oldest on overflow
    - Closing ends iteration after the queued results are consumed
    - A failed channel raises the stored error once drained
    - Does NOT reorder or modify results
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from vitals_stream.models.estimation import EstimationResult


logger = logging.getLogger(__name__)


_CLOSED = object()


class ResultChannel:
    """
    Async-safe queue for ordered results.

    Attributes:
        maxsize: Maximum number of results to buffer (0 = unbounded)
        dropped_count: Number of results dropped due to overflow

    Example:
        channel = ResultChannel()

        # Producer
        channel.put(result)
        channel.close()

        # Consumer
        async for result in channel:
            ...
    """

    def __init__(self, maxsize: int = 0) -> None:
        """
        Initialize result channel.

        Args:
            maxsize: Maximum results to buffer. 0 means unbounded.
        """
        if maxsize < 0:
            raise ValueError("maxsize must be >= 0")

        self._maxsize = maxsize
        # Unbounded underneath; overflow is handled in put() so close() never blocks
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dropped_count: int = 0
        self._total_put: int = 0
        self._closed: bool = False
        self._error: Optional[BaseException] = None

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def size(self) -> int:
        """Current number of results in the channel."""
        return self._queue.qsize() - (1 if self._closed and self._queue.qsize() else 0)

    @property
    def dropped_count(self) -> int:
        """Number of results dropped due to overflow."""
        return self._dropped_count

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, result: EstimationResult) -> bool:
        """
        Add a result, dropping the oldest if full.

        Args:
            result: Result to add

        Returns:
            True if added without dropping, False if the oldest was dropped
            (or the channel is already closed).
        """
        if self._closed:
            logger.warning(f"Result for window {result.window_id} put on closed channel")
            return False

        self._total_put += 1
        dropped = False

        if self._maxsize and self._queue.qsize() >= self._maxsize:
            try:
                self._queue.get_nowait()
                self._dropped_count += 1
                dropped = True
                logger.warning(
                    f"Result channel full, dropped oldest result. "
                    f"Total dropped: {self._dropped_count}"
                )
            except asyncio.QueueEmpty:
                pass

        self._queue.put_nowait(result)
        return not dropped

    def close(self, error: Optional[BaseException] = None) -> None:
        """
        Close the channel.

        Args:
            error: If given, raised by the consumer after the queued results
        """
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[EstimationResult]:
        """
        Get the next result.

        Returns:
            Next result, or None once the channel is closed and drained.

        Raises:
            The error the channel was closed with, once drained.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other waiting consumer
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            return None
        return item

    def __aiter__(self) -> AsyncIterator[EstimationResult]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[EstimationResult]:
        while True:
            result = await self.get()
            if result is None:
                return
            yield result

    def metrics(self) -> dict:
        """
        Get channel metrics for observability.

        Returns:
            Dict with size, maxsize, dropped_count, total_put, closed
        """
        return {
            "size": self.size,
            "maxsize": self._maxsize,
            "dropped_count": self._dropped_count,
            "total_put": self._total_put,
            "closed": self._closed,
        }
