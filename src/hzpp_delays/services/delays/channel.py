"""Bounded channel carrying freshly ingested route batches to the supervisor."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Optional, Union

from hzpp_delays.config import get_settings
from hzpp_delays.domain import Route

DEFAULT_MAXSIZE = 16

_CLOSED = object()


class ChannelClosedError(Exception):
    """Raised when sending on a closed channel."""


class RouteChannel:
    """A bounded queue of route batches with an explicit close.

    ``send`` waits while the channel is full. Closing is a normal shutdown
    signal: receivers get every batch sent before ``close`` and then ``None``.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        self._queue: asyncio.Queue[Union[list[Route], object]] = asyncio.Queue(maxsize)
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, routes: list[Route]) -> None:
        if self._closed:
            msg = "Route channel is closed"
            raise ChannelClosedError(msg)
        await self._queue.put(list(routes))

    async def close(self) -> None:
        """Close the channel without waiting for a receiver.

        When the queue is full the end marker is left out; receivers notice
        the closed flag once they have drained the pending batches.
        """
        if self._closed:
            return
        self._closed = True
        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    async def receive_many(self, limit: int) -> Optional[list[Route]]:
        """Wait for at least one batch and drain up to ``limit`` batches, flattened.

        Returns:
            The routes received, or None once the channel is closed and empty.
        """
        if self._drained:
            return None
        if self._closed and self._queue.empty():
            self._drained = True
            return None

        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            return None

        routes: list[Route] = list(item)  # type: ignore[call-overload]
        batches = 1
        while batches < limit:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._drained = True
                break
            routes.extend(item)  # type: ignore[arg-type]
            batches += 1
        return routes


_channel_instance: RouteChannel | None = None


def get_route_channel() -> RouteChannel:
    """Get or create the channel shared by ingestion and the supervisor."""
    global _channel_instance
    if _channel_instance is None:
        _channel_instance = RouteChannel(get_settings().route_channel_maxsize)
    return _channel_instance


def reset_route_channel() -> None:
    """Reset the singleton (for testing)."""
    global _channel_instance
    _channel_instance = None
