"""Fetcher for the HZPP train delay page."""

from __future__ import annotations

import asyncio
import inspect

import httpx

from hzpp_delays.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 30
DEFAULT_MAX_CONCURRENT = 64


class StatusFetchError(Exception):
    """Raised when the delay page cannot be downloaded."""


class StatusFetcher:
    """Downloads the raw delay page for one train number.

    Does not retry; the route monitor polls again on its next cycle.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout_sec = timeout_sec
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def fetch_status(self, route_number: int) -> str:
        """Return the delay page body for ``route_number``.

        The body is returned whatever it says; interpreting it is the parser's job.

        Raises:
            StatusFetchError: On transport failure or a non-2xx response.
        """
        async with self._semaphore:
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout_sec),
                    follow_redirects=True,
                    headers=self.headers,
                ) as client:
                    response = await client.get(self.url, params={"trainId": route_number})
                    raise_result = response.raise_for_status()
                    if inspect.isawaitable(raise_result):
                        await raise_result
                    body = response.text
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                msg = f"Failed to fetch delay page for train {route_number}"
                raise StatusFetchError(msg) from exc

        logger.debug("Delay page downloaded", route_number=route_number, size=len(body))
        return body
