"""
Shared async fetch helper.

Transport failures (DNS, connect, read timeouts) are retried a bounded number
of times with a fixed backoff. HTTP error statuses are not retried: they raise
``FetchError`` straight away with the status code attached. Any other httpx
request error (redirect loops, undecodable bodies) also becomes ``FetchError``
without a retry.

An optional ``abort`` event cancels a fetch between attempts and while a
request is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

import httpx

from dpiwarden.core.errors import FetchAbortedError, FetchError
from dpiwarden.core.models import HttpSettings

logger = logging.getLogger(__name__)


class Fetcher:
    """Thin retrying wrapper around a lazily created ``httpx.AsyncClient``."""

    def __init__(
        self,
        settings: Optional[HttpSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or HttpSettings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, abort: Optional[asyncio.Event] = None) -> httpx.Response:
        """GET *url*, retrying transport failures; raises FetchError on HTTP error status."""
        attempts = self.settings.retries

        for attempt in range(1, attempts + 1):
            self._check_abort(url, abort)
            try:
                response = await self._race(self._get_client().get(url), url, abort)
            except httpx.TransportError as exc:
                if attempt >= attempts:
                    raise FetchError(f"GET {url} failed after {attempts} attempts: {exc}", url) from exc
                logger.warning("GET %s failed (attempt %d/%d): %s", url, attempt, attempts, exc)
                await self._backoff(url, abort)
                continue
            except httpx.HTTPError as exc:
                raise FetchError(f"GET {url} failed: {exc}", url) from exc

            if response.is_error:
                raise FetchError(
                    f"GET {url} returned HTTP {response.status_code}",
                    url,
                    status_code=response.status_code,
                )
            return response

        raise FetchError(f"GET {url} was not attempted", url)

    async def text(self, url: str, abort: Optional[asyncio.Event] = None) -> str:
        return (await self.fetch(url, abort)).text

    async def content(self, url: str, abort: Optional[asyncio.Event] = None) -> bytes:
        return (await self.fetch(url, abort)).content

    async def json(self, url: str, abort: Optional[asyncio.Event] = None) -> Any:
        return (await self.fetch(url, abort)).json()

    # Internal helpers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                follow_redirects=True,
                headers={"User-Agent": self.settings.user_agent},
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _check_abort(url: str, abort: Optional[asyncio.Event]) -> None:
        if abort is not None and abort.is_set():
            raise FetchAbortedError(f"GET {url} aborted", url)

    async def _backoff(self, url: str, abort: Optional[asyncio.Event]) -> None:
        delay = self.settings.retry_backoff_seconds
        if abort is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise FetchAbortedError(f"GET {url} aborted", url)

    async def _race(
        self,
        request: Awaitable[httpx.Response],
        url: str,
        abort: Optional[asyncio.Event],
    ) -> httpx.Response:
        if abort is None:
            return await request

        request_task = asyncio.ensure_future(request)
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            request_task.cancel()
            raise
        finally:
            abort_task.cancel()

        if request_task.done():
            return request_task.result()

        request_task.cancel()
        raise FetchAbortedError(f"GET {url} aborted", url)
