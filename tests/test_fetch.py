import asyncio

import httpx
import pytest

from dpiwarden.core.errors import FetchAbortedError, FetchError
from dpiwarden.core.models import HttpSettings
from dpiwarden.net.fetch import Fetcher


def _flaky_transport(failures: int, calls: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if len(calls) <= failures:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text="ok")

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_fetch_retries_transport_errors():
    calls = []
    settings = HttpSettings(retries=3, retry_backoff_seconds=0)

    async with Fetcher(settings, transport=_flaky_transport(2, calls)) as fetcher:
        assert await fetcher.text("https://example.com/a") == "ok"

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_fetch_gives_up_after_retries():
    calls = []
    settings = HttpSettings(retries=2, retry_backoff_seconds=0)

    async with Fetcher(settings, transport=_flaky_transport(5, calls)) as fetcher:
        with pytest.raises(FetchError) as exc_info:
            await fetcher.content("https://example.com/a")

    assert len(calls) == 2
    assert exc_info.value.code == "FETCH_FAILED"
    assert exc_info.value.url == "https://example.com/a"


@pytest.mark.asyncio
async def test_http_error_status_is_not_retried(remote, http_settings):
    remote.add("https://example.com/missing", "nope", status=404)

    async with Fetcher(http_settings, transport=remote.transport) as fetcher:
        with pytest.raises(FetchError) as exc_info:
            await fetcher.text("https://example.com/missing")

    assert exc_info.value.status_code == 404
    assert remote.count("https://example.com/missing") == 1


@pytest.mark.asyncio
async def test_redirect_loop_raises_fetch_error_without_retry(remote, http_settings):
    url = "https://example.com/loop"
    remote.add(url, status=302, headers={"Location": url})

    async with Fetcher(http_settings, transport=remote.transport) as fetcher:
        with pytest.raises(FetchError) as exc_info:
            await fetcher.content(url)

    assert exc_info.value.code == "FETCH_FAILED"
    assert isinstance(exc_info.value.__cause__, httpx.TooManyRedirects)
    assert remote.count(url) <= 21


@pytest.mark.asyncio
async def test_json_decodes_payload(remote, http_settings):
    remote.add("https://api.example/tags", '[{"name": "v1"}]')

    async with Fetcher(http_settings, transport=remote.transport) as fetcher:
        assert await fetcher.json("https://api.example/tags") == [{"name": "v1"}]


@pytest.mark.asyncio
async def test_abort_before_request(remote, http_settings):
    abort = asyncio.Event()
    abort.set()

    async with Fetcher(http_settings, transport=remote.transport) as fetcher:
        with pytest.raises(FetchAbortedError) as exc_info:
            await fetcher.text("https://example.com/a", abort=abort)

    assert exc_info.value.code == "FETCH_ABORTED"
    assert remote.requests == []


@pytest.mark.asyncio
async def test_abort_during_backoff():
    calls = []
    abort = asyncio.Event()
    settings = HttpSettings(retries=5, retry_backoff_seconds=10)

    async with Fetcher(settings, transport=_flaky_transport(5, calls)) as fetcher:
        task = asyncio.create_task(fetcher.text("https://example.com/a", abort=abort))
        await asyncio.sleep(0.05)
        abort.set()

        with pytest.raises(FetchAbortedError):
            await asyncio.wait_for(task, timeout=2)

    assert len(calls) == 1
