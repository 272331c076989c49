import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from k3se.errors import FetchError
from k3se.utils.installer import INSTALLER_URL, InstallerCache


class SlowInstaller(InstallerCache):
    """Yields during the download so concurrent callers pile up on the lock."""

    def __init__(self):
        super().__init__()
        self.downloads = 0

    async def _download(self):
        self.downloads += 1
        await asyncio.sleep(0.01)
        return b"#!/bin/sh\n"


class FlakyInstaller(InstallerCache):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.downloads = 0

    async def _download(self):
        self.downloads += 1
        if self.downloads <= self.failures:
            raise FetchError("HTTP 503")
        return b"#!/bin/sh\n"


def test_default_url():
    assert InstallerCache().url == INSTALLER_URL == "https://get.k3s.io"


@pytest.mark.asyncio
async def test_concurrent_fetches_download_once():
    cache = SlowInstaller()

    results = await asyncio.gather(*(cache.fetch() for _ in range(8)))

    assert cache.downloads == 1
    assert all(r == b"#!/bin/sh\n" for r in results)
    assert all(r is results[0] for r in results)


@pytest.mark.asyncio
async def test_cached_after_first_fetch():
    cache = SlowInstaller()
    await cache.fetch()
    await cache.fetch()
    assert cache.downloads == 1


@pytest.mark.asyncio
async def test_failure_is_not_cached():
    cache = FlakyInstaller(failures=1)

    with pytest.raises(FetchError):
        await cache.fetch()
    assert await cache.fetch() == b"#!/bin/sh\n"
    assert cache.downloads == 2


async def _serve(handler):
    app = web.Application()
    app.router.add_get("/install.sh", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_download_from_server():
    async def handler(request):
        return web.Response(body=b"#!/bin/sh\necho k3s\n")

    server = await _serve(handler)
    try:
        cache = InstallerCache(str(server.make_url("/install.sh")))
        assert await cache.fetch() == b"#!/bin/sh\necho k3s\n"
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_download_accepts_any_success_status():
    async def handler(request):
        return web.Response(status=203, body=b"#!/bin/sh\n")

    server = await _serve(handler)
    try:
        cache = InstallerCache(str(server.make_url("/install.sh")))
        assert await cache.fetch() == b"#!/bin/sh\n"
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_download_error_status_is_retried():
    calls = []

    async def handler(request):
        calls.append(request.path)
        if len(calls) == 1:
            return web.Response(status=503, text="unavailable")
        return web.Response(body=b"#!/bin/sh\n")

    server = await _serve(handler)
    try:
        cache = InstallerCache(str(server.make_url("/install.sh")))
        with pytest.raises(FetchError) as exc_info:
            await cache.fetch()
        assert "HTTP 503" in str(exc_info.value)

        assert await cache.fetch() == b"#!/bin/sh\n"
        assert len(calls) == 2
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_download_empty_body():
    async def handler(request):
        return web.Response(body=b"")

    server = await _serve(handler)
    try:
        cache = InstallerCache(str(server.make_url("/install.sh")))
        with pytest.raises(FetchError) as exc_info:
            await cache.fetch()
        assert "empty" in str(exc_info.value)
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_download_connection_refused():
    async def handler(request):
        return web.Response(body=b"#!/bin/sh\n")

    server = await _serve(handler)
    url = str(server.make_url("/install.sh"))
    await server.close()

    with pytest.raises(FetchError) as exc_info:
        await InstallerCache(url).fetch()
    assert isinstance(exc_info.value.__cause__, aiohttp.ClientError)


@pytest.mark.asyncio
async def test_download_timeout():
    async def handler(request):
        await asyncio.sleep(1)
        return web.Response(body=b"#!/bin/sh\n")

    server = await _serve(handler)
    try:
        cache = InstallerCache(str(server.make_url("/install.sh")), timeout=0.05)
        with pytest.raises(FetchError):
            await cache.fetch()
    finally:
        await server.close()
