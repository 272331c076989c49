"""
k3se/utils/installer.py

Downloads the k3s installation script once per engine and shares the bytes
between every node installation, including concurrently running workers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from k3se.errors import FetchError

INSTALLER_URL = "https://get.k3s.io"

logger = logging.getLogger(__name__)


class InstallerCache:
    """
    Memoizes the installation script.

    The check-and-fetch sequence runs under an asyncio.Lock, so any number of
    concurrent callers trigger at most one download. A failed download is not
    cached; the next call tries again.
    """

    def __init__(self, url: str = INSTALLER_URL, timeout: float = 30.0) -> None:
        self._url = url
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self._script: Optional[bytes] = None

    @property
    def url(self) -> str:
        return self._url

    async def fetch(self) -> bytes:
        """
        Return the installation script, downloading it on first use.

        Raises:
            FetchError: If the request fails or returns a non-success status.
        """
        async with self._lock:
            if self._script is None:
                logger.info("Downloading installer from %s", self._url)
                self._script = await self._download()
            return self._script

    async def _download(self) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self._url) as resp:
                    if not 200 <= resp.status < 300:
                        raise FetchError(
                            f"Failed to download installer from {self._url}: HTTP {resp.status}"
                        )
                    data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(
                f"Failed to download installer from {self._url}: {exc}"
            ) from exc

        if not data:
            raise FetchError(f"Installer downloaded from {self._url} is empty")
        return data
