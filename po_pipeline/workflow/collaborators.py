"""Seams between the orchestrator and the outside world.

File storage, merchant configuration and progress delivery are reached through
small protocols so the workflow can run against real services or test doubles.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import aiohttp

from ..core.exceptions import DocumentError, TransientIOError
from ..core.models import AISettings
from ..pipeline.progress import LoggingProgressSink, ProgressSink, TqdmProgressSink
from .store import SQLiteStateStore, settings_key

logger = logging.getLogger(__name__)

RETRYABLE_CLIENT_STATUSES = {408, 429}


@runtime_checkable
class FileDownloader(Protocol):
    """Fetches the bytes behind an upload's file URL."""

    async def download(self, url: str) -> bytes:
        ...


@runtime_checkable
class SettingsProvider(Protocol):
    """Looks up per-merchant AI settings; None when the merchant has none."""

    async def get(self, merchant_id: str) -> Optional[AISettings]:
        ...


class HttpFileDownloader:
    """Downloads files over HTTP(S) with aiohttp."""

    def __init__(self, timeout: int = 60, session: Optional[aiohttp.ClientSession] = None):
        """Initialize downloader.

        Args:
            timeout: Total request timeout in seconds
            session: Shared session; a short-lived one is opened per download otherwise
        """
        self.timeout = timeout
        self._session = session

    async def download(self, url: str) -> bytes:
        """Fetch ``url``.

        Raises:
            DocumentError: On 4xx responses other than 408 and 429
            TransientIOError: On other non-2xx statuses, client errors or timeouts
        """
        if self._session is not None:
            return await self._fetch(self._session, url)

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            return await self._fetch(session, url)

    async def _fetch(self, session: aiohttp.ClientSession, url: str) -> bytes:
        try:
            async with session.get(url) as response:
                status = response.status
                if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
                    raise DocumentError(url, f"HTTP {status}")
                if status < 200 or status >= 300:
                    raise TransientIOError("download", f"HTTP {status} for {url}")
                content = await response.read()
                logger.debug(f"[DOWNLOAD] {url} - {len(content)} bytes")
                return content
        except aiohttp.ClientError as e:
            raise TransientIOError("download", f"request to {url} failed", e) from e
        except asyncio.TimeoutError as e:
            raise TransientIOError("download", f"request to {url} timed out", e) from e


class LocalFileDownloader:
    """Reads files from disk; accepts plain paths and file:// URLs."""

    async def download(self, url: str) -> bytes:
        path = self.resolve(url)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise DocumentError(path, "File not found", e)
        except PermissionError as e:
            raise DocumentError(path, "Permission denied", e)
        except OSError as e:
            raise TransientIOError("download", f"reading {path} failed", e) from e

    @staticmethod
    def resolve(url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path))
        return Path(url)


class StoreSettingsProvider:
    """Reads ``settings:{merchant_id}`` from the state store."""

    def __init__(self, store: SQLiteStateStore):
        self.store = store

    async def get(self, merchant_id: str) -> Optional[AISettings]:
        record = await self.store.get(settings_key(merchant_id))
        if record is None:
            return None
        return AISettings.model_validate({**record, "merchant_id": merchant_id})

    async def put(self, ai_settings: AISettings) -> None:
        await self.store.set(settings_key(ai_settings.merchant_id), ai_settings.model_dump(mode="json"))


__all__ = [
    "FileDownloader",
    "SettingsProvider",
    "ProgressSink",
    "HttpFileDownloader",
    "LocalFileDownloader",
    "StoreSettingsProvider",
    "LoggingProgressSink",
    "TqdmProgressSink",
]
