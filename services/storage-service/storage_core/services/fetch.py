# services/storage-service/storage_core/services/fetch.py
"""Plain HTTP reads against public object URLs"""
import asyncio
import logging
from typing import Optional, Tuple
import aiohttp
from ..config import settings
from ..exceptions import FetchFailed

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _timeout(seconds: Optional[float] = None) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=seconds or settings.HTTP_TIMEOUT)


async def fetch_bytes(url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
    """GET url and return (body, content type). Non-2xx raises FetchFailed."""
    try:
        async with aiohttp.ClientSession(timeout=_timeout(timeout)) as session:
            async with session.get(url) as response:
                if response.status < 200 or response.status >= 300:
                    raise FetchFailed(url, response.status, response.reason or "")
                body = await response.read()
                content_type = response.headers.get("Content-Type", DEFAULT_CONTENT_TYPE)
                return body, content_type
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise FetchFailed(url, None, str(e) or type(e).__name__) from e


async def probe_url(url: str, timeout: Optional[float] = None) -> bool:
    """HEAD url; True on 2xx. Errors are logged and reported as False."""
    try:
        async with aiohttp.ClientSession(timeout=_timeout(timeout)) as session:
            async with session.head(url) as response:
                return 200 <= response.status < 300
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"[Fetch] HEAD {url} failed: {e}")
        return False
