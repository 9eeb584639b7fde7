# services/storage-service/storage_core/services/notifications.py
"""Owner notification sink (fire-and-forget)"""
import asyncio
import logging
from typing import Optional
import aiohttp
from ..config import settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts {title, content} to the owner notification endpoint"""

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 10):
        self.url = settings.NOTIFY_URL if url is None else url
        self.api_key = settings.NOTIFY_API_KEY if api_key is None else api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def notify(self, title: str, content: str) -> bool:
        """Never raises: delivery failures are logged and reported as False"""
        if not self.url:
            logger.info(f"[Notify] Sink not configured, dropping '{title}'")
            return False

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.url, json={"title": title, "content": content}, headers=headers
                ) as response:
                    if response.status >= 400:
                        logger.warning(f"[Notify] '{title}' rejected: {response.status}")
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Notify] Failed to deliver '{title}': {e}")
            return False


notification_service = NotificationService()
