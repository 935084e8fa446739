import asyncio
import logging
from typing import Optional

import aiohttp

from ami_monitor.status import StatusChange


class QueueSink:
    """
    In-process channel of status changes, read by a dedicated consumer loop.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: 'asyncio.Queue[StatusChange]' = asyncio.Queue(maxsize)
        self.logger = logging.getLogger('Queue Sink')

    async def publish(self, change: StatusChange) -> None:
        try:
            self.queue.put_nowait(change)
        except asyncio.QueueFull:
            self.logger.warning(f"Change queue is full, dropped change for {change.id}")

    async def get(self) -> StatusChange:
        return await self.queue.get()


class LoggingSink:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger('Extension Changes')

    async def publish(self, change: StatusChange) -> None:
        previous = change.previous.state.value if change.previous is not None else None
        self.logger.info(f"Extension {change.id}: {previous} -> {change.current.state.value} "
                         f"({change.current.device_state}, {change.reason})")


class WebhookSink:
    """
    Posts every change as JSON to an HTTP endpoint. Delivery failures are
    logged and dropped.
    """

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 5.0, headers: Optional[dict] = None):
        self.url = url
        self.logger = logging.getLogger('Webhook Sink')
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers = headers or {}
        self.delivered = 0
        self.failed = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def publish(self, change: StatusChange) -> None:
        session = await self._get_session()
        try:
            async with session.post(self.url, json=change.as_dict(), headers=self._headers,
                                    timeout=self._timeout) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self.failed += 1
                    self.logger.warning(f"Webhook {self.url} answered {resp.status} for {change.id}: {body[:200]}")
                    return
                self.delivered += 1
                self.logger.debug(f"Webhook delivered change for {change.id}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed += 1
            self.logger.warning(f"Webhook {self.url} failed for {change.id}: {e!r}")

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
