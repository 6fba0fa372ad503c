#!/usr/bin/env python3
"""
External logging of newly tracked listeners.

Each unblocked record is POSTed as JSON to the configured endpoint. Posting
is fire-and-forget: the caller gets a task back but never waits on it, and
failures are only logged.
"""

import asyncio
import json
from typing import Callable, Optional, Set, Union

import aiohttp

from .logger import get_logger
from .models import ListenerRecord

logger = get_logger("reporter")

CONTENT_TYPE_JSON = "application/json; charset=UTF-8"


class ListenerReporter:
    """POSTs listener records to an endpoint that may change at runtime."""

    def __init__(
        self,
        endpoint: Union[str, Callable[[], str]],
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._endpoint = endpoint if callable(endpoint) else (lambda: endpoint)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session = session
        self._owns_session = session is None
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def endpoint(self) -> str:
        return self._endpoint() or ""

    def report(self, record: ListenerRecord) -> Optional["asyncio.Task[None]"]:
        url = self.endpoint
        if not url:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, listener not reported to %s", url)
            return None
        task = loop.create_task(self._post(url, record.to_dict()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    async def _post(self, url: str, body: dict) -> None:
        try:
            session = await self._get_session()
            async with session.post(
                url, data=json.dumps(body), headers={"Content-Type": CONTENT_TYPE_JSON}
            ) as response:
                if response.status >= 400:
                    logger.warning("Listener log endpoint %s answered HTTP %d", url, response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("Failed to log listener to %s: %s", url, e)

    async def drain(self) -> None:
        """Wait for posts already in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
