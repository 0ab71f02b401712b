from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

import aiohttp
import discord

LOGGER = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1900


class DiscordWebhookHandler(logging.Handler):
    """Forwards ERROR records to a Discord channel webhook.

    ``start`` has to run on the bot's event loop; records emitted before that
    (or after ``close``) are only written to the regular log handlers.
    """

    def __init__(self, url: str, username: str = "Console Bridge", level: int = logging.ERROR):
        super().__init__(level)
        self.url = url
        self.username = username
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._webhook: Optional[discord.Webhook] = None
        self._tasks: Set[asyncio.Task] = set()
        self.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._session = aiohttp.ClientSession()
        self._webhook = discord.Webhook.from_url(self.url, session=self._session)

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == __name__:
            return
        loop = self._loop
        if self._webhook is None or loop is None or loop.is_closed():
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if len(message) > MAX_CONTENT_LENGTH:
            message = message[: MAX_CONTENT_LENGTH - 3] + "..."
        loop.call_soon_threadsafe(self._schedule, f"```\n{message}\n```")

    def _schedule(self, content: str) -> None:
        if self._loop is None or self._webhook is None:
            return
        task = self._loop.create_task(self._send(content))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, content: str) -> None:
        if self._webhook is None:
            return
        try:
            await self._webhook.send(content=content, username=self.username)
        except (discord.HTTPException, aiohttp.ClientError) as exc:
            LOGGER.warning("Failed sending error log to webhook: %s", exc)

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._webhook = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        super().close()
