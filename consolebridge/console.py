from __future__ import annotations

import logging
from typing import Awaitable, Callable, NamedTuple, Protocol

from .errors import ConsoleError

LOGGER = logging.getLogger(__name__)

Execute = Callable[[str], Awaitable[str]]


class ServerKey(NamedTuple):
    guild_id: str
    server_id: str


class ConsoleSession(Protocol):
    """One logged-in web console; provided by the browser automation layer."""

    async def execute_command(self, command: str) -> str: ...


class ServerConsole:
    def __init__(self, key: ServerKey, session: ConsoleSession, nickname: str | None = None):
        self.key = key
        self.session = session
        self.nickname = nickname or key.server_id

    async def execute(self, command: str) -> str:
        LOGGER.info("%s: Executing command: %s", self.nickname, command)
        try:
            response = await self.session.execute_command(command)
        except Exception as exc:
            LOGGER.warning("%s: Command execution failed: %s (%s)", self.nickname, command, exc)
            raise ConsoleError(f"{self.nickname}: command failed: {exc}", command) from exc
        LOGGER.debug("%s: Command response: %s", self.nickname, response)
        return response
