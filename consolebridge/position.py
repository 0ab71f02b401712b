from __future__ import annotations

import asyncio
import itertools
import logging
from collections import OrderedDict
from typing import Dict

from .console import Execute, ServerKey
from .errors import PositionTimeout
from .events import PositionEvent

LOGGER = logging.getLogger(__name__)


class PositionResolver:
    """Correlates ``printpos`` requests with the position lines that answer them.

    Requests are keyed by id and grouped per server; a position line only
    settles the oldest outstanding request of the server it was read from.
    The console's answer carries no player name, so any ``printpos`` typed
    by someone else while a request is outstanding would be taken as the
    answer; ``ConsoleBridge.run_command`` refuses manual ``printpos`` while
    the server has one pending.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._pending: Dict[ServerKey, "OrderedDict[int, asyncio.Future[str]]"] = {}

    def pending_count(self, key: ServerKey | None = None) -> int:
        if key is not None:
            return len(self._pending.get(key, {}))
        return sum(len(requests) for requests in self._pending.values())

    def has_pending(self, key: ServerKey) -> bool:
        return bool(self._pending.get(key))

    async def get_position(self, key: ServerKey, player_name: str, execute: Execute) -> str:
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future: asyncio.Future[str] = loop.create_future()
        self._pending.setdefault(key, OrderedDict())[request_id] = future
        try:
            await execute(f"printpos {player_name}")
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            raise PositionTimeout(player_name, self.timeout) from None
        finally:
            self._retract(key, request_id)

    def handle_position(self, key: ServerKey, event: PositionEvent) -> bool:
        requests = self._pending.get(key)
        if not requests:
            return False
        for request_id, future in list(requests.items()):
            if future.done():
                continue
            future.set_result(event.as_command_arg())
            LOGGER.debug("Position request %s on %s resolved: %s", request_id, key, event)
            return True
        return False

    def cancel_all(self) -> None:
        for requests in self._pending.values():
            for future in requests.values():
                if not future.done():
                    future.cancel()
        self._pending.clear()

    def _retract(self, key: ServerKey, request_id: int) -> None:
        requests = self._pending.get(key)
        if requests is None:
            return
        requests.pop(request_id, None)
        if not requests:
            self._pending.pop(key, None)
