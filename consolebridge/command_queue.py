from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

from .console import Execute, ServerKey
from .cooldowns import CooldownKey, CooldownStore
from .errors import ConsoleError, PositionTimeout
from .names import render, say
from .position import PositionResolver
from .roles import RoleGate
from .rules import BindType, Rule

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    rule: Rule
    player_name: str
    timestamp: int
    discord_id: Optional[int] = None


class CommandQueue:
    """FIFO of triggered binds per server, drained one entry at a time.

    The per-server drain flag is the only guard against two dispatches typing
    into the same console session at once; different servers drain
    independently.
    """

    def __init__(
        self,
        cooldowns: CooldownStore,
        positions: PositionResolver,
        role_gate: RoleGate,
        command_delay: float = 0.5,
    ):
        self.cooldowns = cooldowns
        self.positions = positions
        self.role_gate = role_gate
        self.command_delay = command_delay
        self._queues: Dict[ServerKey, Deque[QueueEntry]] = {}
        self._draining: Set[ServerKey] = set()
        self._tasks: Set[asyncio.Task] = set()

    def push(self, key: ServerKey, entry: QueueEntry) -> None:
        self._queues.setdefault(key, deque()).append(entry)
        LOGGER.info(
            "Queued %s bind %r for %s on %s",
            entry.rule.type.value,
            entry.rule.message,
            entry.player_name,
            key,
        )

    def pending(self, key: ServerKey) -> List[QueueEntry]:
        return list(self._queues.get(key, ()))

    def is_draining(self, key: ServerKey) -> bool:
        return key in self._draining

    def discard(self, key: ServerKey) -> int:
        dropped = self._queues.pop(key, None)
        return len(dropped) if dropped else 0

    async def pump(self, key: ServerKey, execute: Execute) -> bool:
        if key in self._draining:
            return False
        queue = self._queues.get(key)
        if not queue:
            return False
        self._draining.add(key)
        try:
            entry = queue.popleft()
            remaining = self.cooldowns.remaining(self._cooldown_key(key, entry), entry.rule)
            if remaining > 0:
                LOGGER.info(
                    "Dropping queued bind %r for %s on %s: cooldown still active (%sms)",
                    entry.rule.message,
                    entry.player_name,
                    key,
                    remaining,
                )
                return True
            try:
                if entry.rule.type == BindType.SPAWN:
                    await self._dispatch_spawn(key, entry, execute)
                else:
                    await self._dispatch_command(key, entry, execute)
            except Exception as exc:
                LOGGER.exception(
                    "Error processing queued bind %r for %s on %s: %s",
                    entry.rule.message,
                    entry.player_name,
                    key,
                    exc,
                )
            return True
        finally:
            self._draining.discard(key)

    def schedule(self, key: ServerKey, execute: Execute) -> Optional[asyncio.Task]:
        """Start a background drain step for one server unless one is running."""
        if not self._queues.get(key) or key in self._draining:
            return None
        task = asyncio.get_running_loop().create_task(self.pump(key, execute))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def pump_all(self, executor_for: Callable[[ServerKey], Optional[Execute]]) -> List[asyncio.Task]:
        started: List[asyncio.Task] = []
        for key in list(self._queues):
            execute = executor_for(key)
            if execute is None:
                continue
            task = self.schedule(key, execute)
            if task is not None:
                started.append(task)
        return started

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch_spawn(self, key: ServerKey, entry: QueueEntry, execute: Execute) -> None:
        rule = entry.rule
        try:
            position = await self.positions.get_position(key, entry.player_name, execute)
        except (PositionTimeout, ConsoleError) as exc:
            LOGGER.warning("Failed to get position for %s; dropping spawn: %s", entry.player_name, exc)
            return
        LOGGER.info("Got position %s for %s, spawning %s", position, entry.player_name, rule.entity)
        await execute(f"spawn {rule.entity} {position}")
        self.cooldowns.record(self._cooldown_key(key, entry))
        await self._send_claim(entry, execute)

    async def _dispatch_command(self, key: ServerKey, entry: QueueEntry, execute: Execute) -> None:
        rule = entry.rule
        await execute(render(rule.command or "", PlayerName=entry.player_name))
        self.cooldowns.record(self._cooldown_key(key, entry))
        if rule.remove_role and rule.role_id and entry.discord_id is not None:
            try:
                await self.role_gate.remove_role(key.guild_id, entry.discord_id, rule.role_id)
                LOGGER.info("Removed role %s from %s after bind execution", rule.role_id, entry.player_name)
            except Exception as exc:
                LOGGER.warning("Failed to remove role from %s: %s", entry.player_name, exc)
        await self._send_claim(entry, execute)

    async def _send_claim(self, entry: QueueEntry, execute: Execute) -> None:
        if not entry.rule.claim_msg:
            return
        await asyncio.sleep(self.command_delay)
        await execute(say(render(entry.rule.claim_msg, PlayerName=entry.player_name)))

    @staticmethod
    def _cooldown_key(key: ServerKey, entry: QueueEntry) -> CooldownKey:
        return CooldownKey(key.guild_id, key.server_id, entry.player_name, entry.rule.message)
