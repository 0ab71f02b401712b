from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from .command_queue import CommandQueue, QueueEntry
from .console import Execute, ServerKey
from .cooldowns import CooldownKey, CooldownStore, now_ms
from .events import ChatEvent, parse_chat
from .names import format_cooldown, normalize_player_name, render, say
from .roles import RoleGate, check_role
from .rules import RuleRegistry

LOGGER = logging.getLogger(__name__)

LinkLookup = Callable[[str, str], Optional[int]]
ProcessingKey = Tuple[str, str, str]


class BindEngine:
    """Turns chat lines into queued bind executions for one process.

    A spam gate drops repeated lines from the same player inside a short
    window; past that, every rule of the server is checked in order against
    chat type, trigger substring, role requirement and cooldown, and the
    survivors are queued and a drain step is started in the background, so
    the line that answers a spawn's ``printpos`` can still be delivered.
    Nothing raised while checking a rule escapes.
    """

    def __init__(
        self,
        rules: RuleRegistry,
        cooldowns: CooldownStore,
        queue: CommandQueue,
        role_gate: RoleGate,
        link_lookup: LinkLookup,
        spam_window_seconds: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.rules = rules
        self.cooldowns = cooldowns
        self.queue = queue
        self.role_gate = role_gate
        self.link_lookup = link_lookup
        self.spam_window_seconds = spam_window_seconds
        self.clock = clock
        self._processing: Dict[ProcessingKey, int] = {}

    def is_processing(self, guild_id: str, server_id: str, player_name: str) -> bool:
        return (guild_id, server_id, player_name) in self._processing

    async def handle_message(
        self, guild_id: str, server_id: str, message: str, execute: Execute
    ) -> int:
        event = parse_chat(message)
        if event is None:
            return 0
        return await self.handle_chat(guild_id, server_id, event, execute)

    async def handle_chat(
        self, guild_id: str, server_id: str, event: ChatEvent, execute: Execute
    ) -> int:
        if not self.rules.has_rules(guild_id, server_id):
            return 0
        try:
            player_name = normalize_player_name(event.player_name)
            content = event.message.lower().strip()
            if not self._claim_processing((guild_id, server_id, player_name)):
                LOGGER.info(
                    "Ignoring spam message from %s (processing cooldown active)", player_name
                )
                return 0

            key = ServerKey(guild_id, server_id)
            queued = 0
            for rule in self.rules.list(guild_id, server_id):
                try:
                    if not rule.accepts_chat_type(event.chat_type):
                        continue
                    if rule.message.lower() not in content:
                        continue

                    discord_id: Optional[int] = None
                    if rule.role_id:
                        discord_id = self.link_lookup(guild_id, player_name)
                        if discord_id is None:
                            LOGGER.info(
                                "No linked Discord account found for %s (bind %r requires role)",
                                player_name,
                                rule.message,
                            )
                            continue
                        if not await check_role(self.role_gate, rule, guild_id, discord_id):
                            LOGGER.info(
                                "%s doesn't have required role for bind %r",
                                player_name,
                                rule.message,
                            )
                            continue

                    now = self.clock()
                    cooldown_key = CooldownKey(guild_id, server_id, player_name, rule.message)
                    remaining = self.cooldowns.remaining(cooldown_key, rule, now)
                    if remaining > 0:
                        LOGGER.info(
                            "Cooldown active for %s on %r - %s",
                            player_name,
                            rule.message,
                            format_cooldown(remaining),
                        )
                        if rule.cooldown_msg:
                            await execute(
                                say(
                                    render(
                                        rule.cooldown_msg,
                                        PlayerName=player_name,
                                        Cooldown=format_cooldown(remaining),
                                    )
                                )
                            )
                        continue

                    self.queue.push(
                        key,
                        QueueEntry(
                            rule=rule,
                            player_name=player_name,
                            timestamp=now,
                            discord_id=discord_id,
                        ),
                    )
                    queued += 1
                except Exception as exc:
                    LOGGER.exception(
                        "Error checking bind %r for %s: %s", rule.message, player_name, exc
                    )

            self.queue.schedule(key, execute)
            return queued
        except Exception as exc:
            LOGGER.exception("Error in bind processing: %s", exc)
            return 0

    def _claim_processing(self, key: ProcessingKey) -> bool:
        now = self.clock()
        window_ms = self.spam_window_seconds * 1000
        last = self._processing.get(key)
        if last is not None and now - last < window_ms:
            return False
        self._processing[key] = now
        asyncio.get_running_loop().call_later(
            self.spam_window_seconds, self._release_processing, key, now
        )
        return True

    def _release_processing(self, key: ProcessingKey, stamp: int) -> None:
        if self._processing.get(key) == stamp:
            del self._processing[key]
