from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import discord

from .rules import Rule

LOGGER = logging.getLogger(__name__)


class RoleGate(Protocol):
    async def has_role(self, guild_id: str, discord_id: int, role_id: int | str) -> bool: ...

    async def add_role(self, guild_id: str, discord_id: int, role_id: int | str) -> None: ...

    async def remove_role(self, guild_id: str, discord_id: int, role_id: int | str) -> None: ...


class RoleLookupError(Exception):
    pass


class DiscordRoleGate:
    """Role membership backed by the discord.py member cache / API."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _member(self, guild_id: str, discord_id: int) -> tuple[Any, Any]:
        guild = self.client.get_guild(int(guild_id))
        if guild is None:
            raise RoleLookupError(f"guild {guild_id} not found")
        member = guild.get_member(int(discord_id))
        if member is None:
            member = await guild.fetch_member(int(discord_id))
        if member is None:
            raise RoleLookupError(f"member {discord_id} not found in guild {guild_id}")
        return guild, member

    async def has_role(self, guild_id: str, discord_id: int, role_id: int | str) -> bool:
        _guild, member = await self._member(guild_id, discord_id)
        return any(role.id == int(role_id) for role in member.roles)

    async def add_role(self, guild_id: str, discord_id: int, role_id: int | str) -> None:
        guild, member = await self._member(guild_id, discord_id)
        role = guild.get_role(int(role_id))
        if role is None:
            raise RoleLookupError(f"role {role_id} not found in guild {guild_id}")
        if role not in member.roles:
            await member.add_roles(role, reason="Console bridge")

    async def remove_role(self, guild_id: str, discord_id: int, role_id: int | str) -> None:
        guild, member = await self._member(guild_id, discord_id)
        role = guild.get_role(int(role_id))
        if role is None:
            raise RoleLookupError(f"role {role_id} not found in guild {guild_id}")
        if role in member.roles:
            await member.remove_roles(role, reason="Console bridge")


async def check_role(
    gate: RoleGate, rule: Rule, guild_id: str, discord_id: Optional[int]
) -> bool:
    if not rule.role_id:
        return True
    if discord_id is None:
        return False
    try:
        return await gate.has_role(guild_id, discord_id, rule.role_id)
    except Exception as exc:
        LOGGER.warning(
            "Role check failed guild=%s user=%s role=%s: %s",
            guild_id,
            discord_id,
            rule.role_id,
            exc,
        )
        return False
