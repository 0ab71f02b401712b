from __future__ import annotations

import logging
from typing import Any, Optional

from .errors import LinkConflict, NotLinked, ValidationError
from .models import GuildModels, get_settings, utcnow_naive
from .names import names_match
from .roles import RoleGate

LOGGER = logging.getLogger(__name__)


def find_link(models: GuildModels, discord_id: int) -> Optional[Any]:
    return models.PlayerLink.get_or_none(models.PlayerLink.discord_user_id == discord_id)


def find_discord_id(models: GuildModels, player_name: str) -> Optional[int]:
    """Reverse lookup: linked Discord user for a normalized in-game name."""
    for link in models.PlayerLink.select():
        if names_match(link.gamertag, player_name):
            return int(link.discord_user_id)
    return None


async def link_player(
    models: GuildModels,
    gate: RoleGate,
    guild_id: str,
    discord_id: int,
    gamertag: str,
    platform: str,
):
    gamertag = gamertag.strip()
    if not gamertag:
        raise ValidationError("Gamertag must not be empty.")
    if find_link(models, discord_id):
        raise LinkConflict("Your Discord account is already linked to a gamertag.")
    key = gamertag.lower()
    if models.PlayerLink.get_or_none(models.PlayerLink.gamertag_key == key):
        raise LinkConflict("This gamertag is already linked to another Discord user.")

    link = models.PlayerLink.create(
        discord_user_id=discord_id,
        gamertag=gamertag,
        gamertag_key=key,
        platform=platform,
        linked_at=utcnow_naive(),
    )
    LOGGER.info("Linked guild=%s user=%s gamertag=%s (%s)", guild_id, discord_id, gamertag, platform)

    role_id = get_settings(models).link_role_id
    if role_id:
        try:
            await gate.add_role(guild_id, discord_id, role_id)
        except Exception as exc:
            LOGGER.warning("Failed adding link role to user %s: %s", discord_id, exc)
    return link


async def unlink_player(models: GuildModels, gate: RoleGate, guild_id: str, discord_id: int):
    link = find_link(models, discord_id)
    if link is None:
        raise NotLinked("This Discord user is not linked to any gamertag.")

    role_id = get_settings(models).link_role_id
    if role_id:
        try:
            await gate.remove_role(guild_id, discord_id, role_id)
        except Exception as exc:
            LOGGER.warning("Failed removing link role from user %s: %s", discord_id, exc)

    models.PlayerLink.delete().where(
        models.PlayerLink.discord_user_id == discord_id
    ).execute()
    LOGGER.info("Unlinked guild=%s user=%s gamertag=%s", guild_id, discord_id, link.gamertag)
    return link


async def set_link_role(models: GuildModels, gate: RoleGate, guild_id: str, role_id: int) -> int:
    settings = get_settings(models)
    settings.link_role_id = role_id
    settings.save()

    granted = 0
    for link in models.PlayerLink.select():
        try:
            await gate.add_role(guild_id, int(link.discord_user_id), role_id)
            granted += 1
        except Exception as exc:
            LOGGER.warning(
                "Failed adding link role to user %s: %s", link.discord_user_id, exc
            )
    return granted
