from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional

from peewee import fn

from .autotp import get_category
from .console import Execute
from .errors import InvalidIndex, ValidationError
from .events import KillEvent
from .models import GuildModels
from .names import normalize_player_name, say

LOGGER = logging.getLogger(__name__)


class KillOutcome(str, Enum):
    IGNORED = "ignored"
    COUNTED = "counted"
    ADVANCED = "advanced"
    WON = "won"


def list_weapons(models: GuildModels) -> List:
    return list(models.Weapon.select().order_by(models.Weapon.position, models.Weapon.id))


def parse_ammo(ammo: Optional[str]) -> Optional[tuple]:
    if not ammo:
        return None
    parts = ammo.split()
    if len(parts) != 2:
        raise ValidationError('Ammo must look like "<type> <amount>".')
    return parts[0], parts[1]


def add_weapon(models: GuildModels, weapon: str, kills: int, ammo: Optional[str] = None):
    weapon = weapon.strip()
    if not weapon:
        raise ValidationError("Weapon name must not be empty.")
    if kills < 1:
        raise ValidationError("Required kills must be at least 1.")
    parse_ammo(ammo)
    last = models.Weapon.select(fn.MAX(models.Weapon.position)).scalar()
    return models.Weapon.create(
        position=(last or 0) + 1,
        weapon=weapon,
        kills=kills,
        ammo=" ".join(ammo.split()) if ammo else None,
    )


def remove_weapon(models: GuildModels, index: int):
    """Remove the weapon at a 1-based index.

    Progress sitting on the removed weapon or any later one is cleared.
    """
    weapons = list_weapons(models)
    position = index - 1
    if position < 0 or position >= len(weapons):
        raise InvalidIndex(position, len(weapons))
    removed = weapons[position]
    with models.db.atomic():
        removed.delete_instance()
        models.GunGameProgress.delete().where(
            models.GunGameProgress.weapon_index >= position
        ).execute()
    return removed


def set_category_enabled(models: GuildModels, category_name: str, enabled: bool):
    category = get_category(models, category_name)
    category.gungame_enabled = enabled
    category.save()
    if enabled:
        members = [member.player_name for member in category.members]
        if members:
            models.GunGameProgress.delete().where(
                models.GunGameProgress.player_name.in_(members)
            ).execute()
    return category


def reset_progress(models: GuildModels) -> int:
    return models.GunGameProgress.delete().execute()


def get_progress(models: GuildModels, player_name: str):
    return models.GunGameProgress.get_or_none(
        models.GunGameProgress.player_name == normalize_player_name(player_name)
    )


class GunGame:
    """Kill-driven weapon progression for players in GunGame-enabled categories."""

    def __init__(self, command_delay: float = 0.5):
        self.command_delay = command_delay

    async def handle_kill(
        self, guild_id: str, models: GuildModels, event: KillEvent, execute: Execute
    ) -> KillOutcome:
        killer = normalize_player_name(event.killer_name)
        member = models.CategoryMember.get_or_none(
            models.CategoryMember.player_name == killer
        )
        if member is None or not member.category.gungame_enabled:
            LOGGER.debug("%s not in any active GunGame category", killer)
            return KillOutcome.IGNORED
        category_name = member.category.name

        weapons = list_weapons(models)
        if not weapons:
            LOGGER.info("GunGame enabled for %s but no weapons configured", category_name)
            return KillOutcome.IGNORED

        progress, _ = models.GunGameProgress.get_or_create(player_name=killer)
        if progress.weapon_index >= len(weapons):
            progress.weapon_index = 0
            progress.kills = 0

        progress.kills += 1
        current = weapons[progress.weapon_index]
        LOGGER.info(
            "GunGame kill for %s in %s: %s/%s on %s",
            killer,
            category_name,
            progress.kills,
            current.kills,
            current.weapon,
        )
        if progress.kills < current.kills:
            progress.save()
            return KillOutcome.COUNTED

        progress.weapon_index += 1
        progress.kills = 0
        if progress.weapon_index >= len(weapons):
            cleared = models.GunGameProgress.delete().execute()
            LOGGER.info(
                "%s has won GunGame in %s; cleared %s progress rows",
                killer,
                category_name,
                cleared,
            )
            await asyncio.sleep(self.command_delay)
            await execute(
                say(f"{killer} has won Gun Game in {category_name}! Game has been reset.")
            )
            await asyncio.sleep(self.command_delay)
            await execute(
                say(f"Congratulations {killer}! A new game will begin with the next kill.")
            )
            return KillOutcome.WON

        progress.save()
        weapon = weapons[progress.weapon_index]
        await asyncio.sleep(self.command_delay)
        await execute(f'inventory.giveto {killer} "{weapon.weapon}"')
        ammo = parse_ammo(weapon.ammo)
        if ammo:
            await asyncio.sleep(self.command_delay)
            await execute(f'inventory.giveto {killer} "{ammo[0]}" "{ammo[1]}"')
        await asyncio.sleep(self.command_delay)
        await execute(
            say(
                f"{killer} advanced to {weapon.weapon}! "
                f"({progress.weapon_index + 1}/{len(weapons)})"
            )
        )
        return KillOutcome.ADVANCED
