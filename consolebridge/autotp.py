from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .console import Execute
from .cooldowns import now_ms
from .errors import (
    ConsoleError,
    DuplicateName,
    InvalidCoordinates,
    UnknownCategory,
    ValidationError,
)
from .events import ChatEvent
from .models import GuildModels, get_settings
from .names import format_coordinates, normalize_player_name, render, say

LOGGER = logging.getLogger(__name__)


def get_category(models: GuildModels, name: str):
    category = models.Category.get_or_none(models.Category.name == name)
    if category is None:
        raise UnknownCategory(name)
    return category


def list_categories(models: GuildModels) -> List:
    return list(models.Category.select().order_by(models.Category.id))


def member_category(models: GuildModels, player_name: str):
    """Category the normalized player is currently active in, if any."""
    member = models.CategoryMember.get_or_none(
        models.CategoryMember.player_name == player_name
    )
    return member.category if member else None


def active_players(category) -> List[str]:
    return [member.player_name for member in category.members]


def add_category(models: GuildModels, name: str, bind: str, command: Optional[str] = None):
    name = name.strip()
    bind = bind.strip()
    if not name or not bind:
        raise ValidationError("Category name and bind phrase must not be empty.")
    if models.Category.get_or_none(models.Category.name == name):
        raise DuplicateName(f'Category "{name}" already exists.')
    return models.Category.create(name=name, bind=bind, command=command or None)


def remove_category(models: GuildModels, name: str) -> None:
    category = get_category(models, name)
    with models.db.atomic():
        models.CategoryMember.delete().where(
            models.CategoryMember.category == category
        ).execute()
        models.Location.delete().where(models.Location.category == category).execute()
        category.delete_instance()


def add_location(models: GuildModels, category_name: str, name: str, coords: str):
    category = get_category(models, category_name)
    formatted = format_coordinates(coords)
    if formatted is None:
        raise InvalidCoordinates(coords)
    name = name.strip()
    if not name:
        raise ValidationError("Location name must not be empty.")
    exists = models.Location.get_or_none(
        (models.Location.category == category) & (models.Location.name == name)
    )
    if exists:
        raise DuplicateName(f'Location "{name}" already exists in "{category.name}".')
    return models.Location.create(category=category, name=name, coords=formatted)


def remove_location(models: GuildModels, category_name: str, name: str) -> None:
    category = get_category(models, category_name)
    deleted = (
        models.Location.delete()
        .where((models.Location.category == category) & (models.Location.name == name))
        .execute()
    )
    if not deleted:
        raise ValidationError(f'Location "{name}" not found in "{category.name}".')


def set_messages(
    models: GuildModels,
    category_name: str,
    signup: Optional[str] = None,
    exit: Optional[str] = None,
):
    category = get_category(models, category_name)
    if signup is not None:
        category.signup_message = signup or None
    if exit is not None:
        category.exit_message = exit or None
    category.save()
    return category


def set_command(models: GuildModels, category_name: str, command: Optional[str]):
    category = get_category(models, category_name)
    category.command = command or None
    category.save()
    return category


def set_enabled(models: GuildModels, enabled: bool) -> None:
    settings = get_settings(models)
    settings.autotp_enabled = enabled
    settings.save()


def is_enabled(models: GuildModels) -> bool:
    return bool(get_settings(models).autotp_enabled)


class AutoTeleporter:
    """Category membership toggling on chat and teleport-on-respawn."""

    def __init__(
        self,
        teleport_cooldown_seconds: float = 5.0,
        command_delay: float = 0.5,
        clock: Callable[[], int] = now_ms,
        choose: Callable[[Sequence], object] = random.choice,
    ):
        self.teleport_cooldown_ms = int(teleport_cooldown_seconds * 1000)
        self.command_delay = command_delay
        self.clock = clock
        self.choose = choose
        self._last_teleport: Dict[Tuple[str, str, str], int] = {}

    async def handle_toggle(
        self, guild_id: str, models: GuildModels, event: ChatEvent, execute: Execute
    ) -> Optional[str]:
        """Toggle the player's membership for the first category whose bind is in the message.

        Returns the name of the matched category, or None when nothing matched.
        """
        if not is_enabled(models):
            return None
        category = next(
            (c for c in list_categories(models) if c.bind and c.bind in event.message),
            None,
        )
        if category is None:
            return None

        player_name = normalize_player_name(event.player_name)
        member = models.CategoryMember.get_or_none(
            models.CategoryMember.player_name == player_name
        )
        announcements: List[Tuple[Optional[str], str]] = []
        if member is None:
            models.CategoryMember.create(player_name=player_name, category=category)
            LOGGER.info("%s opted into %s AutoTP", player_name, category.name)
            announcements.append((category.signup_message, category.name))
        elif member.category_id == category.id:
            member.delete_instance()
            LOGGER.info("%s opted out of %s AutoTP", player_name, category.name)
            announcements.append((category.exit_message, category.name))
        else:
            previous = member.category
            member.category = category
            member.save()
            LOGGER.info(
                "%s moved from %s to %s AutoTP", player_name, previous.name, category.name
            )
            announcements.append((previous.exit_message, previous.name))
            announcements.append((category.signup_message, category.name))

        for template, category_name in announcements:
            if template:
                await self._announce(execute, template, player_name, category_name)
        return category.name

    async def handle_respawn(
        self, guild_id: str, models: GuildModels, raw_player_name: str, execute: Execute
    ) -> Optional[str]:
        """Teleport an active player to a random location of their category.

        Returns the coordinates used, or None when no teleport happened.
        """
        if not is_enabled(models):
            LOGGER.debug("AutoTP not enabled for guild %s", guild_id)
            return None
        player_name = normalize_player_name(raw_player_name)
        category = member_category(models, player_name)
        if category is None:
            return None
        locations = list(category.locations.order_by(models.Location.id))
        if not locations:
            LOGGER.info("No locations available in category %s", category.name)
            return None

        key = (guild_id, player_name, category.name)
        now = self.clock()
        last = self._last_teleport.get(key)
        if last is not None and now - last < self.teleport_cooldown_ms:
            LOGGER.info(
                "Teleport cooldown active for %s in %s (%ss remaining)",
                player_name,
                category.name,
                (self.teleport_cooldown_ms - (now - last)) // 1000,
            )
            return None

        location = self.choose(locations)
        self._prune_teleports(now)
        self._last_teleport[key] = now
        await execute(f"global.teleportpos {location.coords} {player_name}")
        LOGGER.info(
            "Auto-teleported %s to %s location %s (%s)",
            player_name,
            category.name,
            location.name,
            location.coords,
        )
        if category.command:
            await asyncio.sleep(self.command_delay)
            await execute(render(category.command, PlayerName=player_name))
        return location.coords

    def _prune_teleports(self, now: int) -> None:
        expired = [
            key
            for key, stamp in self._last_teleport.items()
            if now - stamp >= self.teleport_cooldown_ms
        ]
        for key in expired:
            del self._last_teleport[key]

    async def _announce(
        self, execute: Execute, template: str, player_name: str, category_name: str
    ) -> None:
        message = render(template, PlayerName=player_name, Category=category_name)
        try:
            await execute(say(message))
        except ConsoleError as exc:
            LOGGER.warning("Failed sending AutoTP message to %s: %s", player_name, exc)
