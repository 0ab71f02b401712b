from __future__ import annotations

import logging
import random
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import autotp, gungame, links
from .autotp import AutoTeleporter
from .command_queue import CommandQueue
from .config import BotConfig
from .console import ConsoleSession, Execute, ServerConsole, ServerKey
from .cooldowns import KEY_SEPARATOR, CooldownKey, CooldownStore, now_ms
from .engine import BindEngine
from .errors import DuplicateName, UnknownServer, ValidationError
from .events import ChatEvent, KillEvent, PositionEvent, RespawnEvent, parse_line, strip_log_frame
from .gungame import GunGame
from .models import GuildModels, init_guild_db, record_audit
from .names import normalize_player_name
from .position import PositionResolver
from .roles import RoleGate
from .rules import Rule, RuleRegistry

LOGGER = logging.getLogger(__name__)


class ConsoleBridge:
    """Owns every piece of bridge state for one process.

    ``start`` loads the JSON snapshots, ``close`` flushes them. Console
    sessions are attached by the browser layer, which then feeds the raw
    lines it scrapes into ``handle_lines``.
    """

    def __init__(
        self,
        config: BotConfig,
        role_gate: RoleGate,
        clock: Callable[[], int] = now_ms,
        choose: Callable[[Sequence], object] = random.choice,
    ):
        self.config = config
        self.role_gate = role_gate
        self.rules = RuleRegistry(config.binds_path)
        self.cooldowns = CooldownStore(config.cooldowns_path, clock)
        self.positions = PositionResolver(config.position_timeout_seconds)
        self.queue = CommandQueue(
            self.cooldowns, self.positions, role_gate, config.command_delay_seconds
        )
        self.engine = BindEngine(
            self.rules,
            self.cooldowns,
            self.queue,
            role_gate,
            self.find_discord_id,
            spam_window_seconds=config.spam_window_seconds,
            clock=clock,
        )
        self.autotp = AutoTeleporter(
            config.teleport_cooldown_seconds,
            config.command_delay_seconds,
            clock=clock,
            choose=choose,
        )
        self.gungame = GunGame(config.command_delay_seconds)
        self._guilds: Dict[str, GuildModels] = {}
        self._consoles: Dict[ServerKey, ServerConsole] = {}

    # Lifecycle

    def start(self) -> None:
        self.rules.load()
        self.cooldowns.load_and_prune(self.rules.find_by_trigger, self.rules.triggers)
        LOGGER.info("Console bridge started (data dir %s)", self.config.data_dir)

    async def close(self) -> None:
        self.positions.cancel_all()
        await self.queue.wait_idle()
        if not self.rules.save():
            LOGGER.error("Binds could not be flushed on shutdown")
        if not self.cooldowns.save():
            LOGGER.error("Cooldowns could not be flushed on shutdown")
        for models in self._guilds.values():
            models.close()
        self._guilds.clear()
        self._consoles.clear()
        LOGGER.info("Console bridge closed")

    def guild(self, guild_id: str) -> GuildModels:
        guild_id = str(guild_id)
        models = self._guilds.get(guild_id)
        if models is None:
            path = self.config.data_path(f"guild_{guild_id}.db")
            models = init_guild_db(str(path))
            self._guilds[guild_id] = models
        return models

    # Consoles

    def attach_console(
        self,
        guild_id: str,
        server_id: str,
        session: ConsoleSession,
        nickname: Optional[str] = None,
    ) -> ServerConsole:
        key = ServerKey(str(guild_id), str(server_id))
        if nickname is None:
            server = self.guild(key.guild_id).GameServer.get_or_none(
                self.guild(key.guild_id).GameServer.server_id == key.server_id
            )
            nickname = server.nickname if server else None
        console = ServerConsole(key, session, nickname)
        self._consoles[key] = console
        LOGGER.info("Console attached for %s (%s)", console.nickname, key)
        return console

    def detach_console(self, guild_id: str, server_id: str) -> bool:
        key = ServerKey(str(guild_id), str(server_id))
        console = self._consoles.pop(key, None)
        if console is None:
            return False
        dropped = self.queue.discard(key)
        LOGGER.info("Console detached for %s (%s queued binds dropped)", console.nickname, dropped)
        return True

    def console(self, guild_id: str, server_id: str) -> Optional[ServerConsole]:
        return self._consoles.get(ServerKey(str(guild_id), str(server_id)))

    def executor_for(self, key: ServerKey) -> Optional[Execute]:
        console = self._consoles.get(key)
        return console.execute if console else None

    def pump_queues(self):
        return self.queue.pump_all(self.executor_for)

    # Line routing

    async def handle_lines(self, guild_id: str, server_id: str, lines: Iterable[str]) -> int:
        """Route scraped console lines for one server; returns how many were recognised."""
        key = ServerKey(str(guild_id), str(server_id))
        execute = self.executor_for(key)
        if execute is None:
            LOGGER.warning("Dropping console lines for %s: no console attached", key)
            return 0
        handled = 0
        for raw in lines:
            text = strip_log_frame(raw)
            if text is None:
                continue
            try:
                if await self._route(key, text, execute):
                    handled += 1
            except Exception as exc:
                LOGGER.exception("Error handling console line %r on %s: %s", text, key, exc)
        return handled

    async def _route(self, key: ServerKey, text: str, execute: Execute) -> bool:
        event = parse_line(text)
        if event is None:
            return False
        if isinstance(event, ChatEvent):
            models = self.guild(key.guild_id)
            try:
                await self.autotp.handle_toggle(key.guild_id, models, event, execute)
            except Exception as exc:
                LOGGER.exception("Error processing AutoTP toggle on %s: %s", key, exc)
            await self.engine.handle_chat(key.guild_id, key.server_id, event, execute)
        elif isinstance(event, RespawnEvent):
            LOGGER.info("Detected respawn for player: %s", event.player_name)
            await self.autotp.handle_respawn(
                key.guild_id, self.guild(key.guild_id), event.player_name, execute
            )
        elif isinstance(event, KillEvent):
            await self.gungame.handle_kill(key.guild_id, self.guild(key.guild_id), event, execute)
        elif isinstance(event, PositionEvent):
            self.positions.handle_position(key, event)
        return True

    def find_discord_id(self, guild_id: str, player_name: str) -> Optional[int]:
        return links.find_discord_id(self.guild(guild_id), player_name)

    # Servers

    def resolve_server(self, guild_id: str, nickname: str) -> str:
        models = self.guild(guild_id)
        server = models.GameServer.get_or_none(models.GameServer.nickname == nickname)
        if server is None:
            raise UnknownServer(nickname)
        return server.server_id

    def list_servers(self, guild_id: str) -> List[Tuple[str, str, bool]]:
        models = self.guild(guild_id)
        return [
            (server.nickname, server.server_id, self.console(guild_id, server.server_id) is not None)
            for server in models.GameServer.select().order_by(models.GameServer.nickname)
        ]

    def add_server(self, guild_id: str, actor_id: int, nickname: str, server_id: str):
        models = self.guild(guild_id)
        nickname = nickname.strip()
        server_id = str(server_id).strip()
        if not nickname or not server_id:
            raise ValidationError("Server nickname and id must not be empty.")
        if KEY_SEPARATOR in server_id:
            raise ValidationError(f"Server id must not contain `{KEY_SEPARATOR}`.")
        if models.GameServer.get_or_none(models.GameServer.nickname == nickname):
            raise DuplicateName("This nickname is already in use.")
        if models.GameServer.get_or_none(models.GameServer.server_id == server_id):
            raise DuplicateName("This server is already registered.")
        server = models.GameServer.create(server_id=server_id, nickname=nickname)
        record_audit(models, actor_id, "server.add", {"nickname": nickname, "server_id": server_id})
        return server

    def remove_server(self, guild_id: str, actor_id: int, nickname: str) -> int:
        """Forget a server along with its binds; returns how many binds went with it."""
        server_id = self.resolve_server(guild_id, nickname)
        models = self.guild(guild_id)
        self.detach_console(guild_id, server_id)
        removed = self.rules.remove_server(str(guild_id), server_id)
        models.GameServer.delete().where(models.GameServer.server_id == server_id).execute()
        record_audit(models, actor_id, "server.remove", {"nickname": nickname, "server_id": server_id})
        return removed

    async def run_command(
        self, guild_id: str, command: str, nickname: Optional[str] = None
    ) -> Dict[str, str]:
        if nickname:
            server_id = self.resolve_server(guild_id, nickname)
            console = self.console(guild_id, server_id)
            if console is None:
                raise ValidationError("Server not connected.")
            consoles = [console]
        else:
            consoles = [
                self._consoles[key] for key in self._consoles if key.guild_id == str(guild_id)
            ]
            if not consoles:
                raise ValidationError("No servers are currently connected.")
        if command.split(maxsplit=1)[:1] == ["printpos"]:
            busy = [c.nickname for c in consoles if self.positions.has_pending(c.key)]
            if busy:
                raise ValidationError(
                    f"A spawn is waiting for a position on {', '.join(busy)}; try again shortly."
                )
        responses: Dict[str, str] = {}
        for console in consoles:
            responses[console.nickname] = await console.execute(command)
        return responses

    # Binds

    def add_bind(
        self,
        guild_id: str,
        actor_id: int,
        nickname: str,
        message: str,
        *,
        command: Optional[str] = None,
        entity: Optional[str] = None,
        cooldown_minutes: float = 0,
        role_id: Optional[int | str] = None,
        remove_role: bool = False,
        cooldown_msg: Optional[str] = None,
        claim_msg: Optional[str] = None,
        chat_type: str = "ALL",
    ) -> Tuple[int, Rule]:
        server_id = self.resolve_server(guild_id, nickname)
        if cooldown_minutes < 0:
            raise ValidationError("Cooldown must not be negative.")
        if command and entity:
            raise ValidationError("A bind runs either a command or spawns an entity, not both.")
        rule = Rule.create(
            message,
            command=command,
            entity=entity,
            cooldown_ms=int(cooldown_minutes * 60 * 1000),
            role_id=role_id,
            remove_role=remove_role,
            cooldown_msg=cooldown_msg,
            claim_msg=claim_msg,
            chat_type=chat_type,
        )
        index = self.rules.add(str(guild_id), server_id, rule)
        record_audit(self.guild(guild_id), actor_id, "bind.add", {"server": nickname, **rule.to_dict()})
        return index, rule

    def remove_bind(self, guild_id: str, actor_id: int, nickname: str, index: int) -> Rule:
        """Remove by 1-based index; later binds shift down by one."""
        server_id = self.resolve_server(guild_id, nickname)
        removed = self.rules.remove_at(str(guild_id), server_id, index - 1)
        record_audit(
            self.guild(guild_id),
            actor_id,
            "bind.remove",
            {"server": nickname, "index": index, "message": removed.message},
        )
        return removed

    def list_binds(self, guild_id: str, nickname: str) -> List[Rule]:
        return self.rules.list(str(guild_id), self.resolve_server(guild_id, nickname))

    def reset_cooldown(
        self,
        guild_id: str,
        actor_id: int,
        nickname: str,
        player_name: str,
        trigger: Optional[str] = None,
    ) -> int:
        server_id = self.resolve_server(guild_id, nickname)
        guild_id = str(guild_id)
        player = normalize_player_name(player_name)
        if trigger is not None:
            rule = self.rules.find_by_trigger(guild_id, server_id, trigger)
            if rule is None:
                return 0
            self.cooldowns.reset(CooldownKey(guild_id, server_id, player, rule.message))
            count = 1
        else:
            count = self.cooldowns.reset_player(
                guild_id, server_id, player, self.rules.triggers(guild_id, server_id)
            )
        record_audit(
            self.guild(guild_id),
            actor_id,
            "cooldown.reset",
            {"server": nickname, "player": player, "trigger": trigger},
        )
        return count

    # Links

    async def link(self, guild_id: str, discord_id: int, gamertag: str, platform: str):
        models = self.guild(guild_id)
        link = await links.link_player(models, self.role_gate, str(guild_id), discord_id, gamertag, platform)
        record_audit(models, discord_id, "link", {"gamertag": link.gamertag, "platform": platform})
        return link

    async def unlink(self, guild_id: str, actor_id: int, discord_id: int):
        models = self.guild(guild_id)
        link = await links.unlink_player(models, self.role_gate, str(guild_id), discord_id)
        record_audit(models, actor_id, "unlink", {"discord_id": discord_id, "gamertag": link.gamertag})
        return link

    async def set_link_role(self, guild_id: str, actor_id: int, role_id: int) -> int:
        models = self.guild(guild_id)
        granted = await links.set_link_role(models, self.role_gate, str(guild_id), role_id)
        record_audit(models, actor_id, "linkrole.set", {"role_id": role_id, "granted": granted})
        return granted

    # AutoTP

    def set_autotp_enabled(self, guild_id: str, actor_id: int, enabled: bool) -> None:
        models = self.guild(guild_id)
        autotp.set_enabled(models, enabled)
        record_audit(models, actor_id, "autotp.toggle", {"enabled": enabled})

    def add_category(
        self, guild_id: str, actor_id: int, name: str, bind: str, command: Optional[str] = None
    ):
        models = self.guild(guild_id)
        category = autotp.add_category(models, name, bind, command)
        record_audit(models, actor_id, "category.add", {"name": category.name, "bind": category.bind})
        return category

    def remove_category(self, guild_id: str, actor_id: int, name: str) -> None:
        models = self.guild(guild_id)
        autotp.remove_category(models, name)
        record_audit(models, actor_id, "category.remove", {"name": name})

    def add_location(self, guild_id: str, actor_id: int, category: str, name: str, coords: str):
        models = self.guild(guild_id)
        location = autotp.add_location(models, category, name, coords)
        record_audit(
            models,
            actor_id,
            "location.add",
            {"category": category, "name": location.name, "coords": location.coords},
        )
        return location

    def remove_location(self, guild_id: str, actor_id: int, category: str, name: str) -> None:
        models = self.guild(guild_id)
        autotp.remove_location(models, category, name)
        record_audit(models, actor_id, "location.remove", {"category": category, "name": name})

    def set_category_messages(
        self,
        guild_id: str,
        actor_id: int,
        category: str,
        signup: Optional[str] = None,
        exit: Optional[str] = None,
    ):
        models = self.guild(guild_id)
        updated = autotp.set_messages(models, category, signup=signup, exit=exit)
        record_audit(
            models, actor_id, "category.messages", {"category": category, "signup": signup, "exit": exit}
        )
        return updated

    def list_categories(self, guild_id: str) -> List:
        return autotp.list_categories(self.guild(guild_id))

    # GunGame

    def set_gungame_enabled(self, guild_id: str, actor_id: int, category: str, enabled: bool):
        models = self.guild(guild_id)
        updated = gungame.set_category_enabled(models, category, enabled)
        record_audit(models, actor_id, "gungame.toggle", {"category": category, "enabled": enabled})
        return updated

    def add_weapon(
        self, guild_id: str, actor_id: int, weapon: str, kills: int, ammo: Optional[str] = None
    ):
        models = self.guild(guild_id)
        added = gungame.add_weapon(models, weapon, kills, ammo)
        record_audit(models, actor_id, "gungame.weapon.add", {"weapon": added.weapon, "kills": kills, "ammo": added.ammo})
        return added

    def remove_weapon(self, guild_id: str, actor_id: int, index: int):
        models = self.guild(guild_id)
        removed = gungame.remove_weapon(models, index)
        record_audit(models, actor_id, "gungame.weapon.remove", {"index": index, "weapon": removed.weapon})
        return removed

    def list_weapons(self, guild_id: str) -> List:
        return gungame.list_weapons(self.guild(guild_id))

    def reset_gungame(self, guild_id: str, actor_id: int) -> int:
        models = self.guild(guild_id)
        cleared = gungame.reset_progress(models)
        record_audit(models, actor_id, "gungame.reset", {"cleared": cleared})
        return cleared
