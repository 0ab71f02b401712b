from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InvalidIndex, ValidationError
from .storage import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)


class ChatType(str, Enum):
    LOCAL = "LOCAL"
    TEAM = "TEAM"
    SERVER = "SERVER"
    ALL = "ALL"


class BindType(str, Enum):
    COMMAND = "command"
    SPAWN = "spawn"


_KNOWN_FIELDS = {
    "message",
    "command",
    "entity",
    "cooldown",
    "roleId",
    "removeRole",
    "cooldownMsg",
    "claimMsg",
    "chatType",
    "type",
}


@dataclass(frozen=True)
class Rule:
    message: str
    type: BindType
    command: Optional[str] = None
    entity: Optional[str] = None
    cooldown: int = 0
    role_id: Optional[str] = None
    remove_role: bool = False
    cooldown_msg: Optional[str] = None
    claim_msg: Optional[str] = None
    chat_type: ChatType = ChatType.ALL
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def create(
        cls,
        message: str,
        *,
        command: Optional[str] = None,
        entity: Optional[str] = None,
        cooldown_ms: int = 0,
        role_id: Optional[int | str] = None,
        remove_role: bool = False,
        cooldown_msg: Optional[str] = None,
        claim_msg: Optional[str] = None,
        chat_type: ChatType | str = ChatType.ALL,
    ) -> "Rule":
        message = (message or "").strip()
        if not message:
            raise ValidationError("Bind trigger message must not be empty.")
        if cooldown_ms < 0:
            raise ValidationError("Cooldown must not be negative.")
        if not isinstance(chat_type, ChatType):
            try:
                chat_type = ChatType(str(chat_type).upper())
            except ValueError:
                raise ValidationError(f"Unknown chat type `{chat_type}`.")
        if entity:
            bind_type, command = BindType.SPAWN, None
        elif command:
            bind_type, entity = BindType.COMMAND, None
        else:
            raise ValidationError("A bind needs either a command or an entity.")
        return cls(
            message=message,
            type=bind_type,
            command=command,
            entity=entity,
            cooldown=int(cooldown_ms),
            role_id=str(role_id) if role_id else None,
            remove_role=bool(remove_role),
            cooldown_msg=cooldown_msg or None,
            claim_msg=claim_msg or None,
            chat_type=chat_type,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        entity = data.get("entity")
        raw_type = data.get("type") or (
            BindType.SPAWN.value if entity else BindType.COMMAND.value
        )
        raw_chat = str(data.get("chatType") or ChatType.ALL.value).upper()
        try:
            chat_type = ChatType(raw_chat)
        except ValueError:
            LOGGER.warning("Unknown chatType %r on bind %r; using ALL", raw_chat, data.get("message"))
            chat_type = ChatType.ALL
        role_id = data.get("roleId")
        return cls(
            message=str(data["message"]),
            type=BindType(str(raw_type).lower()),
            command=data.get("command"),
            entity=entity,
            cooldown=int(data.get("cooldown") or 0),
            role_id=str(role_id) if role_id else None,
            remove_role=bool(data.get("removeRole")),
            cooldown_msg=data.get("cooldownMsg"),
            claim_msg=data.get("claimMsg"),
            chat_type=chat_type,
            extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "message": self.message,
                "command": self.command,
                "entity": self.entity,
                "cooldown": self.cooldown,
                "roleId": self.role_id,
                "removeRole": self.remove_role,
                "cooldownMsg": self.cooldown_msg,
                "claimMsg": self.claim_msg,
                "chatType": self.chat_type.value,
                "type": self.type.value,
            }
        )
        return data

    @property
    def action(self) -> str:
        return (self.entity if self.type == BindType.SPAWN else self.command) or ""

    def accepts_chat_type(self, chat_type: str) -> bool:
        if self.chat_type == ChatType.ALL:
            return True
        return self.chat_type.value == chat_type.upper()


class RuleRegistry:
    """Ordered bind rules per (guild, server), saved as one JSON snapshot."""

    def __init__(self, path: Path):
        self.path = path
        self._rules: Dict[str, Dict[str, List[Rule]]] = {}

    def list(self, guild_id: str, server_id: str) -> List[Rule]:
        return list(self._rules.get(guild_id, {}).get(server_id, []))

    def has_rules(self, guild_id: str, server_id: str) -> bool:
        return bool(self._rules.get(guild_id, {}).get(server_id))

    def add(self, guild_id: str, server_id: str, rule: Rule) -> int:
        rules = self._rules.setdefault(guild_id, {}).setdefault(server_id, [])
        rules.append(rule)
        self.save()
        LOGGER.info(
            "Bind added guild=%s server=%s trigger=%r %s=%r",
            guild_id,
            server_id,
            rule.message,
            rule.type.value,
            rule.action,
        )
        return len(rules)

    def remove_at(self, guild_id: str, server_id: str, index: int) -> Rule:
        rules = self._rules.get(guild_id, {}).get(server_id, [])
        if index < 0 or index >= len(rules):
            raise InvalidIndex(index, len(rules))
        removed = rules.pop(index)
        self.save()
        LOGGER.info(
            "Bind removed guild=%s server=%s trigger=%r", guild_id, server_id, removed.message
        )
        return removed

    def remove_server(self, guild_id: str, server_id: str) -> int:
        removed = self._rules.get(guild_id, {}).pop(server_id, [])
        if removed:
            self.save()
        return len(removed)

    def find_by_trigger(self, guild_id: str, server_id: str, trigger: str) -> Optional[Rule]:
        for rule in self._rules.get(guild_id, {}).get(server_id, []):
            if rule.message == trigger:
                return rule
        return None

    def triggers(self, guild_id: str, server_id: str) -> List[str]:
        return [rule.message for rule in self._rules.get(guild_id, {}).get(server_id, [])]

    def snapshot(self) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        return {
            guild_id: {
                server_id: [rule.to_dict() for rule in rules]
                for server_id, rules in servers.items()
            }
            for guild_id, servers in self._rules.items()
        }

    def save(self) -> bool:
        try:
            write_json_atomic(self.path, self.snapshot())
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.exception("Failed saving binds to %s: %s", self.path, exc)
            return False
        return True

    def load(self) -> None:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as exc:
            LOGGER.exception("Failed loading binds from %s: %s", self.path, exc)
            return
        if data is None:
            LOGGER.info("No binds file at %s; starting with empty binds", self.path)
            self._rules = {}
            return
        loaded: Dict[str, Dict[str, List[Rule]]] = {}
        total = 0
        for guild_id, servers in (data or {}).items():
            guild_rules = loaded.setdefault(str(guild_id), {})
            for server_id, rules in (servers or {}).items():
                parsed: List[Rule] = []
                for raw in rules or []:
                    try:
                        parsed.append(Rule.from_dict(raw))
                    except (KeyError, TypeError, ValueError) as exc:
                        LOGGER.warning(
                            "Skipping malformed bind in guild=%s server=%s: %s (%s)",
                            guild_id,
                            server_id,
                            raw,
                            exc,
                        )
                guild_rules[str(server_id)] = parsed
                total += len(parsed)
        self._rules = loaded
        LOGGER.info("Loaded %s binds across %s guilds", total, len(loaded))
