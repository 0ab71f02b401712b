from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from .rules import Rule
from .storage import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

KEY_SEPARATOR = "_"


def now_ms() -> int:
    return int(time.time() * 1000)


class CooldownKey(NamedTuple):
    guild_id: str
    server_id: str
    player_name: str
    trigger: str

    def serialize(self) -> str:
        return KEY_SEPARATOR.join(self)


def parse_cooldown_key(raw: str, triggers_for: Callable[[str, str], List[str]]) -> Optional[CooldownKey]:
    """Recover a structured key from ``guild_server_player_trigger``.

    Guild and server ids never contain the separator; player names and
    triggers may, so the trigger is found by matching the tail against the
    server's known triggers (longest first).
    """
    parts = raw.split(KEY_SEPARATOR, 2)
    if len(parts) != 3:
        return None
    guild_id, server_id, rest = parts
    for trigger in sorted(triggers_for(guild_id, server_id), key=len, reverse=True):
        suffix = KEY_SEPARATOR + trigger
        if rest.endswith(suffix) and len(rest) > len(suffix):
            return CooldownKey(guild_id, server_id, rest[: -len(suffix)], trigger)
    return None


class CooldownStore:
    def __init__(self, path: Path, clock: Callable[[], int] = now_ms):
        self.path = path
        self.clock = clock
        self._entries: Dict[CooldownKey, int] = {}

    def __contains__(self, key: CooldownKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def last_fired(self, key: CooldownKey) -> Optional[int]:
        return self._entries.get(key)

    def remaining(self, key: CooldownKey, rule: Rule, now: Optional[int] = None) -> int:
        last = self._entries.get(key)
        if last is None:
            return 0
        now = self.clock() if now is None else now
        left = rule.cooldown - (now - last)
        return left if left > 0 else 0

    def record(self, key: CooldownKey, now: Optional[int] = None) -> None:
        self._entries[key] = self.clock() if now is None else now
        self.save()

    def reset(self, key: CooldownKey) -> bool:
        if key not in self._entries:
            LOGGER.info("No active cooldown for %s", key.serialize())
            return False
        del self._entries[key]
        self.save()
        LOGGER.info("Reset cooldown %s", key.serialize())
        return True

    def reset_player(
        self, guild_id: str, server_id: str, player_name: str, triggers: Iterable[str]
    ) -> int:
        keys = [CooldownKey(guild_id, server_id, player_name, t) for t in triggers]
        removed = [key for key in keys if self._entries.pop(key, None) is not None]
        if removed:
            self.save()
        LOGGER.info(
            "Reset %s cooldowns for %s on guild=%s server=%s",
            len(removed),
            player_name,
            guild_id,
            server_id,
        )
        return len(keys)

    def save(self) -> bool:
        payload = {key.serialize(): stamp for key, stamp in self._entries.items()}
        try:
            write_json_atomic(self.path, payload)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.exception("Failed saving cooldowns to %s: %s", self.path, exc)
            return False
        return True

    def load_and_prune(
        self,
        find_rule: Callable[[str, str, str], Optional[Rule]],
        triggers_for: Callable[[str, str], List[str]],
        now: Optional[int] = None,
    ) -> int:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as exc:
            LOGGER.exception("Failed loading cooldowns from %s: %s", self.path, exc)
            return 0
        self._entries = {}
        if not data:
            return 0
        now = self.clock() if now is None else now
        dropped = 0
        for raw_key, stamp in data.items():
            key = parse_cooldown_key(raw_key, triggers_for)
            rule = find_rule(key.guild_id, key.server_id, key.trigger) if key else None
            try:
                stamp = int(stamp)
            except (TypeError, ValueError):
                rule = None
            if rule is None or now - stamp >= rule.cooldown:
                dropped += 1
                continue
            self._entries[key] = stamp
        LOGGER.info("Loaded %s cooldowns (%s expired or orphaned dropped)", len(self._entries), dropped)
        return len(self._entries)
