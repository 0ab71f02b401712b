from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

LOGGER = logging.getLogger(__name__)

LOG_FRAME_MARKER = ":LOG:DEFAULT:"
RESPAWN_PLATFORMS = ("ps4", "xboxone")

CHAT_RE = re.compile(r"\[CHAT\s+([^\]]+)\]\s+([^:]+?)\s*:\s*(.+)", re.IGNORECASE)
RESPAWN_RE = re.compile(
    r"([^\[\]]+?) \[(" + "|".join(RESPAWN_PLATFORMS) + r")\] has entered the game$",
    re.IGNORECASE,
)
KILL_RE = re.compile(r"^(?P<victim>.+?) was killed by (?P<killer>.+?)\s*$")
POSITION_RE = re.compile(r"\(\s*([-+\d.eE]+)\s*[,\s]\s*([-+\d.eE]+)\s*[,\s]\s*([-+\d.eE]+)\s*\)")


@dataclass(frozen=True)
class ChatEvent:
    chat_type: str
    player_name: str
    message: str


@dataclass(frozen=True)
class RespawnEvent:
    player_name: str
    platform: str


@dataclass(frozen=True)
class KillEvent:
    killer_name: str
    victim_name: str


@dataclass(frozen=True)
class PositionEvent:
    x: str
    y: str
    z: str

    def as_command_arg(self) -> str:
        return f"{self.x},{self.y},{self.z}"


ConsoleEvent = Union[ChatEvent, RespawnEvent, KillEvent, PositionEvent]


def strip_log_frame(line: str) -> Optional[str]:
    if LOG_FRAME_MARKER not in line:
        return None
    return line.split(LOG_FRAME_MARKER, 1)[1].strip()


def parse_chat(text: str) -> Optional[ChatEvent]:
    match = CHAT_RE.search(text)
    if not match:
        return None
    chat_type, raw_name, message = match.groups()
    return ChatEvent(
        chat_type=chat_type.strip().upper(),
        player_name=raw_name.strip(),
        message=message.strip(),
    )


def parse_respawn(text: str) -> Optional[RespawnEvent]:
    match = RESPAWN_RE.search(text)
    if not match:
        return None
    return RespawnEvent(player_name=match.group(1).strip(), platform=match.group(2).lower())


def parse_kill(text: str) -> Optional[KillEvent]:
    match = KILL_RE.match(text)
    if not match:
        return None
    return KillEvent(
        killer_name=match.group("killer").strip(),
        victim_name=match.group("victim").strip(),
    )


def parse_position(text: str) -> Optional[PositionEvent]:
    match = POSITION_RE.search(text)
    if not match:
        return None
    coords = match.groups()
    try:
        for value in coords:
            float(value)
    except ValueError:
        LOGGER.debug("Malformed coordinates in console line: %s", text)
        return None
    return PositionEvent(*coords)


def parse_line(text: str) -> Optional[ConsoleEvent]:
    """Classify one de-framed console line; ``None`` for anything unknown."""
    for parser in (parse_chat, parse_respawn, parse_kill, parse_position):
        event = parser(text)
        if event is not None:
            return event
    return None
