from __future__ import annotations

import re

SMART_QUOTES = "“”„‟″"
_EDGE_CHARS = "\"' \t\r\n"
_PLAIN_NAME_RE = re.compile(r"^[A-Za-z0-9-]*$")
_COORDS_RE = re.compile(
    r"^\(?\s*(-?\d+\.?\d*)\s*,\s*(-?\d+\.?\d*)\s*,\s*(-?\d+\.?\d*)\s*\)?$"
)
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS


def normalize_player_name(name: str) -> str:
    """Canonical form of an in-game name, used for every player-keyed lookup.

    Quotes are trimmed from the edges, smart quotes become plain double
    quotes, and the result is wrapped in double quotes when it contains a
    space or any character outside ``[A-Za-z0-9-]``. Normalizing twice gives
    the same value.
    """
    for quote in SMART_QUOTES:
        name = name.replace(quote, '"')
    name = name.strip(_EDGE_CHARS)
    if not name:
        return name
    if " " in name or not _PLAIN_NAME_RE.match(name):
        return f'"{name}"'
    return name


def names_match(left: str, right: str) -> bool:
    return normalize_player_name(left) == normalize_player_name(right)


def format_cooldown(milliseconds: int | float) -> str:
    """Remaining time as ``D:HH:MM``."""
    milliseconds = max(0, int(milliseconds))
    days = milliseconds // _DAY_MS
    hours = (milliseconds % _DAY_MS) // _HOUR_MS
    minutes = (milliseconds % _HOUR_MS) // _MINUTE_MS
    return f"{days}:{hours:02d}:{minutes:02d}"


def format_coordinates(value: str) -> str | None:
    match = _COORDS_RE.match(value.strip())
    if not match:
        return None
    return ",".join(match.groups())


def render(template: str, **values: object) -> str:
    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(replace, template)


def say(message: str) -> str:
    return f'say "{message}"'
