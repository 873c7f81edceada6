from __future__ import annotations

import re
from datetime import date
from typing import Any

from showsync.errors import UnsupportedRecurrence

TYPE_PLAYLIST = "playlist"
TYPE_SEQUENCE = "sequence"
TYPE_COMMAND = "command"

WEEKDAY_ORDER = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
EVERYDAY = WEEKDAY_ORDER

# Scheduler day enum values.
DAY_ENUM_DAYS: dict[int, tuple[str, ...]] = {
    0: ("SU",),
    1: ("MO",),
    2: ("TU",),
    3: ("WE",),
    4: ("TH",),
    5: ("FR",),
    6: ("SA",),
    7: EVERYDAY,
    8: ("MO", "TU", "WE", "TH", "FR"),
    9: ("SU", "SA"),
    10: ("MO", "WE", "FR"),
    11: ("TU", "TH"),
    12: ("SU", "MO", "TU", "WE", "TH"),
    13: ("FR", "SA"),
}
DAY_ENUM_ODD = 14
DAY_ENUM_EVEN = 15

DAY_MASK_FLAG = 0x10000
DAY_MASK_BITS = {
    "SU": 0x4000,
    "MO": 0x2000,
    "TU": 0x1000,
    "WE": 0x0800,
    "TH": 0x0400,
    "FR": 0x0200,
    "SA": 0x0100,
}

DAY_ALIASES = {
    "SUN": "SU",
    "MON": "MO",
    "TUE": "TU",
    "TUES": "TU",
    "WED": "WE",
    "THU": "TH",
    "THUR": "TH",
    "THURS": "TH",
    "FRI": "FR",
    "SAT": "SA",
}

STOP_TYPE_GRACEFUL = 0
STOP_TYPE_HARD = 1
STOP_TYPE_GRACEFUL_LOOP = 2
STOP_TYPE_NAMES = {
    STOP_TYPE_GRACEFUL: "graceful",
    STOP_TYPE_HARD: "hard",
    STOP_TYPE_GRACEFUL_LOOP: "graceful_loop",
}

REPEAT_NONE = "none"
REPEAT_IMMEDIATE = "immediate"
DEFAULT_REPEAT_BY_TYPE = {
    TYPE_PLAYLIST: REPEAT_IMMEDIATE,
    TYPE_SEQUENCE: REPEAT_NONE,
    TYPE_COMMAND: REPEAT_NONE,
}

SYMBOLIC_TIMES = ("Dawn", "SunRise", "SunSet", "Dusk")
TARGET_SUFFIXES = (".fseq", ".json")
START_OF_DAY = "00:00:00"
END_OF_DAY = "24:00:00"
SENTINEL_YEAR = "0000"

_REPEAT_MINUTES = re.compile(r"^(\d+)\s*min$")
_HARD_TIME = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")


def normalize_type(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in {TYPE_SEQUENCE, TYPE_COMMAND}:
        return text
    return TYPE_PLAYLIST


def strip_target_suffix(target: str) -> str:
    text = str(target or "").strip()
    lowered = text.lower()
    for suffix in TARGET_SUFFIXES:
        if lowered.endswith(suffix):
            return text[: -len(suffix)]
    return text


def normalize_enabled(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off"}
    return not (value is False or value == 0)


def canonical_weekdays(days: Any) -> list[str]:
    if isinstance(days, str):
        days = days.split(",")
    found: set[str] = set()
    for day in days or []:
        if not isinstance(day, str):
            continue
        token = day.strip().upper()
        token = DAY_ALIASES.get(token, token)
        if token in WEEKDAY_ORDER:
            found.add(token)
    return [day for day in WEEKDAY_ORDER if day in found]


def weekday_token(day: date) -> str:
    return WEEKDAY_ORDER[(day.weekday() + 1) % 7]


def weekly_days(days: Any) -> dict[str, Any]:
    return {"type": "weekly", "value": canonical_weekdays(days)}


def days_from_scheduler(value: Any) -> dict[str, Any]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return weekly_days(EVERYDAY)
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise UnsupportedRecurrence(f"Unrecognised scheduler day value: {value!r}", context={"day": value}) from exc
    if number & DAY_MASK_FLAG:
        tokens = [day for day, bit in DAY_MASK_BITS.items() if number & bit]
        if not tokens:
            raise UnsupportedRecurrence("Scheduler day mask selects no weekdays", context={"day": number})
        return weekly_days(tokens)
    if number in DAY_ENUM_DAYS:
        return weekly_days(DAY_ENUM_DAYS[number])
    if number in {DAY_ENUM_ODD, DAY_ENUM_EVEN}:
        raise UnsupportedRecurrence("Odd/even day-of-month schedules have no weekly form", context={"day": number})
    raise UnsupportedRecurrence(f"Unknown scheduler day enum: {number}", context={"day": number})


def days_to_scheduler(days: Any) -> int:
    if days is None:
        return 7
    tokens = tuple(canonical_weekdays(days.get("value") if isinstance(days, dict) else days))
    for number, members in DAY_ENUM_DAYS.items():
        if tokens == members:
            return number
    mask = DAY_MASK_FLAG
    for token in tokens:
        mask |= DAY_MASK_BITS[token]
    return mask


def stop_type_name(value: Any) -> str:
    if value is None:
        return STOP_TYPE_NAMES[STOP_TYPE_GRACEFUL]
    if isinstance(value, bool):
        return STOP_TYPE_NAMES[STOP_TYPE_GRACEFUL]
    if isinstance(value, int):
        clamped = max(STOP_TYPE_GRACEFUL, min(STOP_TYPE_GRACEFUL_LOOP, value))
        return STOP_TYPE_NAMES[clamped]
    text = re.sub(r"[\s\-_]+", " ", str(value).strip().lower())
    if text.isdigit():
        return stop_type_name(int(text))
    if text in {"hard", "hard stop"}:
        return "hard"
    if text == "graceful loop":
        return "graceful_loop"
    return "graceful"


def stop_type_to_scheduler(name: str) -> int:
    for number, label in STOP_TYPE_NAMES.items():
        if label == name:
            return number
    return STOP_TYPE_GRACEFUL


def repeat_name(value: Any) -> str | None:
    """Map a scheduler repeat value onto its semantic name; None when absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
        if number <= 0:
            return REPEAT_NONE
        if number == 1:
            return REPEAT_IMMEDIATE
        if number >= 100:
            return f"{number // 100}min"
        return REPEAT_NONE
    text = str(value).strip().lower().replace(".", "").replace(" ", "")
    if not text:
        return None
    if text in {REPEAT_NONE, REPEAT_IMMEDIATE}:
        return text
    if text.isdigit():
        return repeat_name(int(text))
    match = _REPEAT_MINUTES.match(text)
    if match:
        minutes = int(match.group(1))
        return f"{minutes}min" if minutes > 0 else REPEAT_NONE
    return REPEAT_NONE


def repeat_to_scheduler(name: str) -> int:
    if name == REPEAT_IMMEDIATE:
        return 1
    match = _REPEAT_MINUTES.match(name or "")
    if match:
        return int(match.group(1)) * 100
    return 0


def default_repeat(entry_type: str) -> str:
    return DEFAULT_REPEAT_BY_TYPE.get(entry_type, REPEAT_NONE)


def symbolic_time(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    token = value.strip().lower().replace(" ", "")
    for name in SYMBOLIC_TIMES:
        if name.lower() == token:
            return name
    return None


def normalize_hard_time(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not _HARD_TIME.match(text):
        return None
    parts = text.split(":")
    if len(parts) == 2:
        parts.append("00")
    return ":".join(part.zfill(2) for part in parts)


def is_sentinel_date(value: str) -> bool:
    return str(value).startswith(SENTINEL_YEAR + "-")
