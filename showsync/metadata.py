from __future__ import annotations

import logging
import re
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```ya?ml\s*(.*?)```", re.DOTALL | re.IGNORECASE)

# Keys accepted in a description block and the value types each may carry.
SCHEMA: dict[str, tuple[type, ...]] = {
    "type": (str,),
    "target": (str,),
    "stopType": (str, int),
    "repeat": (str, int),
    "enabled": (bool,),
    "locked": (bool,),
    "start": (str,),
    "end": (str,),
    "start_offset": (int,),
    "end_offset": (int,),
    "args": (list,),
    "multisyncCommand": (bool,),
}


def _valid_type(value: Any, expected: tuple[type, ...]) -> bool:
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def extract_block(text: str | None) -> str | None:
    if not text:
        return None
    match = _FENCED_BLOCK.search(text)
    if not match:
        return None
    return match.group(1).strip()


def parse_metadata(text: str | None) -> dict[str, Any]:
    block = extract_block(text)
    if block is None:
        return {}
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        logger.warning("Invalid YAML metadata block ignored: %s", exc)
        return {}
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        logger.warning("YAML metadata block is not a mapping; ignored")
        return {}

    out: dict[str, Any] = {}
    for key, value in parsed.items():
        expected = SCHEMA.get(str(key))
        if expected is None:
            logger.warning("Unknown metadata key ignored: %s", key)
            continue
        if not _valid_type(value, expected):
            logger.warning(
                "Invalid metadata value type for %s: expected %s, got %s",
                key,
                "/".join(t.__name__ for t in expected),
                type(value).__name__,
            )
            continue
        out[str(key)] = value
    return out
