from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from showsync.models import RawSchedulerEntry
from showsync.semantics import (
    TYPE_COMMAND,
    TYPE_SEQUENCE,
    days_to_scheduler,
    repeat_to_scheduler,
    stop_type_to_scheduler,
)

TAG_PREFIX = "|SHOWSYNC:v1|"
OWNERSHIP_KEYS = ("managed", "identity_hash", "entry_key", "ownership", "ordering_key")


def _is_tag(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TAG_PREFIX)


def parse_tag(tag: str) -> dict[str, Any]:
    fields: dict[str, str] = {}
    for part in tag[len(TAG_PREFIX):].split("|"):
        key, sep, value = part.partition("=")
        if sep:
            fields[key.strip()] = value.strip()
    identity_hash = fields.get("hash", "")
    return {
        "identity_hash": identity_hash,
        "entry_key": fields.get("key") or identity_hash,
        "ownership": {
            "managed": True,
            "controller": fields.get("controller") or "calendar",
            "locked": fields.get("locked", "0").lower() in {"1", "true", "yes"},
        },
    }


def format_tag(identity_hash: str, ownership: Mapping[str, Any], key: str | None = None) -> str:
    controller = ownership.get("controller") or "calendar"
    locked = "1" if ownership.get("locked") else "0"
    tag = f"{TAG_PREFIX}hash={identity_hash}"
    if key and key != identity_hash:
        tag += f"|key={key}"
    return f"{tag}|controller={controller}|locked={locked}"


def decode_ownership(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Lift the legacy marker out of ``args`` into explicit ownership fields."""
    decoded = copy.deepcopy(dict(entry))
    args = decoded.get("args")
    tags = [arg for arg in args if _is_tag(arg)] if isinstance(args, list) else []
    if tags:
        decoded["args"] = [arg for arg in args if not _is_tag(arg)]
        parsed = parse_tag(tags[-1])
        decoded["managed"] = True
        decoded["identity_hash"] = parsed["identity_hash"]
        decoded["entry_key"] = parsed["entry_key"]
        decoded["ownership"] = parsed["ownership"]
    else:
        decoded["managed"] = bool(decoded.get("managed", False))
    return decoded


def encode_ownership(entry: Mapping[str, Any]) -> dict[str, Any]:
    encoded = {key: copy.deepcopy(value) for key, value in entry.items() if key not in OWNERSHIP_KEYS}
    if not entry.get("managed"):
        return encoded
    args = [arg for arg in encoded.get("args") or [] if not _is_tag(arg)]
    args.append(format_tag(str(entry.get("identity_hash", "")), entry.get("ownership") or {}, entry.get("entry_key")))
    encoded["args"] = args
    return encoded


def decode_entries(entries: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [decode_ownership(entry) for entry in entries]


def encode_entries(entries: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [encode_ownership(entry) for entry in entries]


def raw_entry(entry: Mapping[str, Any]) -> RawSchedulerEntry:
    if entry.get("command"):
        entry_type = TYPE_COMMAND
        target = entry.get("command")
    else:
        entry_type = TYPE_SEQUENCE if entry.get("sequence") else "playlist"
        target = entry.get("playlist")
    managed = bool(entry.get("managed"))
    return RawSchedulerEntry(
        target=target,
        start_date=entry.get("startDate"),
        end_date=entry.get("endDate"),
        start_time=entry.get("startTime"),
        end_time=entry.get("endTime"),
        day=entry.get("day"),
        enabled=entry.get("enabled"),
        repeat=entry.get("repeat"),
        stop_type=entry.get("stopType"),
        type=entry_type,
        start_time_offset=entry.get("startTimeOffset", 0),
        end_time_offset=entry.get("endTimeOffset", 0),
        args=[arg for arg in entry.get("args") or [] if not _is_tag(arg)],
        multisync=entry.get("multisync", False),
        ownership=dict(entry["ownership"]) if managed and entry.get("ownership") else None,
        external_id=entry.get("identity_hash") if managed else None,
    )


def _date_text(value: Mapping[str, Any] | None) -> str | None:
    value = value or {}
    return value.get("hard") or value.get("symbolic")


def _time_text(value: Mapping[str, Any] | None) -> tuple[str | None, int]:
    value = value or {}
    return value.get("hard") or value.get("symbolic"), int(value.get("offset") or 0)


def entry_key(identity_hash: str, scope: Mapping[str, Any] | None) -> str:
    """Key one scheduler entry: the identity hash, narrowed by its resolution scope when it has one."""
    if not scope:
        return identity_hash
    return f"{identity_hash}:{scope.get('role')}:{scope.get('start')}-{scope.get('end')}"


def _entry_from_run(event: Mapping[str, Any], sub_events: list[Mapping[str, Any]]) -> dict[str, Any]:
    identity = event["identity"]
    timing = identity["timing"]
    first = sub_events[0]
    behavior = first.get("behavior") or {}
    payload = first.get("payload") or {}

    start_dates = [_date_text(sub["timing"].get("start_date")) for sub in sub_events if sub.get("timing")]
    end_dates = [_date_text(sub["timing"].get("end_date")) for sub in sub_events if sub.get("timing")]
    start_dates = [value for value in start_dates if value]
    end_dates = [value for value in end_dates if value]
    start_time, start_offset = _time_text(timing.get("start_time"))
    end_time, end_offset = _time_text(timing.get("end_time"))

    entry: dict[str, Any] = {
        "enabled": 1 if behavior.get("enabled", True) else 0,
        "day": days_to_scheduler(timing.get("days")),
        "startTime": start_time,
        "startTimeOffset": start_offset,
        "endTime": end_time,
        "endTimeOffset": end_offset,
        "repeat": repeat_to_scheduler(behavior.get("repeat") or ""),
        "startDate": min(start_dates) if start_dates else None,
        "endDate": max(end_dates) if end_dates else None,
        "stopType": stop_type_to_scheduler(behavior.get("stopType") or ""),
    }
    if identity["type"] == TYPE_COMMAND:
        entry["command"] = identity["target"]
        entry["args"] = list(payload.get("args") or [])
        entry["multisync"] = 1 if payload.get("multisyncCommand") else 0
    else:
        entry["playlist"] = identity["target"] + (".fseq" if identity["type"] == TYPE_SEQUENCE else "")
        entry["sequence"] = 1 if identity["type"] == TYPE_SEQUENCE else 0
    return entry


def event_entries(event: Mapping[str, Any], ordering: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
    """Project a manifest event onto host scheduler entries.

    Sub-events are grouped by the resolution scope they came from, so each
    segment and each override run gets its own entry with its own dates and
    behavior. Sub-events without a scope (adopted entries) share one entry
    spanning their earliest to latest date.
    """
    runs: dict[str, list[Mapping[str, Any]]] = {}
    for sub in event.get("subEvents") or []:
        runs.setdefault(entry_key(event["identity_hash"], sub.get("scope")), []).append(sub)

    entries = []
    for key, sub_events in runs.items():
        entry = _entry_from_run(event, sub_events)
        entry["managed"] = True
        entry["identity_hash"] = event["identity_hash"]
        entry["entry_key"] = key
        entry["ownership"] = dict(event.get("ownership") or {})
        if ordering and key in ordering:
            entry["ordering_key"] = ordering[key]
        entries.append(entry)
    return entries
