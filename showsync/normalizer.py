from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from showsync.errors import MissingField, UnsupportedRecurrence
from showsync.identity import canonicalize, hash_identity
from showsync.metadata import parse_metadata
from showsync.models import (
    AppConfig,
    DefaultsConfig,
    Intent,
    RawCalendarEvent,
    RawSchedulerEntry,
    parse_date,
    parse_iso_datetime,
)
from showsync.semantics import (
    END_OF_DAY,
    EVERYDAY,
    REPEAT_NONE,
    START_OF_DAY,
    TYPE_COMMAND,
    canonical_weekdays,
    days_from_scheduler,
    default_repeat,
    is_sentinel_date,
    normalize_enabled,
    normalize_hard_time,
    normalize_type,
    repeat_name,
    stop_type_name,
    strip_target_suffix,
    symbolic_time,
    weekday_token,
    weekly_days,
)

logger = logging.getLogger(__name__)

CONTROLLER_CALENDAR = "calendar"
CONTROLLER_SCHEDULER = "scheduler"


@dataclass
class NormalizationContext:
    timezone: tzinfo
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    @classmethod
    def from_config(cls, config: AppConfig) -> "NormalizationContext":
        return cls(timezone=ZoneInfo(config.sync.timezone), defaults=config.defaults)


def _time_value(hard: str | None = None, symbolic: str | None = None, offset: Any = 0) -> dict[str, Any]:
    try:
        offset_value = int(offset or 0)
    except (TypeError, ValueError):
        offset_value = 0
    return {"hard": hard, "symbolic": symbolic, "offset": offset_value}


def _date_value(value: str | None) -> dict[str, Any]:
    if value and is_sentinel_date(value):
        return {"hard": None, "symbolic": value}
    return {"hard": value, "symbolic": None}


def _build_intent(
    *,
    entry_type: str,
    target: str,
    days: dict[str, Any] | None,
    start_time: dict[str, Any],
    end_time: dict[str, Any],
    behavior: dict[str, Any],
    payload: dict[str, Any],
    date_ranges: list[tuple[dict[str, Any], dict[str, Any]]],
    ownership: dict[str, Any],
    correlation: dict[str, Any],
    scope: dict[str, Any] | None = None,
) -> Intent:
    if entry_type == TYPE_COMMAND and behavior["repeat"] == REPEAT_NONE:
        end_time = dict(start_time)
    identity = {
        "type": entry_type,
        "target": target,
        "timing": {"days": days, "start_time": start_time, "end_time": end_time},
    }
    canonical = canonicalize(identity)
    identity_hash = hash_identity(canonical)
    sub_events = []
    for start_date, end_date in date_ranges:
        sub_events.append(
            {
                "identity": copy.deepcopy(canonical),
                "identity_hash": identity_hash,
                "timing": {
                    "start_date": start_date,
                    "end_date": end_date,
                    "start_time": dict(start_time),
                    "end_time": dict(end_time),
                    "days": copy.deepcopy(days),
                },
                "behavior": dict(behavior),
                "payload": copy.deepcopy(payload),
            }
        )
        if scope:
            sub_events[-1]["scope"] = dict(scope)
    return Intent(
        identity_hash=identity_hash,
        identity=canonical,
        ownership=ownership,
        correlation=correlation,
        sub_events=sub_events,
    )


def _command_payload(args: Any, multisync: Any) -> dict[str, Any]:
    return {"args": list(args or []), "multisyncCommand": bool(multisync)}


def _occurrence_dates(raw: RawCalendarEvent, start: datetime, end: datetime | None, tz: tzinfo) -> tuple[list[date], list[str] | None]:
    first = start.date()
    if raw.is_all_day and end is not None and end > start:
        last = max(first, (end - timedelta(days=1)).date())
    else:
        last = first

    byday: list[str] | None = None
    rule = {str(key).upper(): value for key, value in (raw.rrule or {}).items()}
    if rule:
        freq = str(rule.get("FREQ", "")).upper()
        if freq != "DAILY":
            raise UnsupportedRecurrence(f"Unsupported recurrence frequency: {freq or 'missing'}", context={"rrule": rule})
        if str(rule.get("INTERVAL", "1")) != "1":
            raise UnsupportedRecurrence("Daily recurrence with an interval is not supported", context={"rrule": rule})
        if "COUNT" in rule or not rule.get("UNTIL"):
            raise UnsupportedRecurrence("Daily recurrence must be bounded by UNTIL", context={"rrule": rule})
        until = parse_date(rule["UNTIL"], tz)
        if until is None:
            raise UnsupportedRecurrence("Unparseable UNTIL value", context={"rrule": rule})
        last = until
        if rule.get("BYDAY"):
            byday = canonical_weekdays(rule["BYDAY"])
            if not byday:
                raise UnsupportedRecurrence("BYDAY selects no weekdays", context={"rrule": rule})

    allowed = set(byday or EVERYDAY)
    dates = []
    day = first
    while day <= last:
        if weekday_token(day) in allowed:
            dates.append(day)
        day += timedelta(days=1)
    if not dates:
        raise UnsupportedRecurrence("Recurrence yields no occurrences", context={"rrule": rule})
    return dates, byday


def from_calendar(raw: RawCalendarEvent, context: NormalizationContext) -> Intent:
    """Build an Intent from a raw calendar event.

    Metadata from the description block is applied here, together with the
    configured defaults and any behavior the resolution step attached to the
    event's provenance. Each occurrence becomes one sub-event.
    """
    tz = context.timezone
    defaults = context.defaults
    if not raw.dtstart:
        raise MissingField("dtstart")
    start = parse_iso_datetime(raw.dtstart, tz)
    end = parse_iso_datetime(raw.dtend, tz) if raw.dtend else None
    start = start.astimezone(tz)
    end = end.astimezone(tz) if end is not None else None

    meta = parse_metadata(raw.description)
    entry_type = normalize_type(meta.get("type"))
    target = strip_target_suffix(meta.get("target") or raw.summary or "")
    if not target:
        raise MissingField("summary")

    occurrences, byday = _occurrence_dates(raw, start, end, tz)
    days = weekly_days(byday or EVERYDAY)

    start_symbolic = symbolic_time(meta.get("start"))
    end_symbolic = symbolic_time(meta.get("end"))
    if start_symbolic:
        start_time = _time_value(symbolic=start_symbolic, offset=meta.get("start_offset", 0))
    elif raw.is_all_day:
        start_time = _time_value(hard=START_OF_DAY)
    else:
        start_time = _time_value(hard=start.strftime("%H:%M:%S"), offset=meta.get("start_offset", 0))

    if end_symbolic:
        end_time = _time_value(symbolic=end_symbolic, offset=meta.get("end_offset", 0))
    elif raw.is_all_day:
        end_time = _time_value(hard=END_OF_DAY)
    else:
        finish = end or start
        hard_end = finish.strftime("%H:%M:%S")
        if hard_end == START_OF_DAY and finish > start:
            hard_end = END_OF_DAY
        end_time = _time_value(hard=hard_end, offset=meta.get("end_offset", 0))

    override_behavior = raw.provenance.get("behavior") or {}
    enabled = meta.get("enabled", defaults.enabled)
    if override_behavior.get("enabled") is not None:
        enabled = override_behavior["enabled"]
    stop_type = meta.get("stopType", defaults.stop_type)
    if override_behavior.get("stopType") is not None:
        stop_type = override_behavior["stopType"]
    behavior = {
        "enabled": normalize_enabled(enabled),
        "repeat": repeat_name(meta.get("repeat")) or default_repeat(entry_type),
        "stopType": stop_type_name(stop_type),
    }
    payload = _command_payload(meta.get("args"), meta.get("multisyncCommand")) if entry_type == TYPE_COMMAND else {}

    date_ranges = [(_date_value(day.isoformat()), _date_value(day.isoformat())) for day in occurrences]
    return _build_intent(
        entry_type=entry_type,
        target=target,
        days=days,
        start_time=start_time,
        end_time=end_time,
        behavior=behavior,
        payload=payload,
        date_ranges=date_ranges,
        ownership={
            "managed": True,
            "controller": CONTROLLER_CALENDAR,
            "locked": bool(meta.get("locked", defaults.locked)),
        },
        correlation={"source": CONTROLLER_CALENDAR, "externalId": raw.provenance.get("uid")},
        scope=raw.provenance.get("scope"),
    )


def _scheduler_time(value: str, offset: Any, field_name: str) -> dict[str, Any]:
    symbolic = symbolic_time(value)
    if symbolic:
        return _time_value(symbolic=symbolic, offset=offset)
    hard = normalize_hard_time(value)
    if hard is None:
        raise MissingField(field_name, context={"value": value})
    return _time_value(hard=hard, offset=offset)


def from_fpp(raw: RawSchedulerEntry, context: NormalizationContext) -> Intent:
    required = {
        "target": raw.target,
        "startDate": raw.start_date,
        "endDate": raw.end_date,
        "startTime": raw.start_time,
        "endTime": raw.end_time,
    }
    for name, value in required.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingField(name)

    defaults = context.defaults
    entry_type = normalize_type(raw.type)
    target = strip_target_suffix(str(raw.target))
    if not target:
        raise MissingField("target")

    behavior = {
        "enabled": normalize_enabled(defaults.enabled if raw.enabled is None else raw.enabled),
        "repeat": repeat_name(raw.repeat) or default_repeat(entry_type),
        "stopType": stop_type_name(defaults.stop_type if raw.stop_type is None else raw.stop_type),
    }
    payload = _command_payload(raw.args, raw.multisync) if entry_type == TYPE_COMMAND else {}
    ownership = dict(raw.ownership) if raw.ownership else {
        "managed": True,
        "controller": CONTROLLER_SCHEDULER,
        "locked": defaults.locked,
    }
    return _build_intent(
        entry_type=entry_type,
        target=target,
        days=days_from_scheduler(raw.day),
        start_time=_scheduler_time(str(raw.start_time), raw.start_time_offset, "startTime"),
        end_time=_scheduler_time(str(raw.end_time), raw.end_time_offset, "endTime"),
        behavior=behavior,
        payload=payload,
        date_ranges=[(_date_value(str(raw.start_date)), _date_value(str(raw.end_date)))],
        ownership=ownership,
        correlation={"source": CONTROLLER_SCHEDULER, "externalId": raw.external_id},
    )


def consolidate(intents: Iterable[Intent]) -> list[Intent]:
    merged: dict[str, Intent] = {}
    for intent in intents:
        existing = merged.get(intent.identity_hash)
        if existing is None:
            merged[intent.identity_hash] = Intent(
                identity_hash=intent.identity_hash,
                identity=copy.deepcopy(intent.identity),
                ownership=dict(intent.ownership),
                correlation=dict(intent.correlation),
                sub_events=copy.deepcopy(intent.sub_events),
            )
            continue
        logger.debug("Consolidating intent %s from %s", intent.identity_hash, intent.correlation.get("externalId"))
        existing.sub_events.extend(copy.deepcopy(intent.sub_events))
        if intent.ownership.get("locked"):
            existing.ownership["locked"] = True
    return list(merged.values())
