from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from showsync.metadata import parse_metadata
from showsync.models import RawCalendarEvent
from showsync.resolution import OverrideIntent, ResolvedSubevent, SnapshotEvent
from showsync.semantics import canonical_weekdays, stop_type_name

logger = logging.getLogger(__name__)

PROVIDER = "ics"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _localize(value: date | datetime, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value.astimezone(tz)
    return datetime.combine(value, time.min, tzinfo=tz)


def _local_date(value: date | datetime, tz: tzinfo) -> date:
    if isinstance(value, datetime):
        return _localize(value, tz).date()
    return value


def _is_cancelled(vevent: ICEvent) -> bool:
    return str(vevent.get("STATUS", "")).strip().upper() == "CANCELLED"


def _event_times(vevent: ICEvent, tz: tzinfo) -> tuple[datetime, datetime, bool]:
    dtstart = vevent.decoded("DTSTART")
    is_all_day = not isinstance(dtstart, datetime)
    start = _localize(dtstart, tz)
    if vevent.get("DTEND") is not None:
        end = _localize(vevent.decoded("DTEND"), tz)
    elif vevent.get("DURATION") is not None:
        end = start + vevent.decoded("DURATION")
    else:
        end = start + (timedelta(days=1) if is_all_day else timedelta(0))
    return start, end, is_all_day


def _rule_fields(vevent: ICEvent) -> dict[str, str] | None:
    rule = vevent.get("RRULE")
    if rule is None:
        return None
    text = _decode_raw_ical(rule.to_ical())
    fields: dict[str, str] = {}
    for part in text.split(";"):
        key, sep, value = part.partition("=")
        if sep:
            fields[key.strip().upper()] = value.strip()
    return fields


def _exdates(vevent: ICEvent, tz: tzinfo) -> list[date]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    groups = raw if isinstance(raw, list) else [raw]
    dates = []
    for group in groups:
        for item in getattr(group, "dts", []):
            dates.append(_local_date(item.dt, tz))
    return dates


def _payload(vevent: ICEvent) -> dict[str, Any]:
    return {
        "summary": str(vevent.get("SUMMARY", "")).strip(),
        "description": str(vevent.get("DESCRIPTION", "")).strip(),
    }


def _snapshot_from_master(uid: str, vevent: ICEvent, tz_name: str, tz: tzinfo) -> SnapshotEvent:
    start, end, is_all_day = _event_times(vevent, tz)
    snapshot = SnapshotEvent(
        uid=uid,
        start=start,
        end=end,
        is_all_day=is_all_day,
        timezone=tz_name,
        payload=_payload(vevent),
        provider=PROVIDER,
        cancelled_dates=_exdates(vevent, tz),
    )
    rule = _rule_fields(vevent)
    if not rule:
        return snapshot
    expandable = (
        rule.get("FREQ") == "DAILY"
        and rule.get("UNTIL")
        and "COUNT" not in rule
        and rule.get("INTERVAL", "1") == "1"
    )
    if not expandable:
        snapshot.rrule = rule
        return snapshot
    until = vevent.get("RRULE").get("UNTIL")[0]
    snapshot.until = _local_date(until, tz)
    if rule.get("BYDAY"):
        snapshot.weekly_days = canonical_weekdays(rule["BYDAY"])
    return snapshot


def _override_from_instance(vevent: ICEvent, anchor: date, tz: tzinfo) -> OverrideIntent:
    start, end, _ = _event_times(vevent, tz)
    payload = _payload(vevent)
    meta = parse_metadata(payload["description"])
    return OverrideIntent(
        anchor_date=anchor,
        start=start,
        end=end,
        enabled=bool(meta.get("enabled", True)),
        stop_type=stop_type_name(meta["stopType"]) if "stopType" in meta else None,
        payload=payload,
    )


def parse_snapshots(raw_ical: str | bytes, tz_name: str = "UTC") -> list[SnapshotEvent]:
    """Turn VCALENDAR text into one snapshot per recurring series or single event.

    Cancelled instances and EXDATEs become cancellation dates; modified
    instances (RECURRENCE-ID) become override intents on their series.
    """
    tz = ZoneInfo(tz_name)
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_ical))
    masters: dict[str, ICEvent] = {}
    instances: dict[str, list[ICEvent]] = {}
    for component in calendar_obj.walk("VEVENT"):
        uid = str(component.get("UID", "")).strip()
        if not uid or component.get("DTSTART") is None:
            logger.warning("Skipping VEVENT without UID or DTSTART")
            continue
        if component.get("RECURRENCE-ID") is not None:
            instances.setdefault(uid, []).append(component)
        else:
            masters[uid] = component

    snapshots = []
    for uid in sorted(masters):
        master = masters[uid]
        if _is_cancelled(master):
            continue
        snapshot = _snapshot_from_master(uid, master, tz_name, tz)
        for instance in instances.pop(uid, []):
            anchor = _local_date(instance.decoded("RECURRENCE-ID"), tz)
            if _is_cancelled(instance):
                snapshot.cancelled_dates.append(anchor)
            else:
                snapshot.overrides.append(_override_from_instance(instance, anchor, tz))
        snapshots.append(snapshot)

    for uid in sorted(instances):
        logger.warning("Ignoring %s modified instance(s) of unknown series %s", len(instances[uid]), uid)
    return snapshots


def raw_event_from_subevent(subevent: ResolvedSubevent) -> RawCalendarEvent:
    first_day = subevent.scope.start.date()
    last_day = subevent.scope.end.date() - timedelta(days=1)
    if subevent.all_day:
        dtstart = subevent.start.date().isoformat()
        dtend = (subevent.start.date() + timedelta(days=1)).isoformat()
    else:
        dtstart = subevent.start.isoformat()
        dtend = subevent.end.isoformat()

    rrule: dict[str, str] | None = None
    if subevent.rrule:
        rrule = dict(subevent.rrule)
    elif last_day > first_day:
        rrule = {"FREQ": "DAILY", "UNTIL": last_day.strftime("%Y%m%d")}
        if subevent.weekly_days:
            rrule["BYDAY"] = ",".join(subevent.weekly_days)

    provenance: dict[str, Any] = {
        "uid": subevent.source_event_uid,
        "bundle_uid": subevent.bundle_uid,
        "role": subevent.role,
        "priority": subevent.priority,
        "scope": {"role": subevent.role, "start": first_day.isoformat(), "end": last_day.isoformat()},
    }
    if subevent.is_override:
        provenance["behavior"] = {"enabled": subevent.enabled, "stopType": subevent.stop_type}

    return RawCalendarEvent(
        summary=str(subevent.payload.get("summary", "")),
        dtstart=dtstart,
        dtend=dtend,
        is_all_day=subevent.all_day,
        rrule=rrule,
        description=subevent.payload.get("description") or None,
        provenance=provenance,
    )
