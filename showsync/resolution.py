from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Iterator
from zoneinfo import ZoneInfo

from showsync.identity import canonical_json
from showsync.semantics import EVERYDAY, canonical_weekdays, weekday_token

ROLE_BASE = "base"
ROLE_OVERRIDE = "override"

BASE_PRIORITY = 0
OVERRIDE_PRIORITY_CEILING = 1000


@dataclass(frozen=True)
class ResolutionScope:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("ResolutionScope end must be after start")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def days(self) -> int:
        return (self.end.date() - self.start.date()).days


@dataclass
class OverrideIntent:
    anchor_date: date
    start: datetime
    end: datetime
    enabled: bool = True
    stop_type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SnapshotEvent:
    """One calendar series as handed to resolution.

    ``until`` is the last occurrence date (inclusive) and ``weekly_days`` the
    weekdays occurrences fall on; both come pre-expanded from the adapter.
    ``rrule`` holds a raw rule the adapter could not express that way and is
    carried through to the resolved sub-events untouched.
    """

    uid: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    timezone: str = "UTC"
    until: date | None = None
    weekly_days: list[str] | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    parent_uid: str | None = None
    provider: str = "ics"
    cancelled_dates: list[date] = field(default_factory=list)
    overrides: list[OverrideIntent] = field(default_factory=list)
    rrule: dict[str, str] | None = None

    @property
    def bundle_anchor(self) -> str:
        return self.parent_uid or self.uid

    def window(self) -> tuple[date, date]:
        tz = ZoneInfo(self.timezone)
        first = self.start.astimezone(tz).date()
        if self.until is not None:
            return first, max(first, self.until)
        if self.is_all_day and self.end > self.start:
            return first, max(first, (self.end.astimezone(tz) - timedelta(days=1)).date())
        return first, first


@dataclass
class ResolvedSubevent:
    bundle_uid: str
    source_event_uid: str
    parent_uid: str
    provider: str
    start: datetime
    end: datetime
    all_day: bool
    timezone: str
    role: str
    scope: ResolutionScope
    priority: int
    payload: dict[str, Any] = field(default_factory=dict)
    weekly_days: list[str] | None = None
    enabled: bool | None = None
    stop_type: str | None = None
    rrule: dict[str, str] | None = None

    @property
    def is_override(self) -> bool:
        return self.role == ROLE_OVERRIDE


@dataclass
class ResolvedBundle:
    source_event_uid: str
    parent_uid: str
    segment_scope: ResolutionScope
    subevents: list[ResolvedSubevent]

    @property
    def bundle_uid(self) -> str:
        return self.subevents[-1].bundle_uid


@dataclass
class ResolvedSchedule:
    bundles: list[ResolvedBundle] = field(default_factory=list)

    def subevents(self) -> Iterator[ResolvedSubevent]:
        for bundle in self.bundles:
            yield from bundle.subevents


def subtract_cancellations(first: date, last: date, cancelled: Iterable[date]) -> list[tuple[date, date]]:
    """Return the maximal runs of days in ``[first, last]`` not covered by ``cancelled``."""
    if last < first:
        return []
    intervals: list[list[date]] = []
    for day in sorted({d for d in cancelled if first <= d <= last}):
        if intervals and day <= intervals[-1][1] + timedelta(days=1):
            intervals[-1][1] = max(intervals[-1][1], day)
        else:
            intervals.append([day, day])

    segments: list[tuple[date, date]] = []
    cursor = first
    for gap_start, gap_end in intervals:
        if cursor < gap_start:
            segments.append((cursor, gap_start - timedelta(days=1)))
        cursor = gap_end + timedelta(days=1)
    if cursor <= last:
        segments.append((cursor, last))
    return segments


def trim_to_weekdays(segment: tuple[date, date], weekly_days: Iterable[str] | None) -> tuple[date, date] | None:
    allowed = set(canonical_weekdays(weekly_days) if weekly_days is not None else EVERYDAY)
    start, end = segment
    while start <= end and weekday_token(start) not in allowed:
        start += timedelta(days=1)
    while end >= start and weekday_token(end) not in allowed:
        end -= timedelta(days=1)
    if start > end:
        return None
    return start, end


def _signature(override: OverrideIntent) -> tuple[Any, ...]:
    return (
        override.start.time(),
        override.end.time(),
        bool(override.enabled),
        override.stop_type,
        canonical_json(override.payload),
    )


def collapse_overrides(overrides: Iterable[OverrideIntent]) -> list[list[OverrideIntent]]:
    """Group overrides into runs that can share one sub-event.

    A run is a stretch of consecutive anchor days, one override per day, whose
    time of day, enabled flag, stop type and payload are identical. A day with
    more than one override never joins a run.
    """
    by_day: dict[date, list[OverrideIntent]] = {}
    for override in overrides:
        by_day.setdefault(override.anchor_date, []).append(override)

    runs: list[list[OverrideIntent]] = []
    open_run = False
    for day in sorted(by_day):
        items = sorted(by_day[day], key=lambda item: item.start)
        if len(items) > 1:
            runs.extend([item] for item in items)
            open_run = False
            continue
        item = items[0]
        if (
            open_run
            and runs[-1][-1].anchor_date + timedelta(days=1) == day
            and _signature(runs[-1][-1]) == _signature(item)
        ):
            runs[-1].append(item)
        else:
            runs.append([item])
            open_run = True
    return runs


class ResolutionEngine:
    def resolve(self, events: Iterable[SnapshotEvent]) -> ResolvedSchedule:
        bundles: list[ResolvedBundle] = []
        for event in events:
            bundles.extend(self._resolve_event(event))
        bundles.sort(
            key=lambda bundle: (
                bundle.segment_scope.start,
                bundle.segment_scope.end,
                bundle.parent_uid,
                bundle.source_event_uid,
            )
        )
        return ResolvedSchedule(bundles=bundles)

    def _resolve_event(self, event: SnapshotEvent) -> list[ResolvedBundle]:
        tz = ZoneInfo(event.timezone)
        first, last = event.window()
        bundles = []
        for raw_segment in subtract_cancellations(first, last, event.cancelled_dates):
            segment = trim_to_weekdays(raw_segment, event.weekly_days)
            if segment is None:
                continue
            bundles.append(self._build_bundle(event, segment, tz))
        return bundles

    def _build_bundle(self, event: SnapshotEvent, segment: tuple[date, date], tz: ZoneInfo) -> ResolvedBundle:
        seg_start, seg_end = segment
        parent_uid = event.bundle_anchor
        bundle_uid = f"{parent_uid}:{seg_start:%Y%m%d}-{seg_end:%Y%m%d}"
        scope = ResolutionScope(
            start=datetime.combine(seg_start, time.min, tzinfo=tz),
            end=datetime.combine(seg_end + timedelta(days=1), time.min, tzinfo=tz),
        )

        local_start = event.start.astimezone(tz)
        base_start = datetime.combine(seg_start, local_start.time(), tzinfo=tz)
        if event.is_all_day:
            base_end = base_start + timedelta(days=1)
        else:
            base_end = base_start + max(event.end - event.start, timedelta(0))

        overrides = [item for item in event.overrides if seg_start <= item.anchor_date <= seg_end]
        subevents = []
        for run in collapse_overrides(overrides):
            head = run[0]
            span_days = len(run)
            subevents.append(
                ResolvedSubevent(
                    bundle_uid=bundle_uid,
                    source_event_uid=event.uid,
                    parent_uid=parent_uid,
                    provider=event.provider,
                    start=head.start.astimezone(tz),
                    end=head.end.astimezone(tz),
                    all_day=event.is_all_day,
                    timezone=event.timezone,
                    role=ROLE_OVERRIDE,
                    scope=ResolutionScope(
                        start=datetime.combine(head.anchor_date, time.min, tzinfo=tz),
                        end=datetime.combine(run[-1].anchor_date + timedelta(days=1), time.min, tzinfo=tz),
                    ),
                    priority=OVERRIDE_PRIORITY_CEILING - span_days,
                    payload=dict(head.payload),
                    enabled=head.enabled,
                    stop_type=head.stop_type,
                )
            )
        subevents.sort(key=lambda sub: (-sub.priority, sub.scope.start))
        subevents.append(
            ResolvedSubevent(
                bundle_uid=bundle_uid,
                source_event_uid=event.uid,
                parent_uid=parent_uid,
                provider=event.provider,
                start=base_start,
                end=base_end,
                all_day=event.is_all_day,
                timezone=event.timezone,
                role=ROLE_BASE,
                scope=scope,
                priority=BASE_PRIORITY,
                payload=dict(event.payload),
                weekly_days=list(event.weekly_days) if event.weekly_days is not None else None,
                rrule=dict(event.rrule) if event.rrule else None,
            )
        )
        return ResolvedBundle(
            source_event_uid=event.uid,
            parent_uid=parent_uid,
            segment_scope=scope,
            subevents=subevents,
        )
