from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any


def _ensure_tz(dt: datetime, default_tz: tzinfo = timezone.utc) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=default_tz)
    return dt


def parse_iso_datetime(value: str | datetime | date | None, default_tz: tzinfo = timezone.utc) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value, default_tz)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=default_tz)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed, default_tz)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_date(value: str | date | datetime | None, tz: tzinfo | None = None) -> date | None:
    """Accept a date, a datetime or an ISO / basic-format (``20251224``) string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if tz is not None and value.tzinfo is not None:
            return value.astimezone(tz).date()
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) >= 8 and text[:8].isdigit() and (len(text) == 8 or text[8] == "T"):
        if len(text) == 8:
            return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
        stamp = f"{text[:4]}-{text[4:6]}-{text[6:8]}T{text[9:11]}:{text[11:13]}:{text[13:15]}"
        if text.endswith("Z"):
            stamp += "+00:00"
        return parse_date(datetime.fromisoformat(stamp), tz)
    if len(text) == 10:
        return date.fromisoformat(text)
    return parse_date(parse_iso_datetime(text), tz)


@dataclass
class SyncConfig:
    timezone: str = "UTC"
    calendar_provider: str = "ics"
    state_db: str = "showsync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            calendar_provider=str(data.get("calendar_provider", "ics")).strip() or "ics",
            state_db=str(data.get("state_db", "showsync.db")).strip() or "showsync.db",
        )


@dataclass
class ManifestConfig:
    path: str = "manifest.json"
    pretty: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ManifestConfig":
        data = data or {}
        return cls(
            path=str(data.get("path", "manifest.json")).strip() or "manifest.json",
            pretty=bool(data.get("pretty", True)),
        )


@dataclass
class ResolutionPolicy:
    allow_mutate_unmanaged: bool = False
    delete_orphans: bool = True
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ResolutionPolicy":
        data = data or {}
        return cls(
            allow_mutate_unmanaged=bool(data.get("allow_mutate_unmanaged", False)),
            delete_orphans=bool(data.get("delete_orphans", True)),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass
class DefaultsConfig:
    stop_type: str = "graceful"
    enabled: bool = True
    locked: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DefaultsConfig":
        data = data or {}
        stop_type = str(data.get("stop_type", "graceful")).strip().lower()
        if stop_type not in {"graceful", "hard", "graceful_loop"}:
            stop_type = "graceful"
        return cls(
            stop_type=stop_type,
            enabled=bool(data.get("enabled", True)),
            locked=bool(data.get("locked", False)),
        )


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    manifest: ManifestConfig = field(default_factory=ManifestConfig)
    policy: ResolutionPolicy = field(default_factory=ResolutionPolicy)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            manifest=ManifestConfig.from_dict(data.get("manifest")),
            policy=ResolutionPolicy.from_dict(data.get("policy")),
            defaults=DefaultsConfig.from_dict(data.get("defaults")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class RawCalendarEvent:
    summary: str
    dtstart: str
    dtend: str
    is_all_day: bool = False
    rrule: dict[str, str] | None = None
    description: str | None = None
    provenance: dict[str, Any] = field(default_factory=dict)


@dataclass
class RawSchedulerEntry:
    target: str | None
    start_date: str | None
    end_date: str | None
    start_time: str | None
    end_time: str | None
    day: Any = None
    enabled: Any = None
    repeat: Any = None
    stop_type: Any = None
    type: str = "playlist"
    start_time_offset: Any = 0
    end_time_offset: Any = 0
    args: list[Any] = field(default_factory=list)
    multisync: Any = False
    ownership: dict[str, Any] | None = None
    external_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawSchedulerEntry":
        return cls(
            target=data.get("target"),
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            day=data.get("day"),
            enabled=data.get("enabled"),
            repeat=data.get("repeat"),
            stop_type=data.get("stopType"),
            type=str(data.get("type") or "playlist"),
            start_time_offset=data.get("startTimeOffset", 0),
            end_time_offset=data.get("endTimeOffset", 0),
            args=list(data.get("args") or []),
            multisync=data.get("multisync", False),
            ownership=data.get("ownership"),
            external_id=data.get("externalId"),
        )


@dataclass
class Intent:
    identity_hash: str
    identity: dict[str, Any]
    ownership: dict[str, Any]
    correlation: dict[str, Any]
    sub_events: list[dict[str, Any]] = field(default_factory=list)

    def to_event(self) -> dict[str, Any]:
        return {
            "id": self.identity_hash,
            "identity": copy.deepcopy(self.identity),
            "identity_hash": self.identity_hash,
            "ownership": dict(self.ownership),
            "correlation": dict(self.correlation),
            "subEvents": copy.deepcopy(self.sub_events),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    counts: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    entries: list[dict[str, Any]] = field(default_factory=list)
    run_id: int | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        if self.dry_run:
            return 0
        return sum(self.counts.get(status, 0) for status in ("CREATE", "UPDATE", "DELETE"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "counts": dict(self.counts),
            "dry_run": self.dry_run,
            "changes_applied": self.changes_applied,
            "run_id": self.run_id,
            "run_at": serialize_datetime(self.run_at),
        }
