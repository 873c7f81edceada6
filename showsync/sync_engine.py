from __future__ import annotations

import copy
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from showsync.apply_engine import ApplyEngine, DiffResult, read_entry_key, read_identity_hash
from showsync.calendar_adapter import parse_snapshots, raw_event_from_subevent
from showsync.config_manager import ConfigManager
from showsync.errors import MissingField, ShowSyncError, UnsupportedRecurrence
from showsync.manifest_store import ManifestStore, empty_manifest
from showsync.models import AppConfig, Intent, SyncResult
from showsync.normalizer import NormalizationContext, consolidate, from_calendar, from_fpp
from showsync.reconciler import (
    STATUS_CONFLICT,
    STATUS_CREATE,
    STATUS_DELETE,
    STATUS_NOOP,
    STATUS_REVIEW,
    STATUS_UPDATE,
    EventResolver,
)
from showsync.resolution import ResolutionEngine
from showsync.schedule_adapter import decode_entries, encode_entries, entry_key, event_entries, raw_entry
from showsync.state_store import StateStore

logger = logging.getLogger(__name__)

SKIPPABLE_ERRORS = (MissingField, UnsupportedRecurrence)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def order_by_precedence(entries: list[Any], ordering: Mapping[str, str]) -> list[Any]:
    """Sort calendar-owned entries by ordering key within the slots they already occupy.

    Unmanaged entries and managed entries without a known ordering key keep
    their positions.
    """
    slots = [
        position
        for position, entry in enumerate(entries)
        if entry.get("managed") and read_entry_key(entry) in ordering
    ]
    ranked = sorted(
        (entries[position] for position in slots),
        key=lambda entry: (ordering[read_entry_key(entry)], read_entry_key(entry)),
    )
    ordered = list(entries)
    for position, entry in zip(slots, ranked):
        ordered[position] = entry
    return ordered


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        manifest_store: ManifestStore | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.manifest_store = manifest_store
        self.resolution_engine = ResolutionEngine()
        self.event_resolver = EventResolver()
        self.apply_engine = ApplyEngine()

    def _store(self, config: AppConfig) -> ManifestStore:
        if self.manifest_store is not None:
            return self.manifest_store
        return ManifestStore(config.manifest.path, pretty=config.manifest.pretty)

    def _skip(self, run_id: int | None, source_uid: str, exc: ShowSyncError, details: dict[str, Any]) -> None:
        logger.warning("Skipping %s: %s", source_uid, exc)
        self.state_store.record_audit_event(
            run_id=run_id,
            identity_hash="",
            source_uid=source_uid,
            action="skip_event",
            details={**details, **exc.to_dict()},
        )

    def build_source_manifest(
        self,
        calendar_ics: str | bytes,
        config: AppConfig,
        *,
        run_id: int | None = None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        """Resolve and normalize calendar text into a manifest plus per-entry ordering keys.

        Ordering keys follow bundle order and then sub-event order inside the
        bundle, so overrides always sort ahead of the base they sit on.
        """
        store = self._store(config)
        context = NormalizationContext.from_config(config)
        snapshots = parse_snapshots(calendar_ics, config.sync.timezone)
        schedule = self.resolution_engine.resolve(snapshots)

        intents: list[Intent] = []
        ordering: dict[str, str] = {}
        for bundle_index, bundle in enumerate(schedule.bundles):
            for sub_index, subevent in enumerate(bundle.subevents):
                raw = raw_event_from_subevent(subevent)
                try:
                    intent = from_calendar(raw, context)
                except SKIPPABLE_ERRORS as exc:
                    self._skip(run_id, subevent.source_event_uid, exc, {"bundle_uid": subevent.bundle_uid})
                    continue
                key = entry_key(intent.identity_hash, raw.provenance.get("scope"))
                ordering.setdefault(key, f"{bundle_index:04d}:{sub_index:02d}")
                intents.append(intent)

        manifest = empty_manifest()
        for intent in consolidate(intents):
            manifest = store.upsert_event(manifest, intent.to_event())
        logger.info(
            "Resolved %s calendar events into %s bundles and %s manifest events",
            len(snapshots),
            len(schedule.bundles),
            len(manifest["events"]),
        )
        return manifest, ordering

    def _build_diff(
        self,
        operations: Iterable[Any],
        source: Mapping[str, Any],
        live_entries: list[dict[str, Any]],
        ordering: Mapping[str, str],
        run_id: int,
    ) -> DiffResult:
        live_keys: dict[str, set[str]] = {}
        for entry in live_entries:
            if entry.get("managed"):
                live_keys.setdefault(read_identity_hash(entry), set()).add(read_entry_key(entry))

        diff = DiffResult()
        for operation in operations:
            identity_hash = operation.identity_hash
            live = live_keys.get(identity_hash, set())
            if operation.status in (STATUS_CREATE, STATUS_UPDATE, STATUS_NOOP):
                event = source["events"][identity_hash]
                wanted: set[str] = set()
                for entry in event_entries(event, ordering):
                    wanted.add(entry["entry_key"])
                    if entry["entry_key"] in live:
                        if operation.status != STATUS_NOOP:
                            diff.updates.append(entry)
                        continue
                    if operation.status == STATUS_NOOP or (operation.status == STATUS_UPDATE and not live):
                        self.state_store.record_audit_event(
                            run_id=run_id,
                            identity_hash=identity_hash,
                            source_uid=str(event["correlation"].get("externalId") or ""),
                            action="recreate_missing_entry",
                            details={"status": operation.status, "entry_key": entry["entry_key"]},
                        )
                    diff.creates.append(entry)
                stale = live - wanted
            elif operation.status == STATUS_DELETE:
                stale = live
            else:
                continue
            for key in sorted(stale):
                diff.deletes.append({"identity_hash": identity_hash, "entry_key": key})
        return diff

    def run_once(
        self,
        calendar_ics: str | bytes,
        live_entries: list[dict[str, Any]],
        trigger: str = "manual",
        dry_run: bool | None = None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        policy = copy.copy(config.policy)
        if dry_run is not None:
            policy.dry_run = dry_run
        run_id = self.state_store.start_sync_run(trigger=trigger, dry_run=policy.dry_run)
        counts: dict[str, int] = {}

        try:
            store = self._store(config)
            source, ordering = self.build_source_manifest(calendar_ics, config, run_id=run_id)
            existing = store.load()
            resolution = self.event_resolver.resolve(source["events"], existing["events"], policy)
            counts = dict(resolution.counts)
            for status in (STATUS_CONFLICT, STATUS_REVIEW):
                for operation in resolution.by_status(status):
                    logger.warning("%s %s: %s", status, operation.identity_hash, operation.reason)

            for operation in resolution.operations:
                if operation.status == STATUS_NOOP:
                    continue
                event = source["events"].get(operation.identity_hash) or existing["events"].get(operation.identity_hash) or {}
                self.state_store.record_audit_event(
                    run_id=run_id,
                    identity_hash=operation.identity_hash,
                    source_uid=str((event.get("correlation") or {}).get("externalId") or ""),
                    action=operation.status.lower(),
                    details={"reason": operation.reason},
                )

            live = decode_entries(live_entries)
            diff = self._build_diff(resolution.operations, source, live, ordering, run_id)
            if diff.is_empty():
                logger.debug("Run %s: scheduler entries already match the calendar", run_id)
            applied = self.apply_engine.apply(diff, live)
            entries = order_by_precedence(applied.entries, ordering)

            if not policy.dry_run:
                next_manifest = empty_manifest()
                for operation in resolution.operations:
                    if operation.status in (STATUS_CREATE, STATUS_UPDATE, STATUS_NOOP):
                        kept = source["events"][operation.identity_hash]
                    elif operation.status in (STATUS_CONFLICT, STATUS_REVIEW):
                        kept = existing["events"].get(operation.identity_hash)
                        if kept is None:
                            continue
                    else:
                        continue
                    next_manifest["events"][operation.identity_hash] = copy.deepcopy(kept)
                store.save(next_manifest)

            duration_ms = _elapsed_ms(started_at)
            message = (
                f"{applied.create_count} created, {applied.update_count} updated, "
                f"{applied.delete_count} deleted, {counts.get(STATUS_CONFLICT, 0)} conflicts, "
                f"{counts.get(STATUS_REVIEW, 0)} for review"
            )
            if policy.dry_run:
                message = f"Dry run: {message}"
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                counts=counts,
            )
            logger.info("Sync run %s (%s): %s", run_id, trigger, message)
            return SyncResult(
                status="success",
                message=message,
                duration_ms=duration_ms,
                trigger=trigger,
                counts=counts,
                dry_run=policy.dry_run,
                entries=encode_entries(entries),
                run_id=run_id,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run %s failed", run_id)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                counts=counts,
            )
            details: dict[str, Any] = {"trigger": trigger, "error": error_message, "traceback": traceback.format_exc(limit=5)}
            if isinstance(exc, ShowSyncError):
                details.update(exc.to_dict())
            self.state_store.record_audit_event(
                run_id=run_id,
                identity_hash="",
                source_uid="sync",
                action="run_error",
                details=details,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                trigger=trigger,
                counts=counts,
                dry_run=policy.dry_run,
                entries=[copy.deepcopy(entry) for entry in live_entries],
                run_id=run_id,
            )

    def adopt(self, live_entries: list[dict[str, Any]]) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Bootstrap an empty manifest from the entries already on the scheduler.

        Returns the saved manifest and the entry list with every adopted entry
        tagged as managed. When several entries share one identity only the
        first is tagged; the rest stay unmanaged.
        """
        config = self.config_manager.load()
        store = self._store(config)
        context = NormalizationContext.from_config(config)

        draft = store.load_draft()
        if draft["events"]:
            raise ShowSyncError(
                "Adoption requires an empty manifest",
                code="MANIFEST_NOT_EMPTY",
                context={"events": len(draft["events"])},
            )

        entries = decode_entries(live_entries)
        intents: list[Intent] = []
        tagged: set[str] = set()
        for entry in entries:
            if entry.get("managed"):
                tagged.add(entry.get("identity_hash", ""))
        for position, entry in enumerate(entries):
            try:
                intent = from_fpp(raw_entry(entry), context)
            except SKIPPABLE_ERRORS as exc:
                self._skip(None, f"entry:{position}", exc, {"index": position})
                continue
            intents.append(intent)
            if entry.get("managed") or intent.identity_hash in tagged:
                continue
            tagged.add(intent.identity_hash)
            entry["managed"] = True
            entry["identity_hash"] = intent.identity_hash
            entry["ownership"] = dict(intent.ownership)

        manifest = draft
        for intent in consolidate(intents):
            manifest = store.upsert_event(manifest, intent.to_event())
        store.save(manifest)
        logger.info("Adopted %s scheduler entries into %s manifest events", len(live_entries), len(manifest["events"]))
        return manifest, encode_entries(entries)
