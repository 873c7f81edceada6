from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, NoReturn

from showsync.errors import IdentityInvalid, IdentityMutation, ManifestCorrupt
from showsync.files import write_text_atomic
from showsync.identity import canonicalize, hash_identity

logger = logging.getLogger(__name__)


def empty_manifest() -> dict[str, Any]:
    return {"events": {}}


def _check_root(manifest: Any) -> None:
    if not isinstance(manifest, dict) or not isinstance(manifest.get("events"), dict):
        raise ManifestCorrupt("Manifest root must be an object with an 'events' map", code="MANIFEST_ROOT_INVALID")


def _event_hash(event_id: str, identity: Any) -> str:
    if not isinstance(identity, dict):
        raise ManifestCorrupt("Event.identity is required", code="EVENT_IDENTITY_MISSING", context={"eventId": event_id})
    try:
        return hash_identity(canonicalize(identity))
    except IdentityInvalid as exc:
        raise ManifestCorrupt(
            f"Event identity failed canonicalization: {exc}",
            code="EVENT_IDENTITY_INVALID",
            context={"eventId": event_id, "identityCode": exc.code},
        ) from exc


def _check_sub_events(event_id: str, event_hash: str, sub_events: Any) -> None:
    if not isinstance(sub_events, list):
        raise ManifestCorrupt("Event.subEvents must be a list", code="SUBEVENT_IDENTITY_INVALID", context={"eventId": event_id})
    for index, sub in enumerate(sub_events):
        context = {"eventId": event_id, "subIndex": index}
        if not isinstance(sub, dict):
            raise ManifestCorrupt("SubEvent must be an object", code="SUBEVENT_IDENTITY_INVALID", context=context)
        expected = event_hash
        if "identity" in sub:
            try:
                expected = hash_identity(canonicalize(sub["identity"]))
            except IdentityInvalid as exc:
                raise ManifestCorrupt(
                    f"SubEvent identity failed canonicalization: {exc}",
                    code="SUBEVENT_IDENTITY_INVALID",
                    context=context,
                ) from exc
        if sub.get("identity_hash") != expected:
            raise ManifestCorrupt("SubEvent identity_hash does not match its identity", code="SUBEVENT_IDENTITY_INVALID", context=context)


def validate_manifest(manifest: Any) -> None:
    _check_root(manifest)
    seen: dict[str, str] = {}
    for key, event in manifest["events"].items():
        if not isinstance(event, dict) or not event.get("id"):
            raise ManifestCorrupt("Event.id is required", code="EVENT_MISSING_ID", context={"key": key})
        event_id = event["id"]
        if event_id != key:
            raise ManifestCorrupt(
                "Event.id does not match its manifest key",
                code="EVENT_KEY_MISMATCH",
                context={"key": key, "eventId": event_id},
            )
        computed = _event_hash(event_id, event.get("identity"))
        if event.get("identity_hash") != computed or event_id != computed:
            raise ManifestCorrupt(
                "Stored identity hash does not match the recomputed hash",
                code="IDENTITY_HASH_INVALID",
                context={"eventId": event_id, "stored": event.get("identity_hash"), "computed": computed},
            )
        if computed in seen:
            raise ManifestCorrupt(
                "Two events share one identity hash",
                code="IDENTITY_DUPLICATE",
                context={"hash": computed, "events": [seen[computed], event_id]},
            )
        seen[computed] = event_id
        _check_sub_events(event_id, computed, event.get("subEvents", []))


class ManifestStore:
    """File-backed manifest catalog.

    ``load``/``save`` enforce every identity invariant and refuse to touch a
    document that violates one. ``load_draft``/``save_draft`` check the root
    shape only and exist for adoption, before identities have been assigned.
    """

    def __init__(self, path: str | os.PathLike[str], *, pretty: bool = True) -> None:
        self.path = Path(path)
        self.pretty = pretty

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return empty_manifest()
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestCorrupt(
                "Manifest file could not be read",
                code="MANIFEST_UNREADABLE",
                context={"path": str(self.path)},
            ) from exc
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise ManifestCorrupt(
                "Manifest JSON is invalid",
                code="MANIFEST_JSON_INVALID",
                context={"path": str(self.path)},
            ) from exc
        _check_root(decoded)
        return decoded

    def _write(self, manifest: dict[str, Any]) -> None:
        try:
            text = json.dumps(manifest, indent=2 if self.pretty else None, sort_keys=True, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise ManifestCorrupt(
                "Failed to encode manifest to JSON",
                code="MANIFEST_JSON_INVALID",
                context={"path": str(self.path)},
            ) from exc
        write_text_atomic(self.path, text + "\n")

    def load(self) -> dict[str, Any]:
        manifest = self._read()
        validate_manifest(manifest)
        logger.debug("Loaded manifest %s with %s events", self.path, len(manifest["events"]))
        return manifest

    def save(self, manifest: dict[str, Any]) -> None:
        validate_manifest(manifest)
        self._write(manifest)
        logger.info("Saved manifest %s with %s events", self.path, len(manifest["events"]))

    def load_draft(self) -> dict[str, Any]:
        return self._read()

    def save_draft(self, manifest: dict[str, Any]) -> None:
        _check_root(manifest)
        self._write(manifest)

    def upsert_event(self, manifest: dict[str, Any], event: dict[str, Any]) -> dict[str, Any]:
        _check_root(manifest)
        event_id = event.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ManifestCorrupt("Event.id is required for upsert", code="EVENT_MISSING_ID")
        if not isinstance(event.get("identity"), dict):
            raise ManifestCorrupt("Event.identity is required", code="EVENT_IDENTITY_MISSING", context={"eventId": event_id})

        canonical = canonicalize(event["identity"])
        computed = hash_identity(canonical)
        existing = manifest["events"].get(event_id)
        if existing is not None and existing.get("identity_hash") and existing["identity_hash"] != computed:
            raise IdentityMutation(
                "Identity mutation detected for existing event id",
                context={"eventId": event_id, "from": existing["identity_hash"], "to": computed},
            )

        stamped = copy.deepcopy(event)
        stamped["identity"] = canonical
        stamped["identity_hash"] = computed
        sub_events = stamped.setdefault("subEvents", [])
        if not isinstance(sub_events, list):
            raise ManifestCorrupt("Event.subEvents must be a list", code="SUBEVENT_IDENTITY_INVALID", context={"eventId": event_id})
        for index, sub in enumerate(sub_events):
            if not isinstance(sub, dict) or not isinstance(sub.get("identity"), dict):
                raise ManifestCorrupt(
                    "Each subEvent must include an identity object",
                    code="SUBEVENT_IDENTITY_INVALID",
                    context={"eventId": event_id, "subIndex": index},
                )
            sub["identity"] = canonicalize(sub["identity"])
            sub["identity_hash"] = hash_identity(sub["identity"])

        updated = copy.deepcopy(manifest)
        updated["events"][event_id] = stamped
        validate_manifest(updated)
        return updated

    def append_event(self, manifest: dict[str, Any], event: dict[str, Any]) -> NoReturn:
        raise IdentityMutation(
            "append_event is retired; events are keyed by identity and must go through upsert_event",
            code="APPEND_RETIRED",
            context={"eventId": event.get("id")},
        )
