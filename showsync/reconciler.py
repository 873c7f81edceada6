from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Mapping

from showsync.errors import IdentityInvalid
from showsync.models import ResolutionPolicy

STATUS_CREATE = "CREATE"
STATUS_UPDATE = "UPDATE"
STATUS_DELETE = "DELETE"
STATUS_NOOP = "NOOP"
STATUS_CONFLICT = "CONFLICT"
STATUS_REVIEW = "REVIEW"
STATUSES = (STATUS_CREATE, STATUS_UPDATE, STATUS_DELETE, STATUS_NOOP, STATUS_CONFLICT, STATUS_REVIEW)

COMPARED_SUBEVENT_FIELDS = ("timing", "behavior", "payload", "scope")


@dataclass
class ResolutionOperation:
    status: str
    identity_hash: str
    reason: str
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "identityHash": self.identity_hash,
            "reason": self.reason,
            "payload": self.payload,
        }


@dataclass
class ResolutionResult:
    policy: ResolutionPolicy
    operations: list[ResolutionOperation] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=lambda: {status: 0 for status in STATUSES})

    def add(self, operation: ResolutionOperation) -> None:
        self.operations.append(operation)
        self.counts[operation.status] = self.counts.get(operation.status, 0) + 1

    def by_status(self, status: str) -> list[ResolutionOperation]:
        return [operation for operation in self.operations if operation.status == status]

    @property
    def dry_run(self) -> bool:
        return self.policy.dry_run


def _check_keys(side: str, events: Mapping[str, Mapping[str, Any]]) -> None:
    for key, event in events.items():
        stored = event.get("identity_hash") if isinstance(event, Mapping) else None
        if stored != key:
            raise IdentityInvalid(
                f"{side} event keyed {key} carries identity_hash {stored}",
                code="IDENTITY_HASH_MISMATCH",
                context={"field": "identity_hash", "side": side, "key": key},
            )


def sub_events_equal(source: Mapping[str, Any], existing: Mapping[str, Any]) -> bool:
    left = source.get("subEvents") or []
    right = existing.get("subEvents") or []
    if len(left) != len(right):
        return False
    for ours, theirs in zip(left, right):
        for name in COMPARED_SUBEVENT_FIELDS:
            if ours.get(name) != theirs.get(name):
                return False
    return True


class EventResolver:
    """Classify every identity hash seen on either side into one operation."""

    def resolve(
        self,
        source_by_hash: Mapping[str, Mapping[str, Any]],
        existing_by_hash: Mapping[str, Mapping[str, Any]],
        policy: ResolutionPolicy | None = None,
    ) -> ResolutionResult:
        policy = policy or ResolutionPolicy()
        _check_keys("source", source_by_hash)
        _check_keys("existing", existing_by_hash)

        result = ResolutionResult(policy=policy)
        for identity_hash in sorted(set(source_by_hash) | set(existing_by_hash)):
            source = source_by_hash.get(identity_hash)
            existing = existing_by_hash.get(identity_hash)
            result.add(self._classify(identity_hash, source, existing, policy))
        return result

    def _classify(
        self,
        identity_hash: str,
        source: Mapping[str, Any] | None,
        existing: Mapping[str, Any] | None,
        policy: ResolutionPolicy,
    ) -> ResolutionOperation:
        if existing is None:
            return ResolutionOperation(STATUS_CREATE, identity_hash, "source_only", copy.deepcopy(dict(source)))

        ownership = existing.get("ownership") or {}
        managed = bool(ownership.get("managed", False))
        if source is None:
            if not policy.delete_orphans:
                return ResolutionOperation(STATUS_REVIEW, identity_hash, "orphan_retained", copy.deepcopy(dict(existing)))
            if not managed and not policy.allow_mutate_unmanaged:
                return ResolutionOperation(STATUS_REVIEW, identity_hash, "orphan_unmanaged", copy.deepcopy(dict(existing)))
            return ResolutionOperation(STATUS_DELETE, identity_hash, "existing_only", copy.deepcopy(dict(existing)))

        if sub_events_equal(source, existing):
            return ResolutionOperation(STATUS_NOOP, identity_hash, "identical")
        if ownership.get("locked"):
            return ResolutionOperation(STATUS_CONFLICT, identity_hash, "existing_locked", copy.deepcopy(dict(source)))
        if not managed and not policy.allow_mutate_unmanaged:
            return ResolutionOperation(STATUS_REVIEW, identity_hash, "unmanaged_differs", copy.deepcopy(dict(source)))
        return ResolutionOperation(STATUS_UPDATE, identity_hash, "content_differs", copy.deepcopy(dict(source)))
