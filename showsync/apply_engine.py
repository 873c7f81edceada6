from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from showsync.errors import ApplyInvariantViolation, DuplicateManagedHash, OverlappingDiff, UpdateTargetMissing


@dataclass
class DiffResult:
    creates: list[dict[str, Any]] = field(default_factory=list)
    updates: list[dict[str, Any]] = field(default_factory=list)
    deletes: list[dict[str, Any]] = field(default_factory=list)

    def create_count(self) -> int:
        return len(self.creates)

    def update_count(self) -> int:
        return len(self.updates)

    def delete_count(self) -> int:
        return len(self.deletes)

    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


@dataclass
class ApplyResult:
    entries: list[dict[str, Any]]
    create_count: int
    update_count: int
    delete_count: int


def read_identity_hash(entry: Mapping[str, Any]) -> str:
    value = entry.get("identity_hash", entry.get("identityHash"))
    return value.strip() if isinstance(value, str) else ""


def read_entry_key(entry: Mapping[str, Any]) -> str:
    """Entries written per scope carry their own key; older ones are keyed by identity hash alone."""
    value = entry.get("entry_key")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return read_identity_hash(entry)


def _index(entries: Iterable[Mapping[str, Any]], label: str) -> dict[str, Mapping[str, Any]]:
    indexed: dict[str, Mapping[str, Any]] = {}
    for position, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ApplyInvariantViolation(f"DiffResult {label}[{position}] must be a mapping")
        key = read_entry_key(entry)
        if not key:
            raise ApplyInvariantViolation(f"DiffResult {label}[{position}] missing identity_hash")
        if key in indexed:
            raise OverlappingDiff(
                f"Duplicate entry key in DiffResult {label}: {key}",
                context={"entry_key": key, "sets": [label]},
            )
        indexed[key] = entry
    return indexed


class ApplyEngine:
    def apply(self, diff: DiffResult, existing_entries: Iterable[Mapping[str, Any]]) -> ApplyResult:
        deletes = _index(diff.deletes, "deletes")
        updates = _index(diff.updates, "updates")
        creates = _index(diff.creates, "creates")

        for label_a, set_a, label_b, set_b in (
            ("deletes", deletes, "updates", updates),
            ("deletes", deletes, "creates", creates),
            ("updates", updates, "creates", creates),
        ):
            overlap = sorted(set(set_a) & set(set_b))
            if overlap:
                raise OverlappingDiff(
                    f"Entry key {overlap[0]} appears in both {label_a} and {label_b}",
                    context={"entry_key": overlap[0], "sets": [label_a, label_b]},
                )

        pending_updates = dict(updates)
        seen_managed: set[str] = set()
        out: list[Any] = []
        for position, entry in enumerate(existing_entries):
            if not isinstance(entry, Mapping):
                raise ApplyInvariantViolation(f"Existing entry at index {position} must be a mapping")
            if not entry.get("managed"):
                out.append(entry)
                continue

            key = read_entry_key(entry)
            if not key:
                raise ApplyInvariantViolation(
                    f"Managed existing entry missing identity_hash at index {position}",
                    context={"index": position},
                )
            if key in seen_managed:
                raise DuplicateManagedHash(
                    f"Duplicate managed entry key in existing entries: {key}",
                    context={"entry_key": key, "index": position},
                )
            seen_managed.add(key)

            if key in deletes:
                continue
            if key in pending_updates:
                updated = dict(pending_updates.pop(key))
                updated["managed"] = True
                out.append(updated)
                continue
            out.append(entry)

        if pending_updates:
            missing = sorted(pending_updates)
            raise UpdateTargetMissing(
                f"Updates reference missing managed entries: {', '.join(missing)}",
                context={"entry_keys": missing},
            )

        ordered = sorted(
            creates.values(),
            key=lambda entry: (str(entry.get("ordering_key") or ""), read_entry_key(entry)),
        )
        for entry in ordered:
            created = dict(entry)
            created["managed"] = True
            out.append(created)

        return ApplyResult(
            entries=out,
            create_count=diff.create_count(),
            update_count=diff.update_count(),
            delete_count=diff.delete_count(),
        )
