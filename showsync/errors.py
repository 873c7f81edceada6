from __future__ import annotations

from typing import Any


class ShowSyncError(RuntimeError):
    default_code = "SHOWSYNC_ERROR"

    def __init__(self, message: str, *, code: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "code": self.code, "message": str(self), "context": self.context}


class IdentityInvalid(ShowSyncError):
    default_code = "IDENTITY_INVALID"

    @property
    def field(self) -> str:
        return str(self.context.get("field", ""))


class IdentityMutation(ShowSyncError):
    default_code = "EVENT_IDENTITY_MUTATION"


class ManifestCorrupt(ShowSyncError):
    default_code = "MANIFEST_CORRUPT"


class MissingField(ShowSyncError):
    default_code = "MISSING_FIELD"

    def __init__(self, field: str, *, context: dict[str, Any] | None = None) -> None:
        merged = {"field": field}
        merged.update(context or {})
        super().__init__(f"Required field missing: {field}", context=merged)
        self.field = field


class UnsupportedRecurrence(ShowSyncError):
    default_code = "UNSUPPORTED_RECURRENCE"


class ApplyInvariantViolation(ShowSyncError):
    default_code = "APPLY_INVARIANT_VIOLATION"


class OverlappingDiff(ApplyInvariantViolation):
    default_code = "OVERLAPPING_DIFF"


class UpdateTargetMissing(ApplyInvariantViolation):
    default_code = "UPDATE_TARGET_MISSING"


class DuplicateManagedHash(ApplyInvariantViolation):
    default_code = "DUPLICATE_MANAGED_HASH"
