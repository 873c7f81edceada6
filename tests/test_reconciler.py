import copy
import unittest

from showsync.errors import IdentityInvalid
from showsync.models import ResolutionPolicy
from showsync.reconciler import EventResolver


def event(identity_hash: str, *, start: str = "18:00:00", managed: bool = True, locked: bool = False) -> dict:
    return {
        "id": identity_hash,
        "identity_hash": identity_hash,
        "ownership": {"managed": managed, "controller": "calendar", "locked": locked},
        "subEvents": [
            {
                "identity_hash": identity_hash,
                "timing": {"start_date": {"hard": "2025-12-01", "symbolic": None}, "start_time": {"hard": start}},
                "behavior": {"enabled": True, "repeat": "immediate", "stopType": "graceful"},
                "payload": {},
            }
        ],
    }


def by_hash(*events: dict) -> dict:
    return {item["identity_hash"]: item for item in events}


class EventResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = EventResolver()

    def test_every_hash_gets_one_operation(self) -> None:
        source = by_hash(event("a"), event("b"), event("c", start="19:00:00"))
        existing = by_hash(event("b"), event("c"), event("d"))
        result = self.resolver.resolve(source, existing)
        self.assertEqual(
            [(op.identity_hash, op.status, op.reason) for op in result.operations],
            [
                ("a", "CREATE", "source_only"),
                ("b", "NOOP", "identical"),
                ("c", "UPDATE", "content_differs"),
                ("d", "DELETE", "existing_only"),
            ],
        )
        self.assertEqual(result.counts["CREATE"], 1)
        self.assertEqual(result.counts["CONFLICT"], 0)
        self.assertIsNone(result.by_status("NOOP")[0].payload)

    def test_moved_scope_is_an_update(self) -> None:
        source = event("a")
        source["subEvents"][0]["scope"] = {"role": "base", "start": "2025-12-01", "end": "2025-12-03"}
        existing = copy.deepcopy(source)
        existing["subEvents"][0]["scope"]["end"] = "2025-12-10"
        result = self.resolver.resolve(by_hash(source), by_hash(existing))
        self.assertEqual(result.operations[0].status, "UPDATE")

    def test_locked_existing_is_a_conflict(self) -> None:
        result = self.resolver.resolve(by_hash(event("a", start="20:00:00")), by_hash(event("a", locked=True)))
        self.assertEqual(result.operations[0].status, "CONFLICT")
        self.assertEqual(result.operations[0].reason, "existing_locked")

    def test_locked_identical_is_noop(self) -> None:
        result = self.resolver.resolve(by_hash(event("a")), by_hash(event("a", locked=True)))
        self.assertEqual(result.operations[0].status, "NOOP")

    def test_unmanaged_changes_need_review(self) -> None:
        source = by_hash(event("a", start="20:00:00"))
        existing = by_hash(event("a", managed=False))
        self.assertEqual(self.resolver.resolve(source, existing).operations[0].status, "REVIEW")
        permissive = ResolutionPolicy(allow_mutate_unmanaged=True)
        self.assertEqual(self.resolver.resolve(source, existing, permissive).operations[0].status, "UPDATE")

    def test_orphan_policies(self) -> None:
        existing = by_hash(event("m"), event("u", managed=False))
        default = self.resolver.resolve({}, existing)
        self.assertEqual([(op.status, op.reason) for op in default.operations], [("DELETE", "existing_only"), ("REVIEW", "orphan_unmanaged")])

        retained = self.resolver.resolve({}, existing, ResolutionPolicy(delete_orphans=False))
        self.assertEqual({op.reason for op in retained.operations}, {"orphan_retained"})

    def test_dry_run_flag_follows_policy(self) -> None:
        result = self.resolver.resolve({}, {}, ResolutionPolicy(dry_run=True))
        self.assertTrue(result.dry_run)
        self.assertEqual(result.operations, [])

    def test_resolve_is_idempotent_and_pure(self) -> None:
        source = by_hash(event("a"), event("b", start="21:00:00"))
        existing = by_hash(event("b"), event("c"))
        source_before = copy.deepcopy(source)
        existing_before = copy.deepcopy(existing)
        first = self.resolver.resolve(source, existing)
        second = self.resolver.resolve(source, existing)
        self.assertEqual([op.to_dict() for op in first.operations], [op.to_dict() for op in second.operations])
        self.assertEqual(source, source_before)
        self.assertEqual(existing, existing_before)
        first.operations[0].payload["ownership"]["locked"] = True
        self.assertFalse(source["a"]["ownership"]["locked"])

    def test_key_must_match_stored_hash(self) -> None:
        with self.assertRaises(IdentityInvalid) as ctx:
            self.resolver.resolve({"wrong": event("a")}, {})
        self.assertEqual(ctx.exception.code, "IDENTITY_HASH_MISMATCH")


if __name__ == "__main__":
    unittest.main()
