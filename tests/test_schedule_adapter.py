import unittest
from datetime import timezone

from showsync.models import RawCalendarEvent
from showsync.normalizer import NormalizationContext, consolidate, from_calendar, from_fpp
from showsync.schedule_adapter import (
    TAG_PREFIX,
    decode_ownership,
    encode_ownership,
    entry_key,
    event_entries,
    format_tag,
    parse_tag,
    raw_entry,
)

CONTEXT = NormalizationContext(timezone=timezone.utc)


class OwnershipTagTests(unittest.TestCase):
    def test_format_and_parse_tag(self) -> None:
        tag = format_tag("abc", {"controller": "calendar", "locked": True})
        self.assertEqual(tag, f"{TAG_PREFIX}hash=abc|controller=calendar|locked=1")
        self.assertEqual(
            parse_tag(tag),
            {
                "identity_hash": "abc",
                "entry_key": "abc",
                "ownership": {"managed": True, "controller": "calendar", "locked": True},
            },
        )

    def test_scoped_key_travels_in_tag(self) -> None:
        tag = format_tag("abc", {}, key="abc:override:2025-12-05-2025-12-05")
        self.assertEqual(tag, f"{TAG_PREFIX}hash=abc|key=abc:override:2025-12-05-2025-12-05|controller=calendar|locked=0")
        self.assertEqual(parse_tag(tag)["entry_key"], "abc:override:2025-12-05-2025-12-05")
        self.assertEqual(format_tag("abc", {}, key="abc"), f"{TAG_PREFIX}hash=abc|controller=calendar|locked=0")

    def test_decode_lifts_tag_out_of_args(self) -> None:
        entry = {"command": "Lights", "args": ["Yard", f"{TAG_PREFIX}hash=h1|controller=calendar|locked=0"]}
        decoded = decode_ownership(entry)
        self.assertEqual(decoded["args"], ["Yard"])
        self.assertTrue(decoded["managed"])
        self.assertEqual(decoded["identity_hash"], "h1")
        self.assertEqual(decoded["entry_key"], "h1")
        self.assertFalse(decoded["ownership"]["locked"])
        self.assertEqual(len(entry["args"]), 2)

    def test_untagged_entry_is_unmanaged(self) -> None:
        self.assertFalse(decode_ownership({"playlist": "Manual"})["managed"])

    def test_encode_strips_ownership_keys(self) -> None:
        managed = {
            "playlist": "Show",
            "managed": True,
            "identity_hash": "h2",
            "ownership": {"controller": "calendar", "locked": False},
            "ordering_key": "0000:00",
            "entry_key": "h2:base:2025-12-01-2025-12-03",
        }
        encoded = encode_ownership(managed)
        self.assertEqual(
            encoded["args"],
            [f"{TAG_PREFIX}hash=h2|key=h2:base:2025-12-01-2025-12-03|controller=calendar|locked=0"],
        )
        for key in ("managed", "identity_hash", "entry_key", "ownership", "ordering_key"):
            self.assertNotIn(key, encoded)
        self.assertEqual(encode_ownership({"playlist": "Manual", "managed": False}), {"playlist": "Manual"})

    def test_encode_replaces_stale_tag(self) -> None:
        entry = {"command": "X", "args": ["a", f"{TAG_PREFIX}hash=old"], "managed": True, "identity_hash": "new"}
        args = encode_ownership(entry)["args"]
        self.assertEqual(args[0], "a")
        self.assertEqual(len(args), 2)
        self.assertIn("hash=new", args[1])


class EventProjectionTests(unittest.TestCase):
    def test_daily_series_becomes_one_entry(self) -> None:
        raw = RawCalendarEvent(
            summary="Tree",
            dtstart="2025-12-01T18:00:00Z",
            dtend="2025-12-01T22:00:00Z",
            rrule={"FREQ": "DAILY", "UNTIL": "20251224"},
            description="```yaml\ntype: sequence\nstopType: hard\n```",
        )
        event = from_calendar(raw, CONTEXT).to_event()
        entries = event_entries(event, {event["identity_hash"]: "0000:00"})
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry["playlist"], "Tree.fseq")
        self.assertEqual(entry["sequence"], 1)
        self.assertEqual(entry["startDate"], "2025-12-01")
        self.assertEqual(entry["endDate"], "2025-12-24")
        self.assertEqual(entry["day"], 7)
        self.assertEqual(entry["stopType"], 1)
        self.assertEqual(entry["repeat"], 0)
        self.assertEqual(entry["enabled"], 1)
        self.assertEqual(entry["ordering_key"], "0000:00")
        self.assertEqual(entry["entry_key"], event["identity_hash"])
        self.assertEqual(from_fpp(raw_entry(entry), CONTEXT).identity_hash, event["identity_hash"])

    def test_command_entry_carries_payload(self) -> None:
        raw = RawCalendarEvent(
            summary="Lights On",
            dtstart="2025-12-01T17:00:00Z",
            dtend="2025-12-01T17:00:00Z",
            description="```yaml\ntype: command\nargs: [\"Yard\"]\nmultisyncCommand: true\nstart: dusk\n```",
        )
        event = from_calendar(raw, CONTEXT).to_event()
        (entry,) = event_entries(event)
        self.assertEqual(entry["command"], "Lights On")
        self.assertEqual(entry["args"], ["Yard"])
        self.assertEqual(entry["multisync"], 1)
        self.assertEqual(entry["startTime"], "Dusk")
        self.assertEqual(entry["endTime"], "Dusk")
        self.assertNotIn("ordering_key", entry)

        raw_back = raw_entry(decode_ownership(encode_ownership(entry)))
        self.assertEqual(raw_back.type, "command")
        self.assertEqual(raw_back.args, ["Yard"])
        self.assertEqual(raw_back.external_id, event["identity_hash"])
        self.assertEqual(from_fpp(raw_back, CONTEXT).identity_hash, event["identity_hash"])

    def test_each_scope_becomes_its_own_entry(self) -> None:
        override = RawCalendarEvent(
            summary="Tree",
            dtstart="2025-12-05T18:00:00Z",
            dtend="2025-12-05T22:00:00Z",
            provenance={
                "uid": "tree",
                "scope": {"role": "override", "start": "2025-12-05", "end": "2025-12-05"},
                "behavior": {"enabled": False, "stopType": None},
            },
        )
        base = RawCalendarEvent(
            summary="Tree",
            dtstart="2025-12-01T18:00:00Z",
            dtend="2025-12-01T22:00:00Z",
            rrule={"FREQ": "DAILY", "UNTIL": "20251210"},
            provenance={"uid": "tree", "scope": {"role": "base", "start": "2025-12-01", "end": "2025-12-10"}},
        )
        (intent,) = consolidate([from_calendar(override, CONTEXT), from_calendar(base, CONTEXT)])
        event = intent.to_event()
        override_key = entry_key(event["identity_hash"], {"role": "override", "start": "2025-12-05", "end": "2025-12-05"})
        entries = event_entries(event, {override_key: "0000:00"})

        self.assertEqual(
            [(entry["startDate"], entry["endDate"], entry["enabled"]) for entry in entries],
            [("2025-12-05", "2025-12-05", 0), ("2025-12-01", "2025-12-10", 1)],
        )
        self.assertEqual(entries[0]["entry_key"], override_key)
        self.assertEqual(entries[1]["entry_key"], f"{event['identity_hash']}:base:2025-12-01-2025-12-10")
        self.assertEqual(entries[0]["ordering_key"], "0000:00")
        self.assertNotIn("ordering_key", entries[1])
        self.assertEqual({entry["identity_hash"] for entry in entries}, {event["identity_hash"]})


if __name__ == "__main__":
    unittest.main()
