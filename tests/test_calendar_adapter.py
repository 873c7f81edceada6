import unittest
from datetime import date, datetime, timezone

from showsync.calendar_adapter import parse_snapshots, raw_event_from_subevent
from showsync.resolution import ResolutionEngine

ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//showsync//tests//EN
BEGIN:VEVENT
UID:show-1
SUMMARY:Christmas Show
DESCRIPTION:Nightly show
DTSTART:20251201T180000Z
DTEND:20251201T220000Z
RRULE:FREQ=DAILY;UNTIL=20251210T235959Z
EXDATE:20251203T180000Z
END:VEVENT
BEGIN:VEVENT
UID:show-1
RECURRENCE-ID:20251205T180000Z
SUMMARY:Christmas Show
DTSTART:20251205T190000Z
DTEND:20251205T230000Z
END:VEVENT
BEGIN:VEVENT
UID:show-1
RECURRENCE-ID:20251208T180000Z
STATUS:CANCELLED
SUMMARY:Christmas Show
DTSTART:20251208T180000Z
DTEND:20251208T220000Z
END:VEVENT
BEGIN:VEVENT
UID:weekly-1
SUMMARY:Weekly Show
DTSTART:20251201T180000Z
DTEND:20251201T190000Z
RRULE:FREQ=WEEKLY;COUNT=4
END:VEVENT
BEGIN:VEVENT
UID:holiday-1
SUMMARY:Holiday Lights
DTSTART;VALUE=DATE:20251224
DTEND;VALUE=DATE:20251226
END:VEVENT
BEGIN:VEVENT
UID:gone-1
STATUS:CANCELLED
SUMMARY:Cancelled Show
DTSTART:20251201T180000Z
DTEND:20251201T190000Z
END:VEVENT
BEGIN:VEVENT
UID:stray-1
RECURRENCE-ID:20251201T180000Z
SUMMARY:Stray
DTSTART:20251201T180000Z
DTEND:20251201T190000Z
END:VEVENT
END:VCALENDAR
"""


class ParseSnapshotsTests(unittest.TestCase):
    def parse(self):
        with self.assertLogs("showsync.calendar_adapter", level="WARNING") as logs:
            snapshots = parse_snapshots(ICS)
        self.assertIn("stray-1", "\n".join(logs.output))
        return {snapshot.uid: snapshot for snapshot in snapshots}

    def test_series_collects_cancellations_and_overrides(self) -> None:
        show = self.parse()["show-1"]
        self.assertEqual(show.start, datetime(2025, 12, 1, 18, tzinfo=timezone.utc))
        self.assertEqual(show.until, date(2025, 12, 10))
        self.assertIsNone(show.rrule)
        self.assertEqual(sorted(show.cancelled_dates), [date(2025, 12, 3), date(2025, 12, 8)])
        self.assertEqual(len(show.overrides), 1)
        override = show.overrides[0]
        self.assertEqual(override.anchor_date, date(2025, 12, 5))
        self.assertEqual(override.start.hour, 19)
        self.assertEqual(show.payload, {"summary": "Christmas Show", "description": "Nightly show"})

    def test_unexpandable_rule_is_carried(self) -> None:
        weekly = self.parse()["weekly-1"]
        self.assertIsNone(weekly.until)
        self.assertEqual(weekly.rrule, {"FREQ": "WEEKLY", "COUNT": "4"})

    def test_all_day_and_cancelled_events(self) -> None:
        snapshots = self.parse()
        self.assertNotIn("gone-1", snapshots)
        self.assertNotIn("stray-1", snapshots)
        holiday = snapshots["holiday-1"]
        self.assertTrue(holiday.is_all_day)
        self.assertEqual(holiday.window(), (date(2025, 12, 24), date(2025, 12, 25)))


class RawEventTests(unittest.TestCase):
    def setUp(self) -> None:
        with self.assertLogs("showsync.calendar_adapter", level="WARNING"):
            snapshots = parse_snapshots(ICS)
        self.schedule = ResolutionEngine().resolve(snapshots)

    def bundle(self, bundle_uid: str):
        for bundle in self.schedule.bundles:
            if bundle.bundle_uid == bundle_uid:
                return bundle
        self.fail(f"bundle {bundle_uid} not resolved")

    def test_segments_follow_cancellations(self) -> None:
        uids = [bundle.bundle_uid for bundle in self.schedule.bundles if bundle.parent_uid == "show-1"]
        self.assertEqual(uids, ["show-1:20251201-20251202", "show-1:20251204-20251207", "show-1:20251209-20251210"])

    def test_base_becomes_bounded_daily_event(self) -> None:
        base = self.bundle("show-1:20251204-20251207").subevents[-1]
        raw = raw_event_from_subevent(base)
        self.assertEqual(raw.summary, "Christmas Show")
        self.assertEqual(raw.dtstart, "2025-12-04T18:00:00+00:00")
        self.assertEqual(raw.rrule, {"FREQ": "DAILY", "UNTIL": "20251207"})
        self.assertEqual(raw.provenance["uid"], "show-1")
        self.assertEqual(raw.provenance["role"], "base")
        self.assertEqual(raw.provenance["scope"], {"role": "base", "start": "2025-12-04", "end": "2025-12-07"})
        self.assertNotIn("behavior", raw.provenance)

    def test_override_becomes_single_day_event(self) -> None:
        override = self.bundle("show-1:20251204-20251207").subevents[0]
        raw = raw_event_from_subevent(override)
        self.assertIsNone(raw.rrule)
        self.assertEqual(raw.dtstart, "2025-12-05T19:00:00+00:00")
        self.assertEqual(raw.provenance["behavior"], {"enabled": True, "stopType": None})
        self.assertEqual(raw.provenance["scope"], {"role": "override", "start": "2025-12-05", "end": "2025-12-05"})

    def test_all_day_and_passthrough_rules(self) -> None:
        events = {raw.provenance["bundle_uid"]: raw for raw in map(raw_event_from_subevent, self.schedule.subevents())}
        holiday = events["holiday-1:20251224-20251225"]
        self.assertTrue(holiday.is_all_day)
        self.assertEqual(holiday.dtstart, "2025-12-24")
        self.assertEqual(holiday.rrule, {"FREQ": "DAILY", "UNTIL": "20251225"})
        self.assertEqual(events["weekly-1:20251201-20251201"].rrule, {"FREQ": "WEEKLY", "COUNT": "4"})


if __name__ == "__main__":
    unittest.main()
