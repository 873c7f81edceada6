import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from showsync.config_manager import ConfigManager
from showsync.main import main

ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//showsync//tests//EN
BEGIN:VEVENT
UID:show-1
SUMMARY:Christmas Show
DTSTART:20251201T180000Z
DTEND:20251201T220000Z
END:VEVENT
END:VCALENDAR
"""


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_path = root / "config.yaml"
        ConfigManager(str(self.config_path)).update(
            {
                "sync": {"state_db": str(root / "showsync.db")},
                "manifest": {"path": str(root / "manifest.json")},
            }
        )
        self.calendar_path = root / "calendar.ics"
        self.calendar_path.write_text(ICS, encoding="utf-8")
        self.schedule_path = root / "schedule.json"
        self.schedule_path.write_text(json.dumps([]), encoding="utf-8")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def run_cli(self, *args: str) -> tuple[int, str]:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main(["--config", str(self.config_path), "--log-level", "WARNING", *args])
        return code, buffer.getvalue()

    def test_sync_writes_schedule(self) -> None:
        code, output = self.run_cli("sync", str(self.calendar_path), str(self.schedule_path))
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["counts"]["CREATE"], 1)
        entries = json.loads(self.schedule_path.read_text(encoding="utf-8"))
        self.assertEqual(entries[0]["playlist"], "Christmas Show")

    def test_dry_run_keeps_schedule(self) -> None:
        code, output = self.run_cli("sync", str(self.calendar_path), str(self.schedule_path), "--dry-run")
        self.assertEqual(code, 0)
        self.assertTrue(json.loads(output)["dry_run"])
        self.assertEqual(json.loads(self.schedule_path.read_text(encoding="utf-8")), [])

    def test_bad_config_exits_before_syncing(self) -> None:
        self.config_path.write_text("sync:\n  timezone: Nowhere/Special\n", encoding="utf-8")
        with self.assertLogs("showsync.main", level="ERROR") as logs:
            code, output = self.run_cli("sync", str(self.calendar_path), str(self.schedule_path))
        self.assertEqual(code, 2)
        self.assertEqual(output, "")
        self.assertIn("CONFIG_TIMEZONE_INVALID", logs.output[0])
        self.assertEqual(json.loads(self.schedule_path.read_text(encoding="utf-8")), [])

    def test_adopt_tags_entries(self) -> None:
        self.schedule_path.write_text(
            json.dumps(
                [
                    {
                        "playlist": "Christmas Show",
                        "day": 7,
                        "startDate": "2025-12-01",
                        "endDate": "2025-12-01",
                        "startTime": "18:00:00",
                        "endTime": "22:00:00",
                    }
                ]
            ),
            encoding="utf-8",
        )
        code, output = self.run_cli("adopt", str(self.schedule_path))
        self.assertEqual(code, 0)
        self.assertIn("Adopted 1 events", output)
        entries = json.loads(self.schedule_path.read_text(encoding="utf-8"))
        self.assertIn("|SHOWSYNC:v1|", entries[0]["args"][-1])


if __name__ == "__main__":
    unittest.main()
