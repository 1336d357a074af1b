import re
import tempfile
import unittest
from pathlib import Path

from agents.purchase_agent.run_record import RunRecord, list_run_records, parse_run_record

ISO_UTC = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class RunRecordTests(unittest.TestCase):
    def test_lifecycle_lines_are_written_in_order(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            record = RunRecord(Path(tmp), run_id="20260301-100000")
            record.start()
            record.url("https://l-tike.com/event/12345")
            record.fail("Error: boom")
            record.end()

            lines = record.path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(record.log_id, "purchase-log-20260301-100000.txt")
        self.assertEqual([line.split("]")[0] + "]" for line in lines], ["[START]", "[URL]", "[STATUS]", "[ERROR]", "[END]"])
        self.assertEqual(lines[2], "[STATUS] FAILED")
        self.assertTrue(ISO_UTC.match(lines[0].split(" ", 1)[1]))
        self.assertTrue(ISO_UTC.match(lines[-1].split(" ", 1)[1]))

    def test_end_is_written_once_and_closes_record(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            record = RunRecord(Path(tmp), run_id="20260301-100001")
            record.start()
            self.assertIsNotNone(record.end())
            self.assertIsNone(record.end())
            self.assertTrue(record.closed)
            with self.assertRaises(RuntimeError):
                record.error("late")
            self.assertEqual(record.kinds().count("END"), 1)

    def test_start_only_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            record = RunRecord(Path(tmp))
            record.start()
            with self.assertRaises(RuntimeError):
                record.start()

    def test_parse_and_list_records(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            first = RunRecord(base, run_id="20260301-100000")
            first.start()
            first.url("https://l-tike.com/event/1")
            first.succeed()
            first.end()
            second = RunRecord(base, run_id="20260301-110000")
            second.start()
            second.info("Waiting 30 s for sale start")

            parsed = parse_run_record(first.path)
            listed = list_run_records(base)

        self.assertEqual(parsed["status"], "SUCCESS")
        self.assertEqual(parsed["urls"], ["https://l-tike.com/event/1"])
        self.assertTrue(parsed["closed"])
        self.assertEqual([item["log_id"] for item in listed], [second.log_id, first.log_id])
        self.assertFalse(listed[0]["closed"])
        self.assertNotIn("entries", listed[0])


if __name__ == "__main__":
    unittest.main()
