import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from agents.purchase_agent.run_record import parse_run_record
from fake_browser import ALL_MARKERS, FakeSession, purchase_record

try:
    from agents.purchase_agent.service import PurchaseAgentService

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


class _ScriptedSignal:
    def __init__(self, on_wait=None) -> None:
        self.on_wait = on_wait
        self.waits = 0

    def wait(self) -> None:
        self.waits += 1
        if self.on_wait is not None:
            self.on_wait()


class _RecordingScheduler:
    calls = []

    def __init__(self, logger, record=None) -> None:
        self.record = record

    def wait_until(self, target, callback=None):
        _RecordingScheduler.calls.append(target)
        return callback() if callback is not None else None


@unittest.skipUnless(DEPS_AVAILABLE, "purchase service dependencies are not installed in this environment")
class PurchaseServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.sessions = []
        self.session_kwargs = {}

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _factory(self, logger, headless):
        session = FakeSession(**self.session_kwargs)
        session.headless = headless
        self.sessions.append(session)
        return session

    def _build_service(self, **kwargs) -> PurchaseAgentService:
        return PurchaseAgentService(
            data_dir=self.base,
            logger=logging.getLogger("tests.purchase_service"),
            session_factory=self._factory,
            **kwargs,
        )

    def _write_request(self, **overrides) -> Path:
        path = self.base / "purchase-info.json"
        path.write_text(json.dumps(purchase_record(**overrides), ensure_ascii=False), encoding="utf-8")
        return path

    def _record(self, result):
        return parse_run_record(self.base / "logs" / result["log_id"])

    def test_successful_headless_run_finalizes_and_closes_browser(self) -> None:
        svc = self._build_service()
        result = svc.run_purchase(self._write_request(), headless=True, run_id="20260301-100000")

        self.assertTrue(result["ok"])
        self.assertEqual(result["status"], "SUCCESS")
        record = self._record(result)
        self.assertEqual([e["kind"] for e in record["entries"]], ["START", "URL", "STATUS", "END"])
        session = self.sessions[0]
        self.assertTrue(session.closed)
        self.assertTrue(session.screenshots[-1].endswith("runs/purchase_flow/20260301-100000/purchase-result.png"))
        self.assertEqual(svc.get_status()["phase"], "completed")
        self.assertFalse(svc.has_active_run())

    def test_request_missing_field_fails_without_browser(self) -> None:
        path = self.base / "purchase-info.json"
        data = purchase_record()
        del data["password"]
        path.write_text(json.dumps(data), encoding="utf-8")

        result = self._build_service().run_purchase(path)

        self.assertFalse(result["ok"])
        self.assertEqual(result["status"], "FAILED")
        record = self._record(result)
        self.assertEqual(record["status"], "FAILED")
        self.assertTrue(record["closed"])
        self.assertEqual(self.sessions, [])

    def test_missing_request_file_still_writes_end(self) -> None:
        result = self._build_service().run_purchase(self.base / "nope.json")

        record = self._record(result)
        self.assertEqual([e["kind"] for e in record["entries"]], ["START", "STATUS", "ERROR", "END"])

    def test_attended_run_leaves_browser_open(self) -> None:
        svc = self._build_service()
        svc.run_purchase(self._write_request(), headless=False)

        session = self.sessions[0]
        self.assertFalse(session.closed)
        self.assertIs(svc.attended_session, session)
        svc.release_attended_session()
        self.assertTrue(session.closed)
        self.assertIsNone(svc.attended_session)

    def test_next_run_closes_previous_attended_browser(self) -> None:
        svc = self._build_service()
        path = self._write_request()
        svc.run_purchase(path, headless=False, run_id="20260301-100000")
        svc.run_purchase(path, headless=False, run_id="20260301-100100")

        first, second = self.sessions
        self.assertTrue(first.closed)
        self.assertFalse(second.closed)
        self.assertIs(svc.attended_session, second)

    def test_dry_run_stops_before_applying(self) -> None:
        self.session_kwargs = {"markers": ALL_MARKERS | {".agreement-checkbox"}}
        result = self._build_service().run_purchase(self._write_request(), dry_run=True)

        self.assertTrue(result["ok"])
        self.assertTrue(result["dry_run"])
        self.assertFalse(result["completed"])
        self.assertEqual(result["status"], "SUCCESS")
        session = self.sessions[0]
        self.assertNotIn(".apply-button", session.clicked)
        self.assertIn(".agreement-checkbox", session.clicked)
        self.assertTrue(self._record(result)["closed"])

    def test_step_failure_is_recorded_and_finalized(self) -> None:
        self.session_kwargs = {"contents": ["販売開始前"]}
        result = self._build_service().run_purchase(self._write_request())

        self.assertFalse(result["ok"])
        self.assertEqual(result["step"], "acquire_sale_page")
        record = self._record(result)
        self.assertEqual([e["kind"] for e in record["entries"]], ["START", "URL", "STATUS", "ERROR", "END"])
        self.assertTrue(self.sessions[0].closed)
        self.assertTrue(self.sessions[0].screenshots)

    def test_interruption_resumes_and_records_error_before_status(self) -> None:
        self.session_kwargs = {"markers": ALL_MARKERS - {'input[name="name"]'}, "contents": ["CAPTCHA"]}

        def solve() -> None:
            self.sessions[0].markers.add('input[name="name"]')
            self.sessions[0].contents = [""]

        svc = self._build_service()
        result = svc.run_purchase(self._write_request(), continue_signal=_ScriptedSignal(solve))

        self.assertTrue(result["ok"])
        self.assertEqual(result["resumed_at"], "enter_purchaser_info")
        record = self._record(result)
        self.assertEqual([e["kind"] for e in record["entries"]], ["START", "URL", "ERROR", "STATUS", "END"])
        self.assertEqual(record["status"], "SUCCESS")

    def test_unresolved_interruption_ends_failed(self) -> None:
        self.session_kwargs = {"markers": ALL_MARKERS - {'input[name="name"]'}, "contents": ["CAPTCHA"]}
        signal = _ScriptedSignal()
        result = self._build_service().run_purchase(self._write_request(), continue_signal=signal)

        self.assertFalse(result["ok"])
        self.assertEqual(signal.waits, 1)
        record = self._record(result)
        self.assertEqual([e["kind"] for e in record["entries"]], ["START", "URL", "ERROR", "ERROR", "STATUS", "END"])
        self.assertEqual(record["status"], "FAILED")

    def test_browser_start_failure_is_recorded(self) -> None:
        def broken_factory(logger, headless):
            raise RuntimeError("Chromium missing")

        svc = PurchaseAgentService(
            data_dir=self.base,
            logger=logging.getLogger("tests.purchase_service"),
            session_factory=broken_factory,
        )
        result = svc.run_purchase(self._write_request())

        self.assertFalse(result["ok"])
        record = self._record(result)
        self.assertEqual(record["status"], "FAILED")
        self.assertTrue(record["closed"])

    def test_schedule_waits_for_sale_start(self) -> None:
        _RecordingScheduler.calls = []
        svc = self._build_service(scheduler_factory=_RecordingScheduler)
        svc.run_purchase(self._write_request(saleStartTime="2026-03-01T10:00:00+09:00"), schedule=True)
        svc.run_purchase(self._write_request(), schedule=True)

        self.assertEqual(len(_RecordingScheduler.calls), 1)
        self.assertEqual(_RecordingScheduler.calls[0].hour, 10)

    def test_concurrent_run_is_rejected(self) -> None:
        svc = self._build_service()
        svc._run_lock.acquire()
        try:
            result = svc.run_purchase(self._write_request(), run_id="20260301-120000")
        finally:
            svc._run_lock.release()

        self.assertFalse(result["ok"])
        self.assertIn("active run", result["error"])
        self.assertFalse((self.base / "logs" / "purchase-log-20260301-120000.txt").exists())

    def test_webhook_failure_is_not_fatal(self) -> None:
        svc = self._build_service(webhook_final_url="https://hooks.example.invalid/final?token=abc")
        with mock.patch("agents.purchase_agent.service.httpx.post", side_effect=RuntimeError("down")) as post:
            result = svc.run_purchase(self._write_request())

        self.assertTrue(result["ok"])
        post.assert_called_once()
        self.assertEqual(post.call_args.kwargs["json"]["run_id"], result["run_id"])

    def test_runs_listing_and_detail(self) -> None:
        svc = self._build_service()
        result = svc.run_purchase(self._write_request(), run_id="20260301-130000")

        listed = svc.list_runs()
        detail = svc.get_run(result["log_id"])

        self.assertEqual(listed["items"][0]["log_id"], "purchase-log-20260301-130000.txt")
        self.assertEqual(detail["status"], "SUCCESS")
        with self.assertRaises(RuntimeError):
            svc.get_run("../secret.txt")
        with self.assertRaises(FileNotFoundError):
            svc.get_run("purchase-log-19990101-000000.txt")

    def test_runtime_events_are_persisted(self) -> None:
        svc = self._build_service()
        svc.run_purchase(self._write_request())

        events = svc.get_runtime_events(limit=500)
        phases = [item["phase"] for item in events["items"] if item["event"] == "state_transition"]
        self.assertEqual(phases[0], "starting")
        self.assertIn("running", phases)
        self.assertEqual(phases[-1], "completed")

    def test_continue_without_waiting_run_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            self._build_service().deliver_continue()


if __name__ == "__main__":
    unittest.main()
