import json
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import httpx

from agents.purchase_agent.browser import PlaywrightBrowserSession
from agents.purchase_agent.errors import InterruptionSignal, PurchaseFlowError, RequestLoadError
from agents.purchase_agent.flow import FlowSelectors, PurchaseFlow
from agents.purchase_agent.models import load_purchase_request
from agents.purchase_agent.resume import ConsoleContinueSignal, EventContinueSignal, ResumeController
from agents.purchase_agent.run_record import RunRecord, list_run_records, parse_run_record
from agents.purchase_agent.run_record import now_id as _now_id
from agents.purchase_agent.scheduler import SaleScheduler


AGENT_NAME = "purchase_agent"
JOB_NAME = "purchase_flow"
RESULT_SCREENSHOT = "purchase-result.png"


def _open_playwright_session(logger, headless: bool):
    return PlaywrightBrowserSession.open(logger, headless=headless)


class PurchaseAgentService:
    """Runs one purchase at a time and keeps its runtime state on disk."""

    def __init__(
        self,
        data_dir: Path,
        logger,
        webhook_status_url: str = "",
        webhook_final_url: str = "",
        selectors: Optional[FlowSelectors] = None,
        session_factory: Optional[Callable[[Any, bool], Any]] = None,
        continue_signal=None,
        scheduler_factory: Optional[Callable[..., SaleScheduler]] = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.logger = logger
        self.webhook_status_url = webhook_status_url
        self.webhook_final_url = webhook_final_url
        self.selectors = selectors or FlowSelectors()
        self.session_factory = session_factory or _open_playwright_session
        self.continue_signal = continue_signal or EventContinueSignal()
        self.scheduler_factory = scheduler_factory or SaleScheduler
        self.logs_dir = self.data_dir / "logs"
        self.runtime_state_path = self.data_dir / "purchase_runtime_state.json"
        self.runtime_events_path = self.data_dir / "purchase_runtime_events.jsonl"
        self.attended_session = None
        self._run_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._events_retention_days = 30
        self._last_runtime_events_prune_day = ""
        self._runtime_state: Dict[str, Any] = self._load_runtime_state()
        self._debug("Service initialized", phase=self._runtime_state.get("phase", "idle"))
        self._maybe_prune_runtime_events()

    @staticmethod
    def _default_runtime_state() -> Dict[str, Any]:
        return {
            "phase": "idle",
            "message": "No run yet",
            "run_id": "",
            "job": JOB_NAME,
            "step": "",
            "updated_at": datetime.now().isoformat(),
            "ok": None,
        }

    def _load_runtime_state(self) -> Dict[str, Any]:
        if not self.runtime_state_path.exists():
            return self._default_runtime_state()
        try:
            data = json.loads(self.runtime_state_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {**self._default_runtime_state(), **data}
        except Exception:
            self.logger.exception("Failed to read persisted runtime state")
        return self._default_runtime_state()

    def _persist_runtime_state(self, state: Dict[str, Any]) -> None:
        try:
            self.runtime_state_path.parent.mkdir(parents=True, exist_ok=True)
            self.runtime_state_path.write_text(json.dumps(state, ensure_ascii=False, indent=2), encoding="utf-8")
        except Exception:
            self.logger.exception("Failed to persist runtime state")

    def _append_runtime_event(self, event: str, **meta: Any) -> None:
        item = {
            "ts": datetime.now().isoformat(),
            "event": event,
            "phase": meta.get("phase"),
            "run_id": meta.get("run_id"),
            "job": meta.get("job"),
            "meta": meta,
        }
        try:
            self.runtime_events_path.parent.mkdir(parents=True, exist_ok=True)
            with self.runtime_events_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(item, ensure_ascii=False) + "\n")
            self._maybe_prune_runtime_events()
        except Exception:
            self.logger.exception("Failed to store runtime event")

    def _maybe_prune_runtime_events(self) -> None:
        today = date.today().isoformat()
        if self._last_runtime_events_prune_day == today:
            return
        self._prune_runtime_events(retention_days=self._events_retention_days)
        self._last_runtime_events_prune_day = today

    def _prune_runtime_events(self, retention_days: int = 30) -> None:
        if not self.runtime_events_path.exists():
            return
        try:
            cutoff = datetime.now() - timedelta(days=max(1, int(retention_days)))
            kept: list[str] = []
            removed = 0
            for line in self.runtime_events_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    ts = datetime.fromisoformat(str(json.loads(line).get("ts", "")))
                except ValueError:
                    kept.append(line)
                    continue
                if ts < cutoff:
                    removed += 1
                    continue
                kept.append(line)
            if removed:
                self.runtime_events_path.write_text("\n".join(kept) + ("\n" if kept else ""), encoding="utf-8")
                self._debug("Runtime events pruned", removed=removed, kept=len(kept))
        except Exception:
            self.logger.exception("Failed to prune runtime events")

    @staticmethod
    def _now_text() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug(f"[DEBUG][{AGENT_NAME}] {message} | time={self._now_text()}{suffix}")

    @staticmethod
    def _sanitize_url_for_log(raw_url: str) -> str:
        if not raw_url:
            return raw_url
        try:
            parts = urlsplit(raw_url)
            return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
        except Exception:
            return raw_url

    @staticmethod
    def now_id() -> str:
        return _now_id()

    def _set_runtime_state(self, phase: str, message: str, **meta: Any) -> None:
        with self._status_lock:
            self._runtime_state = {
                "phase": phase,
                "message": message,
                "updated_at": datetime.now().isoformat(),
                "job": JOB_NAME,
                **meta,
            }
            state_copy = dict(self._runtime_state)
        self._persist_runtime_state(state_copy)
        self._append_runtime_event(
            "state_transition",
            phase=phase,
            message=message,
            run_id=state_copy.get("run_id", ""),
            job=JOB_NAME,
            step=state_copy.get("step", ""),
            ok=state_copy.get("ok"),
        )

    def _get_runtime_state(self) -> Dict[str, Any]:
        with self._status_lock:
            return dict(self._runtime_state)

    def _artifact_dir(self, run_id: str) -> Path:
        d = self.data_dir / "runs" / JOB_NAME / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def has_active_run(self) -> bool:
        return self._run_lock.locked()

    def get_status(self) -> Dict[str, Any]:
        state = self._get_runtime_state()
        return {
            "ok": True,
            "active": self.has_active_run(),
            "waiting_for_continue": bool(getattr(self.continue_signal, "is_waiting", False)),
            **state,
        }

    def get_runtime_events(self, limit: int = 200, day: str = "") -> Dict[str, Any]:
        if not self.runtime_events_path.exists():
            return {"ok": True, "count": 0, "items": []}
        try:
            lines = self.runtime_events_path.read_text(encoding="utf-8").splitlines()
        except Exception:
            self.logger.exception("Failed to read runtime events")
            return {"ok": False, "count": 0, "items": []}

        items: list[Dict[str, Any]] = []
        day_prefix = (day or "").strip()
        for line in lines:
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if day_prefix and not str(item.get("ts", "")).startswith(day_prefix):
                continue
            items.append(item)

        items = items[-max(1, min(limit, 1000)) :]
        return {"ok": True, "count": len(items), "items": items}

    def list_runs(self, limit: int = 50) -> Dict[str, Any]:
        items = list_run_records(self.logs_dir, limit=limit)
        return {"ok": True, "count": len(items), "items": items}

    def get_run(self, log_id: str) -> Dict[str, Any]:
        name = Path(str(log_id or "")).name
        if name != log_id or not name.endswith(".txt"):
            raise RuntimeError(f"Invalid run log id: {log_id}")
        path = self.logs_dir / name
        if not path.exists():
            raise FileNotFoundError(name)
        return {"ok": True, **parse_run_record(path)}

    def _post_webhook(self, url: str, payload: Dict[str, Any]):
        if not url:
            self._debug("Webhook skipped: URL not configured")
            return
        sanitized_url = self._sanitize_url_for_log(url)
        self._debug("Sending webhook", url=sanitized_url)
        try:
            httpx.post(url, json=payload, timeout=15)
            self._debug("Webhook sent", url=sanitized_url)
        except Exception:
            self.logger.exception("Webhook send failed")

    def send_status(self, run_id: str, step: str, message: str, ok: bool = True, extra: Optional[Dict[str, Any]] = None):
        payload = {
            "ok": ok,
            "job": JOB_NAME,
            "run_id": run_id,
            "step": step,
            "message": message,
            "ts": datetime.now().isoformat(),
            "meta": extra or {},
        }
        log_fn = self.logger.info if ok else self.logger.error
        log_fn("[%s:%s] %s - %s", JOB_NAME, run_id, step, message)
        self._post_webhook(self.webhook_status_url, payload)

    def send_final(self, run_id: str, result: Dict[str, Any]):
        payload = {
            "ok": result.get("ok", False),
            "job": JOB_NAME,
            "run_id": run_id,
            "message": f"[{JOB_NAME}] {'OK' if result.get('ok') else 'ERROR'}",
            "meta": result,
        }
        log_fn = self.logger.info if result.get("ok") else self.logger.error
        log_fn("Final result %s/%s: %s", JOB_NAME, run_id, payload["message"])
        self._post_webhook(self.webhook_final_url, payload)
        self._append_runtime_event(
            "final_webhook_sent",
            phase=self._get_runtime_state().get("phase"),
            run_id=run_id,
            job=JOB_NAME,
            ok=payload["ok"],
            message=payload["message"],
        )

    def deliver_continue(self) -> Dict[str, Any]:
        deliver = getattr(self.continue_signal, "deliver", None)
        if deliver is None:
            raise RuntimeError("This service waits for the console, not for HTTP continue signals")
        if not deliver():
            raise RuntimeError("No run is waiting for manual intervention")
        state = self._get_runtime_state()
        self._append_runtime_event("continue_delivered", phase=state.get("phase"), run_id=state.get("run_id"), job=JOB_NAME)
        return {"ok": True, "run_id": state.get("run_id", "")}

    def release_attended_session(self) -> None:
        session, self.attended_session = self.attended_session, None
        if session is not None:
            session.close()

    def start_background_run(
        self,
        request_path: Union[str, Path],
        headless: bool = True,
        schedule: bool = False,
        run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        if self.has_active_run():
            raise RuntimeError(f"There is already an active run for {JOB_NAME}")
        run_id = run_id or self.now_id()
        worker = threading.Thread(
            target=self.run_purchase,
            kwargs={
                "request_path": request_path,
                "headless": headless,
                "schedule": schedule,
                "run_id": run_id,
                "dry_run": dry_run,
            },
            name=f"purchase-run-{run_id}",
            daemon=True,
        )
        worker.start()
        return {"ok": True, "accepted": True, "job": JOB_NAME, "run_id": run_id}

    def run_purchase(
        self,
        request_path: Union[str, Path],
        headless: bool = True,
        schedule: bool = False,
        run_id: Optional[str] = None,
        continue_signal=None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        run_id = run_id or self.now_id()
        if not self._run_lock.acquire(blocking=False):
            result = {
                "ok": False,
                "job": JOB_NAME,
                "run_id": run_id,
                "error": f"There is already an active run for {JOB_NAME}",
            }
            self._append_runtime_event("run_rejected", phase="busy", run_id=run_id, job=JOB_NAME, error=result["error"])
            self.send_status(run_id, "busy", result["error"], ok=False)
            return result

        try:
            return self._run_locked(Path(request_path), headless, schedule, run_id, continue_signal, dry_run)
        finally:
            self._run_lock.release()

    def _run_locked(
        self,
        request_path: Path,
        headless: bool,
        schedule: bool,
        run_id: str,
        continue_signal,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        self._debug(
            "Starting run_purchase", run_id=run_id, request=request_path, headless=headless, schedule=schedule, dry_run=dry_run
        )
        record = RunRecord(self.logs_dir, run_id=run_id, logger=self.logger)
        record.start()
        run_dir = self._artifact_dir(run_id)
        self._set_runtime_state("starting", "Loading purchase request", run_id=run_id, ok=None, log_id=record.log_id)
        result: Dict[str, Any] = {
            "ok": False,
            "job": JOB_NAME,
            "run_id": run_id,
            "log_id": record.log_id,
            "headless": headless,
            "dry_run": dry_run,
        }

        try:
            request = load_purchase_request(request_path)
        except RequestLoadError as err:
            self.logger.error("Could not load purchase request: %s", err)
            record.fail(f"Failed to load purchase request: {err}")
            record.end()
            result.update(status=record.status, error=str(err))
            self._set_runtime_state("failed", "Purchase request could not be loaded", run_id=run_id, ok=False, error=str(err), log_id=record.log_id)
            self.send_final(run_id, result)
            return result

        record.url(request.url)
        self.logger.info("Purchase run %s for %s (artifacts=%s)", run_id, self._sanitize_url_for_log(request.url), run_dir)

        session = None
        flow: Optional[PurchaseFlow] = None
        try:
            if schedule and request.sale_start_time is not None:
                self._set_runtime_state("waiting_sale", "Waiting for sale start", run_id=run_id, ok=None, log_id=record.log_id, sale_start_time=request.sale_start_time.isoformat())
                self.scheduler_factory(self.logger, record=record).wait_until(request.sale_start_time)
            elif schedule:
                self.logger.info("No sale start time in the request; running now")

            if self.attended_session is not None:
                self.logger.info("Closing the browser left open by the previous run")
                self.release_attended_session()
            session = self.session_factory(self.logger, headless)

            def on_step(step: str) -> None:
                self._set_runtime_state("running", f"Step {step}", run_id=run_id, step=step, ok=None, log_id=record.log_id)

            flow = PurchaseFlow(
                session,
                request,
                record,
                logger=self.logger,
                selectors=self.selectors,
                artifact_dir=run_dir,
                on_step=on_step,
                dry_run=dry_run,
            )
            try:
                outcome = flow.run()
                record.succeed()
                result.update(ok=True, **outcome)
            except InterruptionSignal as signal:
                record.error(f"Error: {signal}")
                self.send_status(run_id, signal.step or "", f"{signal.kind} detected; waiting for manual intervention", ok=False)

                def on_waiting(step: str) -> None:
                    self._set_runtime_state("waiting_manual", f"{signal.kind} detected; waiting for continue signal", run_id=run_id, step=step, ok=None, log_id=record.log_id)

                controller = ResumeController(continue_signal or self.continue_signal, record, self.logger, on_waiting=on_waiting)
                resumed = controller.handle(signal, flow)
                if resumed.ok:
                    record.succeed()
                    result.update(ok=True, resumed_at=resumed.step, **(resumed.result or {}))
                else:
                    record.fail()
                    result.update(error=resumed.error or str(signal), resumed_at=resumed.step)
        except PurchaseFlowError as err:
            self.logger.exception("Purchase run failed run_id=%s step=%s", run_id, err.step)
            record.fail(f"Error: {err}")
            result.update(error=str(err), step=err.step)
        except Exception as err:
            self.logger.exception("Unexpected error in purchase run run_id=%s", run_id)
            record.fail(f"Error: {err}")
            result.update(error=str(err))
        finally:
            if session is not None:
                try:
                    session.screenshot(str(run_dir / RESULT_SCREENSHOT))
                except Exception:
                    self.logger.exception("Could not save result screenshot")
            record.end()
            if session is not None:
                if headless:
                    session.close()
                else:
                    self.attended_session = session
                    self.logger.info("Browser left open for review; close it manually when done")

        result["status"] = record.status
        if flow is not None:
            result.setdefault("step", flow.current_step)
        self._set_runtime_state(
            "completed" if result["ok"] else "failed",
            "Purchase completed" if result["ok"] else "Purchase failed",
            run_id=run_id,
            step=result.get("step") or "",
            ok=result["ok"],
            error=result.get("error", ""),
            log_id=record.log_id,
        )
        self.send_final(run_id, result)
        self._debug("Run finished", run_id=run_id, ok=result["ok"])
        return result


def build_console_service(data_dir: Path, logger, **kwargs: Any) -> PurchaseAgentService:
    return PurchaseAgentService(data_dir=data_dir, logger=logger, continue_signal=ConsoleContinueSignal(), **kwargs)
