import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


ENTRY_KINDS = ("START", "URL", "STATUS", "ERROR", "INFO", "END")
STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
LOG_PREFIX = "purchase-log"


def now_id() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RunEntry:
    kind: str
    ts: str
    payload: str

    def to_line(self) -> str:
        return f"[{self.kind}] {self.payload}"


class RunRecord:
    """Append-only lifecycle log for a single purchase run.

    One file per run under ``logs_dir``, named after the run start. The record
    is opened with ``start()`` and closed exactly once with ``end()``; anything
    appended after that is rejected.
    """

    def __init__(self, logs_dir: Path, run_id: Optional[str] = None, logger=None, prefix: str = LOG_PREFIX) -> None:
        self.logs_dir = Path(logs_dir)
        self.run_id = run_id or now_id()
        self.logger = logger
        self.log_id = f"{prefix}-{self.run_id}.txt"
        self.path = self.logs_dir / self.log_id
        self.entries: List[RunEntry] = []
        self.status: Optional[str] = None
        self._started = False
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _append(self, kind: str, payload: str) -> RunEntry:
        if kind not in ENTRY_KINDS:
            raise ValueError(f"Unknown run record kind: {kind}")
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Run record {self.log_id} is already closed")
            entry = RunEntry(kind=kind, ts=iso_now(), payload=str(payload))
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(entry.to_line() + "\n")
            self.entries.append(entry)
            return entry

    def start(self) -> RunEntry:
        if self._started:
            raise RuntimeError(f"Run record {self.log_id} was already started")
        self._started = True
        entry = self._append("START", iso_now())
        if self.logger is not None:
            self.logger.info("Run record opened: %s", self.path)
        return entry

    def url(self, url: str) -> RunEntry:
        return self._append("URL", url)

    def succeed(self) -> RunEntry:
        self.status = STATUS_SUCCESS
        return self._append("STATUS", STATUS_SUCCESS)

    def fail(self, message: str = "") -> None:
        self.status = STATUS_FAILED
        self._append("STATUS", STATUS_FAILED)
        if message:
            self._append("ERROR", message)

    def error(self, message: str) -> RunEntry:
        return self._append("ERROR", message)

    def info(self, message: str) -> RunEntry:
        return self._append("INFO", message)

    def end(self) -> Optional[RunEntry]:
        """Write the END entry; later calls are no-ops."""
        if self._closed:
            return None
        entry = self._append("END", iso_now())
        with self._lock:
            self._closed = True
        if self.logger is not None:
            self.logger.info("Run record closed: %s status=%s", self.path, self.status or "-")
        return entry

    def kinds(self) -> List[str]:
        return [entry.kind for entry in self.entries]


def parse_run_record(path: Path) -> Dict[str, Any]:
    """Read a run record file back into its entries and summary fields."""
    entries: List[Dict[str, str]] = []
    status = ""
    urls: List[str] = []
    errors: List[str] = []
    started_at = ""
    ended_at = ""
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line.startswith("[") or "]" not in line:
            continue
        kind, _, payload = line[1:].partition("]")
        payload = payload.strip()
        entries.append({"kind": kind, "payload": payload})
        if kind == "STATUS":
            status = payload
        elif kind == "URL":
            urls.append(payload)
        elif kind == "ERROR":
            errors.append(payload)
        elif kind == "START":
            started_at = payload
        elif kind == "END":
            ended_at = payload
    return {
        "log_id": Path(path).name,
        "status": status,
        "urls": urls,
        "errors": errors,
        "started_at": started_at,
        "ended_at": ended_at,
        "closed": bool(ended_at),
        "entries": entries,
    }


def list_run_records(logs_dir: Path, limit: int = 50) -> List[Dict[str, Any]]:
    base = Path(logs_dir)
    if not base.exists():
        return []
    files = sorted(base.glob(f"{LOG_PREFIX}-*.txt"), reverse=True)
    items = []
    for path in files[: max(1, limit)]:
        summary = parse_run_record(path)
        summary.pop("entries", None)
        items.append(summary)
    return items
