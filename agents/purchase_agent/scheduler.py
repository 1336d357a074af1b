import threading
import time
from datetime import datetime
from typing import Any, Callable, Optional


COARSE_INTERVAL_SECONDS = 60
FINE_INTERVAL_SECONDS = 10
FINE_THRESHOLD_SECONDS = 60


def to_timestamp(target: Any) -> float:
    """Accept a datetime (naive means local time), a unix timestamp or an ISO string."""
    if isinstance(target, datetime):
        return target.timestamp()
    if isinstance(target, (int, float)):
        return float(target)
    raw = str(target or "").strip()
    if not raw:
        raise ValueError("Empty target instant")
    return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()


def format_clock(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y/%m/%d %H:%M:%S")


def progress_interval(remaining: float) -> int:
    # Coarse cadence while more than a minute remains, fine cadence after that.
    return COARSE_INTERVAL_SECONDS if remaining > FINE_THRESHOLD_SECONDS else FINE_INTERVAL_SECONDS


def describe_remaining(remaining: float) -> str:
    remaining = max(0.0, remaining)
    if remaining > FINE_THRESHOLD_SECONDS:
        minutes, seconds = divmod(int(remaining), 60)
        return f"{minutes} min {seconds} s until sale start"
    return f"about {int(round(remaining))} s until sale start"


class SaleScheduler:
    """Holds the caller until a target instant, then fires the callback once.

    The release is a single wait computed from the target; progress reports
    come from a separate reporter thread that only writes log lines.
    """

    def __init__(
        self,
        logger,
        record=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logger
        self.record = record
        self.clock = clock
        self.sleep = sleep
        self.reports: list[str] = []

    def _report(self, message: str) -> None:
        self.reports.append(message)
        self.logger.info(message)
        if self.record is not None and not self.record.closed:
            try:
                self.record.info(message)
            except RuntimeError:
                self.logger.debug("Run record closed before progress report: %s", message)

    def _reporter(self, target_ts: float, released: threading.Event) -> None:
        while True:
            remaining = target_ts - self.clock()
            if released.wait(progress_interval(remaining)):
                return
            remaining = target_ts - self.clock()
            if remaining <= 0:
                return
            self._report(describe_remaining(remaining))

    def wait_until(self, target: Any, callback: Optional[Callable[[], Any]] = None) -> Any:
        target_ts = to_timestamp(target)
        remaining = target_ts - self.clock()

        if remaining <= 0:
            self.logger.info("Target time %s has already passed; running now", format_clock(target_ts))
            return callback() if callback is not None else None

        self._report(
            f"Waiting {int(remaining)} s for sale start at {format_clock(target_ts)} "
            f"(now {format_clock(self.clock())})"
        )
        released = threading.Event()
        reporter = threading.Thread(
            target=self._reporter,
            args=(target_ts, released),
            name="sale-scheduler-progress",
            daemon=True,
        )
        reporter.start()
        try:
            self.sleep(remaining)
        finally:
            released.set()
            reporter.join(timeout=1)

        self._report(f"Sale start time {format_clock(target_ts)} reached; starting")
        return callback() if callback is not None else None
