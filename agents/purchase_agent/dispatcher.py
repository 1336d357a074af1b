import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from agents.purchase_agent.errors import RequestLoadError
from agents.purchase_agent.models import load_purchase_request
from agents.purchase_agent.scheduler import SaleScheduler, format_clock, to_timestamp


DEFAULT_PATTERN = "purchase-info*.json"
CLI_SCRIPT = Path(__file__).resolve().parents[2] / "cli.py"


def _relay(stream, prefix: str, log_fn) -> None:
    for line in iter(stream.readline, ""):
        line = line.rstrip()
        if line:
            log_fn("%s %s", prefix, line)
    stream.close()


@dataclass
class _LaunchedProcess:
    request_path: Path
    process: subprocess.Popen
    relays: List[threading.Thread]


class PurchaseDispatcher:
    """Waits for each request's sale start and launches an independent purchase process."""

    def __init__(
        self,
        logger,
        headless: bool = False,
        scheduler_factory: Callable[..., SaleScheduler] = SaleScheduler,
        launcher: Optional[Callable[[Path], object]] = None,
    ) -> None:
        self.logger = logger
        self.headless = headless
        self.scheduler_factory = scheduler_factory
        self.launcher = launcher or self.launch_purchase_process
        self.threads: List[threading.Thread] = []
        self.processes: List[_LaunchedProcess] = []
        self._lock = threading.Lock()

    def command_for(self, request_path: Path) -> List[str]:
        command = [sys.executable, str(CLI_SCRIPT), "run", str(request_path)]
        if self.headless:
            command.append("--headless")
        return command

    def launch_purchase_process(self, request_path: Path) -> subprocess.Popen:
        command = self.command_for(request_path)
        self.logger.info("Launching purchase process for %s", request_path)
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            start_new_session=True,
        )
        relays = []
        for stream, prefix, log_fn in (
            (process.stdout, "[PURCHASE]", self.logger.info),
            (process.stderr, "[PURCHASE ERROR]", self.logger.error),
        ):
            relay = threading.Thread(target=_relay, args=(stream, prefix, log_fn), daemon=True)
            relay.start()
            relays.append(relay)
        with self._lock:
            self.processes.append(_LaunchedProcess(Path(request_path), process, relays))
        return process

    def schedule_from_file(self, request_path: Union[str, Path], wait: bool = False) -> bool:
        path = Path(request_path)
        try:
            request = load_purchase_request(path)
        except RequestLoadError as err:
            self.logger.error("Could not schedule %s: %s", path, err)
            return False
        if request.sale_start_time is None:
            self.logger.warning("No sale start time in %s; not scheduled", path)
            return False

        target_ts = to_timestamp(request.sale_start_time)
        self.logger.info("Scheduled purchase for %s at %s", path.name, format_clock(target_ts))

        def _wait_and_launch() -> None:
            scheduler = self.scheduler_factory(self.logger)
            try:
                scheduler.wait_until(target_ts, lambda: self.launcher(path))
            except OSError:
                self.logger.exception("Could not launch purchase process for %s", path)

        worker = threading.Thread(target=_wait_and_launch, name=f"dispatch-{path.stem}", daemon=False)
        self.threads.append(worker)
        worker.start()
        if wait:
            worker.join()
        return True

    def schedule_files(self, paths: Iterable[Union[str, Path]]) -> int:
        scheduled = sum(1 for path in paths if self.schedule_from_file(path))
        self.logger.info("%s purchase request(s) scheduled", scheduled)
        return scheduled

    def schedule_pattern(self, directory: Union[str, Path] = ".", pattern: str = DEFAULT_PATTERN) -> int:
        matches = sorted(Path(directory).glob(pattern))
        if not matches:
            self.logger.warning("No purchase request files match %s in %s", pattern, directory)
            return 0
        return self.schedule_files(matches)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every scheduled launch, then for each launched purchase process to exit."""
        for worker in self.threads:
            worker.join(timeout)
        with self._lock:
            launched = list(self.processes)
        for child in launched:
            try:
                code = child.process.wait(timeout)
            except subprocess.TimeoutExpired:
                self.logger.warning(
                    "Purchase process for %s is still running (pid %s)", child.request_path, child.process.pid
                )
                continue
            for relay in child.relays:
                relay.join(timeout)
            if code == 0:
                self.logger.info("Purchase process for %s exited normally", child.request_path)
            else:
                self.logger.error("Purchase process for %s exited with code %s", child.request_path, code)
            with self._lock:
                self.processes.remove(child)
