import threading
from dataclasses import dataclass
from typing import Callable, Optional

from agents.purchase_agent.errors import InterruptionSignal, PurchaseFlowError
from agents.purchase_agent.flow import classify_location


class ConsoleContinueSignal:
    """Blocks on the terminal until the operator presses ENTER."""

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        prompt: str = "Solve the challenge in the browser, then press ENTER to continue... ",
    ) -> None:
        self.input_fn = input_fn
        self.prompt = prompt

    def wait(self) -> None:
        self.input_fn(self.prompt)


class EventContinueSignal:
    """Continue-signal delivered from another thread (the HTTP surface)."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._waiting = threading.Event()

    @property
    def is_waiting(self) -> bool:
        return self._waiting.is_set()

    def deliver(self) -> bool:
        if not self._waiting.is_set():
            return False
        self._event.set()
        return True

    def wait(self) -> None:
        self._event.clear()
        self._waiting.set()
        try:
            self._event.wait()
        finally:
            self._waiting.clear()


@dataclass
class ResumeOutcome:
    resumed: bool
    step: Optional[str] = None
    ok: bool = False
    error: str = ""
    result: Optional[dict] = None


class ResumeController:
    """Suspends a flow on a challenge screen and re-enters it where the page is.

    One interruption cycle per run: a failure after resuming, including a
    second challenge screen, ends the run instead of suspending again.
    """

    def __init__(self, continue_signal, record, logger, on_waiting: Optional[Callable[[str], None]] = None) -> None:
        self.continue_signal = continue_signal
        self.record = record
        self.logger = logger
        self.on_waiting = on_waiting

    def handle(self, signal: InterruptionSignal, flow) -> ResumeOutcome:
        self.logger.warning("%s detected at step %s; waiting for manual intervention", signal.kind, signal.step or "-")
        if self.on_waiting is not None:
            self.on_waiting(signal.step or "")
        self.continue_signal.wait()
        self.logger.info("Continue signal received; inspecting current page")

        url = flow.session.current_url()
        step = classify_location(url, flow.steps)
        if step is None:
            message = f"No resumable step matches the current page: {url}"
            self.logger.warning(message)
            self.record.error(message)
            return ResumeOutcome(resumed=False, error=message)

        try:
            result = flow.run(start_at=step.name)
        except PurchaseFlowError as err:
            message = f"Failed after manual intervention: {err}"
            self.logger.error(message)
            self.record.error(message)
            return ResumeOutcome(resumed=True, step=step.name, ok=False, error=message)

        self.logger.info("Purchase flow finished after resuming at %s", step.name)
        return ResumeOutcome(resumed=True, step=step.name, ok=True, result=result)
