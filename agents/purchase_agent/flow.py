import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from agents.purchase_agent.errors import (
    AuthenticationError,
    InterruptionSignal,
    NavigationTimeoutError,
    PurchaseFlowError,
    SaleNotYetOpenError,
    SalePageServerError,
    StepPreconditionError,
)


STEP_LOGIN = "login"
STEP_ACQUIRE_SALE_PAGE = "acquire_sale_page"
STEP_SELECT_TICKET = "select_ticket"
STEP_ENTER_PURCHASER_INFO = "enter_purchaser_info"
STEP_SELECT_PAYMENT_AND_DELIVERY = "select_payment_and_delivery"
STEP_SUBMIT = "submit"

STEP_ORDER = (
    STEP_LOGIN,
    STEP_ACQUIRE_SALE_PAGE,
    STEP_SELECT_TICKET,
    STEP_ENTER_PURCHASER_INFO,
    STEP_SELECT_PAYMENT_AND_DELIVERY,
    STEP_SUBMIT,
)

TICKET_SELECTION_ERROR_SCREENSHOT = "ticket-selection-error.png"


@dataclass(frozen=True)
class FlowSelectors:
    """Locations, selectors and text markers of the sales site."""

    login_url: str = "https://l-tike.com/login"
    login_email: str = "#login_mail"
    login_password: str = "#login_pass"
    login_submit: str = 'input[type="submit"]'
    post_login_marker: str = ".user-menu"
    post_login_timeout_ms: int = 5_000
    challenge_markers: Tuple[str, ...] = ("captcha", "CAPTCHA")
    not_on_sale_markers: Tuple[str, ...] = ("販売開始前", "まだ販売していません")
    seat_region: str = ".seat-type-selection"
    seat_region_timeout_ms: int = 10_000
    seat_item: str = ".seat-type-item"
    quantity_select: str = "select.ticket-quantity"
    quantity_timeout_ms: int = 5_000
    next_button: str = ".next-button"
    name_input: str = 'input[name="name"]'
    name_timeout_ms: int = 5_000
    phone_input: str = 'input[name="tel"]'
    birth_year_select: str = 'select[name="birth_year"]'
    birth_month_select: str = 'select[name="birth_month"]'
    birth_day_select: str = 'select[name="birth_day"]'
    payment_region: str = ".payment-method-selection"
    payment_item: str = ".payment-method-item"
    delivery_region: str = ".delivery-method-selection"
    delivery_item: str = ".delivery-method-item"
    method_region_timeout_ms: int = 5_000
    confirm_region: str = ".confirm-page"
    confirm_timeout_ms: int = 5_000
    agreement_checkbox: str = ".agreement-checkbox"
    apply_button: str = ".apply-button"
    completion_url_markers: Tuple[str, ...] = ("complete", "finish")
    login_location: str = "login"
    select_location: str = "select"
    info_location: str = "info"
    payment_location: str = "payment"
    confirm_location: str = "confirm"

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]], logger=None) -> "FlowSelectors":
        if not overrides:
            return cls()
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                if logger is not None:
                    logger.warning("Ignoring unknown selector override: %s", key)
                continue
            default = getattr(cls, key)
            if isinstance(default, tuple):
                value = tuple(value) if isinstance(value, (list, tuple)) else (str(value),)
            elif isinstance(default, int):
                value = int(value)
            values[key] = value
        return replace(cls(), **values)


@dataclass
class FlowStep:
    name: str
    location_marker: str
    action: Callable[[], Any]
    resumable: bool = True


def select_with_fallback(session, selector: str, label: str, what: str, logger, required: bool = True) -> Optional[str]:
    """Click the first entry whose text contains ``label``; otherwise the first entry.

    Returns the text of the clicked entry. With no entries at all this raises
    StepPreconditionError when ``required``, or logs a warning and returns None.
    """
    texts = session.element_texts(selector)
    if not texts:
        if required:
            raise StepPreconditionError(f"No {what} entries available")
        logger.warning("No %s entries found; skipping", what)
        return None

    for index, text in enumerate(texts):
        if label in text:
            session.click_nth(selector, index)
            logger.info("Selected %s: %s", what, text.strip())
            return text

    logger.warning("Requested %s %r not found; selecting first entry %r", what, label, texts[0].strip())
    session.click_nth(selector, 0)
    return texts[0]


class PurchaseFlow:
    """Ordered purchase steps driven against a BrowserSession.

    ``run()`` executes every step in order; ``run(start_at=...)`` re-enters the
    sequence at a named step and runs the remainder. Steps never run
    concurrently and are never reordered.
    """

    def __init__(
        self,
        session,
        request,
        record,
        logger=None,
        selectors: Optional[FlowSelectors] = None,
        artifact_dir: Optional[Path] = None,
        on_step: Optional[Callable[[str], None]] = None,
        retry_delay_ms: int = 3_000,
        max_retries: int = 10,
        dry_run: bool = False,
    ) -> None:
        self.session = session
        self.request = request
        self.record = record
        self.logger = logger or logging.getLogger("purchase_runner.flow")
        self.selectors = selectors or FlowSelectors()
        self.artifact_dir = Path(artifact_dir) if artifact_dir is not None else Path(".")
        self.on_step = on_step
        self.retry_delay_ms = retry_delay_ms
        self.max_retries = max_retries
        self.dry_run = dry_run
        self.completed_steps: List[str] = []
        self.current_step: Optional[str] = None
        self.reload_count = 0
        self.completed = False
        self._submit_attempted = False

    @property
    def steps(self) -> List[FlowStep]:
        s = self.selectors
        return [
            FlowStep(STEP_LOGIN, s.login_location, self.login),
            FlowStep(STEP_ACQUIRE_SALE_PAGE, self.request.url, self.acquire_sale_page),
            FlowStep(STEP_SELECT_TICKET, s.select_location, self.select_ticket),
            FlowStep(STEP_ENTER_PURCHASER_INFO, s.info_location, self.enter_purchaser_info),
            FlowStep(STEP_SELECT_PAYMENT_AND_DELIVERY, s.payment_location, self.select_payment_and_delivery),
            FlowStep(STEP_SUBMIT, s.confirm_location, self.submit),
        ]

    def run(self, start_at: Optional[str] = None) -> Dict[str, Any]:
        steps = self.steps
        names = [step.name for step in steps]
        start_index = 0
        if start_at is not None:
            if start_at not in names:
                raise ValueError(f"Unknown flow step: {start_at}")
            start_index = names.index(start_at)
            self.logger.info("Resuming purchase flow at %s", start_at)

        for step in steps[start_index:]:
            self._run_step(step)

        return {
            "completed": self.completed,
            "final_url": self.session.current_url(),
            "steps": list(self.completed_steps),
            "reloads": self.reload_count,
            "dry_run": self.dry_run,
        }

    def _run_step(self, step: FlowStep) -> None:
        self.current_step = step.name
        if self.on_step is not None:
            self.on_step(step.name)
        self.logger.info("Step %s started", step.name)
        try:
            step.action()
        except InterruptionSignal as signal:
            if signal.step is None:
                signal.step = step.name
            raise
        except (NavigationTimeoutError, StepPreconditionError) as err:
            if err.step is None:
                err.step = step.name
            if self._challenge_present():
                raise InterruptionSignal(
                    f"CAPTCHA detected during {step.name}: {err}",
                    step=step.name,
                ) from err
            raise
        except PurchaseFlowError as err:
            if err.step is None:
                err.step = step.name
            raise
        self.completed_steps.append(step.name)
        self.logger.info("Step %s finished", step.name)

    def _challenge_present(self) -> bool:
        try:
            content = self.session.read_text()
        except PurchaseFlowError:
            return False
        return any(marker in content for marker in self.selectors.challenge_markers)

    def _not_on_sale(self, content: str) -> bool:
        return any(marker in content for marker in self.selectors.not_on_sale_markers)

    def login(self) -> None:
        s = self.selectors
        self.session.navigate(s.login_url)
        self.session.wait_for_marker(s.login_email)
        self.session.type(s.login_email, self.request.email)
        self.session.type(s.login_password, self.request.password)
        self.session.click_and_wait_navigation(s.login_submit)
        try:
            self.session.wait_for_marker(s.post_login_marker, timeout_ms=s.post_login_timeout_ms)
        except NavigationTimeoutError as err:
            if self._challenge_present():
                raise InterruptionSignal("CAPTCHA detected on login", step=STEP_LOGIN) from err
            raise AuthenticationError("Login failed: post-login marker not found", step=STEP_LOGIN) from err
        self.logger.info("Login succeeded")

    def acquire_sale_page(self) -> int:
        """Open the sale page, reloading while the not-on-sale placeholder shows.

        Returns the number of reloads performed.
        """
        status = self.session.navigate(self.request.url)
        if status is not None and status >= 500:
            raise SalePageServerError(
                f"Sale page returned server error {status}",
                status=status,
                step=STEP_ACQUIRE_SALE_PAGE,
            )

        reloads = 0
        if self._not_on_sale(self.session.read_text()):
            self.logger.warning("Sale not open yet; reloading every %s ms", self.retry_delay_ms)
            opened = False
            while reloads < self.max_retries:
                reloads += 1
                self.logger.info("Reload attempt %s/%s", reloads, self.max_retries)
                self.session.pause(self.retry_delay_ms)
                self.session.reload()
                if not self._not_on_sale(self.session.read_text()):
                    opened = True
                    break
            self.reload_count = reloads
            if not opened:
                raise SaleNotYetOpenError(
                    f"Sale did not open after {self.max_retries} reloads",
                    step=STEP_ACQUIRE_SALE_PAGE,
                )
            self.logger.info("Sale opened after %s reloads", reloads)

        self.reload_count = reloads
        actual_url = self.session.current_url()
        if actual_url and actual_url != self.request.url:
            self.record.url(actual_url)
        return reloads

    def select_ticket(self) -> None:
        s = self.selectors
        try:
            self.session.wait_for_marker(s.seat_region, timeout_ms=s.seat_region_timeout_ms)
            select_with_fallback(self.session, s.seat_item, self.request.seat, "seat type", self.logger)
            self.session.wait_for_marker(s.quantity_select, timeout_ms=s.quantity_timeout_ms)
            self.session.select_option(s.quantity_select, str(self.request.quantity))
            self.session.click_and_wait_navigation(s.next_button)
        except PurchaseFlowError as err:
            self._capture(TICKET_SELECTION_ERROR_SCREENSHOT)
            self.logger.warning("Ticket selection failed; the page layout may need manual handling")
            raise StepPreconditionError(f"Ticket selection failed: {err}", step=STEP_SELECT_TICKET) from err

    def enter_purchaser_info(self) -> None:
        s = self.selectors
        self.session.wait_for_marker(s.name_input, timeout_ms=s.name_timeout_ms)
        self.session.type(s.name_input, self.request.name)
        self.session.type(s.phone_input, self.request.phone)
        year, month, day = self.request.birth_parts()
        self.session.select_option(s.birth_year_select, year)
        self.session.select_option(s.birth_month_select, month)
        self.session.select_option(s.birth_day_select, day)
        self.session.click_and_wait_navigation(s.next_button)

    def select_payment_and_delivery(self) -> None:
        s = self.selectors
        self.session.wait_for_marker(s.payment_region, timeout_ms=s.method_region_timeout_ms)
        select_with_fallback(
            self.session, s.payment_item, self.request.payment, "payment method", self.logger, required=False
        )
        self.session.wait_for_marker(s.delivery_region, timeout_ms=s.method_region_timeout_ms)
        select_with_fallback(
            self.session, s.delivery_item, self.request.delivery, "delivery method", self.logger, required=False
        )
        self.session.click_and_wait_navigation(s.next_button)

    def submit(self) -> None:
        s = self.selectors
        if self._submit_attempted:
            raise StepPreconditionError("Submit was already attempted for this run", step=STEP_SUBMIT)
        self.session.wait_for_marker(s.confirm_region, timeout_ms=s.confirm_timeout_ms)
        if self.session.has_marker(s.agreement_checkbox):
            self.session.click(s.agreement_checkbox)
        if self.dry_run:
            self.logger.info("Dry run: stopping at the confirmation page, no purchase was submitted")
            return
        self._submit_attempted = True
        self.session.click_and_wait_navigation(s.apply_button)
        final_url = self.session.current_url()
        if any(marker in final_url for marker in s.completion_url_markers):
            self.completed = True
            self.logger.info("Application completed")
        else:
            self.logger.warning("Page after applying is not the expected completion page: %s", final_url)

    def _capture(self, filename: str) -> None:
        try:
            self.artifact_dir.mkdir(parents=True, exist_ok=True)
            self.session.screenshot(str(self.artifact_dir / filename))
        except (PurchaseFlowError, OSError):
            self.logger.exception("Could not save screenshot %s", filename)


def classify_location(url: str, steps: Sequence[FlowStep]) -> Optional[FlowStep]:
    """First resume-eligible step whose location marker is a substring of ``url``."""
    for step in steps:
        if step.resumable and step.location_marker and step.location_marker in (url or ""):
            return step
    return None
