import subprocess
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from agents.purchase_agent.errors import NavigationTimeoutError, StepPreconditionError


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DEFAULT_NAVIGATION_TIMEOUT_MS = 60_000
DEFAULT_MARKER_TIMEOUT_MS = 30_000
BROWSER_ARGS = [
    "--window-size=1280,920",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
]


class BrowserSession(Protocol):
    """Page probe used by the purchase flow.

    Reads are best effort: a missing marker is reported through
    NavigationTimeoutError / StepPreconditionError, never through a typed page
    model.
    """

    def navigate(self, url: str) -> Optional[int]: ...

    def reload(self) -> Optional[int]: ...

    def wait_for_marker(self, selector: str, timeout_ms: int = DEFAULT_MARKER_TIMEOUT_MS) -> None: ...

    def has_marker(self, selector: str) -> bool: ...

    def read_text(self, selector: Optional[str] = None) -> str: ...

    def element_texts(self, selector: str) -> List[str]: ...

    def click(self, selector: str) -> None: ...

    def click_nth(self, selector: str, index: int) -> None: ...

    def click_and_wait_navigation(self, selector: str, timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS) -> None: ...

    def type(self, selector: str, text: str) -> None: ...

    def select_option(self, selector: str, value: str) -> None: ...

    def current_url(self) -> str: ...

    def screenshot(self, path: str) -> None: ...

    def pause(self, ms: int) -> None: ...

    def close(self) -> None: ...


@contextmanager
def _translated(action: str) -> Iterator[None]:
    """Timeouts become NavigationTimeoutError; any other Playwright failure becomes StepPreconditionError."""
    try:
        yield
    except PlaywrightTimeoutError as err:
        raise NavigationTimeoutError(f"Timed out trying to {action}") from err
    except PlaywrightError as err:
        raise StepPreconditionError(f"Could not {action}: {err.message}") from err


def _is_playwright_executable_error(error: Exception) -> bool:
    return "Executable doesn't exist" in str(error)


def _ensure_playwright_browsers(logger) -> bool:
    command = [sys.executable, "-m", "playwright", "install", "chromium"]
    logger.warning("Chromium not found; attempting automatic install")
    try:
        subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
        logger.info("Automatic Chromium install completed")
        return True
    except Exception:
        logger.exception("Could not install Chromium at runtime")
        return False


class PlaywrightBrowserSession:
    """BrowserSession backed by Playwright's sync API (Chromium)."""

    def __init__(self, playwright, browser, context, page, logger, headless: bool) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self.page = page
        self.logger = logger
        self.headless = headless
        self._closed = False

    @classmethod
    def open(
        cls,
        logger,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS,
    ) -> "PlaywrightBrowserSession":
        playwright = sync_playwright().start()
        try:
            browser = cls._launch(playwright, logger, headless)
            context = browser.new_context(user_agent=user_agent, no_viewport=True)
            page = context.new_page()
            page.set_default_navigation_timeout(navigation_timeout_ms)
        except Exception:
            playwright.stop()
            raise
        logger.info("Browser session opened (headless=%s)", headless)
        return cls(playwright, browser, context, page, logger, headless)

    @staticmethod
    def _launch(playwright, logger, headless: bool):
        try:
            return playwright.chromium.launch(headless=headless, args=BROWSER_ARGS)
        except Exception as err:
            if not _is_playwright_executable_error(err):
                raise
            if not _ensure_playwright_browsers(logger):
                raise
            return playwright.chromium.launch(headless=headless, args=BROWSER_ARGS)

    @staticmethod
    def _status(response) -> Optional[int]:
        return response.status if response is not None else None

    def navigate(self, url: str) -> Optional[int]:
        with _translated(f"load {url}"):
            return self._status(self.page.goto(url, wait_until="networkidle"))

    def reload(self) -> Optional[int]:
        with _translated("reload page"):
            return self._status(self.page.reload(wait_until="networkidle"))

    def wait_for_marker(self, selector: str, timeout_ms: int = DEFAULT_MARKER_TIMEOUT_MS) -> None:
        with _translated(f"find marker {selector} within {timeout_ms} ms"):
            self.page.wait_for_selector(selector, timeout=timeout_ms)

    def has_marker(self, selector: str) -> bool:
        with _translated(f"query {selector}"):
            return self.page.query_selector(selector) is not None

    def read_text(self, selector: Optional[str] = None) -> str:
        with _translated(f"read {selector or 'page content'}"):
            if not selector:
                return self.page.content()
            element = self.page.query_selector(selector)
            if element is None:
                raise StepPreconditionError(f"Element {selector} not found")
            return element.text_content() or ""

    def element_texts(self, selector: str) -> List[str]:
        with _translated(f"list {selector}"):
            return [element.text_content() or "" for element in self.page.query_selector_all(selector)]

    def click(self, selector: str) -> None:
        with _translated(f"click {selector}"):
            self.page.click(selector)

    def click_nth(self, selector: str, index: int) -> None:
        with _translated(f"click {selector}[{index}]"):
            elements = self.page.query_selector_all(selector)
            if index >= len(elements):
                raise StepPreconditionError(f"Element {selector}[{index}] not found")
            elements[index].click()

    def click_and_wait_navigation(self, selector: str, timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS) -> None:
        with _translated(f"navigate after clicking {selector}"):
            with self.page.expect_navigation(wait_until="networkidle", timeout=timeout_ms):
                self.page.click(selector)

    def type(self, selector: str, text: str) -> None:
        with _translated(f"type into {selector}"):
            self.page.fill(selector, text)

    def select_option(self, selector: str, value: str) -> None:
        with _translated(f"select {value} in {selector}"):
            self.page.select_option(selector, value)

    def current_url(self) -> str:
        return self.page.url

    def screenshot(self, path: str) -> None:
        with _translated(f"save screenshot {path}"):
            self.page.screenshot(path=path, full_page=True)

    def pause(self, ms: int) -> None:
        with _translated("pause"):
            self.page.wait_for_timeout(ms)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for label, closer in (
            ("context", self._context.close),
            ("browser", self._browser.close),
            ("playwright", self._playwright.stop),
        ):
            try:
                closer()
            except PlaywrightError:
                self.logger.exception("Error closing Playwright %s", label)
        self.logger.info("Playwright resources closed")
