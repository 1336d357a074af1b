from agents.purchase_agent.errors import NavigationTimeoutError, StepPreconditionError

SALE_URL = "https://l-tike.com/event/12345"
MYPAGE_URL = "https://l-tike.com/mypage"
INFO_URL = "https://l-tike.com/order/info"
PAYMENT_URL = "https://l-tike.com/order/payment"
CONFIRM_URL = "https://l-tike.com/order/confirm"
COMPLETE_URL = "https://l-tike.com/order/complete"

ALL_MARKERS = {
    "#login_mail",
    ".user-menu",
    ".seat-type-selection",
    "select.ticket-quantity",
    'input[name="name"]',
    ".payment-method-selection",
    ".delivery-method-selection",
    ".confirm-page",
}


def purchase_record(**overrides):
    data = {
        "url": SALE_URL,
        "email": "buyer@example.invalid",
        "password": "secret",
        "quantity": 2,
        "seat": "S席",
        "payment": "クレジットカード",
        "delivery": "電子チケット",
        "name": "山田太郎",
        "phone": "09012345678",
        "birth": "1990-01-05",
    }
    data.update(overrides)
    return data


class FakeSession:
    """Scripted page probe: markers present, listed entries, page text and navigations."""

    def __init__(self, markers=None, lists=None, contents=None, nav_urls=None, statuses=None, redirects=None):
        self.markers = set(ALL_MARKERS if markers is None else markers)
        self.lists = dict(
            {
                ".seat-type-item": ["S席", "A席"],
                ".payment-method-item": ["クレジットカード", "コンビニ"],
                ".delivery-method-item": ["電子チケット", "配送"],
            }
            if lists is None
            else lists
        )
        self.contents = list(contents or [""])
        self.nav_urls = list(
            [MYPAGE_URL, INFO_URL, PAYMENT_URL, CONFIRM_URL, COMPLETE_URL] if nav_urls is None else nav_urls
        )
        self.statuses = dict(statuses or {})
        self.redirects = dict(redirects or {})
        self.url = "about:blank"
        self.calls = []
        self.navigated = []
        self.reloads = 0
        self.pauses = []
        self.clicked = []
        self.typed = {}
        self.selected = {}
        self.screenshots = []
        self.closed = False

    def navigate(self, url):
        self.calls.append(("navigate", url))
        self.navigated.append(url)
        self.url = self.redirects.get(url, url)
        return self.statuses.get(url, 200)

    def reload(self):
        self.calls.append(("reload",))
        self.reloads += 1
        return 200

    def wait_for_marker(self, selector, timeout_ms=30_000):
        self.calls.append(("wait_for_marker", selector, timeout_ms))
        if selector not in self.markers:
            raise NavigationTimeoutError(f"Marker {selector} did not appear within {timeout_ms} ms")

    def has_marker(self, selector):
        return selector in self.markers

    def read_text(self, selector=None):
        if selector:
            raise StepPreconditionError(f"Element {selector} not found")
        if len(self.contents) > 1:
            return self.contents.pop(0)
        return self.contents[0]

    def element_texts(self, selector):
        return list(self.lists.get(selector, []))

    def click(self, selector):
        self.calls.append(("click", selector))
        self.clicked.append(selector)

    def click_nth(self, selector, index):
        entries = self.lists.get(selector, [])
        if index >= len(entries):
            raise StepPreconditionError(f"Element {selector}[{index}] not found")
        self.calls.append(("click_nth", selector, index))
        self.clicked.append(entries[index])

    def click_and_wait_navigation(self, selector, timeout_ms=60_000):
        self.calls.append(("click_and_wait_navigation", selector))
        self.clicked.append(selector)
        if not self.nav_urls:
            raise NavigationTimeoutError(f"Navigation after clicking {selector} timed out")
        self.url = self.nav_urls.pop(0)

    def type(self, selector, text):
        self.calls.append(("type", selector))
        self.typed[selector] = text

    def select_option(self, selector, value):
        self.calls.append(("select_option", selector, value))
        self.selected[selector] = value

    def current_url(self):
        return self.url

    def screenshot(self, path):
        self.screenshots.append(path)

    def pause(self, ms):
        self.pauses.append(ms)

    def close(self):
        self.closed = True
