from typing import Optional


class PurchaseFlowError(RuntimeError):
    """Base error for a purchase run; carries the step where it was raised."""

    def __init__(self, message: str, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step


class RequestLoadError(PurchaseFlowError):
    """Purchase request is missing, unreadable or malformed."""


class AuthenticationError(PurchaseFlowError):
    """Post-login marker never appeared and no challenge screen was found."""


class InterruptionSignal(PurchaseFlowError):
    """A challenge screen blocks automated progress until a human solves it."""

    def __init__(self, message: str, step: Optional[str] = None, kind: str = "CAPTCHA") -> None:
        super().__init__(message, step=step)
        self.kind = kind


class SaleNotYetOpenError(PurchaseFlowError):
    """Sale page kept showing the not-on-sale placeholder after every reload."""


class SalePageServerError(PurchaseFlowError):
    def __init__(self, message: str, status: int, step: Optional[str] = None) -> None:
        super().__init__(message, step=step)
        self.status = status


class StepPreconditionError(PurchaseFlowError):
    """An element the step depends on is absent from the page."""


class NavigationTimeoutError(PurchaseFlowError):
    """A bounded wait for a marker or a navigation expired."""
