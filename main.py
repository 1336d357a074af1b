import logging

from fastapi import FastAPI

from agents.purchase_agent.flow import FlowSelectors
from agents.purchase_agent.service import PurchaseAgentService
from routers.purchase_agent import create_purchase_router
from settings import (
    DATA_DIR,
    HEADLESS,
    JOB_SECRET,
    SELECTOR_OVERRIDES,
    TIMEZONE,
    WEBHOOK_URL_FINAL,
    WEBHOOK_URL_STATUS,
    apply_timezone,
)


logger = logging.getLogger("purchase_runner")

DATA_DIR.mkdir(parents=True, exist_ok=True)
apply_timezone()

APP = FastAPI(title="Ticket Purchase Runner")

purchase_service = PurchaseAgentService(
    data_dir=DATA_DIR,
    logger=logging.getLogger("purchase_runner.purchase_agent"),
    webhook_status_url=WEBHOOK_URL_STATUS,
    webhook_final_url=WEBHOOK_URL_FINAL,
    selectors=FlowSelectors.from_overrides(SELECTOR_OVERRIDES, logger=logger),
)

APP.include_router(create_purchase_router(purchase_service, JOB_SECRET))


@APP.get("/health")
def health():
    """Health check plus the effective configuration (without secrets)."""
    return {
        "ok": True,
        "data_dir": str(DATA_DIR),
        "has_job_secret": bool(JOB_SECRET),
        "has_webhook_status": bool(WEBHOOK_URL_STATUS),
        "has_webhook_final": bool(WEBHOOK_URL_FINAL),
        "headless_default": HEADLESS,
        "timezone": TIMEZONE,
        "active_run": purchase_service.has_active_run(),
    }
