import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from agents.purchase_agent.service import PurchaseAgentService
from routers.auth import ensure_request_authorized

logger = logging.getLogger("purchase_runner.purchase_router")


class PurchaseRunRequest(BaseModel):
    """Payload to start a purchase run in the background."""

    request_path: str = "purchase-info.json"
    headless: bool = True
    schedule: bool = False
    run_id: Optional[str] = None
    dry_run: bool = False
    secret: Optional[str] = None


def create_purchase_router(
    service: PurchaseAgentService,
    job_secret: str,
    base_dir: Optional[Path] = None,
) -> APIRouter:
    """Build the purchase HTTP router; every call is delegated to the service."""
    router = APIRouter(prefix="/purchase", tags=["purchase-agent"])
    root = Path(base_dir) if base_dir is not None else service.data_dir

    def ensure_auth(request: Request, body_secret: Optional[str] = None) -> None:
        ensure_request_authorized(request, job_secret, logger, body_secret=body_secret)

    @router.post("/run")
    def run(req: PurchaseRunRequest, request: Request):
        """Start a purchase run; returns immediately with the run id."""
        ensure_auth(request, body_secret=req.secret)
        request_path = Path(req.request_path)
        if not request_path.is_absolute():
            request_path = root / request_path

        try:
            return service.start_background_run(
                request_path,
                headless=req.headless,
                schedule=req.schedule,
                run_id=req.run_id,
                dry_run=req.dry_run,
            )
        except RuntimeError as err:
            logger.warning("Run rejected: %s", err)
            raise HTTPException(status_code=409, detail=str(err)) from err

    @router.get("/status")
    def status(request: Request):
        ensure_auth(request)
        return service.get_status()

    @router.get("/events")
    def events(request: Request, limit: int = 200, day: str = ""):
        """Recent runtime events (persisted jsonl)."""
        ensure_auth(request)
        return service.get_runtime_events(limit=limit, day=day)

    @router.post("/continue")
    def continue_run(request: Request):
        """Release a run waiting for manual intervention."""
        ensure_auth(request)
        try:
            logger.info("Continue signal requested on %s", request.url.path)
            return service.deliver_continue()
        except RuntimeError as err:
            logger.warning("Continue signal rejected: %s", err)
            raise HTTPException(status_code=409, detail=str(err)) from err

    @router.get("/runs")
    def runs(request: Request, limit: int = 50):
        ensure_auth(request)
        return service.list_runs(limit=limit)

    @router.get("/runs/{log_id}")
    def run_detail(log_id: str, request: Request):
        ensure_auth(request)
        try:
            return service.get_run(log_id)
        except FileNotFoundError as err:
            raise HTTPException(status_code=404, detail=f"Run log not found: {log_id}") from err
        except RuntimeError as err:
            raise HTTPException(status_code=400, detail=str(err)) from err

    return router
