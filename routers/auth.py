import logging
from typing import Optional, Tuple

from fastapi import HTTPException, Request


def extract_secret(request: Request, body_secret: Optional[str] = None) -> Tuple[str, str]:
    """Extract the shared secret from header, query or body, in that order."""
    header_secret = request.headers.get("x-job-secret", "").strip()
    if header_secret:
        return header_secret, "header"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    if body_secret:
        body_secret = str(body_secret).strip()
        if body_secret:
            return body_secret, "body"

    return "", "missing"


def ensure_request_authorized(
    request: Request,
    job_secret: str,
    logger: logging.Logger,
    *,
    body_secret: Optional[str] = None,
) -> str:
    """Validate the shared secret; no secret configured means no auth required."""
    endpoint = request.url.path
    if not job_secret:
        return "not_required"

    provided, source = extract_secret(request, body_secret=body_secret)
    if provided != job_secret:
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            endpoint,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source
