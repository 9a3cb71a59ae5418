"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under the versioned API prefix
(``/api/v1/health``).  ``/ready`` is a readiness probe at the application
root so orchestrators can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from billing_api import __version__
from billing_api.dependencies import BillingClientDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, client: BillingClientDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so load-balancers see the service as alive; the
    ``db`` and ``billing`` fields report dependency state.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "billing": "ok" if client.available else "unavailable",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep, client: BillingClientDep) -> JSONResponse:
    """Readiness probe.

    The database gates readiness (503 ``not_ready`` when unreachable).  An
    unconfigured billing provider only degrades it: status reads fail but
    the webhook endpoint and invoice views still work.
    """
    checks: dict[str, str] = {"db": "ok", "billing": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    if not client.available:
        checks["billing"] = "unavailable"
        if overall == "ready":
            overall = "degraded"

    return JSONResponse(
        status_code=200 if overall != "not_ready" else 503,
        content={"status": overall, "checks": checks},
    )
