"""Health & Readiness — liveness plus the checks a run depends on.

Invariants:
    - GET /health/ always returns 200 if the process is up (liveness)
    - GET /health/ready returns 200 only when the target database answers and the
      agent runner is built; otherwise 503 listing every failing check
    - Readiness reports the capabilities the model will be offered and how many runs
      are currently tracked

Design Decisions:
    - Separate liveness/readiness: liveness restarts, readiness removes from load balancer
    - All checks run on every call and are reported together, so one 503 names
      every missing dependency
"""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from sqlagent.api.routes import runs
from sqlagent.infrastructure import database

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])

HEALTHY = "healthy"
UNAVAILABLE = "unavailable"


@router.get("/", status_code=status.HTTP_200_OK)
async def health_check():
    """Liveness. Returns 200 if the process is up."""
    return {
        "status": HEALTHY,
        "service": "sqlagent-api",
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness: database connectivity and a built agent runner."""
    gateway = database.db_gateway
    runner = getattr(request.app.state, "agent_runner", None)
    db_ok = await gateway.health_check() if gateway else False
    checks = {
        "database": HEALTHY if db_ok else UNAVAILABLE,
        "agent_runner": HEALTHY if runner is not None else UNAVAILABLE,
    }
    failing = [name for name, state in checks.items() if state != HEALTHY]
    if failing:
        logger.warning("Readiness check failed: %s", ", ".join(failing))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": checks, "failing": failing},
        )
    return {
        "status": "ready",
        "checks": checks,
        "capabilities": runner.registry.names,
        "tracked_runs": runs.tracked_run_count(),
    }
