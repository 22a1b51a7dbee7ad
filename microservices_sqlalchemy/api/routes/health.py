import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from microservices_sqlalchemy.core.health import HealthCheckRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    """Liveness probe: the process is up and serving."""
    return {"ok": True}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    """Readiness probe: runs every registered health check.

    Returns:
      - 200 when every check passes
      - 503 when any check fails

    Failure reasons are logged, never returned to the caller.
    """
    registry: HealthCheckRegistry = request.app.state.services.get(HealthCheckRegistry)
    results = await registry.run_all()
    ok = all(result.healthy for result in results)
    checks = {result.name: "ok" if result.healthy else "unavailable" for result in results}
    if not ok:
        logger.warning("Readiness check failed", extra={"checks": checks})
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ok": ok, **checks},
    )
