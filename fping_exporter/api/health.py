from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fping_exporter.api.dependencies import get_registry
from fping_exporter.models.health import HealthStatus
from fping_exporter.models.registry import ProberState
from fping_exporter.services.registry import Registry

router = APIRouter()


@router.get(
    "",
    response_model=HealthStatus,
    responses={503: {"model": HealthStatus}},
    summary="Exporter health",
)
async def health(registry: Registry = Depends(get_registry)):
    """
    Report the fping lifecycle state and the exporter counters.

    Returns HTTP 503 once the supervisor gave up on fping; restarts in
    progress still count as healthy because the last known samples are
    being served.
    """
    snapshot = registry.snapshot()
    is_fatal = snapshot.prober_state is ProberState.FATAL
    status = HealthStatus(
        status="failed" if is_fatal else "ok",
        prober_state=snapshot.prober_state,
        prober_version=snapshot.prober_version,
        prober_uptime_seconds=snapshot.prober_uptime_seconds,
        restarts=snapshot.restarts,
        samples_ingested=snapshot.samples_ingested,
        parse_errors=snapshot.parse_errors,
        targets=len(snapshot.targets),
    )
    if is_fatal:
        return JSONResponse(status_code=503, content=status.model_dump(mode="json"))
    return status
