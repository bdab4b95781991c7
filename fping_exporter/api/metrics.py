import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST

from fping_exporter.api.dependencies import get_registry
from fping_exporter.errors import RenderError
from fping_exporter.services import exposition
from fping_exporter.services.registry import Registry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "",
    response_class=Response,
    summary="Prometheus metrics",
)
async def metrics(registry: Registry = Depends(get_registry)) -> Response:
    """
    Render a fresh registry snapshot in the Prometheus text format.

    Nothing is cached: every scrape takes its own snapshot, so it reflects
    every sample ingested before the request arrived. Before the first
    sample only the exporter counters are present.
    """
    snapshot = registry.snapshot()
    try:
        body = exposition.render(snapshot)
    except RenderError as exc:
        logger.exception("scrape failed")
        raise HTTPException(
            status_code=500,
            detail=str(exc),
        ) from exc

    return Response(content=body, media_type=CONTENT_TYPE_LATEST)
