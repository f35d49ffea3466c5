from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from apps.helpdesk.metrics import metrics_registry

router = APIRouter(tags=["observability"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def render_metrics() -> PlainTextResponse:
    return PlainTextResponse(metrics_registry.render_prometheus(), media_type="text/plain; version=0.0.4")
