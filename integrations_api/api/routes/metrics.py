from fastapi import APIRouter, Response

from integrations_api.core.metrics import render_latest

router = APIRouter()


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Metrics in Prometheus exposition format."""
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)
