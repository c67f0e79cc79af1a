"""Prometheus metrics endpoint"""

from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import PlainTextResponse

from forgejo_bridge.infrastructure.logging import get_logger
from forgejo_bridge.infrastructure.metrics import get_metrics, get_metrics_content_type

logger = get_logger(__name__)

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def get_prometheus_metrics():
    """
    Prometheus metrics endpoint

    Returns metrics in Prometheus text format.
    """
    try:
        metrics_data = get_metrics()
    except Exception as e:
        logger.error("metrics_generation_failed", error=str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate metrics",
        )

    return Response(
        content=metrics_data,
        media_type=get_metrics_content_type(),
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )
