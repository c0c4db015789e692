"""HTTP routes: health probe and conversion history."""
import asyncio
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from s3webp.application import Application

logger = logging.getLogger("s3webp.api")
router = APIRouter(prefix="/api", tags=["converter"])


def get_application(request: Request) -> Application:
    return request.app.state.application


@router.get("/health")
async def health(application: Application = Depends(get_application)):
    try:
        # boto3 calls block; keep them off the event loop
        status = await asyncio.to_thread(application.health)
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        return JSONResponse({"status": "unhealthy", "error": "Health check failed"}, status_code=503)
    code = 503 if status["status"] == "unhealthy" else 200
    return JSONResponse(status, status_code=code)


@router.get("/conversions")
def conversions(
    limit: int = Query(10, ge=0, le=1000),
    application: Application = Depends(get_application),
):
    """Number of converted images and the most recent records."""
    records = application.ledger.get_records()
    recent = records[-limit:] if limit else []
    return {
        "total": len(application.ledger),
        "recent": [r.to_dict() for r in reversed(recent)],
    }
