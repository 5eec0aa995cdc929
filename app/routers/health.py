"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
import logging

from app.dependencies.services import get_assistant, get_metadata_store
from app.models.schemas import HealthCheckResponse
from app.services.metadata_store import MetadataStore
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    store: MetadataStore = Depends(get_metadata_store),
    assistant=Depends(get_assistant),
):
    """
    Health check endpoint to verify system status.

    Returns:
        HealthCheckResponse with status of the metadata database and the assistant
    """
    db_status = "ok"
    try:
        if not await store.ping():
            db_status = "error"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "error"

    assistant_status = "ok"
    try:
        if not await assistant.check_health():
            assistant_status = "error"
    except Exception as e:
        logger.error("Assistant health check failed: %s", e)
        assistant_status = "error"

    overall_status = "healthy" if db_status == "ok" and assistant_status == "ok" else "degraded"

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        assistant=assistant_status,
        timestamp=utcnow(),
    )
