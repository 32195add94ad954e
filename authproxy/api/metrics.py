from fastapi import APIRouter, Depends

from authproxy.api.logs import get_ingestion_service
from authproxy.models.ingestion import IngestionStats
from authproxy.services.ingestion_service import IngestionService

router = APIRouter(tags=["Monitoring"])


@router.get("/metrics", response_model=IngestionStats)
async def ingestion_metrics(
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestionStats:
    """Counters for accepted, dropped, flushed and failed records."""
    return service.snapshot()
