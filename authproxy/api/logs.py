from fastapi import APIRouter, Depends, HTTPException, Request
import json
import logging

from authproxy.models.auth import Claims
from authproxy.services.ingestion_service import IngestionService

logger = logging.getLogger("authproxy.api.logs")

router = APIRouter(tags=["Ingestion"])


def _reject_constant(token: str):
    raise ValueError(f"{token} is not valid JSON")


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def get_claims(request: Request) -> Claims:
    claims = getattr(request.state, "claims", None)
    if claims is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return claims


@router.post("/logs", status_code=202)
async def ingest_logs(
    request: Request,
    claims: Claims = Depends(get_claims),
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    Accept a JSON array of log objects for asynchronous delivery.

    The response only confirms that records were handed to the batching
    engine; storage failures after that point are not reported back.
    """
    try:
        logs = json.loads(await request.body(), parse_constant=_reject_constant)
    except ValueError:
        raise HTTPException(status_code=400, detail="Bad request: invalid JSON")

    if not isinstance(logs, list):
        raise HTTPException(
            status_code=400, detail="Bad request: expected a JSON array of log objects"
        )
    if not all(isinstance(entry, dict) for entry in logs):
        raise HTTPException(
            status_code=400, detail="Bad request: every log entry must be a JSON object"
        )

    tenant_id = claims.tenant_id
    accepted = await service.enqueue(tenant_id, logs)
    logger.info(f"Authenticated request from account {tenant_id}: {accepted}/{len(logs)} logs queued")

    return {"status": "accepted"}
