from fastapi import APIRouter

router = APIRouter(tags=["Monitoring"])


@router.get("/health")
async def health_check():
    """Liveness probe; does not touch the storage backend."""
    return {"status": "healthy"}
