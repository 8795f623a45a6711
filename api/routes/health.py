# api/routes/health.py
from fastapi import APIRouter, Depends

from api.dependencies import get_engine
from services.engine import EngineHealth

router = APIRouter()

@router.get("/health", response_model=EngineHealth)
async def health_check(engine=Depends(get_engine)):
    """
    Health check endpoint for load balancers and monitoring.

    Reports the database, published-post counts, the system license
    generation, the notification relay and the number of thread locks in use.
    """
    return await engine.health()
