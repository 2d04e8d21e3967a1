from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter()


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"


@router.get("/", response_model=HealthStatus)
@router.get("/health", response_model=HealthStatus)
@router.get("/healthz", response_model=HealthStatus)
async def healthz() -> HealthStatus:
    """Liveness only; the store and broker are not checked."""
    return HealthStatus()
