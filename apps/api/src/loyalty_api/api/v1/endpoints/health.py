from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.session import get_session


router = APIRouter()


class ReadinessPayload(BaseModel):
    status: Literal["ready", "error"]
    database: Literal["ready", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> JSONResponse:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness probe failed", error=str(exc))
        payload = ReadinessPayload(status="error", database="error", detail="Loyalty store unreachable")
        return JSONResponse(status_code=503, content=payload.model_dump())

    return JSONResponse(content=ReadinessPayload(status="ready", database="ready").model_dump())
