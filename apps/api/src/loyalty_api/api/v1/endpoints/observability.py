from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from loyalty_api.api.dependencies.security import require_checkout_api_key


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Loyalty pipeline counters for this process",
)
async def loyalty_observability_snapshot(request: Request) -> dict[str, object]:
    store = request.app.state.loyalty_telemetry
    return store.snapshot().as_dict()
