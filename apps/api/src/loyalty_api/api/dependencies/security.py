from fastapi import Header, HTTPException, Request, status


async def require_checkout_api_key(
    request: Request,
    x_api_key: str = Header("", alias="X-API-Key"),
) -> None:
    """Guard collaborator-only routes (payment webhook, signup flow, telemetry)."""

    expected = request.app.state.settings.checkout_api_key
    if not expected:
        return

    if x_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
