"""Shared API dependencies."""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from backend.config import settings
from backend.database import engine
from backend.services.aster_signer import build_signer
from backend.services.market_data import MarketDataClient
from backend.services.state_store import StateStore

admin_key_header = APIKeyHeader(name="x-admin-key", auto_error=False)


def get_store() -> StateStore:
    return StateStore(engine)


async def get_market_client():
    """Market data client whose signer lives for one request."""
    async with build_signer(settings) as signer:
        yield MarketDataClient(signer)


def get_tick_runner():
    from backend.engine.tick import run_tick
    return run_tick


def require_admin(key: str | None = Depends(admin_key_header)) -> None:
    """Reject unless x-admin-key matches the configured admin key."""
    expected = settings.admin_key
    if not expected or not key or not hmac.compare_digest(key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="forbidden",
        )
