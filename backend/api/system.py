"""System API: health check, scheduler status, exchange auth diagnostics."""

import httpx
from fastapi import APIRouter, Depends

from backend.api.deps import get_market_client, require_admin
from backend.config import settings
from backend.services.aster_signer import ConfigurationError, wallet_address
from backend.services.market_data import MarketDataClient, WALLET_ACCOUNT_PATH, WALLET_POSITIONS_PATH

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler")
def scheduler_status():
    """Current scheduler state with job details."""
    from backend.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.get("/exchange-debug")
def exchange_debug():
    """Which credential schemes are configured. Never returns secrets."""
    address = None
    wallet_error = None
    if settings.aster_private_key:
        try:
            address = wallet_address(settings.aster_private_key.strip())
        except Exception as e:
            wallet_error = type(e).__name__
    return {
        "base": settings.aster_api_base or None,
        "wallet": {"enabled": bool(settings.aster_private_key), "address": address, "error": wallet_error},
        "api_key": {"enabled": bool(settings.aster_api_key and settings.aster_api_secret)},
    }


@router.get("/exchange-test", dependencies=[Depends(require_admin)])
async def exchange_test(market: MarketDataClient = Depends(get_market_client)):
    """Probe account and positions through the header-signed fallback chain."""
    results = {"base": bool(settings.aster_api_base)}
    for name, path in (("account", WALLET_ACCOUNT_PATH), ("positions", WALLET_POSITIONS_PATH)):
        try:
            r = await market.signer.request("GET", path)
            results[name] = {"status": r.status_code, "ok": r.is_success, "path": r.request.url.path}
        except (ConfigurationError, httpx.HTTPError) as e:
            results[name] = {"error": str(e)}
    return results
