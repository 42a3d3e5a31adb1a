"""Trading API: status, run/stop, manual tick, logs, equity, live exchange reads."""

import logging

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from backend.api.deps import get_store, get_market_client, get_tick_runner, require_admin
from backend.schemas.trading import RunRequest
from backend.services.aster_signer import ConfigurationError
from backend.services.market_data import MarketDataClient
from backend.services.state_store import StateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trading", tags=["trading"])


@router.get("/status")
def trading_status(store: StateStore = Depends(get_store)):
    return {
        "ok": True,
        "config": store.load_config().model_dump(),
        "runtime": store.load_runtime().model_dump(),
    }


@router.post("/run", dependencies=[Depends(require_admin)])
def run_trading(
    body: RunRequest | None = Body(default=None),
    store: StateStore = Depends(get_store),
):
    """Merge body fields into the config and set it running."""
    config = (body or RunRequest()).apply_to(store.load_config())
    store.save_config(config)
    store.append_log("status", status="running")
    logger.info(f"Trading started: universe={','.join(config.universe)}")
    return {"ok": True, "config": config.model_dump()}


@router.post("/stop", dependencies=[Depends(require_admin)])
def stop_trading(store: StateStore = Depends(get_store)):
    config = store.load_config().model_copy(update={"status": "stopped"})
    store.save_config(config)
    store.append_log("status", status="stopped")
    logger.info("Trading stopped")
    return {"ok": True, "config": config.model_dump()}


@router.post("/tick")
async def trigger_tick(run_tick=Depends(get_tick_runner)):
    """Run one tick now, honouring the stopped status."""
    return await run_tick()


@router.get("/logs")
def trading_logs(limit: int = 200, store: StateStore = Depends(get_store)):
    return {"logs": store.read_logs(limit)}


@router.get("/equity")
def trading_equity(limit: int = 1000, store: StateStore = Depends(get_store)):
    return {"equity": store.read_equity(limit)}


@router.get("/events")
def trading_events(limit: int = 200, store: StateStore = Depends(get_store)):
    return {"events": store.read_events(limit)}


async def _pass_through(label: str, call) -> JSONResponse:
    try:
        status_code, body = await call()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except httpx.HTTPError as e:
        logger.error(f"{label} pass-through failed: {e}")
        raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
    return JSONResponse(
        status_code=status_code,
        content={"status": status_code, "ok": 200 <= status_code < 300, "body": body},
    )


@router.get("/positions")
async def live_positions(market: MarketDataClient = Depends(get_market_client)):
    """Live position snapshot straight from the exchange."""
    return await _pass_through("positions", market.positions_raw)


@router.get("/balances")
async def live_balances(market: MarketDataClient = Depends(get_market_client)):
    """Live account snapshot straight from the exchange."""
    return await _pass_through("balances", market.account_raw)
