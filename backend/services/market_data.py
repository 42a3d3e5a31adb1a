"""Market data fetching.

Candles and prices come from the public Binance-style endpoints. Account and
position snapshots are private: they use the query-signed endpoints when an
API-key pair is configured, otherwise the header-signed request with
endpoint fallback.

Every read returns None / an empty series on failure. Callers treat missing
data as "skip this symbol/tick", never as fatal.
"""

import logging
import math

import httpx
import pandas as pd

from backend.services.aster_signer import AsterSigner, ConfigurationError
from backend.utils.constants import KLINE_INTERVAL, KLINE_LIMIT

logger = logging.getLogger(__name__)

ACCOUNT_PATH = "/fapi/v2/account"
POSITION_RISK_PATH = "/fapi/v2/positionRisk"
WALLET_ACCOUNT_PATH = "/v1/futures/account"
WALLET_POSITIONS_PATH = "/v1/futures/positions"


def parse_body(response: httpx.Response):
    """JSON body, or {"raw": text} when the exchange did not send JSON."""
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


class MarketDataClient:
    """Typed reads over the Aster signer."""

    def __init__(self, signer: AsterSigner):
        self.signer = signer

    async def _get_json(self, label: str, call):
        try:
            response = await call()
        except ConfigurationError as e:
            logger.warning(f"{label}: {e}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"{label} request failed: {type(e).__name__}: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"{label}: HTTP {response.status_code}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"{label}: unparseable body")
            return None

    async def klines(
        self, symbol: str, interval: str = KLINE_INTERVAL, limit: int = KLINE_LIMIT
    ) -> pd.Series:
        """Close price series for ``symbol``, oldest first."""
        data = await self._get_json(
            f"klines {symbol}",
            lambda: self.signer.public_get(
                "/fapi/v1/klines", {"symbol": symbol, "interval": interval, "limit": limit}
            ),
        )
        return _parse_klines(data)

    async def ticker_price(self, symbol: str) -> float | None:
        data = await self._get_json(
            f"ticker {symbol}",
            lambda: self.signer.public_get("/fapi/v1/ticker/price", {"symbol": symbol}),
        )
        if not isinstance(data, dict):
            return None
        try:
            price = float(data.get("price") or 0)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(price):
            logger.warning(f"ticker {symbol}: non-finite price {data.get('price')!r}")
            return None
        return price if price > 0 else None

    async def account(self) -> dict | None:
        if self.signer.has_api_key:
            call = lambda: self.signer.signed_get(ACCOUNT_PATH)
        else:
            call = lambda: self.signer.request("GET", WALLET_ACCOUNT_PATH)
        data = await self._get_json("account", call)
        return data if isinstance(data, dict) else None

    async def positions(self) -> list | None:
        if self.signer.has_api_key:
            call = lambda: self.signer.signed_get(POSITION_RISK_PATH)
        else:
            call = lambda: self.signer.request("GET", WALLET_POSITIONS_PATH)
        data = await self._get_json("positions", call)
        if isinstance(data, dict) and isinstance(data.get("positions"), list):
            return data["positions"]
        return data if isinstance(data, list) else None

    async def available_balance(self) -> float:
        """Available balance in USD; 0.0 when the account cannot be read."""
        acct = await self.account()
        if not acct:
            return 0.0
        try:
            balance = float(acct.get("availableBalance") or 0)
        except (TypeError, ValueError):
            balance = math.nan
        if not math.isfinite(balance):
            logger.warning(f"Unexpected availableBalance: {acct.get('availableBalance')!r}")
            return 0.0
        return balance

    # -- live pass-through for the HTTP surface ------------------------------

    async def account_raw(self) -> tuple[int, object]:
        """Status and body of the account endpoint. Raises ConfigurationError."""
        response = await self.signer.signed_get(ACCOUNT_PATH)
        return response.status_code, parse_body(response)

    async def positions_raw(self) -> tuple[int, object]:
        response = await self.signer.signed_get(POSITION_RISK_PATH)
        return response.status_code, parse_body(response)


def open_positions(raw_positions: list | None) -> list[dict]:
    """Non-zero positions reduced to symbol/side/size/entry price."""
    out = []
    for pos in raw_positions or []:
        if not isinstance(pos, dict):
            continue
        try:
            amount = float(pos.get("positionAmt") or pos.get("size") or 0)
            entry_price = float(pos.get("entryPrice") or 0)
            unrealized = float(pos.get("unRealizedProfit") or 0)
        except (TypeError, ValueError):
            continue
        if abs(amount) < 1e-12:
            continue
        out.append({
            "symbol": pos.get("symbol"),
            "side": "long" if amount > 0 else "short",
            "size": abs(amount),
            "entry_price": entry_price,
            "unrealized_pnl": unrealized,
        })
    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_klines(klines) -> pd.Series:
    """Parse Binance-style klines into a close price Series.

    Each kline: [open_time_ms, open, high, low, close, volume, close_time, ...]
    """
    try:
        if not isinstance(klines, list) or not klines:
            return pd.Series(dtype=float)

        records = [{"t": k[0], "close": k[4]} for k in klines if isinstance(k, list) and len(k) > 4]

        df = pd.DataFrame(records)
        if df.empty:
            return pd.Series(dtype=float)

        df["t"] = pd.to_datetime(df["t"], unit="ms", utc=True)
        df["close"] = pd.to_numeric(df["close"], errors="coerce")
        df = df.set_index("t").sort_index()
        return df["close"].dropna()
    except Exception as e:
        logger.error(f"Failed to parse klines: {e}")
        return pd.Series(dtype=float)
