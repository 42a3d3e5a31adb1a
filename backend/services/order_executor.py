"""Market order placement for a tick's decision.

Orders go through the exchange's native query-string HMAC signature; the
wallet scheme is not accepted for order placement.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_DOWN

from backend.schemas.trading import TradingRuntime
from backend.services.aster_signer import AsterSigner
from backend.services.decision_engine import Decision
from backend.services.market_data import MarketDataClient, parse_body
from backend.utils.constants import ORDER_COOLDOWN_MS, MIN_ORDER_NOTIONAL_USD, QTY_DECIMALS

logger = logging.getLogger(__name__)

ORDER_PATH = "/fapi/v1/order"
SIDES = {"LONG": "BUY", "SHORT": "SELL"}


@dataclass
class OrderRecord:
    status: int
    ok: bool
    symbol: str
    side: str
    qty: float
    notional: float
    body: object = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrderOutcome:
    attempted: bool
    skip_reason: str | None = None  # "flat", "no_api_key", "cooldown", "min_notional", "no_price"
    record: OrderRecord | None = None
    error: str | None = None


def order_quantity(notional: float, price: float, decimals: int = QTY_DECIMALS) -> float:
    """notional / price floored to ``decimals`` places, at least one step."""
    step = Decimal(1).scaleb(-decimals)
    qty = (Decimal(str(notional)) / Decimal(str(price))).quantize(step, rounding=ROUND_DOWN)
    return float(max(qty, step))


def cooldown_active(last_order_at: int | None, now: int, cooldown_ms: int = ORDER_COOLDOWN_MS) -> bool:
    return last_order_at is not None and now - last_order_at < cooldown_ms


class OrderExecutor:
    """Turns a LONG/SHORT decision into at most one market order."""

    def __init__(self, signer: AsterSigner, market: MarketDataClient):
        self.signer = signer
        self.market = market

    async def execute(self, decision: Decision, runtime: TradingRuntime, now: int) -> OrderOutcome:
        """Place the order unless a guard says no.

        On success ``runtime.last_order_at`` and ``runtime.last_signal`` are
        updated in place. Failures come back in the outcome, never raised.
        """
        side = SIDES.get(decision.action)
        if side is None or decision.size_usd <= 0:
            return OrderOutcome(attempted=False, skip_reason="flat")
        if not self.signer.has_api_key:
            return OrderOutcome(attempted=False, skip_reason="no_api_key")
        if cooldown_active(runtime.last_order_at, now):
            logger.info(f"[{decision.symbol}] Order skipped: cooldown since {runtime.last_order_at}")
            return OrderOutcome(attempted=False, skip_reason="cooldown")
        notional = decision.size_usd
        if notional < MIN_ORDER_NOTIONAL_USD:
            return OrderOutcome(attempted=False, skip_reason="min_notional")

        try:
            price = await self.market.ticker_price(decision.symbol)
            if not price:
                return OrderOutcome(attempted=False, skip_reason="no_price")

            qty = order_quantity(notional, price)
            response = await self.signer.signed_post(ORDER_PATH, {
                "symbol": decision.symbol,
                "side": side,
                "type": "MARKET",
                "quantity": qty,
            })
            record = OrderRecord(
                status=response.status_code,
                ok=response.is_success,
                symbol=decision.symbol,
                side=side,
                qty=qty,
                notional=notional,
                body=parse_body(response),
            )
        except Exception as e:
            logger.error(f"[{decision.symbol}] Order failed: {e}")
            return OrderOutcome(attempted=True, error=f"{type(e).__name__}: {e}")

        if record.ok:
            runtime.last_order_at = now
            runtime.last_signal = decision.action
            logger.info(f"[{decision.symbol}] {side} {qty} (${notional:.0f}) placed")
        else:
            logger.error(f"[{decision.symbol}] Order rejected: HTTP {record.status} {record.body}")
        return OrderOutcome(attempted=True, record=record)
