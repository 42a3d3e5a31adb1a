"""Single-pass decision for one tick.

Scanning -> resolved by signal | resolved by LLM -> clamped. Logging of the
result is the orchestrator's job.

Symbols are scanned in universe order and the first one with a signal wins.
Only when no symbol signals is the language model consulted, and its answer
is validated against the universe and the allowed actions before use.
"""

import logging
import math
from dataclasses import dataclass, asdict

from backend.schemas.trading import TradingConfig
from backend.services.llm_client import LLMUnavailableError
from backend.services.signal_engine import evaluate_closes
from backend.utils.constants import SIZE_FRACTION, SIGNAL_MODEL, VALID_ACTIONS

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    action: str  # "LONG", "SHORT", "FLAT"
    symbol: str
    size_usd: float
    notes: str = ""
    provider: str = "signals"
    model: str = SIGNAL_MODEL
    resolved_by: str = "signal"  # "signal" or "llm"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DecisionOutcome:
    decision: Decision
    signals: dict
    prompt: dict | None = None  # provider/model/system prompt when the LLM was asked


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------

def clamp_signal_size(available_balance: float, max_risk_per_trade_usd: float) -> float:
    """min(max risk, max(0, floor(balance * fraction)))."""
    if not math.isfinite(available_balance):
        return 0.0
    budget = max(0, math.floor(available_balance * SIZE_FRACTION))
    return float(min(max_risk_per_trade_usd, budget))


def clamp_llm_size(raw_size, max_exposure_usd: float) -> float:
    """min(model size, max exposure), never negative; junk sizes become 0."""
    try:
        size = float(raw_size)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(size) or math.isinf(size):
        return 0.0
    return max(0.0, min(size, max_exposure_usd))


def validate_verdict(parsed: dict, universe: list[str]) -> tuple[str, str]:
    """Replace an unknown action with FLAT and an unknown symbol with universe[0]."""
    action = parsed.get("action")
    if not isinstance(action, str) or action.upper() not in VALID_ACTIONS:
        action = "FLAT"
    symbol = parsed.get("symbol")
    if not isinstance(symbol, str) or symbol not in universe:
        symbol = universe[0]
    return action.upper(), symbol


def _safe(v: float) -> float | None:
    return None if v is None or math.isnan(v) or math.isinf(v) else round(v, 6)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

async def scan_universe(universe: list[str], fetch_closes) -> tuple[str, str, dict]:
    """First symbol with a signal, in universe order.

    ``fetch_closes(symbol)`` is awaited lazily, so symbols after the match
    are never fetched. Returns (action, symbol, per-symbol indicator snapshot).
    """
    snapshot: dict[str, dict] = {}
    for symbol in universe:
        closes = await fetch_closes(symbol)
        result = evaluate_closes(closes if closes is not None else [])
        snapshot[symbol] = {
            "closes": len(closes) if closes is not None else 0,
            "fast": _safe(result.fast),
            "slow": _safe(result.slow),
            "rsi": _safe(result.rsi),
            "skip": result.skip_reason,
        }
        if result.action:
            logger.info(
                f"[{symbol}] {result.action} fast={result.fast:.4f} "
                f"slow={result.slow:.4f} rsi={result.rsi:.1f}"
            )
            return result.action, symbol, snapshot
    return "FLAT", universe[0], snapshot


async def decide(
    config: TradingConfig,
    available_balance: float,
    state: dict,
    fetch_closes,
    decider,
) -> DecisionOutcome:
    """Run the scan, fall back to the LLM when flat, and clamp the size."""
    action, symbol, snapshot = await scan_universe(config.universe, fetch_closes)

    if action != "FLAT":
        size = clamp_signal_size(available_balance, config.max_risk_per_trade_usd)
        return DecisionOutcome(Decision(action, symbol, size), signals=snapshot)

    try:
        verdict = await decider.decide(state, config)
    except LLMUnavailableError as e:
        logger.warning(f"No signal and LLM unavailable, staying flat: {e}")
        decision = Decision(
            "FLAT", config.universe[0], 0.0,
            notes=f"llm_unavailable: {e}",
            provider="none", model=config.model, resolved_by="llm",
        )
        return DecisionOutcome(decision, signals=snapshot)

    action, symbol = validate_verdict(verdict.parsed, config.universe)
    raw_size = verdict.parsed.get("size_usd", verdict.parsed.get("sizeUsd"))
    notes = verdict.parsed.get("notes")
    decision = Decision(
        action,
        symbol,
        min(clamp_llm_size(raw_size, config.max_exposure_usd), config.max_risk_per_trade_usd),
        notes=str(notes)[:500] if notes else "",
        provider=verdict.provider,
        model=verdict.model,
        resolved_by="llm",
    )
    prompt = {
        "provider": verdict.provider,
        "model": verdict.model,
        "sys": verdict.system_prompt,
        "state": verdict.state_summary,
    }
    return DecisionOutcome(decision, signals=snapshot, prompt=prompt)
