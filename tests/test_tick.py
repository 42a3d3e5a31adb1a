"""Tests for the tick orchestrator and the order executor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from backend.engine.tick import TickEngine
from backend.schemas.trading import TradingConfig, TradingRuntime
from backend.services.decision_engine import Decision
from backend.services.llm_client import LLMUnavailableError, LLMVerdict
from backend.services.order_executor import (
    ORDER_PATH,
    OrderExecutor,
    cooldown_active,
    order_quantity,
)
from backend.utils.constants import ORDER_COOLDOWN_MS
from tests.series import uptrend, downtrend, flat


def _market(series=None, balance=2000.0, price=50_000.0, positions=None):
    series = series or {}
    market = MagicMock()
    market.available_balance = AsyncMock(return_value=balance)
    market.positions = AsyncMock(return_value=positions or [])
    market.klines = AsyncMock(side_effect=lambda symbol, *a, **kw: series.get(symbol))
    market.ticker_price = AsyncMock(return_value=price)
    return market


def _signer(has_api_key=True, response=None, error=None):
    signer = MagicMock()
    signer.has_api_key = has_api_key
    if error is not None:
        signer.signed_post = AsyncMock(side_effect=error)
    else:
        signer.signed_post = AsyncMock(
            return_value=response or httpx.Response(200, json={"orderId": 1, "status": "NEW"})
        )
    return signer


def _unavailable_decider():
    decider = AsyncMock()
    decider.decide.side_effect = LLMUnavailableError("LLM API key missing")
    return decider


def _engine(store, clock, market, signer=None, decider=None):
    signer = signer or _signer()
    decider = decider or _unavailable_decider()
    return TickEngine(
        store=store,
        market=market,
        executor=OrderExecutor(signer, market),
        decider=decider,
        clock=clock,
        lock=asyncio.Lock(),
    )


def _logs_of(store, entry_type):
    return [e for e in store.read_logs(500) if e["type"] == entry_type]


# ---------------------------------------------------------------------------
# 1. Order executor
# ---------------------------------------------------------------------------

class TestOrderQuantity:
    def test_floored_to_four_decimals(self):
        assert order_quantity(50.0, 30_000.0) == 0.0016

    def test_never_below_one_step(self):
        assert order_quantity(5.0, 1_000_000.0) == 0.0001

    def test_exact_division(self):
        assert order_quantity(100.0, 2.0) == 50.0


class TestCooldown:
    def test_no_previous_order(self):
        assert not cooldown_active(None, 1_000)

    def test_inside_window(self):
        assert cooldown_active(1_000, 1_000 + ORDER_COOLDOWN_MS - 1)

    def test_window_elapsed(self):
        assert not cooldown_active(1_000, 1_000 + ORDER_COOLDOWN_MS)


class TestOrderExecutor:
    @pytest.mark.asyncio
    async def test_long_submits_market_buy_and_updates_runtime(self):
        signer, market = _signer(), _market(price=25_000.0)
        runtime = TradingRuntime()
        outcome = await OrderExecutor(signer, market).execute(
            Decision("LONG", "BTCUSDT", 50.0), runtime, now=123
        )
        assert outcome.attempted and outcome.record.ok
        signer.signed_post.assert_awaited_once_with(ORDER_PATH, {
            "symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": 0.002,
        })
        assert runtime.last_order_at == 123
        assert runtime.last_signal == "LONG"

    @pytest.mark.asyncio
    async def test_short_maps_to_sell(self):
        signer = _signer()
        await OrderExecutor(signer, _market()).execute(Decision("SHORT", "ETHUSDT", 10.0), TradingRuntime(), now=1)
        assert signer.signed_post.await_args.args[1]["side"] == "SELL"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision, reason", [
        (Decision("FLAT", "BTCUSDT", 100.0), "flat"),
        (Decision("LONG", "BTCUSDT", 0.0), "flat"),
        (Decision("LONG", "BTCUSDT", 4.99), "min_notional"),
    ])
    async def test_guards_skip_without_submitting(self, decision, reason):
        signer = _signer()
        outcome = await OrderExecutor(signer, _market()).execute(decision, TradingRuntime(), now=1)
        assert (outcome.attempted, outcome.skip_reason) == (False, reason)
        signer.signed_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        signer = _signer(has_api_key=False)
        outcome = await OrderExecutor(signer, _market()).execute(Decision("LONG", "BTCUSDT", 50.0), TradingRuntime(), now=1)
        assert outcome.skip_reason == "no_api_key"
        signer.signed_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_cooldown_blocks(self):
        signer = _signer()
        runtime = TradingRuntime(last_order_at=1_000)
        outcome = await OrderExecutor(signer, _market()).execute(
            Decision("LONG", "BTCUSDT", 50.0), runtime, now=1_000 + 60_000
        )
        assert outcome.skip_reason == "cooldown"
        assert runtime.last_order_at == 1_000

    @pytest.mark.asyncio
    async def test_missing_price_skips(self):
        signer = _signer()
        outcome = await OrderExecutor(signer, _market(price=None)).execute(
            Decision("LONG", "BTCUSDT", 50.0), TradingRuntime(), now=1
        )
        assert outcome.skip_reason == "no_price"
        signer.signed_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_order_leaves_runtime_alone(self):
        signer = _signer(response=httpx.Response(400, json={"code": -2019, "msg": "Margin is insufficient."}))
        runtime = TradingRuntime()
        outcome = await OrderExecutor(signer, _market()).execute(Decision("LONG", "BTCUSDT", 50.0), runtime, now=1)
        assert outcome.attempted and not outcome.record.ok
        assert outcome.record.body["code"] == -2019
        assert runtime.last_order_at is None

    @pytest.mark.asyncio
    async def test_transport_failure_is_reported_not_raised(self):
        signer = _signer(error=httpx.ConnectError("refused"))
        runtime = TradingRuntime()
        outcome = await OrderExecutor(signer, _market()).execute(Decision("LONG", "BTCUSDT", 50.0), runtime, now=1)
        assert outcome.attempted
        assert outcome.record is None
        assert "ConnectError" in outcome.error
        assert runtime.last_order_at is None


# ---------------------------------------------------------------------------
# 2. Tick orchestration
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stopped_tick_touches_nothing(store, clock):
    store.save_config(TradingConfig(status="stopped"))
    market = _market({"BTCUSDT": uptrend()})
    result = await _engine(store, clock, market).run()

    assert result == {"skipped": "stopped"}
    market.available_balance.assert_not_called()
    market.klines.assert_not_called()
    assert store.read_logs() == []
    assert store.get_json("trading_runtime") is None


@pytest.mark.asyncio
async def test_ignore_status_runs_while_stopped(store, clock):
    store.save_config(TradingConfig(status="stopped"))
    result = await _engine(store, clock, _market({"BTCUSDT": uptrend()})).run(ignore_status=True)
    assert result["ok"] is True


@pytest.mark.asyncio
async def test_signal_tick_end_to_end(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT", "ETHUSDT"], max_risk_per_trade_usd=50))
    market = _market({"BTCUSDT": uptrend(), "ETHUSDT": downtrend()}, balance=2000.0)
    signer, decider = _signer(), _unavailable_decider()

    result = await _engine(store, clock, market, signer=signer, decider=decider).run()

    assert result["ok"] is True
    assert result["decision"]["action"] == "LONG"
    assert result["decision"]["symbol"] == "BTCUSDT"
    assert 0 < result["decision"]["size_usd"] <= 50
    assert result["order"] == {"attempted": True, "skip_reason": None, "ok": True, "error": None}
    decider.decide.assert_not_called()
    signer.signed_post.assert_awaited_once()

    decision_log = _logs_of(store, "decision")[0]
    assert decision_log["provider"] == "signals"
    assert "BTCUSDT" in decision_log["signals"]
    assert len(_logs_of(store, "order")) == 1
    assert _logs_of(store, "prompt") == []

    runtime = store.load_runtime()
    assert runtime.last_tick_at == clock.now
    assert runtime.last_order_at == clock.now
    assert runtime.last_provider == "signals"
    assert runtime.last_error is None

    assert store.read_equity() == [{"at": clock.now, "equity_usd": 2000.0}]
    assert store.get_positions()["positions"] == []
    assert store.read_events()[0]["type"] == "tick"


@pytest.mark.asyncio
async def test_second_tick_inside_cooldown_does_not_order(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    signer = _signer()
    engine = _engine(store, clock, _market({"BTCUSDT": uptrend()}), signer=signer)

    first = await engine.run()
    clock.advance(60_000)
    second = await engine.run()

    assert first["order"]["attempted"] is True
    assert second["order"] == {"attempted": False, "skip_reason": "cooldown", "ok": None, "error": None}
    assert signer.signed_post.await_count == 1

    clock.advance(ORDER_COOLDOWN_MS)
    third = await engine.run()
    assert third["order"]["attempted"] is True
    assert signer.signed_post.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_ticks_place_one_order(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    signer = _signer()
    market = _market({"BTCUSDT": uptrend()})
    lock = asyncio.Lock()
    engines = [
        TickEngine(store, market, OrderExecutor(signer, market), _unavailable_decider(), clock=clock, lock=lock)
        for _ in range(2)
    ]

    results = await asyncio.gather(*(e.run() for e in engines))

    assert all(r["ok"] for r in results)
    assert signer.signed_post.await_count == 1
    assert sorted(str(r["order"]["skip_reason"]) for r in results) == ["None", "cooldown"]


@pytest.mark.asyncio
async def test_llm_fallback_tick_logs_prompt(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    decider = AsyncMock()
    decider.decide.return_value = LLMVerdict(
        parsed={"action": "FLAT", "symbol": "BTCUSDT", "size_usd": 0},
        provider="qwen", model="qwen2.5-32b-instruct", system_prompt="sys",
    )
    signer = _signer()
    result = await _engine(store, clock, _market({"BTCUSDT": flat()}), signer=signer, decider=decider).run()

    assert result["decision"]["resolved_by"] == "llm"
    assert result["order"]["skip_reason"] == "flat"
    assert _logs_of(store, "prompt")[0]["provider"] == "qwen"
    assert store.load_runtime().last_model == "qwen2.5-32b-instruct"
    signer.signed_post.assert_not_called()


@pytest.mark.asyncio
async def test_tick_failure_is_recorded_not_raised(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    market = _market()
    market.available_balance.side_effect = RuntimeError("exchange exploded")

    result = await _engine(store, clock, market).run()

    assert result == {"ok": False, "error": "exchange exploded"}
    runtime = store.load_runtime()
    assert runtime.last_error == "exchange exploded"
    assert runtime.last_tick_at == clock.now
    assert _logs_of(store, "error")[0]["error"] == "exchange exploded"


@pytest.mark.asyncio
async def test_order_failure_keeps_tick_ok(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    signer = _signer(error=httpx.ConnectError("refused"))

    result = await _engine(store, clock, _market({"BTCUSDT": uptrend()}), signer=signer).run()

    assert result["ok"] is True
    assert result["order"]["attempted"] is True
    assert "refused" in result["order"]["error"]
    runtime = store.load_runtime()
    assert runtime.last_error is None
    assert runtime.last_order_at is None
    assert len(_logs_of(store, "order_error")) == 1


@pytest.mark.asyncio
async def test_successful_tick_clears_previous_error(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))
    store.save_runtime(TradingRuntime(last_error="old failure"))
    await _engine(store, clock, _market({"BTCUSDT": flat()})).run()
    assert store.load_runtime().last_error is None


def test_runtime_lock_is_per_event_loop():
    from backend.engine.tick import _get_runtime_lock

    async def grab():
        lock = _get_runtime_lock()
        assert _get_runtime_lock() is lock
        async with lock:
            await asyncio.sleep(0)
        return lock

    first = asyncio.run(grab())
    second = asyncio.run(grab())
    assert first is not second


def test_default_lock_survives_a_new_event_loop(store, clock):
    store.save_config(TradingConfig(universe=["BTCUSDT"]))

    async def two_ticks():
        market = _market({"BTCUSDT": uptrend()})
        engine = TickEngine(store, market, OrderExecutor(_signer(), market), _unavailable_decider(), clock=clock)
        return await asyncio.gather(engine.run(), engine.run())

    for _ in range(2):
        results = asyncio.run(two_ticks())
        assert all(r["ok"] for r in results)
        clock.advance(ORDER_COOLDOWN_MS)
