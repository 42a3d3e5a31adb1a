"""Core trading tick.

This is the function APScheduler calls on each interval and the /tick
endpoint calls on demand. It orchestrates:
balance/positions fetch → decision → order execution → persistence.

The tick never raises: any failure is recorded as ``runtime.last_error``
plus an ``error`` log entry and reported as ``{"ok": False, "error": ...}``.
"""

import asyncio
import logging
import weakref

from backend.config import settings
from backend.database import engine as db_engine
from backend.services.aster_signer import build_signer
from backend.services.decision_engine import Decision, decide
from backend.services.llm_client import LLMDecider
from backend.services.market_data import MarketDataClient, open_positions
from backend.services.order_executor import OrderExecutor, OrderOutcome
from backend.services.state_store import StateStore, now_ms

logger = logging.getLogger(__name__)

# One lock per event loop serialises every read-modify-write of the runtime
# document, so two ticks cannot both pass the cooldown gate on a stale
# last_order_at.
_runtime_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def _get_runtime_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _runtime_locks.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _runtime_locks[loop] = lock
    return lock


class TickEngine:
    """One tick over explicit collaborators."""

    def __init__(
        self,
        store: StateStore,
        market: MarketDataClient,
        executor: OrderExecutor,
        decider: LLMDecider,
        clock=now_ms,
        lock: asyncio.Lock | None = None,
    ):
        self.store = store
        self.market = market
        self.executor = executor
        self.decider = decider
        self.clock = clock
        self._lock = lock

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is not None:
            return self._lock
        return _get_runtime_lock()

    async def run(self, ignore_status: bool = False) -> dict:
        """Run one tick.

        Returns ``{"skipped": "stopped"}`` without touching anything beyond
        the config read when trading is stopped and ``ignore_status`` is off.
        """
        try:
            config = self.store.load_config()
            if config.status != "running" and not ignore_status:
                logger.info("Tick skipped: trading is stopped")
                return {"skipped": "stopped"}
            return await self._run_once(config)
        except Exception as e:
            err = str(e) or type(e).__name__
            logger.error(f"Tick error: {err}", exc_info=True)
            await self._record_failure(err)
            return {"ok": False, "error": err}

    async def _run_once(self, config) -> dict:
        logger.info(f"Tick start: universe={','.join(config.universe)}")

        # Step 1: account state (missing data degrades to zero balance / no positions)
        balance = await self.market.available_balance()
        positions = open_positions(await self.market.positions())
        state = {
            "balances": {"equity_usd": balance},
            "positions": positions,
            "universe": config.universe,
        }

        # Step 2: decision
        outcome = await decide(config, balance, state, self.market.klines, self.decider)
        decision = outcome.decision
        if outcome.prompt:
            self.store.append_log("prompt", **outcome.prompt)
        self.store.append_log("decision", **decision.to_dict(), signals=outcome.signals)
        self.store.append_event("tick", **decision.to_dict())
        logger.info(
            f"Decision {decision.action} {decision.symbol} ${decision.size_usd:.2f} "
            f"via {decision.provider}"
        )

        # Step 3: order
        order = await self._execute_order(decision)

        # Step 4: history and runtime
        self.store.append_equity(balance)
        self.store.put_positions(positions)
        async with self.lock:
            runtime = self.store.load_runtime()
            runtime.last_tick_at = self.clock()
            runtime.last_error = None
            runtime.last_provider = decision.provider
            runtime.last_model = decision.model
            self.store.save_runtime(runtime)

        return {
            "ok": True,
            "decision": decision.to_dict(),
            "signals": outcome.signals,
            "order": order,
        }

    async def _execute_order(self, decision: Decision) -> dict:
        """Cooldown check, submission and last_order_at write as one section."""
        async with self.lock:
            runtime = self.store.load_runtime()
            now = self.clock()
            try:
                outcome = await self.executor.execute(decision, runtime, now)
            except Exception as e:
                logger.error(f"Order execution error: {e}", exc_info=True)
                outcome = OrderOutcome(attempted=True, error=f"{type(e).__name__}: {e}")
            if outcome.record is not None and outcome.record.ok:
                self.store.save_runtime(runtime)

        if outcome.record is not None:
            self.store.append_log("order", **outcome.record.to_dict())
        if outcome.error:
            self.store.append_log("order_error", symbol=decision.symbol, error=outcome.error)

        return {
            "attempted": outcome.attempted,
            "skip_reason": outcome.skip_reason,
            "ok": outcome.record.ok if outcome.record is not None else None,
            "error": outcome.error,
        }

    async def _record_failure(self, err: str):
        try:
            self.store.append_log("error", error=err)
            async with self.lock:
                runtime = self.store.load_runtime()
                runtime.last_tick_at = self.clock()
                runtime.last_error = err
                self.store.save_runtime(runtime)
        except Exception as e:
            logger.error(f"Could not record tick failure: {e}", exc_info=True)


async def run_tick(ignore_status: bool = False, store: StateStore | None = None) -> dict:
    """Build collaborators from settings and run one tick."""
    async with build_signer(settings) as signer:
        market = MarketDataClient(signer)
        tick = TickEngine(
            store=store or StateStore(db_engine),
            market=market,
            executor=OrderExecutor(signer, market),
            decider=LLMDecider(settings),
        )
        return await tick.run(ignore_status=ignore_status)


async def run_scheduled_tick():
    """Scheduler entry point: ticks even while the config says stopped."""
    result = await run_tick(ignore_status=True)
    if not result.get("ok"):
        logger.warning(f"Scheduled tick did not succeed: {result}")
