"""Typed get/put of JSON documents (config, runtime, logs, equity, positions).

Every document is written with a single commit, so a reader never sees a
half-updated config or runtime. Ring documents (logs, equity, events) are
read, appended, trimmed and written back; concurrent appends are
last-writer-wins per key.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from backend.models.document import Document
from backend.schemas.trading import TradingConfig, TradingRuntime
from backend.utils.constants import (
    CONFIG_KEY,
    RUNTIME_KEY,
    LOG_KEY,
    EQUITY_KEY,
    POSITIONS_KEY,
    EVENTS_KEY,
    MAX_LOG_ENTRIES,
    MAX_EQUITY_SAMPLES,
    MAX_EVENTS,
)

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class StateStore:
    """Key-value document store on top of the SQL engine."""

    def __init__(self, engine: Engine, clock=now_ms):
        self.engine = engine
        self.clock = clock

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def get_json(self, key: str, default: Any = None) -> Any:
        with Session(self.engine) as session:
            doc = session.get(Document, key)
            if doc is None or doc.value is None:
                return default
            return doc.value

    def put_json(self, key: str, value: Any):
        with Session(self.engine) as session:
            doc = session.get(Document, key)
            if doc is None:
                doc = Document(key=key, value=value)
            else:
                doc.value = value
                doc.updated_at = datetime.now(timezone.utc)
            session.add(doc)
            session.commit()

    def append_ring(self, key: str, entry: dict, max_len: int) -> list[dict]:
        """Append to a bounded list document, dropping the oldest entries."""
        items = self.get_json(key, [])
        if not isinstance(items, list):
            logger.warning(f"Document {key} is not a list; resetting ring")
            items = []
        items.append(entry)
        if len(items) > max_len:
            items = items[-max_len:]
        self.put_json(key, items)
        return items

    # ------------------------------------------------------------------
    # Config / runtime
    # ------------------------------------------------------------------

    def load_config(self) -> TradingConfig:
        raw = self.get_json(CONFIG_KEY)
        if raw is None:
            return TradingConfig()
        return TradingConfig.model_validate(raw)

    def save_config(self, config: TradingConfig):
        self.put_json(CONFIG_KEY, config.model_dump())

    def load_runtime(self) -> TradingRuntime:
        raw = self.get_json(RUNTIME_KEY)
        if raw is None:
            return TradingRuntime()
        return TradingRuntime.model_validate(raw)

    def save_runtime(self, runtime: TradingRuntime):
        self.put_json(RUNTIME_KEY, runtime.model_dump())

    # ------------------------------------------------------------------
    # Append-only history
    # ------------------------------------------------------------------

    def append_log(self, entry_type: str, **fields) -> dict:
        entry = {"at": self.clock(), "type": entry_type, **fields}
        self.append_ring(LOG_KEY, entry, MAX_LOG_ENTRIES)
        return entry

    def read_logs(self, limit: int = 200) -> list[dict]:
        """Most recent log entries, newest first."""
        logs = self.get_json(LOG_KEY, [])
        return list(reversed(logs[-limit:])) if limit > 0 else []

    def append_event(self, entry_type: str, **fields) -> dict:
        entry = {"type": entry_type, "at": self.clock(), **fields}
        self.append_ring(EVENTS_KEY, entry, MAX_EVENTS)
        return entry

    def read_events(self, limit: int = 200) -> list[dict]:
        events = self.get_json(EVENTS_KEY, [])
        return list(reversed(events[-limit:])) if limit > 0 else []

    def append_equity(self, equity_usd: float) -> dict:
        sample = {"at": self.clock(), "equity_usd": equity_usd}
        self.append_ring(EQUITY_KEY, sample, MAX_EQUITY_SAMPLES)
        return sample

    def read_equity(self, limit: int = 1000) -> list[dict]:
        """Most recent equity samples, oldest first."""
        equity = self.get_json(EQUITY_KEY, [])
        return equity[-limit:] if limit > 0 else []

    def put_positions(self, positions: list):
        self.put_json(POSITIONS_KEY, {"at": self.clock(), "positions": positions})

    def get_positions(self) -> dict:
        return self.get_json(POSITIONS_KEY, {"at": None, "positions": []})
