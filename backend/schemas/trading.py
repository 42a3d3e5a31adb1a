"""Pydantic schemas for the trading config and runtime documents."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Status = Literal["running", "stopped"]
MarginMode = Literal["cross", "isolated"]


def _normalize_universe(value: list[str]) -> list[str]:
    # Ordered set: keep first occurrence, drop blanks
    seen: list[str] = []
    for symbol in value:
        text = symbol.strip().upper()
        if text and text not in seen:
            seen.append(text)
    return seen


class TradingConfig(BaseModel):
    """Operator-controlled trading parameters."""

    status: Status = "running"
    universe: list[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"], min_length=1)
    max_risk_per_trade_usd: float = Field(default=50.0, ge=0)
    max_daily_loss_usd: float = Field(default=200.0, ge=0)
    max_exposure_usd: float = Field(default=2000.0, ge=0)
    leverage_cap: float = Field(default=5.0, gt=0)
    margin_mode: MarginMode = "cross"
    model: str = "gpt-4o-mini"

    @field_validator("universe")
    @classmethod
    def _validate_universe(cls, value: list[str]) -> list[str]:
        symbols = _normalize_universe(value)
        if not symbols:
            raise ValueError("universe must contain at least one symbol")
        return symbols


class TradingRuntime(BaseModel):
    """Volatile execution status, overwritten every tick."""

    last_tick_at: int | None = None
    last_error: str | None = None
    last_provider: str | None = None
    last_model: str | None = None
    last_order_at: int | None = None
    last_signal: str | None = None


class RunRequest(BaseModel):
    """Body of POST /run; every field is optional and merged into the config."""

    model_config = ConfigDict(extra="forbid")

    universe: list[str] | None = None
    max_risk_per_trade_usd: float | None = Field(default=None, ge=0)
    max_daily_loss_usd: float | None = Field(default=None, ge=0)
    max_exposure_usd: float | None = Field(default=None, ge=0)
    leverage_cap: float | None = Field(default=None, gt=0)
    margin_mode: MarginMode | None = None
    model: str | None = None

    def apply_to(self, config: TradingConfig) -> TradingConfig:
        """Return a running copy of ``config`` with this request merged in."""
        updates = self.model_dump(exclude_none=True)
        universe = _normalize_universe(updates.pop("universe", []) or [])
        if universe:
            updates["universe"] = universe
        if not (updates.get("model") or "").strip():
            updates.pop("model", None)
        updates["status"] = "running"
        return TradingConfig.model_validate({**config.model_dump(), **updates})
