"""Language-model trade decider over an OpenAI-compatible chat API.

Provider selection:
- Qwen (DashScope compatible mode) when VT_QWEN_API_KEY is set
- otherwise OpenAI with VT_OPENAI_API_KEY

The model answers with a JSON object; its content is returned unvalidated.
Guardrails are applied by the decision engine.
"""

import json
import logging
from dataclasses import dataclass, field

from openai import AsyncOpenAI, APIError

from backend.schemas.trading import TradingConfig

logger = logging.getLogger(__name__)

QWEN_DEFAULT_MODEL = "qwen2.5-32b-instruct"
OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
MAX_STATE_CHARS = 5000


class LLMUnavailableError(Exception):
    """No key configured, or the provider call failed."""


@dataclass(frozen=True)
class ProviderChoice:
    name: str
    api_key: str
    base_url: str
    model: str


@dataclass
class LLMVerdict:
    parsed: dict
    provider: str
    model: str
    system_prompt: str
    state_summary: dict = field(default_factory=dict)


def choose_provider(settings, configured_model: str) -> ProviderChoice:
    """Pick Qwen when its key exists, else OpenAI; remap gpt-* ids for Qwen."""
    if settings.qwen_api_key:
        model = configured_model or QWEN_DEFAULT_MODEL
        if model.lower().startswith("gpt"):
            model = QWEN_DEFAULT_MODEL
        return ProviderChoice("qwen", settings.qwen_api_key, settings.qwen_base_url, model)
    if settings.openai_api_key:
        return ProviderChoice(
            "openai",
            settings.openai_api_key,
            settings.openai_base_url,
            configured_model or OPENAI_DEFAULT_MODEL,
        )
    raise LLMUnavailableError("LLM API key missing")


def build_system_prompt(config: TradingConfig) -> str:
    return (
        "You are a futures trading decider. Output strict JSON with keys: "
        "action (one of LONG, SHORT, FLAT), symbol, size_usd (number), notes (string). "
        f"Respect risk limits: max_risk_per_trade_usd={config.max_risk_per_trade_usd}, "
        f"max_exposure_usd={config.max_exposure_usd}. "
        f"Allowed symbols: {', '.join(config.universe)}"
    )


def summarize_state(state: dict) -> dict:
    return {
        "equity_usd": (state.get("balances") or {}).get("equity_usd"),
        "positions_count": len(state.get("positions") or []),
    }


def parse_content(content: str | None) -> dict:
    """Decode the model's JSON answer; anything else becomes an empty dict."""
    try:
        parsed = json.loads(content or "{}")
    except (TypeError, ValueError):
        logger.warning("LLM answer is not valid JSON")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LLMDecider:
    """Single "decide" call against the configured provider."""

    def __init__(self, settings, client_factory=AsyncOpenAI):
        self.settings = settings
        self.client_factory = client_factory

    async def decide(self, state: dict, config: TradingConfig) -> LLMVerdict:
        provider = choose_provider(self.settings, config.model)
        system_prompt = build_system_prompt(config)
        user_prompt = f"State: {json.dumps(state, default=str)[:MAX_STATE_CHARS]}"

        client = self.client_factory(
            api_key=provider.api_key,
            base_url=provider.base_url,
            timeout=self.settings.llm_timeout_seconds,
        )
        try:
            response = await client.chat.completions.create(
                model=provider.model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except APIError as e:
            raise LLMUnavailableError(f"{provider.name} call failed: {type(e).__name__}: {e}") from e
        finally:
            await client.close()

        content = response.choices[0].message.content if response.choices else None
        logger.info(f"LLM decision from {provider.name}/{provider.model}")
        return LLMVerdict(
            parsed=parse_content(content),
            provider=provider.name,
            model=provider.model,
            system_prompt=system_prompt,
            state_summary=summarize_state(state),
        )
