"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'vibe_trader.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]  # dashboard is served from another origin

    # Admin credential for run/stop (sent as x-admin-key)
    admin_key: str = ""

    # Aster exchange
    aster_api_base: str = ""
    aster_private_key: str = ""  # wallet key for EVM personal-sign auth
    aster_api_key: str = ""
    aster_api_secret: str = ""
    http_timeout_seconds: float = 10.0

    # Language model
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    qwen_api_key: str = ""
    qwen_base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    llm_timeout_seconds: float = 30.0

    # Scheduler
    tick_interval: str = "1m"
    scheduler_enabled: bool = True

    model_config = {"env_prefix": "VT_", "env_file": ".env"}


settings = Settings()
