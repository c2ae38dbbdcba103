from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=5029, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://localhost:2990,http://localhost:3000,http://127.0.0.1:3000",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./research_chat.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    llm_provider: str = Field(default="openai", alias="LLM_PROVIDER")
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")
    llm_api_key: str = Field(default="", alias="LLM_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    ollama_base_url: str = Field(
        default="http://localhost:11434", alias="OLLAMA_BASE_URL"
    )
    llm_timeout_sec: float = Field(default=90, alias="LLM_TIMEOUT_SEC")
    llm_cost_per_1k_input: float = Field(default=0.00015, alias="LLM_COST_PER_1K_INPUT")
    llm_cost_per_1k_output: float = Field(default=0.0006, alias="LLM_COST_PER_1K_OUTPUT")

    grounding_search_url: str = Field(default="", alias="GROUNDING_SEARCH_URL")
    grounding_max_results: int = Field(default=8, alias="GROUNDING_MAX_RESULTS")
    grounding_timeout_sec: float = Field(default=30, alias="GROUNDING_TIMEOUT_SEC")

    web_search_url: str = Field(
        default="https://serpapi.com/search.json", alias="WEB_SEARCH_URL"
    )
    web_search_api_key: str = Field(default="", alias="WEB_SEARCH_API_KEY")
    web_search_results_per_query: int = Field(default=10, alias="WEB_SEARCH_RESULTS_PER_QUERY")
    web_search_timeout_sec: float = Field(default=20, alias="WEB_SEARCH_TIMEOUT_SEC")
    web_fetch_timeout_sec: float = Field(default=20, alias="WEB_FETCH_TIMEOUT_SEC")
    web_page_max_chars: int = Field(default=12000, alias="WEB_PAGE_MAX_CHARS")
    web_page_max_bytes: int = Field(default=2_000_000, alias="WEB_PAGE_MAX_BYTES")
    web_scan_concurrency: int = Field(default=4, alias="WEB_SCAN_CONCURRENCY")

    policy_subcall_timeout_sec: float = Field(default=240, alias="POLICY_SUBCALL_TIMEOUT_SEC")
    policy_poll_grace_sec: float = Field(default=10, alias="POLICY_POLL_GRACE_SEC")
    policy_poll_interval_sec: float = Field(default=1, alias="POLICY_POLL_INTERVAL_SEC")
    turn_shutdown_grace_sec: float = Field(default=5, alias="TURN_SHUTDOWN_GRACE_SEC")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
