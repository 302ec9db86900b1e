from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Upstream LLM provider (any OpenAI-compatible chat completions API)
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    system_prompt: str = "You are a helpful chatbot."
    require_api_key: bool = False

    # Timeouts (seconds)
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    stream_idle_timeout: float = 30.0

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory | redis
    rate_limit_window_seconds: int = 900  # 15 minutes
    rate_limit_capacity: int = 100
    redis_url: str = "redis://localhost:6379/0"
    trust_forwarded_for: bool = False

    # Request bounds
    max_message_length: int = 1000
    max_history_turns: int = 50

    # Server
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def api_key_configured(self) -> bool:
        key = self.openai_api_key.strip()
        return bool(key) and key not in ("placeholder", "your-api-key-here")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def chat_completions_url(self) -> str:
        return self.openai_base_url.rstrip("/") + "/chat/completions"


@lru_cache
def get_settings() -> Settings:
    return Settings()
