from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReasoningSettings(BaseModel):
    backend: Literal["http", "ollama"] = Field("http", description="Client used to reach the reasoning service.")
    endpoint: str = Field(
        "http://localhost:8787/integrations/invoke-llm",
        description="URL accepting {prompt, response_json_schema} payloads.",
    )
    api_key: str | None = Field(default=None, description="Optional bearer token for the reasoning endpoint.")
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3", description="Model requested from the reasoning service.")
    temperature: float = Field(0.2, ge=0.0, le=1.0)
    timeout_seconds: float = Field(60.0, ge=0.1, description="Upper bound for a single reasoning call.")
    verify_ssl: bool = Field(True)
    system_prompt: str = Field(
        "You are HERMES, the cognitive intermediation and strategic translation framework. "
        "Answer with a single JSON object and nothing else.",
        min_length=16,
    )


class ContextSettings(BaseModel):
    default_max_chars: int = Field(2_000, ge=200)
    stage_max_chars: dict[str, int] = Field(
        default_factory=lambda: {
            "h1": 2_000,
            "h2": 1_500,
            "h3": 1_500,
            "h4": 2_500,
            "full_analysis": 4_000,
        },
        description="Per-stage character budgets for the serialized context.",
    )

    def budget_for(self, stage_id: str) -> int:
        return int(self.stage_max_chars.get(stage_id, self.default_max_chars))


class PersistenceSettings(BaseModel):
    backend: Literal["memory", "redis"] = Field("memory")
    redis_url: str = Field("redis://localhost:6379/0", description="Connection URL for the Redis mirror.")
    namespace: str = Field("hermes:outputs", min_length=1)
    ttl_seconds: int = Field(86_400, ge=0, description="Expiry for mirrored outputs; 0 keeps them forever.")
    session_id: str = Field("default", min_length=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    reasoning: ReasoningSettings = Field(default_factory=ReasoningSettings)  # type: ignore[arg-type]
    context: ContextSettings = Field(default_factory=ContextSettings)  # type: ignore[arg-type]
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
