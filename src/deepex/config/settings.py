"""
Configuration for DeepEx with Pydantic Settings.

Every field can be overridden from the environment using the ``DEEPEX_``
prefix and ``__`` as the nesting delimiter, e.g.
``DEEPEX_PIPELINE__TIME_BUDGET=90`` or ``DEEPEX_LLM__BASE_URL=...``.
Upstream credentials are usually supplied as numbered variables
(``LONGCAT_API_KEY_1``, ``LONGCAT_API_KEY_2``...) named by ``key_env_prefix``.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _validate_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("base_url must start with http:// or https://")
    return v.rstrip("/")


class ProviderConfig(BaseModel):
    """OpenAI-compatible chat completions provider."""

    base_url: str = Field("https://api.longcat.chat/openai/v1")
    api_keys: list[str] = Field(default_factory=list, description="Explicit keys, optional")
    key_env_prefix: str = Field("LONGCAT_API_KEY")
    lite_model: str = Field("LongCat-Flash-Lite")
    chat_model: str = Field("LongCat-Flash-Chat")
    thinking_model: str = Field("LongCat-Flash-Thinking-2601")
    max_tokens: int = Field(4096, gt=0)
    default_thinking_budget: int = Field(4096, ge=1024)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_url(v)


class ResilienceConfig(BaseModel):
    """Retry, rotation and timeout policy for generation calls."""

    request_timeout: float = Field(45.0, gt=0)
    stall_timeout: float = Field(30.0, gt=0)
    max_attempts: int = Field(5, gt=0, description="Counted failures before giving up")
    max_raw_attempts: int = Field(20, gt=0, description="Ceiling including rate-limited tries")
    max_empty_retries: int = Field(2, ge=0)
    backoff_schedule: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0, 8.0, 12.0])
    jitter: float = Field(0.3, ge=0.0, lt=1.0)
    rate_limit_pause: float = Field(1.0, ge=0.0)
    rate_limit_cooldown: float = Field(60.0, gt=0)
    error_cooldown: float = Field(30.0, gt=0)

    @field_validator("backoff_schedule")
    @classmethod
    def validate_schedule(cls, v: list[float]) -> list[float]:
        if not v or any(d < 0 for d in v):
            raise ValueError("backoff_schedule must be a non-empty list of non-negative delays")
        return v


class SearchConfig(BaseModel):
    """Web search grounding."""

    enabled: bool = Field(True)
    base_url: str = Field("https://api.langsearch.com/v1/web-search")
    api_keys: list[str] = Field(default_factory=list)
    key_env_prefix: str = Field("LANGSEARCH_API_KEY")
    request_timeout: float = Field(20.0, gt=0)
    max_attempts: int = Field(5, gt=0)
    backoff_schedule: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0, 8.0])
    max_queries: int = Field(2, gt=0)
    results_per_query: int = Field(4, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_url(v)


class VisionConfig(BaseModel):
    """Image understanding and generation (Workers AI style account pool)."""

    enabled: bool = Field(True)
    base_url: str = Field("https://api.cloudflare.com/client/v4/accounts")
    account_env_prefix: str = Field("CF_ACCOUNT_ID")
    key_env_prefix: str = Field("CF_API_KEY")
    vision_model: str = Field("@cf/google/gemma-3-12b-it")
    image_model: str = Field("@cf/black-forest-labs/flux-1-schnell")
    request_timeout: float = Field(60.0, gt=0)
    max_attempts: int = Field(4, gt=0)
    backoff_schedule: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0])
    max_tokens: int = Field(4096, gt=0)
    image_steps: int = Field(4, gt=0)
    image_size: int = Field(1024, gt=0)


class FanOutConfig(BaseModel):
    stagger: float = Field(0.5, ge=0.0)
    task_timeout: float = Field(90.0, gt=0)
    result_cap: int = Field(6000, gt=0)


class PipelineConfig(BaseModel):
    """Reasoning pipeline thresholds and per-invocation budgets."""

    time_budget: float = Field(120.0, gt=0, description="Seconds before checkpointing")
    synth_time_budget: float = Field(50.0, gt=0, description="Budget for ultra synthesis")
    escalation_threshold: int = Field(70, ge=0, le=100)
    deep_confidence_default: int = Field(75, ge=0, le=100)
    ultra_confidence_default: int = Field(80, ge=0, le=100)
    instant_confidence: int = Field(95, ge=0, le=100)
    deep_chunk_size: int = Field(10, gt=0)
    ultra_chunk_size: int = Field(1000, gt=0)
    history_turns: int = Field(16, ge=0)
    history_chars: int = Field(2000, gt=0)
    keepalive_interval: float = Field(10.0, gt=0)


class AuditConfig(BaseModel):
    enabled: bool = Field(True)
    directory: Path = Field(Path("./artifacts"))


class ObservabilityConfig(BaseModel):
    enable_tracing: bool = Field(True)
    log_level: str = Field("INFO")
    log_format: str = Field("console")  # json or console
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("deepex")
    service_version: str = Field("1.0.0")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in {"json", "console"}:
            raise ValueError("log_format must be 'json' or 'console'")
        return v


class APIConfig(BaseModel):
    host: str = Field("0.0.0.0")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    workers: int = Field(1, gt=0)
    enable_docs: bool = Field(True)
    max_query_length: int = Field(20000, gt=0)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="DEEPEX_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    llm: ProviderConfig = Field(default_factory=ProviderConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    fanout: FanOutConfig = Field(default_factory=FanOutConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
