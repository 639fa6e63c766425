from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LLM_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider endpoint
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-3.5-turbo"
    extra_headers: dict[str, str] = Field(default_factory=dict)

    # Per-call deadline and retry policy
    timeout_ms: int = 30_000
    max_retries: int = 3
    retry_base_delay_ms: int = 1_000

    # Response cache
    enable_caching: bool = True
    cache_ttl_ms: int = 60 * 60 * 1000  # 1 hour

    # Throttle: max calls per rolling minute, 0 disables
    rate_limit_per_minute: int = 0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def effective_cache_ttl_ms(self) -> int:
        """TTL handed to the cache; 0 when caching is turned off."""
        return self.cache_ttl_ms if self.enable_caching else 0


def validate_settings(settings: Settings) -> None:
    """Validate numeric options. Called when a client is constructed."""
    from llm_relay.gateway.errors import ValidationError

    errors: list[str] = []

    if settings.timeout_ms <= 0:
        errors.append("timeout_ms must be positive")
    if settings.max_retries < 0:
        errors.append("max_retries must not be negative")
    if settings.retry_base_delay_ms < 0:
        errors.append("retry_base_delay_ms must not be negative")
    if settings.cache_ttl_ms < 0:
        errors.append("cache_ttl_ms must not be negative")
    if settings.rate_limit_per_minute < 0:
        errors.append("rate_limit_per_minute must not be negative")
    if not settings.base_url.startswith(("http://", "https://")):
        errors.append("base_url must be an http(s) URL")

    if errors:
        raise ValidationError(
            "Configuration errors:\n  - " + "\n  - ".join(errors),
            data={"errors": errors},
        )
