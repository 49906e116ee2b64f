"""Application configuration loaded from environment variables.

Settings for the database, the upstream AI gateway, credit pricing,
reconciliation timing, entitlements and session verification. Uses
pydantic-settings for validation and .env file support.
"""

import uuid

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
_INSECURE_DEFAULT_PASSWORD = "aiproxy_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32

_DEFAULT_FALLBACK_MODELS = [
    "google/gemini-2.0-flash-001",
    "openai/gpt-5",
    "anthropic/claude-3-5-sonnet-20250514",
    "xai/grok-beta",
    "mistral/mistral-large-latest",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "aiproxy"
    database_user: str = "aiproxy_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_echo: bool = False

    # Upstream AI gateway (OpenAI-compatible)
    # PROJECT_GATEWAY_KEYS is a JSON object: {"<project id>": "<key>"}
    ai_gateway_api_key: SecretStr = SecretStr("")
    ai_gateway_base_url: str = "https://ai-gateway.vercel.sh/v1"
    ai_gateway_timeout_seconds: float = 60.0
    project_gateway_keys: dict[str, SecretStr] = {}

    # Model selection
    default_model: str = "google/gemini-2.0-flash"
    fallback_models: list[str] = _DEFAULT_FALLBACK_MODELS
    image_model: str = "openai/dall-e-3"
    speech_model: str = "openai/tts-1"
    transcription_model: str = "openai/whisper-1"
    audio_fetch_max_bytes: int = 25 * 1024 * 1024
    # Unknown schema expressions are rejected unless this is set
    schema_lenient_parsing: bool = False

    # Pricing (cents per million tokens, cents per credit)
    price_in_cents_per_million: int = 150
    price_out_cents_per_million: int = 750
    cents_per_credit: int = 20
    min_credits_per_event: int = 1
    low_credit_threshold: int = 10

    # Plans
    default_plan: str = "free"
    plan_credits: dict[str, int] = {
        "free": 15,
        "pro": 100,
        "advanced": 250,
        "white_label": 0,
    }
    rollover_plans: list[str] = ["pro", "advanced"]

    # Streaming estimate charged before the first byte
    stream_estimate_input_tokens: int = 500
    stream_estimate_output_tokens: int = 2000

    # Reconciliation against authoritative usage reports
    reconciliation_enabled: bool = True
    reconciliation_delay_seconds: float = 5.0
    reconciliation_noise_floor_tokens: int = 100
    reconciliation_max_attempts: int = 3
    # Replays estimates whose jobs were lost to a restart; 0 disables the sweep
    reconciliation_sweep_interval_seconds: float = 300.0
    reconciliation_sweep_max_age_seconds: float = 3600.0
    reconciliation_sweep_batch_size: int = 100
    usage_report_url: str = "https://api.v0.dev/reports/usage"
    usage_report_api_key: SecretStr = SecretStr("")
    usage_report_timeout_seconds: float = 10.0

    # Entitlements (rolling 24h request ceilings)
    max_requests_per_day: dict[str, int] = {"guest": 20, "regular": 100}
    anonymous_max_requests_per_day: int = 10

    # Burst rate limiting (slowapi)
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_proxy: str = "60/minute"
    rate_limit_enabled: bool = True

    # Session verification
    # Local-first mode: DEFAULT_USER_ID provides user context without JWT
    default_user_id: uuid.UUID | None = None
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "aiproxy"
    auth_audience: str = "aiproxy"
    auth_cookie_name: str = "aiproxy.session-token"

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_invariants(self) -> "Settings":
        """Validate pricing, reconciliation and production security settings.

        Checks:
        - Token prices and the credit conversion must be positive
        - Every chargeable event costs at least one credit
        - Noise floor and estimates cannot be negative
        - The fallback order cannot be empty
        - AUTH_SECRET must be set and >= 32 chars when auth is enabled in production
        """
        if self.price_in_cents_per_million <= 0 or self.price_out_cents_per_million <= 0:
            msg = (
                "Token prices must be positive. Got: "
                f"in={self.price_in_cents_per_million}, "
                f"out={self.price_out_cents_per_million}"
            )
            raise ValueError(msg)
        if self.cents_per_credit <= 0:
            msg = f"CENTS_PER_CREDIT must be positive. Got: {self.cents_per_credit}"
            raise ValueError(msg)
        if self.min_credits_per_event < 1:
            msg = (
                "MIN_CREDITS_PER_EVENT must be at least 1. "
                f"Got: {self.min_credits_per_event}"
            )
            raise ValueError(msg)
        if self.reconciliation_noise_floor_tokens < 0:
            msg = "RECONCILIATION_NOISE_FLOOR_TOKENS cannot be negative."
            raise ValueError(msg)
        if self.reconciliation_sweep_batch_size < 1:
            msg = "RECONCILIATION_SWEEP_BATCH_SIZE must be at least 1."
            raise ValueError(msg)
        if self.stream_estimate_input_tokens < 0 or self.stream_estimate_output_tokens < 0:
            msg = "Stream estimate token counts cannot be negative."
            raise ValueError(msg)
        if not self.fallback_models:
            msg = "FALLBACK_MODELS must list at least one model."
            raise ValueError(msg)
        if self.default_plan not in self.plan_credits:
            msg = f"DEFAULT_PLAN '{self.default_plan}' has no entry in PLAN_CREDITS."
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if self.auth_enabled:
                secret_value = self.auth_secret.get_secret_value()
                if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                    msg = (
                        f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                        "characters when AUTH_ENABLED=true in production."
                    )
                    raise ValueError(msg)

        return self


settings = Settings()
