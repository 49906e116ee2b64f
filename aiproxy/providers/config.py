"""Gateway client configuration.

One GatewayConfig is built per API key: projects may bring their own key,
so the provider factory caches a client per resolved key rather than a
single global one.
"""

from dataclasses import dataclass

from aiproxy.core.config import Settings, settings


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for the OpenAI-compatible AI gateway client.

    Attributes:
        api_key: Gateway key for this project.
        base_url: Gateway base URL (ends with /v1).
        timeout_seconds: Per-request timeout.
        max_retries: SDK-level retries per candidate. Kept low because the
            dispatcher already falls back to the next model.
        default_max_tokens: Used when the caller sets no maxOutputTokens.
    """

    api_key: str
    base_url: str = "https://ai-gateway.vercel.sh/v1"
    timeout_seconds: float = 60.0
    max_retries: int = 1
    default_max_tokens: int | None = None

    @classmethod
    def from_settings(
        cls,
        api_key: str,
        app_settings: Settings | None = None,
    ) -> "GatewayConfig":
        """Build a config from application settings.

        Args:
            api_key: Resolved gateway key.
            app_settings: Settings to read (defaults to the global settings).

        Returns:
            GatewayConfig for that key.
        """
        source = app_settings or settings
        return cls(
            api_key=api_key,
            base_url=source.ai_gateway_base_url,
            timeout_seconds=source.ai_gateway_timeout_seconds,
        )
