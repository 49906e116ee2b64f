"""Provider factory functions.

Projects may bring their own gateway key, so providers are cached per key
instead of as a single singleton.
"""

from aiproxy.providers.base import ModelProvider
from aiproxy.providers.config import GatewayConfig
from aiproxy.providers.gateway_adapter import GatewayModelProvider

_model_providers: dict[str, ModelProvider] = {}


def get_model_provider(api_key: str, config: GatewayConfig | None = None) -> ModelProvider:
    """Get or create the model provider for a gateway key.

    WHY CACHE PER KEY:
    - Reuses HTTP connections across requests of the same project
    - Keys never mix: each provider is bound to exactly one key

    Args:
        api_key: Resolved gateway key.
        config: Optional full configuration. If None, built from settings.

    Returns:
        ModelProvider bound to that key.
    """
    provider = _model_providers.get(api_key)
    if provider is None:
        if config is None:
            config = GatewayConfig.from_settings(api_key)
        provider = GatewayModelProvider(config)
        _model_providers[api_key] = provider
    return provider


async def close_providers() -> None:
    """Close cached providers' HTTP clients (app shutdown)."""
    providers = list(_model_providers.values())
    _model_providers.clear()
    for provider in providers:
        if isinstance(provider, GatewayModelProvider):
            await provider.aclose()


def reset_providers() -> None:
    """Reset cached providers.

    Used in tests to ensure isolation between test cases.
    """
    _model_providers.clear()
