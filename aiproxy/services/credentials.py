"""Gateway credential resolution.

A project may carry its own gateway key; otherwise the deployment-wide key
is used. Resolution happens before any backend call so a missing key fails
fast with a configuration error instead of a provider error per candidate.
"""

from aiproxy.core.config import Settings, settings
from aiproxy.core.errors import ConfigurationError


def resolve_gateway_key(project_id: str, app_settings: Settings | None = None) -> str:
    """Return the gateway key for a project.

    Args:
        project_id: Project the request belongs to.
        app_settings: Settings to read keys from.

    Returns:
        The API key.

    Raises:
        ConfigurationError: Neither a project key nor the default key is set.
    """
    source = app_settings or settings
    project_key = source.project_gateway_keys.get(project_id)
    if project_key is not None and project_key.get_secret_value():
        return project_key.get_secret_value()

    default_key = source.ai_gateway_api_key.get_secret_value()
    if not default_key:
        raise ConfigurationError("AI_GATEWAY_API_KEY not configured")
    return default_key
