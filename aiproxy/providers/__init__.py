"""Model backend abstraction layer.

Exports:
    Backend interface and produced-output types
    Error classes for provider error handling
    GatewayConfig for configuration
    Factory functions for provider instances
"""

from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    ModelHandle,
    ModelProvider,
    OperationKind,
    PassthroughResponse,
    ProducedOutput,
    StreamMetadata,
    TokenUsage,
)
from aiproxy.providers.config import GatewayConfig
from aiproxy.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    StreamSourceError,
    StructuredOutputError,
    TransientError,
)
from aiproxy.providers.factory import get_model_provider, reset_providers

__all__ = [
    # Interface
    "ModelProvider",
    "ModelHandle",
    "OperationKind",
    "TokenUsage",
    "BinaryPayload",
    "StreamMetadata",
    # Produced output
    "ProducedOutput",
    "PassthroughResponse",
    "ChunkSource",
    "Materialized",
    # Config
    "GatewayConfig",
    # Errors
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ContextLengthError",
    "TransientError",
    "StructuredOutputError",
    "StreamSourceError",
    # Factory
    "get_model_provider",
    "reset_providers",
]
