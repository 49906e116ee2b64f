"""Shared test fixtures.

Unit tests never touch PostgreSQL or the network: sessions are AsyncMock
objects and the model backend is MockModelProvider.
"""

import uuid
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import jwt
import pytest

from aiproxy.core.config import settings
from aiproxy.providers import factory
from aiproxy.providers.mock_adapter import MockModelProvider

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    user_type: str | None = "regular",
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session token for test authentication.

    Args:
        user_id: User UUID to encode in the sub claim.
        user_type: Value of the ``type`` claim (omitted when None).
        secret: Signing secret (must match settings.auth_secret in tests).
        expires_delta: Time until expiration. Defaults to 1 hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    if user_type is not None:
        payload["type"] = user_type
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def mock_provider() -> Iterator[MockModelProvider]:
    """MockModelProvider; the factory cache is reset after the test."""
    yield MockModelProvider()
    factory.reset_providers()
