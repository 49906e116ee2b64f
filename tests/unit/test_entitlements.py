"""Tests for daily request ceilings."""

import uuid

import pytest

from aiproxy.core.config import Settings
from aiproxy.core.errors import RateLimitExceededError
from aiproxy.services.entitlements import CallerIdentity, EntitlementsService

_SETTINGS = Settings(
    max_requests_per_day={"guest": 2, "regular": 3},
    anonymous_max_requests_per_day=1,
)


def _user(user_type: str = "regular") -> CallerIdentity:
    return CallerIdentity(user_id=uuid.uuid4(), user_type=user_type, client_ip="10.0.0.1")


def _anonymous(ip: str = "10.0.0.9") -> CallerIdentity:
    return CallerIdentity(user_id=None, user_type="anonymous", client_ip=ip)


@pytest.fixture
def service() -> EntitlementsService:
    return EntitlementsService(app_settings=_SETTINGS)


class TestCallerIdentity:
    """Rate limit keys."""

    def test_user_key(self):
        identity = _user()
        assert identity.is_authenticated
        assert identity.rate_limit_key == f"user:{identity.user_id}"

    def test_anonymous_key(self):
        identity = _anonymous("1.2.3.4")
        assert not identity.is_authenticated
        assert identity.rate_limit_key == "ip:1.2.3.4"


class TestCeilings:
    """Tests for ceiling_for()."""

    def test_by_user_type(self, service: EntitlementsService):
        assert service.ceiling_for(_user("guest")) == 2
        assert service.ceiling_for(_user("regular")) == 3

    def test_unknown_type_gets_regular_ceiling(self, service: EntitlementsService):
        assert service.ceiling_for(_user("partner")) == 3

    def test_anonymous(self, service: EntitlementsService):
        assert service.ceiling_for(_anonymous()) == 1


class TestCheckAndRecord:
    """Tests for check_and_record()."""

    @pytest.mark.asyncio
    async def test_allows_up_to_ceiling_then_rejects(self, service: EntitlementsService):
        identity = _user("guest")

        await service.check_and_record(identity)
        await service.check_and_record(identity)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.check_and_record(identity)

        error = exc_info.value
        assert error.status_code == 429
        assert error.details == [{"limit": 2}]
        assert "(2)" in error.message
        assert 1 <= int(error.headers["Retry-After"]) <= 86400

    @pytest.mark.asyncio
    async def test_identities_counted_separately(self, service: EntitlementsService):
        await service.check_and_record(_anonymous("1.1.1.1"))
        await service.check_and_record(_anonymous("2.2.2.2"))

        with pytest.raises(RateLimitExceededError):
            await service.check_and_record(_anonymous("1.1.1.1"))

    @pytest.mark.asyncio
    async def test_reset_clears_counters(self, service: EntitlementsService):
        identity = _anonymous()
        await service.check_and_record(identity)

        await service.reset()

        await service.check_and_record(identity)
