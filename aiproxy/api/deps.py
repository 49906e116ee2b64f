"""Shared dependencies for API endpoints.

The proxy endpoint accepts anonymous callers, so identity is optional:
no session token means an anonymous caller keyed by IP. When auth is
disabled, DEFAULT_USER_ID (if set) stands in for the signed-in user.

WHY DEPENDENCY INJECTION:
- Consistent identity resolution across endpoints
- Tests swap the provider factory, ledger and worker without patching
"""

import uuid
from typing import Annotated

import jwt
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from aiproxy.core.config import settings
from aiproxy.core.database import get_db
from aiproxy.core.errors import UnauthorizedError
from aiproxy.core.rate_limiting import get_client_ip
from aiproxy.providers.factory import get_model_provider
from aiproxy.services.entitlements import CallerIdentity, EntitlementsService
from aiproxy.services.proxy_gateway import ProviderFactory, ProxyGateway
from aiproxy.services.reconciliation_worker import ReconciliationWorker
from aiproxy.services.usage_ledger import UsageLedger

_DEFAULT_USER_TYPE = "regular"
_BEARER_PREFIX = "Bearer "

# One process-wide set of daily counters.
_entitlements = EntitlementsService()


def _session_token(request: Request) -> str | None:
    token = request.cookies.get(settings.auth_cookie_name)
    if token:
        return token
    authorization = request.headers.get("authorization", "")
    if authorization.startswith(_BEARER_PREFIX):
        return authorization[len(_BEARER_PREFIX) :].strip() or None
    return None


def get_caller_identity(request: Request) -> CallerIdentity:
    """Resolve who is calling.

    Validation steps (auth enabled):
    1. Read the session token from the cookie, else the Bearer header
    2. No token: anonymous caller
    3. Decode + verify signature (HS256), exp, aud, iss
    4. Extract sub as UUID and the optional user type claim

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        CallerIdentity for the request.

    Raises:
        UnauthorizedError: A token is present but invalid.
    """
    client_ip = get_client_ip(request)

    if not settings.auth_enabled:
        return CallerIdentity(
            user_id=settings.default_user_id,
            user_type=_DEFAULT_USER_TYPE,
            client_ip=client_ip,
        )

    token = _session_token(request)
    if token is None:
        return CallerIdentity(user_id=None, user_type="anonymous", client_ip=client_ip)

    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        user_id = uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        # Never say why: expired, bad signature and malformed look the same.
        raise UnauthorizedError() from exc

    user_type = payload.get("type")
    if not isinstance(user_type, str) or user_type not in settings.max_requests_per_day:
        user_type = _DEFAULT_USER_TYPE
    return CallerIdentity(user_id=user_id, user_type=user_type, client_ip=client_ip)


Identity = Annotated[CallerIdentity, Depends(get_caller_identity)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_current_user_id(identity: Identity) -> uuid.UUID:
    """Signed-in user id, for endpoints that require one.

    Raises:
        UnauthorizedError: Anonymous caller.
    """
    if identity.user_id is None:
        raise UnauthorizedError()
    return identity.user_id


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


def get_usage_ledger(db: DbSession) -> UsageLedger:
    return UsageLedger(db)


def get_entitlements() -> EntitlementsService:
    return _entitlements


def get_reconciliation_worker(request: Request) -> ReconciliationWorker | None:
    """The worker started in the app lifespan, if any."""
    return getattr(request.app.state, "reconciliation_worker", None)


def get_provider_factory() -> ProviderFactory:
    return get_model_provider


Ledger = Annotated[UsageLedger, Depends(get_usage_ledger)]


def get_proxy_gateway(
    ledger: Ledger,
    entitlements: Annotated[EntitlementsService, Depends(get_entitlements)],
    worker: Annotated[ReconciliationWorker | None, Depends(get_reconciliation_worker)],
    provider_factory: Annotated[ProviderFactory, Depends(get_provider_factory)],
) -> ProxyGateway:
    """Assemble the gateway for one request."""
    return ProxyGateway(
        ledger=ledger,
        entitlements=entitlements,
        reconciliation=worker,
        provider_factory=provider_factory,
    )


Gateway = Annotated[ProxyGateway, Depends(get_proxy_gateway)]
