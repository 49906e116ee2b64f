"""AI proxy router.

Single endpoint in front of the model backends. The response shape depends
on the method: a JSON document for complete results, a chunked text or
NDJSON body for streams, or the upstream body itself for passthrough
streams.
"""

from fastapi import APIRouter, Request
from starlette.responses import Response

from aiproxy.api.deps import Gateway, Identity
from aiproxy.core.config import settings
from aiproxy.core.rate_limiting import limiter
from aiproxy.schemas.proxy import ProxyRequest
from aiproxy.services.proxy_gateway import ProxyCall

router = APIRouter()


@router.post("")
@limiter.limit(settings.rate_limit_proxy)
async def proxy_generation(
    request: Request,  # noqa: ARG001
    body: ProxyRequest,
    identity: Identity,
    gateway: Gateway,
) -> Response:
    """Run one generation call.

    Errors use the flat envelope ``{error, code, details}``:
    400 malformed body or schema, 402 out of credits, 429 daily ceiling,
    500 missing credentials or every candidate model failed.
    """
    call = ProxyCall(project_id=body.projectId, method=body.method, options=body.options)
    return await gateway.handle(call, identity)
