"""API v1 router aggregator.

All v1 endpoint routers are included here under the /api/v1 prefix.
"""

from fastapi import APIRouter

from aiproxy.api.v1 import proxy, usage

router = APIRouter()

# =============================================================================
# AI proxy
# =============================================================================

router.include_router(proxy.router, prefix="/ai-proxy", tags=["ai-proxy"])

# =============================================================================
# Usage and credits
# =============================================================================

router.include_router(usage.router, prefix="/usage", tags=["usage"])
