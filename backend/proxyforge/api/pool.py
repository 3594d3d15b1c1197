"""
Connection Pool API Routes.

Read-only view of pooled SSH sessions.
"""

from fastapi import APIRouter

from proxyforge.api.deps import Pool
from proxyforge.core.schemas import PoolStatusResponse

router = APIRouter(prefix="/api/v1/pool", tags=["pool"])


@router.get("", response_model=PoolStatusResponse)
async def get_pool_status(pool: Pool):
    """Get session counts per ``host:port``."""
    return PoolStatusResponse(hosts=await pool.get_status())
