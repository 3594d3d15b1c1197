"""
Proxy Forge - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.

Provisioning components are built once in the application lifespan and
kept on ``app.state``; tests swap them via ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from proxyforge.core.provisioning import ConnectionPool, InstallationOrchestrator


def get_orchestrator(request: Request) -> InstallationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provisioning service is not ready",
        )
    return orchestrator


def get_pool(request: Request) -> ConnectionPool:
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provisioning service is not ready",
        )
    return pool


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

Orchestrator = Annotated[InstallationOrchestrator, Depends(get_orchestrator)]
Pool = Annotated[ConnectionPool, Depends(get_pool)]
