"""
Proxy Forge - Pydantic Schemas
==============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Installation Schemas
# ==========================================================================

class InstallRequest(BaseSchema):
    """
    Schema for submitting an installation.

    Port ranges and the proxy username format are checked by the
    orchestrator so every input error is reported the same way.
    """

    host: str = Field(min_length=1, max_length=255)
    ssh_port: int = 22
    ssh_username: str = Field(min_length=1, max_length=100)
    auth_method: Literal["password", "key"] = "password"
    ssh_password: Optional[str] = None
    private_key: Optional[str] = None

    proxy_port: int
    proxy_username: str
    proxy_password: str = Field(min_length=1)

    owner_id: str = Field(min_length=1, max_length=100)
    telegram_chat_id: Optional[str] = None


class InstallAccepted(BaseSchema):
    """Returned immediately after a job is started."""

    job_id: str


class LogLineResponse(BaseSchema):
    timestamp: datetime
    message: str
    level: str


class InstallationResultResponse(BaseSchema):
    proxy: str
    username: str
    password: str


class JobResponse(BaseSchema):
    """Schema for installation job status."""

    job_id: str
    status: Literal["pending", "running", "success", "error"]
    host: str
    proxy_port: int
    result: Optional[InstallationResultResponse] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    log: list[LogLineResponse] = Field(default_factory=list)


# ==========================================================================
# Pool Schemas
# ==========================================================================

class PoolHostStatus(BaseSchema):
    total: int
    in_use: int
    idle: int
    max_per_host: int


class PoolStatusResponse(BaseSchema):
    """Connection pool statistics keyed by ``host:port``."""

    hosts: dict[str, PoolHostStatus] = Field(default_factory=dict)


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
