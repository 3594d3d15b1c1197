"""
Proxy Forge - Database Models
=============================

SQLAlchemy models for persisted installation records.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from proxyforge.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class InstallationStatus(str, enum.Enum):
    """Persisted installation state."""
    PENDING = "pending"    # Job still running, recovery anchor
    SUCCESS = "success"    # Proxy verified active on the host


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Installation(Base, TimestampMixin):
    """
    A proxy installed on a remote host.

    Rows are inserted as PENDING when a job starts and are either promoted
    to SUCCESS or deleted before the job finishes.
    """

    __tablename__ = "installations"
    __table_args__ = (
        Index("ix_installations_owner_status", "owner_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    job_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Proxy endpoint
    host: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    port: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    service_username: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    service_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    status: Mapped[InstallationStatus] = mapped_column(
        Enum(InstallationStatus),
        default=InstallationStatus.PENDING,
        nullable=False,
    )
    last_checked: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Installation {self.host}:{self.port} [{self.status.value}]>"
