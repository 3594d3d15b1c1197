"""
Outcome Recorder - Persisted installation records and owner notification.

A pending record is written before any remote change so an interrupted
job leaves a trace. It is promoted to success or deleted before the job
finishes. Remote changes are never rolled back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from proxyforge.core.database import AsyncSessionLocal, get_db_session
from proxyforge.core.exceptions import PersistenceError
from proxyforge.core.models import Installation, InstallationStatus
from proxyforge.core.provisioning.notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallationRecord:
    """Values persisted for one installation."""
    job_id: str
    owner_id: str
    host: str
    port: int
    service_username: str
    service_password: str


@dataclass(frozen=True)
class RecordKey:
    """Identifies the pending record of one job."""
    owner_id: str
    host: str
    port: int
    job_id: str


class InstallationStore(Protocol):
    async def insert_pending(self, record: InstallationRecord) -> None:
        ...

    async def update_to_success(self, key: RecordKey, checked_at: datetime) -> int:
        ...

    async def delete_pending(self, key: RecordKey) -> int:
        ...


# ==========================================================================
# SQLAlchemy Store
# ==========================================================================

class SQLAlchemyInstallationStore:
    """Installation store on the async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def insert_pending(self, record: InstallationRecord) -> None:
        try:
            async with get_db_session(self.session_factory) as session:
                session.add(Installation(
                    job_id=record.job_id,
                    owner_id=record.owner_id,
                    host=record.host,
                    port=record.port,
                    service_username=record.service_username,
                    service_password=record.service_password,
                    status=InstallationStatus.PENDING,
                ))
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to insert pending installation: {e}") from e

    async def update_to_success(self, key: RecordKey, checked_at: datetime) -> int:
        try:
            async with get_db_session(self.session_factory) as session:
                result = await session.execute(
                    update(Installation)
                    .where(*self._pending_filter(key))
                    .values(status=InstallationStatus.SUCCESS, last_checked=checked_at)
                )
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to promote installation: {e}") from e

    async def delete_pending(self, key: RecordKey) -> int:
        try:
            async with get_db_session(self.session_factory) as session:
                result = await session.execute(
                    delete(Installation).where(*self._pending_filter(key))
                )
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to delete pending installation: {e}") from e

    @staticmethod
    def _pending_filter(key: RecordKey) -> tuple:
        return (
            Installation.owner_id == key.owner_id,
            Installation.host == key.host,
            Installation.port == key.port,
            Installation.job_id == key.job_id,
            Installation.status == InstallationStatus.PENDING,
        )


# ==========================================================================
# Recorder
# ==========================================================================

class OutcomeRecorder:
    """
    Records job outcomes.

    Only ``begin_pending`` raises; the later writes and notifications are
    logged on failure and never change the job's outcome.
    """

    def __init__(self, store: InstallationStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier

    async def begin_pending(self, job) -> None:
        """Insert the pending record. Raises PersistenceError on any store failure."""
        record = InstallationRecord(
            job_id=job.id,
            owner_id=job.owner_id,
            host=job.target.host,
            port=job.service.port,
            service_username=job.service.username,
            service_password=job.service.password,
        )
        try:
            await self.store.insert_pending(record)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Unexpected store error for job {job.id}: {e!r}")
            raise PersistenceError(f"Failed to insert pending installation: {e}") from e
        logger.info(f"Pending installation recorded for job {job.id}")

    async def commit_success(self, job) -> bool:
        """Promote the pending record to success. Returns False if that failed."""
        try:
            updated = await self.store.update_to_success(self._key(job), datetime.now(timezone.utc))
        except Exception as e:
            logger.warning(f"Persistence warning for job {job.id}: {e}")
            return False

        if not updated:
            logger.warning(f"No pending installation found to promote for job {job.id}")
            return False
        return True

    async def rollback(self, job) -> bool:
        """Delete the pending record. Returns False if that failed."""
        try:
            await self.store.delete_pending(self._key(job))
        except Exception as e:
            logger.error(f"Failed to roll back pending installation for job {job.id}: {e}")
            return False
        return True

    async def notify(self, recipient_id: Optional[str], message: str) -> bool:
        """Send a notification; failures are logged, never raised."""
        if not recipient_id or not self.notifier:
            return False
        try:
            return await self.notifier.send(recipient_id, message)
        except Exception as e:
            logger.error(f"Notification to {recipient_id} failed: {e}")
            return False

    @staticmethod
    def _key(job) -> RecordKey:
        return RecordKey(
            owner_id=job.owner_id,
            host=job.target.host,
            port=job.service.port,
            job_id=job.id,
        )
