"""
Installation Orchestrator - Runs proxy installation jobs end to end.

Owns the job lifecycle: PENDING → RUNNING → SUCCESS | ERROR.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Optional
from uuid import uuid4

import structlog

from proxyforge.core.config import settings
from proxyforge.core.exceptions import (
    CommandFailed,
    JobValidationError,
    ProvisioningError,
    TransportError,
)
from proxyforge.core.provisioning.connection_pool import ConnectionPool, PoolEntry
from proxyforge.core.provisioning.executor import CommandExecutor
from proxyforge.core.provisioning.log_broadcaster import LogBroadcaster, LogLine
from proxyforge.core.provisioning.notifications import NotificationTemplates
from proxyforge.core.provisioning.recorder import OutcomeRecorder
from proxyforge.core.provisioning.steps import (
    StepContext,
    StepPipeline,
    build_squid_steps,
    verify_service_active,
)
from proxyforge.core.provisioning.transport import ShellChannel, SSHCredentials

logger = structlog.get_logger()

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

REBOOT_CHECK = 'test -f /var/run/reboot-required && echo "Reboot required" || echo "No reboot required"'


# ==========================================================================
# Job Model
# ==========================================================================

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATUSES = (JobStatus.SUCCESS, JobStatus.ERROR)


@dataclass
class TargetConfig:
    """The host to provision and how to log in."""
    host: str
    credentials: SSHCredentials
    ssh_port: int = 22


@dataclass
class ServiceConfig:
    """The proxy to install."""
    port: int
    username: str
    password: str = field(repr=False)


@dataclass
class InstallationResult:
    endpoint: str
    username: str
    password: str = field(repr=False)

    def to_dict(self) -> dict:
        return {"proxy": self.endpoint, "username": self.username, "password": self.password}


@dataclass
class InstallationJob:
    """In-memory state of one installation run."""
    target: TargetConfig
    service: ServiceConfig
    owner_id: str
    notify_chat_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    result: Optional[InstallationResult] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def validate_job_input(target: TargetConfig, service: ServiceConfig, owner_id: str) -> None:
    """Reject malformed input before any remote work. Raises JobValidationError."""
    if not target.host or not target.host.strip():
        raise JobValidationError("Host is required")
    if not 1 <= target.ssh_port <= 65535:
        raise JobValidationError("SSH port must be between 1 and 65535")
    if not 1 <= service.port <= 65535:
        raise JobValidationError("Invalid proxy port number")
    if not USERNAME_PATTERN.match(service.username or ""):
        raise JobValidationError("Proxy username can only contain letters, numbers, underscores, and hyphens")
    if not service.password:
        raise JobValidationError("Proxy password is required")
    if not owner_id:
        raise JobValidationError("Owner is required")


# ==========================================================================
# Orchestrator
# ==========================================================================

class InstallationOrchestrator:
    """
    Runs installation jobs as background tasks.

    Flow per job:
    record pending → lease session → pre-flight → recipe → verify →
    record outcome → notify → release session → close log stream
    """

    def __init__(
        self,
        pool: ConnectionPool,
        broadcaster: LogBroadcaster,
        recorder: OutcomeRecorder,
        executor: Optional[CommandExecutor] = None,
        pipeline: Optional[StepPipeline] = None,
        restart_settle_seconds: Optional[float] = None,
        job_retention: float = settings.JOB_RETENTION_SECONDS,
        sweep_interval: float = settings.JOB_SWEEP_INTERVAL,
    ):
        self.pool = pool
        self.broadcaster = broadcaster
        self.recorder = recorder
        self.executor = executor or CommandExecutor()
        self.pipeline = pipeline or StepPipeline(self.executor)
        self.restart_settle_seconds = restart_settle_seconds
        self.job_retention = job_retention
        self.sweep_interval = sweep_interval

        self._jobs: dict[str, InstallationJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._sweeper_task: Optional[asyncio.Task] = None
        self._sweeper_running = False

    # ======================================================================
    # Submission & Lookup
    # ======================================================================

    def submit(
        self,
        target: TargetConfig,
        service: ServiceConfig,
        owner_id: str,
        notify_chat_id: Optional[str] = None,
    ) -> InstallationJob:
        """
        Validate input, register a job and start it in the background.

        Raises:
            JobValidationError: Input is malformed (no job is created)
        """
        validate_job_input(target, service, owner_id)

        job = InstallationJob(
            target=target,
            service=service,
            owner_id=owner_id,
            notify_chat_id=notify_chat_id,
        )
        self._jobs[job.id] = job

        task = asyncio.create_task(self.run_job(job))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info("Installation job submitted", job_id=job.id, host=target.host, port=service.port)
        return job

    def get_job(self, job_id: str) -> Optional[InstallationJob]:
        return self._jobs.get(job_id)

    def get_log(self, job_id: str) -> list[LogLine]:
        return self.broadcaster.get_log(job_id)

    async def wait_for(self, job_id: str) -> Optional[InstallationJob]:
        """Wait until a job's background task has finished."""
        task = self._tasks.get(job_id)
        if task:
            await asyncio.shield(task)
        return self._jobs.get(job_id)

    async def shutdown(self) -> None:
        """Stop the sweeper and cancel running jobs."""
        await self.stop_sweeper()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ======================================================================
    # Retention Sweeper
    # ======================================================================

    async def prune_finished(self, now: Optional[datetime] = None) -> int:
        """
        Forget terminal jobs that finished more than ``job_retention`` ago.

        Args:
            now: Timestamp to compare against (defaults to now)

        Returns:
            Number of jobs removed
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.job_retention)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.is_terminal and job_id not in self._tasks
            and job.finished_at is not None and job.finished_at <= cutoff
        ]

        for job_id in expired:
            self._jobs.pop(job_id, None)
            await self.broadcaster.forget(job_id)

        if expired:
            logger.info("Pruned finished jobs", count=len(expired))
        return len(expired)

    async def start_sweeper(self) -> None:
        """Start the finished-job sweeper task."""
        if self._sweeper_running:
            return

        self._sweeper_running = True
        self._sweeper_task = asyncio.create_task(self._sweeper_loop())
        logger.info("Job sweeper started", interval=self.sweep_interval, retention=self.job_retention)

    async def stop_sweeper(self) -> None:
        """Stop the finished-job sweeper task."""
        self._sweeper_running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

    async def _sweeper_loop(self) -> None:
        while self._sweeper_running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.prune_finished()
            except Exception as e:
                logger.error("Sweeper error", error=str(e))

    # ======================================================================
    # Execution
    # ======================================================================

    async def run_job(self, job: InstallationJob) -> InstallationJob:
        """Run a job to a terminal state. Never raises ProvisioningError."""
        log = partial(self.broadcaster.append, job.id)
        self._jobs.setdefault(job.id, job)
        self._set_status(job, JobStatus.RUNNING)

        try:
            await self.recorder.begin_pending(job)
        except ProvisioningError as e:
            await log(f"❌ Could not record installation: {e.message}", "error")
            await self._finish_failed(job, e, rollback=False)
            await self._close_stream(job)
            return job

        entry: Optional[PoolEntry] = None
        channel: Optional[ShellChannel] = None
        discard = False

        try:
            host_key = f"{job.target.host}:{job.target.ssh_port}"
            await log(f"🔌 Connecting to {host_key}...")
            entry = await self.pool.acquire(job.target.host, job.target.ssh_port, job.target.credentials)
            channel = await entry.session.open_shell()
            await log("✅ Shell session created", "success")
            await self.executor.drain_banner(channel)

            await self._preflight(channel, log)
            await self.pipeline.run(channel, build_squid_steps(job.service, self.restart_settle_seconds), on_line=log)
            await self._verify(channel, log)
        except ProvisioningError as e:
            discard = isinstance(e, TransportError)
            await self._finish_failed(job, e)
        except asyncio.CancelledError:
            await self._finish_failed(job, ProvisioningError("Job interrupted"))
            raise
        except Exception as e:
            logger.exception("Unexpected installation error", job_id=job.id)
            await self._finish_failed(job, ProvisioningError(f"Unexpected error: {e}"))
        else:
            await self._finish_succeeded(job, log)
        finally:
            await self._release(entry, channel, discard)
            await self._close_stream(job)

        return job

    async def _preflight(self, channel: ShellChannel, log) -> None:
        await log("🔑 Verifying SSH connection...")
        try:
            output = await self.executor.execute(channel, "sudo -n true", on_line=log)
            if "password is required" in output:
                raise CommandFailed("sudo -n true", output)
        except ProvisioningError as e:
            e.step = e.step or "Sudo Check"
            raise

        try:
            reboot = await self.executor.execute(channel, REBOOT_CHECK, on_line=log)
        except ProvisioningError as e:
            e.step = e.step or "Reboot Check"
            raise
        if "Reboot required" in reboot:
            await log(
                "⚠️ WARNING: System restart required. Installation may fail until reboot is performed.",
                "warning",
            )

    async def _verify(self, channel: ShellChannel, log) -> None:
        await log("✅ Verifying Squid service status...")
        try:
            await verify_service_active(StepContext(channel, self.executor, log), "squid")
        except ProvisioningError as e:
            e.step = e.step or "Verify Service"
            raise

    # ======================================================================
    # Outcomes
    # ======================================================================

    async def _finish_succeeded(self, job: InstallationJob, log) -> None:
        endpoint = f"{job.target.host}:{job.service.port}"
        job.result = InstallationResult(
            endpoint=endpoint,
            username=job.service.username,
            password=job.service.password,
        )

        if not await self.recorder.commit_success(job):
            await log("⚠️ Installation succeeded but the record could not be updated", "warning")

        await log("✨ Installation completed successfully!", "success")
        await log("📝 Proxy Details:")
        await log(f"🌐 Proxy Address: {endpoint}")
        await log(f"👤 Username: {job.service.username}")
        await log(f"🔑 Password: {job.service.password}")

        self._set_status(job, JobStatus.SUCCESS)
        logger.info("Installation succeeded", job_id=job.id, endpoint=endpoint)

        await self.recorder.notify(
            job.notify_chat_id,
            NotificationTemplates.installation_succeeded(endpoint, job.service.username, job.service.password),
        )

    async def _finish_failed(self, job: InstallationJob, error: ProvisioningError, rollback: bool = True) -> None:
        job.error = str(error)
        job.failed_step = error.step

        if rollback:
            await self.recorder.rollback(job)

        self._set_status(job, JobStatus.ERROR)
        logger.warning("Installation failed", job_id=job.id, step=error.step, error=error.message)

        await self.recorder.notify(
            job.notify_chat_id,
            NotificationTemplates.installation_failed(job.target.host, error.message, error.step),
        )

    async def _release(self, entry: Optional[PoolEntry], channel: Optional[ShellChannel], discard: bool) -> None:
        if channel:
            try:
                await channel.close()
            except Exception as e:
                logger.debug("Error closing shell", error=str(e))
                discard = True
        if entry:
            if discard:
                await self.pool.discard(entry)
            else:
                await self.pool.release(entry)

    async def _close_stream(self, job: InstallationJob) -> None:
        if job.status == JobStatus.SUCCESS:
            event = {"type": "complete", "success": True, "details": job.result.to_dict()}
        else:
            event = {"type": "error", "message": job.error or "Installation failed"}
        await self.broadcaster.close(job.id, event)

    def _set_status(self, job: InstallationJob, status: JobStatus) -> None:
        if job.is_terminal:
            return
        job.status = status
        now = datetime.now(timezone.utc)
        if status == JobStatus.RUNNING:
            job.started_at = now
        elif status in TERMINAL_STATUSES:
            job.finished_at = now
