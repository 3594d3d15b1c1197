"""
Installations API Routes.

Submit proxy installations, poll their status and follow their progress
as a server-sent event stream.
"""

import json

import structlog
from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from proxyforge.api.deps import Orchestrator
from proxyforge.core.provisioning import InstallationJob, ServiceConfig, SSHCredentials, TargetConfig
from proxyforge.core.schemas import (
    InstallAccepted,
    InstallationResultResponse,
    InstallRequest,
    JobResponse,
    LogLineResponse,
)

router = APIRouter(prefix="/api/v1/installations", tags=["installations"])

logger = structlog.get_logger()


def _job_response(job: InstallationJob, orchestrator) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        status=job.status.value,
        host=job.target.host,
        proxy_port=job.service.port,
        result=InstallationResultResponse(**job.result.to_dict()) if job.result else None,
        error=job.error,
        failed_step=job.failed_step,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        log=[
            LogLineResponse(timestamp=line.timestamp, message=line.text, level=line.level)
            for line in orchestrator.get_log(job.id)
        ],
    )


def _get_job_or_404(job_id: str, orchestrator) -> InstallationJob:
    job = orchestrator.get_job(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Installation {job_id} not found",
        )
    return job


@router.post("", response_model=InstallAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_installation(
    request: InstallRequest,
    orchestrator: Orchestrator,
):
    """
    Start installing a Squid proxy on the given host.

    Returns immediately with the job id; progress is available on the
    ``/{job_id}/stream`` endpoint.
    """
    if request.auth_method == "key":
        credentials = SSHCredentials(username=request.ssh_username, private_key=request.private_key)
    else:
        credentials = SSHCredentials(username=request.ssh_username, password=request.ssh_password)

    job = orchestrator.submit(
        target=TargetConfig(host=request.host, ssh_port=request.ssh_port, credentials=credentials),
        service=ServiceConfig(
            port=request.proxy_port,
            username=request.proxy_username,
            password=request.proxy_password,
        ),
        owner_id=request.owner_id,
        notify_chat_id=request.telegram_chat_id,
    )
    return InstallAccepted(job_id=job.id)


@router.get("/{job_id}", response_model=JobResponse)
async def get_installation(
    job_id: str,
    orchestrator: Orchestrator,
):
    """Get job status, result or error, and the full ordered log."""
    job = _get_job_or_404(job_id, orchestrator)
    return _job_response(job, orchestrator)


@router.get("/{job_id}/stream")
async def stream_installation(
    job_id: str,
    orchestrator: Orchestrator,
):
    """
    Server-sent event stream of installation progress.

    Event format (``data:`` lines, JSON):
    {"type": "connected"} first, then {"type": "log", "message": ...}
    for every line, and finally one of
    {"type": "complete", "success": true, "details": {...}} or
    {"type": "error", "message": ...}
    """
    _get_job_or_404(job_id, orchestrator)

    broadcaster = orchestrator.broadcaster
    stream = await broadcaster.subscribe(job_id)

    async def sse():
        try:
            async for event in stream:
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            await broadcaster.unsubscribe(job_id, stream)
            logger.debug("Stream subscriber left", job_id=job_id, dropped=stream.dropped)

    return StreamingResponse(
        sse(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
