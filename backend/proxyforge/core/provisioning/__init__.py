"""
Proxy Forge Provisioning
========================

Installs an authenticated Squid proxy on a remote host over SSH.

Components:
- AsyncSSHTransport: SSH sessions and interactive shells (asyncssh)
- ConnectionPool: Per-host pooled sessions with idle reaping
- CommandExecutor: Command completion, noise filtering, failure detection
- StepPipeline: Ordered steps with validation and retry policy
- LogBroadcaster: Per-job progress log and live stream
- OutcomeRecorder: Persisted installation records and notifications
- InstallationOrchestrator: Job lifecycle
"""

from proxyforge.core.provisioning.connection_pool import ConnectionPool, PoolEntry
from proxyforge.core.provisioning.executor import CommandExecutor
from proxyforge.core.provisioning.log_broadcaster import LogBroadcaster, LogLine, LogStream
from proxyforge.core.provisioning.notifications import NotificationTemplates, TelegramNotifier
from proxyforge.core.provisioning.orchestrator import (
    InstallationJob,
    InstallationOrchestrator,
    JobStatus,
    ServiceConfig,
    TargetConfig,
)
from proxyforge.core.provisioning.recorder import OutcomeRecorder, SQLAlchemyInstallationStore
from proxyforge.core.provisioning.steps import Step, StepPipeline, build_squid_steps
from proxyforge.core.provisioning.transport import AsyncSSHTransport, RemoteTransport, SSHCredentials

__all__ = [
    "AsyncSSHTransport",
    "RemoteTransport",
    "SSHCredentials",
    "ConnectionPool",
    "PoolEntry",
    "CommandExecutor",
    "Step",
    "StepPipeline",
    "build_squid_steps",
    "LogBroadcaster",
    "LogLine",
    "LogStream",
    "OutcomeRecorder",
    "SQLAlchemyInstallationStore",
    "NotificationTemplates",
    "TelegramNotifier",
    "InstallationJob",
    "InstallationOrchestrator",
    "JobStatus",
    "ServiceConfig",
    "TargetConfig",
]
