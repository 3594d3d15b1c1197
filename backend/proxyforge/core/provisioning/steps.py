"""
Step Pipeline
=============

Ordered provisioning steps with per-step validation and retry policy.

Steps run strictly one after another over a single shell channel. A
step either runs a shell command or an action (a coroutine taking the
``StepContext``). Retries happen only when the step's predicate accepts
the error, and the step's remedy runs before every retry.
"""

import asyncio
import inspect
import random
import shlex
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from proxyforge.core.config import settings
from proxyforge.core.exceptions import (
    CommandFailed,
    CommandTimeout,
    ProvisioningError,
    TransportError,
    ValidationStepFailed,
)
from proxyforge.core.provisioning.executor import CommandExecutor, LineCallback
from proxyforge.core.provisioning.transport import ShellChannel

logger = structlog.get_logger()

Action = Callable[["StepContext"], Awaitable[Optional[str]]]
Validator = Callable[[str, "StepContext"], Union[bool, Awaitable[bool]]]
RetryPredicate = Callable[[ProvisioningError], bool]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ==========================================================================
# Step Model
# ==========================================================================

@dataclass(frozen=True)
class Step:
    """One unit of provisioning work."""
    name: str
    command: Optional[str] = None
    action: Optional[Action] = None
    timeout: Optional[float] = None
    validate: Optional[Validator] = None
    retry_predicate: Optional[RetryPredicate] = None
    remedy: Optional[Action] = None
    message: Optional[str] = None
    # Shown in logs and errors instead of a command that carries secrets
    display: Optional[str] = None

    def __post_init__(self):
        if (self.command is None) == (self.action is None):
            raise ValueError(f"Step '{self.name}' needs exactly one of command or action")


class StepContext:
    """What a step's action, validator or remedy can do on the host."""

    def __init__(
        self,
        channel: ShellChannel,
        executor: CommandExecutor,
        on_line: Optional[LineCallback] = None,
    ):
        self.channel = channel
        self.executor = executor
        self.on_line = on_line

    async def run(self, command: str, timeout: Optional[float] = None, display: Optional[str] = None) -> str:
        return await self.executor.execute(
            self.channel, command, timeout=timeout, on_line=self.on_line, display=display,
        )

    async def log(self, text: str, level: str = "info") -> None:
        if self.on_line:
            await self.on_line(text, level)


# ==========================================================================
# Pipeline
# ==========================================================================

class StepPipeline:
    """
    Runs steps sequentially.

    Retry rules:
    - A failed attempt (execution or validation) is retried only if the
      step's ``retry_predicate`` accepts the error and attempts remain
    - The step's ``remedy`` runs before each retry; its own failure is
      logged and does not stop the retry
    - Transport errors are never retried here
    - On final failure the step name is attached to the original error
    """

    def __init__(
        self,
        executor: CommandExecutor,
        max_attempts: int = settings.STEP_MAX_ATTEMPTS,
        retry_backoff: float = settings.STEP_RETRY_BACKOFF,
        retry_jitter: float = settings.STEP_RETRY_JITTER,
        step_delay: float = settings.STEP_DELAY,
    ):
        self.executor = executor
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.retry_jitter = retry_jitter
        self.step_delay = step_delay

    async def run(
        self,
        channel: ShellChannel,
        steps: list[Step],
        on_line: Optional[LineCallback] = None,
    ) -> list[str]:
        """
        Run all steps in order.

        Returns:
            Output of each step, in step order

        Raises:
            ProvisioningError: The first step that ultimately failed, with ``step`` set
        """
        ctx = StepContext(channel, self.executor, on_line)
        outputs = []

        for index, step in enumerate(steps):
            if index:
                await asyncio.sleep(self.step_delay)
            outputs.append(await self._run_step(step, ctx))

        return outputs

    async def _run_step(self, step: Step, ctx: StepContext) -> str:
        if step.message:
            await ctx.log(step.message, "info")
        await ctx.log(f"▶ Executing: {step.name}", "progress")

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt(step, ctx)
            except ProvisioningError as e:
                if not self._should_retry(step, e, attempt):
                    e.step = step.name
                    await ctx.log(f"❌ Step \"{step.name}\" failed: {e.message}", "error")
                    logger.warning("Step failed", step=step.name, attempt=attempt, error=e.message)
                    raise

                logger.info("Retrying step", step=step.name, attempt=attempt, error=e.message)
                await ctx.log(
                    f"⚠️ {step.name} failed (attempt {attempt}/{self.max_attempts}), retrying",
                    "warning",
                )
                if step.remedy:
                    try:
                        await step.remedy(ctx)
                    except ProvisioningError as remedy_error:
                        await ctx.log(f"Remedy for {step.name} failed: {remedy_error.message}", "warning")

                await asyncio.sleep(self.retry_backoff + random.uniform(0, self.retry_jitter))

        # Unreachable: the last attempt either returns or raises
        raise ProvisioningError("Step pipeline exhausted attempts", step=step.name)

    def _should_retry(self, step: Step, error: ProvisioningError, attempt: int) -> bool:
        if attempt >= self.max_attempts or isinstance(error, TransportError):
            return False
        return bool(step.retry_predicate and step.retry_predicate(error))

    async def _attempt(self, step: Step, ctx: StepContext) -> str:
        if step.action:
            output = await step.action(ctx) or ""
        else:
            output = await ctx.run(step.command, timeout=step.timeout, display=step.display)

        if step.validate:
            ok = await maybe_await(step.validate(output, ctx))
            if not ok:
                raise ValidationStepFailed(f"Validation failed for {step.name}")

        return output


# ==========================================================================
# Built-in Actions & Predicates
# ==========================================================================

PACKAGE_LOCK_FILES = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/dpkg/lock",
    "/var/cache/apt/archives/lock",
    "/var/lib/apt/lists/lock",
)

LOCK_ERROR_MARKERS = (
    "Could not get lock",
    "Unable to acquire the dpkg frontend lock",
    "Unable to lock directory",
    "dpkg was interrupted",
    "is another process using it",
)


def is_package_lock_error(error: ProvisioningError) -> bool:
    """True for apt/dpkg lock contention, interrupted dpkg and command timeouts."""
    if isinstance(error, CommandTimeout):
        return True
    if isinstance(error, CommandFailed):
        return any(marker in error.output for marker in LOCK_ERROR_MARKERS)
    return False


async def clear_package_locks(ctx: StepContext) -> str:
    """Remove stale apt/dpkg locks and finish any interrupted dpkg run."""
    await ctx.log("🧹 Clearing package manager locks", "info")
    await ctx.run("sudo rm -f " + " ".join(PACKAGE_LOCK_FILES))
    return await ctx.run("sudo dpkg --configure -a")


def safe_restart(service: str, settle_seconds: Optional[float] = None) -> Action:
    """
    Build an action that stops, starts and verifies a systemd service.

    Raises ValidationStepFailed unless ``systemctl is-active`` reports active.
    """
    settle = settings.RESTART_SETTLE_SECONDS if settle_seconds is None else settle_seconds
    unit = shlex.quote(service)

    async def _restart(ctx: StepContext) -> str:
        await ctx.run(f"sudo systemctl stop {unit}")
        await asyncio.sleep(settle)
        await ctx.run(f"sudo systemctl start {unit}")
        await asyncio.sleep(settle)
        return await verify_service_active(ctx, service)

    return _restart


async def verify_service_active(ctx: StepContext, service: str) -> str:
    """Run ``systemctl is-active`` and require exactly "active"."""
    try:
        output = await ctx.run(f"systemctl is-active {shlex.quote(service)}")
    except CommandFailed as e:
        raise ValidationStepFailed(f"Service {service} is not active: {e.output or 'no output'}")

    if "active" not in output.split():
        raise ValidationStepFailed(f"Service {service} is not active: {output or 'no output'}")
    return output


# ==========================================================================
# Squid Recipe
# ==========================================================================

APT = "sudo DEBIAN_FRONTEND=noninteractive apt-get"


def render_squid_conf(port: int) -> list[str]:
    return [
        "auth_param basic program /usr/lib/squid/basic_ncsa_auth /etc/squid/passwd",
        "auth_param basic realm proxy",
        "acl authenticated proxy_auth REQUIRED",
        "http_access allow authenticated",
        "http_access deny all",
        f"http_port {port}",
        "visible_hostname proxy-server",
    ]


async def _htpasswd_installed(output: str, ctx: StepContext) -> bool:
    return "/usr/bin/htpasswd" in await ctx.run("which htpasswd")


async def _squid_installed(output: str, ctx: StepContext) -> bool:
    return "Status: install ok installed" in await ctx.run("dpkg -s squid")


def _htpasswd_found(output: str, ctx: StepContext) -> bool:
    return "command not found" not in output


def build_squid_steps(service_config, restart_settle_seconds: Optional[float] = None) -> list[Step]:
    """
    Build the Squid provisioning recipe.

    Args:
        service_config: Object with ``port``, ``username`` and ``password``
        restart_settle_seconds: Pause after stopping and after starting squid

    Returns:
        Ordered steps from package update to a verified service restart
    """
    conf_lines = " ".join(shlex.quote(line) for line in render_squid_conf(service_config.port))
    htpasswd = f"sudo htpasswd -cb /etc/squid/passwd {shlex.quote(service_config.username)}"

    return [
        Step(
            name="System Update",
            command=f"{APT} update",
            message="📡 Updating package lists...",
            retry_predicate=is_package_lock_error,
            remedy=clear_package_locks,
        ),
        Step(
            name="System Upgrade",
            command=f"{APT} upgrade -y",
            message="📦 Upgrading system packages...",
            retry_predicate=is_package_lock_error,
            remedy=clear_package_locks,
        ),
        Step(
            name="Install Apache Utils",
            command=f"{APT} install -y apache2-utils",
            message="📦 Installing Apache utilities...",
            validate=_htpasswd_installed,
            retry_predicate=is_package_lock_error,
            remedy=clear_package_locks,
        ),
        Step(
            name="Install Squid",
            command=f"{APT} install -y squid",
            message="📦 Installing Squid proxy server...",
            validate=_squid_installed,
            retry_predicate=is_package_lock_error,
            remedy=clear_package_locks,
        ),
        Step(
            name="Configure Squid",
            command=f"printf '%s\\n' {conf_lines} | sudo tee /etc/squid/squid.conf > /dev/null",
            message="⚙️ Configuring Squid proxy...",
        ),
        Step(
            name="Setup Authentication",
            command=f"{htpasswd} {shlex.quote(service_config.password)}",
            display=f"{htpasswd} ********",
            message="🔐 Setting up proxy authentication...",
            validate=_htpasswd_found,
        ),
        Step(
            name="Restart Service",
            action=safe_restart("squid", restart_settle_seconds),
            message="🔄 Restarting Squid service...",
        ),
    ]
