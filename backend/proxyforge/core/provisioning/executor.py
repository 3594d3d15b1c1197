"""
Command Executor
================

Runs one shell command over an interactive channel and decides when it
has finished and whether it failed.

Output is cleaned before anyone sees it: ANSI escapes are stripped, the
command echo and blank lines are dropped and a table of noise patterns
(apt progress, prompts, MOTD, systemd and squid chatter) keeps the
captured output readable. Surviving lines are classified and forwarded
to the job log as they arrive.
"""

import asyncio
import re
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import structlog

from proxyforge.core.config import settings
from proxyforge.core.exceptions import CommandFailed, CommandTimeout, TransportError
from proxyforge.core.provisioning.transport import ShellChannel

logger = structlog.get_logger()

LineCallback = Callable[[str, str], Awaitable[None]]


# ==========================================================================
# Output Patterns
# ==========================================================================

ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[=>()][0-9A-Za-z]?")

NOISE_PATTERNS = [re.compile(p) for p in (
    # Shell prompts and terminal control leftovers
    r"^[\w.-]+@[\w.-]+:",
    r"^[$>#]",
    r"^\[\?2004[hl]",
    # apt progress
    r"^Reading package lists",
    r"^Building dependency tree",
    r"^Reading state information",
    r"^(?:Hit|Get|Ign|Err):\d*",
    r"^\d{1,3}%",
    r"^Waiting for headers",
    r"^Working",
    r"^Connecting to",
    r"^\[.*\]",
    # Login banner and MOTD
    r"^Last login",
    r"^Welcome to",
    r"^System information",
    r"^\s*\*?\s*Documentation:",
    r"^\s*\*?\s*Management:",
    r"^\s*\*?\s*Support:",
    r"^Expanded Security",
    r"^Enable ESM",
    r"^See https?://",
    r"^Hint:",
    r"^EOL",
    # systemd unit status boilerplate and journal lines
    r"^\s*Loaded:",
    r"^\s*Active:",
    r"^\s*Docs:",
    r"^\s*Process:",
    r"^\s*Main PID:",
    r"^\s*Tasks:",
    r"^\s*Memory:",
    r"^\s*CPU:",
    r"^\s*CGroup:",
    r"^(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\s+\d+",
    r"^ip-",
    r"^systemd\[",
    # squid daemon chatter
    r"^squid\[",
    r"^Finished loading",
    r"^Using Least Load",
    r"^Current Directory",
    r"^HTCP",
    r"^Pinger",
    r"^Squid plugin",
    r"^Adaptation",
    r"^Accepting HTTP",
    r"^Started squid",
    r"^Adding password",
    # Already-installed notices and squid.conf echoes
    r"^apache2-utils is already",
    r"^squid is already",
    r"^auth_param",
    r"^acl ",
    r"^http_access",
    r"^http_port",
    r"^visible_hostname",
)]

LEVEL_PATTERNS = [
    ("warning", re.compile(r"[Ww]arning")),
    ("error", re.compile(r"[Ee]rror")),
    ("success", re.compile(r"[Ss]uccess")),
    ("progress", re.compile(r"Installing|Setting up")),
    ("progress", re.compile(r"Starting|Restarting")),
]

CONFIRM_MARKERS = ("[Y/n]", "continue?")

FAILURE_MARKERS = ("E: ", "error:", "failed")

PROMPT_TAIL = re.compile(r"(?:[\w.-]+@[\w.-]+[^\r\n]*[$#]|(?:^|\n)\s*[$#])\s*$")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text).replace("\r", "")


def is_noise(line: str) -> bool:
    return any(p.search(line) for p in NOISE_PATTERNS)


def classify_line(line: str) -> str:
    """Map a line to a log level by keyword."""
    for level, pattern in LEVEL_PATTERNS:
        if pattern.search(line):
            return level
    return "info"


def has_failure_marker(output: str) -> bool:
    return any(marker in output for marker in FAILURE_MARKERS)


# ==========================================================================
# Executor
# ==========================================================================

class CommandExecutor:
    """
    Executes commands on an interactive shell channel.

    No retries happen here; the step pipeline owns retry policy.
    """

    def __init__(
        self,
        default_timeout: float = settings.COMMAND_TIMEOUT,
        completion_mode: str = settings.COMPLETION_MODE,
        auto_confirm: bool = settings.AUTO_CONFIRM_PROMPTS,
        interrupt_drain_timeout: float = settings.INTERRUPT_DRAIN_TIMEOUT,
    ):
        if completion_mode not in ("prompt", "sentinel"):
            raise ValueError(f"Unknown completion mode: {completion_mode}")
        self.default_timeout = default_timeout
        self.completion_mode = completion_mode
        self.auto_confirm = auto_confirm
        self.interrupt_drain_timeout = interrupt_drain_timeout

    async def execute(
        self,
        channel: ShellChannel,
        command: str,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
        display: Optional[str] = None,
    ) -> str:
        """
        Run a command and return its cleaned output.

        Args:
            channel: Open shell channel
            command: Shell command line
            timeout: Seconds to wait for completion (defaults to COMMAND_TIMEOUT)
            on_line: Async callback receiving ``(text, level)`` per surviving line
            display: Command text used in logs and errors instead of ``command``
                (for command lines carrying secrets)

        Returns:
            Captured output, noise removed, one line per entry

        Raises:
            CommandFailed: Output contains a failure marker (or non-zero exit in sentinel mode)
            CommandTimeout: No completion within ``timeout``
            TransportError: The shell closed before the command completed
        """
        timeout = timeout or self.default_timeout
        shown = display or command
        marker = None
        wire_command = command
        if self.completion_mode == "sentinel":
            marker = f"__PF_DONE_{uuid4().hex[:12]}"
            wire_command = f'{command}; echo "{marker}_$?"'

        logger.debug("Executing command", command=shown, timeout=timeout)
        await channel.write(wire_command + "\n")

        run = _CommandRun(self, channel, command, wire_command, shown, marker, on_line)
        try:
            exit_status = await asyncio.wait_for(run.read_until_complete(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Command timed out", command=shown, timeout=timeout)
            await self._interrupt(channel)
            raise CommandTimeout(shown, timeout)

        output = "\n".join(run.captured)
        if (exit_status is not None and exit_status != 0) or has_failure_marker(output):
            logger.info("Command failed", command=shown, exit_status=exit_status)
            raise CommandFailed(shown, output)

        return output

    async def drain_banner(self, channel: ShellChannel, timeout: float = settings.BANNER_TIMEOUT) -> str:
        """Discard the login banner up to the first prompt."""
        return await self._drain_to_prompt(channel, timeout)

    async def _interrupt(self, channel: ShellChannel) -> None:
        """Send Ctrl+C and swallow output up to the prompt it brings back."""
        try:
            await channel.interrupt()
        except Exception as e:
            logger.debug("Interrupt failed", error=str(e))
            return
        # A leftover prompt would complete the next command immediately
        await self._drain_to_prompt(channel, self.interrupt_drain_timeout)

    async def _drain_to_prompt(self, channel: ShellChannel, timeout: float) -> str:
        buffer = ""

        async def _drain() -> None:
            nonlocal buffer
            async for chunk in channel.read_output():
                buffer += strip_ansi(chunk.content)
                if PROMPT_TAIL.search(buffer):
                    return

        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("No prompt seen while draining output", received=len(buffer))
        return buffer


class _CommandRun:
    """Per-command parsing state."""

    def __init__(
        self,
        executor: CommandExecutor,
        channel: ShellChannel,
        command: str,
        wire_command: str,
        shown: str,
        marker: Optional[str],
        on_line: Optional[LineCallback],
    ):
        self.executor = executor
        self.channel = channel
        self.command = command
        self.wire_command = wire_command
        self.shown = shown
        self.on_line = on_line
        self.marker_pattern = re.compile(re.escape(marker) + r"_(\d+)") if marker else None
        self.marker = marker
        self.buffer = ""
        self.partial = ""
        self.echo_seen = False
        self.captured: list[str] = []

    async def read_until_complete(self) -> Optional[int]:
        async for chunk in self.channel.read_output():
            text = strip_ansi(chunk.content)

            if chunk.is_error:
                for line in text.split("\n"):
                    if line.strip():
                        self.captured.append(line.strip())
                        await self._emit(line.strip(), "error")
                continue

            self.buffer += text
            await self._consume(text)

            if self.executor.auto_confirm and any(m in text for m in CONFIRM_MARKERS):
                await self.channel.write("y\n")
                await self._emit("Automatically responding: Yes", "info")
                continue

            status = self._completion()
            if status is not False:
                await self._flush_partial()
                return status

        raise TransportError(f"Shell closed before command completed: {self.shown}")

    def _completion(self):
        """Return the exit status (or None) once complete, else False."""
        if self.marker_pattern:
            match = self.marker_pattern.search(self.buffer)
            return int(match.group(1)) if match else False
        return None if PROMPT_TAIL.search(self.buffer[-512:]) else False

    async def _consume(self, text: str) -> None:
        lines = (self.partial + text).split("\n")
        self.partial = lines.pop()
        for line in lines:
            await self._handle_line(line)

    async def _flush_partial(self) -> None:
        if self.partial:
            await self._handle_line(self.partial)
            self.partial = ""

    async def _handle_line(self, raw: str) -> None:
        line = raw.strip()
        if not line or self._is_echo(line):
            return
        if self.marker and self.marker in line:
            return

        level = classify_line(line)
        if is_noise(line):
            if level != "info":
                await self._emit(line, level)
            return

        self.captured.append(line)
        await self._emit(line, level)

    def _is_echo(self, line: str) -> bool:
        """True for the shell's echo of this command, which is dropped once."""
        if self.echo_seen:
            return False
        if self.command in line:
            self.echo_seen = True
            return True
        # Wrapped pieces of a long echoed command
        if len(line) >= 20 and line in self.wire_command:
            self.echo_seen = self.wire_command.endswith(line)
            return True
        return False

    async def _emit(self, text: str, level: str) -> None:
        if self.on_line:
            await self.on_line(text, level)
