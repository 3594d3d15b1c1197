"""
Remote Transport
================

Authenticated interactive shells on remote hosts.

The provisioning core only depends on the abstract interfaces below:
a transport that connects to a host, a session that can open an
interactive shell, and a shell channel with streamed text in both
directions. ``AsyncSSHTransport`` is the production implementation.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import asyncssh
import structlog

from proxyforge.core.config import settings
from proxyforge.core.exceptions import JobValidationError, TransportError

logger = structlog.get_logger()


# ==========================================================================
# Credentials & Output Chunks
# ==========================================================================

@dataclass(frozen=True)
class SSHCredentials:
    """Login for the remote host. Exactly one of password or private key."""
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.username:
            raise JobValidationError("SSH username is required")
        if bool(self.password) == bool(self.private_key):
            raise JobValidationError("Exactly one of password or private key must be provided")

    def __repr__(self) -> str:
        method = "password" if self.password else "private_key"
        return f"SSHCredentials(username={self.username!r}, method={method})"


@dataclass
class OutputChunk:
    """A chunk of output from a remote shell."""
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_error: bool = False


# ==========================================================================
# Interfaces
# ==========================================================================

class ShellChannel(ABC):
    """Interactive shell with streamed bidirectional text."""

    @abstractmethod
    async def write(self, text: str) -> None:
        """Send raw text to the shell's input."""
        pass

    @abstractmethod
    def read_output(self) -> AsyncIterator[OutputChunk]:
        """
        Async iterator that yields output chunks as they arrive.

        Stops when the remote side closes the shell.
        """
        pass

    async def interrupt(self) -> None:
        """Send Ctrl+C to the running command."""
        await self.write("\x03")

    @abstractmethod
    async def close(self) -> None:
        """Close the shell."""
        pass


class RemoteSession(ABC):
    """An authenticated connection to one host."""

    @abstractmethod
    async def open_shell(self) -> ShellChannel:
        """Open an interactive shell on the host."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass


class RemoteTransport(ABC):
    """Factory for authenticated sessions."""

    @abstractmethod
    async def connect(
        self,
        host: str,
        port: int,
        credentials: SSHCredentials,
    ) -> RemoteSession:
        """
        Connect and authenticate.

        Raises:
            TransportError: ``transient`` is False for authentication failures
        """
        pass


# ==========================================================================
# asyncssh Implementation
# ==========================================================================

class AsyncSSHChannel(ShellChannel):
    """Shell channel over an asyncssh client process with a PTY."""

    def __init__(self, process: asyncssh.SSHClientProcess):
        self._process = process
        self._output_queue: asyncio.Queue[Optional[OutputChunk]] = asyncio.Queue()
        self._readers = [
            asyncio.create_task(self._pump(process.stdout, is_error=False)),
            asyncio.create_task(self._pump(process.stderr, is_error=True)),
        ]
        self._open_readers = len(self._readers)

    async def _pump(self, stream, is_error: bool) -> None:
        """Copy one remote stream into the output queue."""
        try:
            while True:
                data = await stream.read(4096)
                if not data:
                    break
                await self._output_queue.put(OutputChunk(content=data, is_error=is_error))
        except (asyncssh.Error, OSError) as e:
            logger.warning("Shell stream closed with error", error=str(e), stderr=is_error)
        finally:
            self._open_readers -= 1
            if self._open_readers == 0:
                await self._output_queue.put(None)

    async def write(self, text: str) -> None:
        try:
            self._process.stdin.write(text)
        except (asyncssh.Error, OSError) as e:
            raise TransportError(f"Failed to write to shell: {e}") from e

    async def read_output(self) -> AsyncIterator[OutputChunk]:
        while True:
            chunk = await self._output_queue.get()
            if chunk is None:
                # Keep the end marker for later readers
                self._output_queue.put_nowait(None)
                return
            yield chunk

    async def close(self) -> None:
        self._process.close()
        for task in self._readers:
            task.cancel()
        for task in self._readers:
            try:
                await task
            except asyncio.CancelledError:
                pass


class AsyncSSHSession(RemoteSession):
    """Wraps an asyncssh client connection."""

    def __init__(self, connection: asyncssh.SSHClientConnection, host_key: str):
        self._connection = connection
        self.host_key = host_key

    async def open_shell(self) -> ShellChannel:
        try:
            process = await self._connection.create_process(
                term_type=settings.SSH_TERM_TYPE,
                term_size=(120, 40),
                encoding="utf-8",
                errors="replace",
            )
        except (asyncssh.Error, OSError) as e:
            raise TransportError(f"Failed to open shell on {self.host_key}: {e}") from e

        logger.debug("Shell opened", host=self.host_key)
        return AsyncSSHChannel(process)

    async def close(self) -> None:
        self._connection.close()
        try:
            await self._connection.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.debug("Error while closing SSH connection", host=self.host_key, error=str(e))


class AsyncSSHTransport(RemoteTransport):
    """
    SSH transport built on asyncssh.

    Host keys are not verified: target machines are freshly provisioned
    servers the user has just handed credentials for.
    """

    def __init__(
        self,
        connect_timeout: float = settings.SSH_CONNECT_TIMEOUT,
        keepalive_interval: float = settings.SSH_KEEPALIVE_INTERVAL,
        keepalive_count_max: int = settings.SSH_KEEPALIVE_COUNT_MAX,
    ):
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_count_max = keepalive_count_max

    async def connect(
        self,
        host: str,
        port: int,
        credentials: SSHCredentials,
    ) -> RemoteSession:
        host_key = f"{host}:{port}"
        options = {
            "username": credentials.username,
            "known_hosts": None,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
            "keepalive_count_max": self.keepalive_count_max,
        }

        if credentials.private_key:
            try:
                options["client_keys"] = [asyncssh.import_private_key(credentials.private_key)]
            except (asyncssh.KeyImportError, ValueError) as e:
                raise TransportError(f"Invalid private key: {e}", transient=False) from e
            options["password"] = None
        else:
            options["password"] = credentials.password
            options["client_keys"] = None

        logger.info("Connecting", host=host_key, username=credentials.username)

        try:
            connection = await asyncssh.connect(host, port=port, **options)
        except asyncssh.PermissionDenied as e:
            raise TransportError(f"Authentication failed for {host_key}: {e}", transient=False) from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"SSH connection to {host_key} failed: {e}") from e

        logger.info("SSH connection established", host=host_key)
        return AsyncSSHSession(connection, host_key)
