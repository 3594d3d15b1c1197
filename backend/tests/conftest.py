"""
Proxy Forge - Test Fixtures
===========================

Shared pytest fixtures for all tests.

The remote host is simulated by ``FakeTransport``: every command written
to a ``FakeChannel`` is echoed, answered from a per-command script and
followed by a shell prompt, like an interactive PTY would.
"""

import asyncio
import re
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from proxyforge.api.deps import get_orchestrator, get_pool
from proxyforge.api.main import app
from proxyforge.core.database import Base
from proxyforge.core.exceptions import TransportError
from proxyforge.core.provisioning import (
    CommandExecutor,
    ConnectionPool,
    InstallationOrchestrator,
    LogBroadcaster,
    OutcomeRecorder,
    SQLAlchemyInstallationStore,
    StepPipeline,
)
from proxyforge.core.provisioning.transport import (
    OutputChunk,
    RemoteSession,
    RemoteTransport,
    ShellChannel,
    SSHCredentials,
)


# ==========================================================================
# Fake Remote Host
# ==========================================================================

PROMPT = "root@test:~# "
BANNER = "Welcome to Ubuntu 22.04.4 LTS\r\nLast login: Mon Oct 19 10:00:00 2026\r\n" + PROMPT


@dataclass
class Reply:
    """Scripted reaction of the fake host to one command."""
    output: str = ""
    status: int = 0
    stderr: str = ""
    confirm: bool = False
    hang: bool = False
    eof: bool = False


Script = dict[str, Union[str, Reply, list]]

DEFAULT_SCRIPT: Script = {
    "reboot-required": "No reboot required",
    "which htpasswd": "/usr/bin/htpasswd",
    "dpkg -s squid": "Package: squid\nStatus: install ok installed\nPriority: optional",
    "systemctl is-active": "active",
    "apt-get update": "Hit:1 http://archive.ubuntu.com/ubuntu jammy InRelease\nReading package lists... Done",
    "apt-get install -y squid": "Reading package lists... Done\nSetting up squid (5.2-1ubuntu4) ...",
}

SENTINEL = re.compile(r'; echo "(__PF_DONE_\w+?)_\$\?"$')


class FakeChannel(ShellChannel):
    """Interactive shell that answers from a script."""

    def __init__(self, script: Script, banner: str = BANNER):
        self.script = script
        self.commands: list[str] = []
        self.confirmations = 0
        self.interrupts = 0
        self.closed = False
        self._queue: asyncio.Queue[Optional[OutputChunk]] = asyncio.Queue()
        self._awaiting_confirm: Optional[tuple[Reply, Optional[str]]] = None
        if banner:
            self._put(banner)

    def _put(self, text: str, is_error: bool = False) -> None:
        self._queue.put_nowait(OutputChunk(content=text, is_error=is_error))

    def _reply_for(self, command: str) -> Reply:
        for key, value in self.script.items():
            if key in command:
                if isinstance(value, list):
                    value = value.pop(0) if len(value) > 1 else value[0]
                return Reply(output=value) if isinstance(value, str) else value
        return Reply()

    async def write(self, text: str) -> None:
        if self.closed:
            raise TransportError("Channel closed")
        if text == "\x03":
            self.interrupts += 1
            self._awaiting_confirm = None
            self._put("^C\r\n" + PROMPT)
            return
        if text == "y\n":
            self.confirmations += 1
            self._put("y\r\n")
            if self._awaiting_confirm:
                reply, marker = self._awaiting_confirm
                self._awaiting_confirm = None
                self._finish(reply, marker)
            return

        wire = text.rstrip("\n")
        match = SENTINEL.search(wire)
        marker = match.group(1) if match else None
        command = wire[:match.start()] if match else wire
        self.commands.append(command)

        reply = self._reply_for(command)
        self._put(wire + "\r\n")

        if reply.eof:
            self._queue.put_nowait(None)
            return
        if reply.hang:
            return
        if reply.confirm:
            self._put("After this operation, 2048 kB of additional disk space will be used.\r\n")
            self._put("Do you want to continue? [Y/n] ")
            self._awaiting_confirm = (reply, marker)
            return
        self._finish(reply, marker)

    def _finish(self, reply: Reply, marker: Optional[str]) -> None:
        if reply.output:
            self._put(reply.output.replace("\n", "\r\n") + "\r\n")
        if reply.stderr:
            self._put(reply.stderr + "\n", is_error=True)
        if marker:
            self._put(f"{marker}_{reply.status}\r\n")
        self._put(PROMPT)

    async def read_output(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                self._queue.put_nowait(None)
                return
            yield chunk

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeSession(RemoteSession):
    def __init__(self, transport: "FakeTransport"):
        self.transport = transport
        self.closed = False
        self.channels: list[FakeChannel] = []

    async def open_shell(self) -> ShellChannel:
        channel = FakeChannel(self.transport.script)
        self.channels.append(channel)
        self.transport.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.closed = True


class FakeTransport(RemoteTransport):
    """
    Transport whose sessions talk to a scripted host.

    ``failures`` is a list of errors raised by successive ``connect`` calls
    before connecting succeeds.
    """

    def __init__(self, script: Optional[Script] = None, failures: Optional[list] = None):
        self.script = dict(DEFAULT_SCRIPT)
        self.script.update(script or {})
        self.failures = list(failures or [])
        self.connects = 0
        self.sessions: list[FakeSession] = []
        self.channels: list[FakeChannel] = []

    async def connect(self, host: str, port: int, credentials: SSHCredentials) -> RemoteSession:
        self.connects += 1
        if self.failures:
            raise self.failures.pop(0)
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, recipient_id: str, text: str) -> bool:
        self.sent.append((recipient_id, text))
        if self.fail:
            raise RuntimeError("telegram down")
        return True


# ==========================================================================
# Core Fixtures
# ==========================================================================

@pytest.fixture
def credentials() -> SSHCredentials:
    return SSHCredentials(username="root", password="s3cret")


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel(dict(DEFAULT_SCRIPT), banner="")


@pytest.fixture
def executor() -> CommandExecutor:
    return CommandExecutor(default_timeout=2.0, completion_mode="prompt", auto_confirm=True)


@pytest.fixture
def broadcaster() -> LogBroadcaster:
    return LogBroadcaster(queue_size=100)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


def make_pool(transport: RemoteTransport, **overrides) -> ConnectionPool:
    options = dict(
        max_per_host=3,
        max_retries=3,
        retry_delay=0.01,
        wait_timeout=0.2,
        poll_interval=0.02,
        idle_ttl=300.0,
        reap_interval=60.0,
    )
    options.update(overrides)
    return ConnectionPool(transport, **options)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    In-memory SQLite session factory.

    Creates all tables before the test, drops them after.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SQLAlchemyInstallationStore:
    return SQLAlchemyInstallationStore(session_factory)


# ==========================================================================
# Orchestrator Fixtures
# ==========================================================================

def make_orchestrator(transport, store, notifier, broadcaster=None, **executor_options) -> InstallationOrchestrator:
    executor = CommandExecutor(
        default_timeout=executor_options.pop("default_timeout", 2.0),
        completion_mode=executor_options.pop("completion_mode", "prompt"),
        auto_confirm=True,
    )
    return InstallationOrchestrator(
        pool=make_pool(transport),
        broadcaster=broadcaster or LogBroadcaster(queue_size=1000),
        recorder=OutcomeRecorder(store, notifier),
        executor=executor,
        pipeline=StepPipeline(executor, max_attempts=3, retry_backoff=0.0, step_delay=0.0),
        restart_settle_seconds=0.0,
    )


@pytest.fixture
def orchestrator(fake_transport, store, notifier) -> InstallationOrchestrator:
    return make_orchestrator(fake_transport, store, notifier)


# ==========================================================================
# HTTP Client Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(orchestrator: InstallationOrchestrator) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client wired to the test orchestrator.

    The application lifespan is not run; provisioning components come
    from dependency overrides instead of ``app.state``.
    """
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_pool] = lambda: orchestrator.pool

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    await orchestrator.shutdown()
