"""
Proxy Forge - Command Executor Tests
====================================

Completion detection, output filtering, auto-confirm and failures.
"""

import pytest

from conftest import BANNER, FakeChannel, Reply
from proxyforge.core.exceptions import CommandFailed, CommandTimeout, TransportError
from proxyforge.core.provisioning import CommandExecutor
from proxyforge.core.provisioning.executor import classify_line, is_noise, strip_ansi


class LineSink:
    def __init__(self):
        self.lines: list[tuple[str, str]] = []

    async def __call__(self, text: str, level: str) -> None:
        self.lines.append((text, level))

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.lines]


@pytest.fixture
def sink() -> LineSink:
    return LineSink()


def channel_with(script: dict, banner: str = "") -> FakeChannel:
    return FakeChannel(script, banner=banner)


# ==========================================================================
# Helpers
# ==========================================================================

class TestLineHelpers:
    """Tests for line cleanup and classification."""

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[?2004h\x1b[32mok\x1b[0m\r\n") == "ok\n"

    @pytest.mark.parametrize("line", [
        "Reading package lists... Done",
        "Hit:1 http://archive.ubuntu.com/ubuntu jammy InRelease",
        "0% [Working]",
        "root@ip-10-0-0-5:~#",
        "Active: active (running) since Mon",
        "http_port 3128",
    ])
    def test_noise_lines(self, line):
        assert is_noise(line)

    def test_regular_line_is_not_noise(self):
        assert not is_noise("Setting up squid (5.2-1ubuntu4) ...")

    @pytest.mark.parametrize("line,level", [
        ("Warning: something odd", "warning"),
        ("fatal error in module", "error"),
        ("Success!", "success"),
        ("Setting up squid", "progress"),
        ("Restarting squid", "progress"),
        ("nothing special", "info"),
    ])
    def test_classify(self, line, level):
        assert classify_line(line) == level


# ==========================================================================
# Prompt Completion
# ==========================================================================

class TestPromptMode:
    """Tests for prompt-based completion."""

    async def test_returns_filtered_output(self, executor, sink):
        """Echo, blank lines and noise are removed; real lines are logged."""
        channel = channel_with({"install": Reply(
            output="Reading package lists... Done\n\nSetting up squid (5.2) ...\nAll done",
        )})

        output = await executor.execute(channel, "install squid", on_line=sink)

        assert output == "Setting up squid (5.2) ...\nAll done"
        assert sink.lines == [
            ("Setting up squid (5.2) ...", "progress"),
            ("All done", "info"),
        ]
        assert channel.commands == ["install squid"]

    async def test_noise_only_transcript(self, executor, sink):
        """A transcript of noise returns nothing and logs only tagged lines."""
        channel = channel_with({"apt": Reply(output=(
            "Hit:1 http://archive.ubuntu.com/ubuntu jammy InRelease\n"
            "Reading package lists... Done\n"
            "Building dependency tree... Done\n"
            "0% [Working]\n"
            "squid[812]: Warning: could not determine this machines public hostname"
        ))})

        output = await executor.execute(channel, "apt update", on_line=sink)

        assert output == ""
        assert sink.lines == [
            ("squid[812]: Warning: could not determine this machines public hostname", "warning"),
        ]

    async def test_drain_banner_then_execute(self, executor):
        """The login banner is discarded before the first command."""
        channel = FakeChannel({"whoami": "root"}, banner=BANNER)

        banner = await executor.drain_banner(channel, timeout=1.0)
        output = await executor.execute(channel, "whoami")

        assert "Welcome to Ubuntu" in banner
        assert output == "root"

    async def test_consecutive_commands(self, executor):
        """Each call sees only its own command's output."""
        channel = channel_with({"first": "one", "second": "two"})

        assert await executor.execute(channel, "echo first") == "one"
        assert await executor.execute(channel, "echo second") == "two"

    async def test_stderr_logged_as_error(self, executor, sink):
        """Stderr lines are logged at error level and do not complete the command."""
        channel = channel_with({"check": Reply(output="checked", stderr="some noise on stderr")})

        output = await executor.execute(channel, "check it", on_line=sink)

        assert ("some noise on stderr", "error") in sink.lines
        assert "checked" in output


# ==========================================================================
# Auto-confirm
# ==========================================================================

class TestAutoConfirm:
    """Tests for answering [Y/n] prompts."""

    async def test_answers_yes(self, executor, sink):
        """A [Y/n] prompt is answered and announced, then the command completes."""
        channel = channel_with({"install": Reply(confirm=True, output="Setting up squid")})

        output = await executor.execute(channel, "apt-get install squid", on_line=sink)

        assert channel.confirmations == 1
        assert ("Automatically responding: Yes", "info") in sink.lines
        assert "Setting up squid" in output

    async def test_disabled(self, sink):
        """With auto-confirm off the prompt is left alone and the command times out."""
        executor = CommandExecutor(default_timeout=0.2, auto_confirm=False)
        channel = channel_with({"install": Reply(confirm=True)})

        with pytest.raises(CommandTimeout):
            await executor.execute(channel, "apt-get install squid", on_line=sink)

        assert channel.confirmations == 0


# ==========================================================================
# Failures
# ==========================================================================

class TestFailures:
    """Tests for failure markers, timeouts and lost channels."""

    @pytest.mark.parametrize("output", [
        "E: Unable to locate package squid",
        "htpasswd: error: cannot open file",
        "Job for squid.service failed because the control process exited",
    ])
    async def test_failure_markers(self, executor, output):
        channel = channel_with({"run": Reply(output=output)})

        with pytest.raises(CommandFailed) as exc_info:
            await executor.execute(channel, "run it")

        assert exc_info.value.command == "run it"
        assert output in exc_info.value.output

    async def test_timeout_interrupts(self, sink):
        """No completion within the timeout sends Ctrl+C and raises."""
        executor = CommandExecutor(default_timeout=5.0)
        channel = channel_with({"sleep": Reply(hang=True)})

        with pytest.raises(CommandTimeout) as exc_info:
            await executor.execute(channel, "sleep 999", timeout=0.1, on_line=sink)

        assert exc_info.value.timeout == 0.1
        assert channel.interrupts == 1

    async def test_command_after_timeout_sees_own_output(self):
        """The prompt printed after Ctrl+C does not complete the next command."""
        executor = CommandExecutor(default_timeout=5.0)
        channel = channel_with({"apt-get update": [
            Reply(hang=True),
            Reply(output="E: Could not get lock /var/lib/dpkg/lock-frontend"),
        ]})

        with pytest.raises(CommandTimeout):
            await executor.execute(channel, "sudo apt-get update", timeout=0.1)
        with pytest.raises(CommandFailed) as exc_info:
            await executor.execute(channel, "sudo apt-get update", timeout=1.0)

        assert "Could not get lock" in exc_info.value.output
        assert "^C" not in exc_info.value.output

    async def test_output_repeating_the_command_is_kept(self, executor):
        """Only the echo is dropped; later lines naming the command stay."""
        channel = channel_with({"broken": Reply(output="E: broken")})

        with pytest.raises(CommandFailed) as exc_info:
            await executor.execute(channel, "broken")

        assert exc_info.value.output == "E: broken"

    async def test_command_not_found_output(self, executor):
        channel = channel_with({"frobnicate": "bash: frobnicate: command not found"})

        output = await executor.execute(channel, "frobnicate")

        assert output == "bash: frobnicate: command not found"

    async def test_display_hides_secret_arguments(self, executor):
        channel = channel_with({"htpasswd": Reply(output="htpasswd: error: cannot open file")})

        with pytest.raises(CommandFailed) as exc_info:
            await executor.execute(
                channel,
                "sudo htpasswd -cb /etc/squid/passwd proxy hunter2",
                display="sudo htpasswd -cb /etc/squid/passwd proxy ********",
            )

        assert "hunter2" not in str(exc_info.value)
        assert "hunter2" not in exc_info.value.command

    async def test_channel_closed(self, executor):
        """Shell EOF before completion is a transport error."""
        channel = channel_with({"reboot": Reply(eof=True)})

        with pytest.raises(TransportError):
            await executor.execute(channel, "sudo reboot")


# ==========================================================================
# Sentinel Completion
# ==========================================================================

class TestSentinelMode:
    """Tests for marker-based completion."""

    @pytest.fixture
    def sentinel_executor(self) -> CommandExecutor:
        return CommandExecutor(default_timeout=2.0, completion_mode="sentinel")

    async def test_completes_on_marker(self, sentinel_executor, sink):
        """Output is returned and the marker never leaks into it or the log."""
        channel = channel_with({"build": Reply(output="building\n#\nbuilt")})

        output = await sentinel_executor.execute(channel, "make build", on_line=sink)

        assert output == "building\nbuilt"
        assert not any("__PF_DONE_" in text for text in sink.texts)
        assert channel.commands == ["make build"]

    async def test_nonzero_exit_fails(self, sentinel_executor):
        """A non-zero exit status fails even without failure markers."""
        channel = channel_with({"false": Reply(output="", status=1)})

        with pytest.raises(CommandFailed):
            await sentinel_executor.execute(channel, "false")

    async def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            CommandExecutor(completion_mode="psychic")
