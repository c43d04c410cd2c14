"""Tests for command library."""

import asyncio

import pytest

from helm_operator.command import Command, run
from helm_operator.exceptions import CommandException, HelmException


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_exception_type() -> None:
    """Test the configured exception type is raised on failure."""
    with pytest.raises(HelmException):
        await run(Command(["/bin/false"], exc=HelmException))


async def test_command_timeout() -> None:
    """Test a command is killed when it exceeds its timeout."""
    with pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "10"], timeout=0.1))


async def test_command_cancelled() -> None:
    """Test cancelling the caller propagates into the running command."""
    task = asyncio.create_task(run(Command(["sleep", "10"])))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_redacted_string() -> None:
    """Test secrets are not rendered in the debug string."""
    cmd = Command(["helm", "repo", "add", "--password", "hunter2"], redact=("hunter2",))
    assert "hunter2" not in str(cmd)
    assert str(cmd) == "helm repo add --password '***'"


async def test_failed_command_output() -> None:
    """Test the output of a failed command is kept apart from the command line."""
    cmd = Command(["sh", "-c", "echo 'Error: boom' >&2; exit 1", "--timeout", "400s"])
    with pytest.raises(CommandException) as exc_info:
        await run(cmd)
    assert exc_info.value.output == "Error: boom\n"
    assert "400s" in str(exc_info.value)


async def test_command_not_started() -> None:
    """Test a missing executable raises the configured exception."""
    with pytest.raises(HelmException, match="could not be started") as exc_info:
        await run(Command(["/nonexistent/helm", "version"], exc=HelmException))
    assert exc_info.value.output is not None
    assert isinstance(exc_info.value.__cause__, FileNotFoundError)


async def test_command_timeout_output() -> None:
    """Test a timed out command reports the timeout as its output."""
    with pytest.raises(CommandException) as exc_info:
        await run(Command(["sleep", "10"], timeout=0.1))
    assert exc_info.value.output is not None
    assert "timeout" in exc_info.value.output
