"""Library for issuing commands using asyncio and returning the result."""

import asyncio
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
import os

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_TIMEOUT = 60.0


# No public API
__all__: list[str] = []


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
    await proc.wait()


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float = _TIMEOUT
    """Seconds to wait before the process is killed."""

    redact: tuple[str, ...] = ()
    """Arguments replaced with a placeholder when the command is logged."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        args = ["***" if arg in self.redact else arg for arg in self.cmd]
        return f"{cwd}{' '.join([shlex.quote(arg) for arg in args])}"

    async def _communicate(self, proc: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        try:
            return await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as err:
            await _kill(proc)
            raise self.exc(
                f"Command '{self}' timed out after {self.timeout}s",
                output="command timeout exceeded",
            ) from err
        except asyncio.CancelledError:
            _LOGGER.debug("Command '%s' cancelled, killing process", self)
            await _kill(proc)
            raise

    async def run(self) -> str:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as err:
            raise self.exc(
                f"Command '{self}' could not be started: {err}", output=str(err)
            ) from err
        out, err = await self._communicate(proc)
        if proc.returncode:
            output = [text.decode("utf-8") for text in (out, err) if text]
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            errors.extend(output)
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors), output="\n".join(output))
        return out.decode("utf-8")


async def run(cmd: Command) -> str:
    """Run the specified command and return stdout."""
    return await cmd.run()
