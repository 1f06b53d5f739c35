import asyncio
from dataclasses import dataclass
from pathlib import Path

from slab.constants import PHASE_TIMEOUT, SHELL_OUTPUT_LIMIT
from slab.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class ShellResult:
    command: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0


def _decode(data: bytes) -> str:
    text = data.decode(errors="replace")
    if len(text) > SHELL_OUTPUT_LIMIT:
        text = text[:SHELL_OUTPUT_LIMIT] + "\n... [truncated]\n"
    return text


async def run_shell(command: str, cwd: Path | None = None, timeout: float = PHASE_TIMEOUT) -> ShellResult:
    """Run `command` through the shell; launch errors and timeouts come back as results."""
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        _logger.warning("Failed to start %r: %s", command, e)
        return ShellResult(command, None, error=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return ShellResult(command, None, error=f"timed out after {timeout:g}s", timed_out=True)
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    return ShellResult(command, proc.returncode, _decode(stdout), _decode(stderr))


def format_for_context(result: ShellResult) -> str:
    """User-turn text that records a command run at the model's request."""
    if result.error is not None and not result.timed_out:
        return f"[Shell command failed]\n$ {result.command}\n\nerror: {result.error}\n"

    parts = [f"[Ran shell command]\n$ {result.command}\n\n"]
    for label, text in (("stdout", result.stdout), ("stderr", result.stderr)):
        if text:
            parts.append(f"{label}:\n{text}")
            if not text.endswith("\n"):
                parts.append("\n")
    if result.timed_out:
        parts.append(f"error: {result.error}\n")
    code = result.exit_code if result.exit_code is not None else "-"
    parts.append(f"exit code: {code}\n")
    return "".join(parts)
