"""
talos_hyperv/utils/async_command_runner.py

Runs external CLIs (talosctl, kubectl, helm, PowerShell) as asyncio subprocesses,
with optional retries and an optional error parser that turns known stderr
patterns into a short message.

Usage example:
    from talos_hyperv.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["talosctl", "version", "--nodes", ip], retries=1)
    except CommandError as err:
        print(f"talosctl failed: {err}")
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Callable, Dict, List, Optional, Sequence

from talos_hyperv.errors import PreconditionError
from talos_hyperv.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """An external command exited with a code not treated as success.

    Attributes:
        return_code: Exit code of the process, or None if it never ran.
        stderr: Captured standard error, if any.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


def require_tools(tools: Sequence[str]) -> None:
    """
    Verify every named executable is on PATH.

    Raises:
        PreconditionError: Listing every missing tool.
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PreconditionError(
            f"Required tool(s) not found on PATH: {', '.join(missing)}"
        )


async def run_command(
    command: List[str],
    *,
    sensitive: bool = False,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Sequence[int] = (0,),
    retries: int = 1,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Execute a command and return its stripped stdout.

    Args:
        command: Executable and arguments.
        sensitive: If True, omit the command line and output from the error message.
        env: Full environment for the child. None inherits the parent's.
        cwd: Working directory.
        input_data: Text written to stdin.
        successful_return_codes: Exit codes treated as success.
        retries: Total attempts before giving up.
        retry_delay: Seconds between attempts.
        timeout: Per-attempt limit in seconds; the child is killed when exceeded.
        error_parser: Receives stderr; a non-None return becomes the error message.

    Raises:
        CommandError: If the command cannot be started, times out, or exits
            with a code outside `successful_return_codes` on every attempt.
    """

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _attempt() -> str:
        logger.debug("Running: %s", "<redacted>" if sensitive else " ".join(command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
            )
        except OSError as exc:
            raise CommandError(f"Could not start '{command[0]}': {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input_data.encode() if input_data else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(
                f"'{command[0]}' timed out after {timeout:g}s", None
            ) from exc
        except asyncio.CancelledError:
            # Operator interrupt: do not leave the child running.
            if proc.returncode is None:
                proc.kill()
            raise

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in successful_return_codes:
            short = error_parser(stderr_str) if error_parser else None
            if short is not None:
                raise CommandError(short, proc.returncode, stderr_str)
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"'{command[0]}' failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _attempt()
