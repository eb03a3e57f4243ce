"""Host command execution for image operations."""

from __future__ import annotations

import subprocess

from tftpi.context import Context
from tftpi.exceptions import CommandError
from tftpi.logging import LoggerFactory

log = LoggerFactory.for_imageops("host")


def run_checked_command(
    command: list[str],
    input_text: str | None = None,
    *,
    ctx: Context | None = None,
    timeout: float | None = None,
) -> str:
    """Run a command and raise CommandError if it fails.

    The context is checked before the command starts and its remaining time
    caps ``timeout``.
    """
    if ctx is not None:
        ctx.check()
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command, -1, f"timed out after {exc.timeout:g}s") from exc
    except FileNotFoundError as exc:
        raise CommandError(command, 127, f"executable not found: {command[0]}") from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr or stdout or "Command failed"
        raise CommandError(command, result.returncode, message)
    return result.stdout
