"""Helpers for running bounded external commands."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CompletedCommand:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class CommandError(RuntimeError):
    """An external command could not be run or exited non-zero."""

    def __init__(self, message: str, *, args: Sequence[str], returncode: Optional[int], stderr: str) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeout(CommandError):
    """An external command exceeded its time budget and was killed."""


async def run_captured(args: Sequence[str], *, timeout: float) -> CompletedCommand:
    """Run ``args`` to completion, capturing output, killing it on timeout."""

    command = [str(part) for part in args]
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandError(
            f"Unable to launch {command[0]}: {exc}", args=command, returncode=None, stderr=str(exc)
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        if process.returncode is None:
            process.kill()
        await process.wait()
        raise CommandTimeout(
            f"{command[0]} timed out after {timeout:.0f}s", args=command, returncode=None, stderr=""
        ) from exc
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    result = CompletedCommand(
        args=command,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", "replace"),
        stderr=stderr.decode("utf-8", "replace"),
    )
    if result.returncode != 0:
        tail = result.stderr.strip().splitlines()[-1:] or [""]
        raise CommandError(
            f"{command[0]} exited with code {result.returncode}: {tail[0]}",
            args=command,
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


__all__ = ["CompletedCommand", "CommandError", "CommandTimeout", "run_captured"]
