from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TypeAlias

from loguru import logger

from kina.core.exceptions import CommandError, KinaTimeoutError, ToolNotFoundError

log = logger.bind(component="process")


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of one external command. A non-zero exit is data, not an error."""

    command: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def check(self, context: str, error: type[CommandError] = CommandError) -> ExecResult:
        if not self.success:
            raise error(context, self)
        return self


Runner: TypeAlias = Callable[..., Awaitable[ExecResult]]


async def run(
    program: str,
    *args: str,
    stdin: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> ExecResult:
    """Run ``program`` with ``args`` and capture everything it prints.

    ``stdin`` is written to the child before its output is collected. ``env``
    entries are layered over the current environment. When ``timeout``
    elapses the caller stops waiting and KinaTimeoutError is raised; the
    child itself is left alone.
    """
    command = (program, *args)
    log.debug("exec: {cmd}", cmd=" ".join(command))

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as e:
        raise ToolNotFoundError(program) from e

    payload = stdin.encode() if stdin is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(
            asyncio.shield(proc.communicate(payload)), timeout,
        )
    except TimeoutError as e:
        raise KinaTimeoutError(
            f"'{' '.join(command)}' did not finish within {timeout:.0f}s"
        ) from e

    result = ExecResult(
        command=command,
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    if not result.success:
        log.debug(
            "exit {code}: {cmd}: {err}",
            code=result.exit_code, cmd=" ".join(command), err=result.stderr.strip(),
        )
    return result

