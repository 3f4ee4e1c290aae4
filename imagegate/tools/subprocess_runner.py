"""CommandRunner backed by asyncio subprocesses."""

from __future__ import annotations

import asyncio
from typing import Mapping, Sequence

from imagegate.core.errors import CommandTimeoutError, ExternalToolError
from imagegate.tools.base import CommandResult, CommandRunner


class SubprocessCommandRunner(CommandRunner):
    """Run commands without a shell; arguments are never interpolated."""

    async def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
            )
        except OSError as exc:
            raise ExternalToolError(f'Unable to start {args[0]}: {exc}') from exc

        payload = stdin.encode('utf-8') if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandTimeoutError(
                f'{args[0]} did not finish within {timeout} seconds'
            ) from exc

        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
        )
