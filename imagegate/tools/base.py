"""Command runner abstraction.

The build gateway never spawns processes itself. It hands an argument vector
to a CommandRunner, which makes the gateway testable with a scripted fake and
keeps process handling (timeouts, missing binaries) in one place.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Sequence


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one process run."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(ABC):
    """Runs an external command to completion."""

    @abstractmethod
    async def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run `args` and capture both output streams.

        Raises:
            ExternalToolError: The executable could not be started.
            CommandTimeoutError: The process outlived `timeout` seconds.
        """
        raise NotImplementedError
