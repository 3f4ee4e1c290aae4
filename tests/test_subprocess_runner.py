from __future__ import annotations

import pytest

from imagegate.core.errors import CommandTimeoutError, ExternalToolError
from imagegate.tools.subprocess_runner import SubprocessCommandRunner


@pytest.mark.asyncio
async def test_run_captures_output_exit_code_and_stdin() -> None:
    result = await SubprocessCommandRunner().run(
        ["sh", "-c", "cat; echo oops 1>&2; exit 3"],
        stdin="y\n",
        timeout=10,
    )

    assert result.returncode == 3
    assert result.ok is False
    assert result.stdout == "y\n"
    assert result.stderr == "oops\n"


@pytest.mark.asyncio
async def test_missing_binary_is_an_external_tool_error(tmp_path) -> None:
    with pytest.raises(ExternalToolError):
        await SubprocessCommandRunner().run([str(tmp_path / "chainctl")])


@pytest.mark.asyncio
async def test_unrunnable_binary_is_an_external_tool_error(tmp_path) -> None:
    binary = tmp_path / "chainctl"
    binary.write_bytes(b"\x7fELF\x02\x01\x01\x00not really an executable")
    binary.chmod(0o755)

    with pytest.raises(ExternalToolError) as exc_info:
        await SubprocessCommandRunner().run([str(binary), "version"])

    assert "Unable to start" in str(exc_info.value)


@pytest.mark.asyncio
async def test_slow_command_is_killed_after_timeout() -> None:
    with pytest.raises(CommandTimeoutError):
        await SubprocessCommandRunner().run(["sh", "-c", "sleep 5"], timeout=0.2)
