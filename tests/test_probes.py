"""Tests for external command execution."""

import asyncio

import pytest

from portscope.errors import ExternalToolFailure
from portscope.probes import CommandResult, run_command


class TestRunCommand:
    """Tests for run_command."""

    @pytest.mark.asyncio
    async def test_success(self):
        result = await run_command(["echo", "hello"])
        assert result.success
        assert result.stdout == "hello\n"
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        result = await run_command(["definitely-not-a-real-tool-xyz"])
        assert not result.success
        assert "command not found" in result.error

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        result = await run_command(["sh", "-c", "echo oops >&2; exit 3"])
        assert not result.success
        assert result.exit_code == 3
        assert result.error == "oops"

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await run_command(["sleep", "5"], timeout=0.1)
        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_empty_argv(self):
        result = await run_command([])
        assert result.error == "No command provided"

    @pytest.mark.asyncio
    async def test_exec_format_error(self, tmp_path):
        script = tmp_path / "not-a-program"
        script.write_bytes(b"\x00\x01\x02 garbage")
        script.chmod(0o755)

        result = await run_command([str(script)])

        assert not result.success
        assert result.error.startswith(f"{script}: ")

    @pytest.mark.asyncio
    async def test_process_gone_before_kill(self, monkeypatch):
        class VanishedProcess:
            returncode = None

            async def communicate(self):
                await asyncio.sleep(5)

            def kill(self):
                raise ProcessLookupError

            async def wait(self):
                return -9

        async def spawn(*args, **kwargs):
            return VanishedProcess()

        monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)

        result = await run_command(["ss", "-tlnp"], timeout=0.05)

        assert not result.success
        assert "timed out" in result.error


class TestCommandResult:
    def test_raise_for_failure(self):
        with pytest.raises(ExternalToolFailure, match="ss failed: exit code 2"):
            CommandResult(success=False, exit_code=2).raise_for_failure("ss")

    def test_success_does_not_raise(self):
        CommandResult(success=True).raise_for_failure("ss")
