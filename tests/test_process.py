from __future__ import annotations

import sys

import pytest

from kina.core.exceptions import CommandError, KinaTimeoutError, ToolNotFoundError
from kina.process import ExecResult, run

pytestmark = [pytest.mark.unit]


class TestRun:
    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        result = await run(sys.executable, "-c", "print('hello')")
        assert result.success
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_not_an_exception(self):
        result = await run(
            sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)",
        )
        assert not result.success
        assert result.exit_code == 3
        assert result.stderr == "boom"

    @pytest.mark.asyncio
    async def test_streams_stdin(self):
        result = await run(
            sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())",
            stdin="kubeadm config",
        )
        assert result.stdout == "KUBEADM CONFIG"

    @pytest.mark.asyncio
    async def test_env_is_layered_over_current_environment(self):
        result = await run(
            sys.executable, "-c", "import os; print(os.environ['KUBECONFIG'], 'PATH' in os.environ)",
            env={"KUBECONFIG": "/tmp/a:/tmp/b"},
        )
        assert result.stdout.split() == ["/tmp/a:/tmp/b", "True"]

    @pytest.mark.asyncio
    async def test_missing_program_raises_tool_not_found(self):
        with pytest.raises(ToolNotFoundError, match="kina-no-such-binary"):
            await run("kina-no-such-binary-xyz")

    @pytest.mark.asyncio
    async def test_timeout_abandons_waiting(self):
        with pytest.raises(KinaTimeoutError, match="did not finish"):
            await run(sys.executable, "-c", "import time; time.sleep(1)", timeout=0.1)

    @pytest.mark.asyncio
    async def test_records_command(self):
        result = await run(sys.executable, "-c", "pass")
        assert result.command == (sys.executable, "-c", "pass")


class TestExecResult:
    def test_check_passes_success_through(self):
        result = ExecResult(("x",), 0, "out", "")
        assert result.check("ctx") is result

    def test_check_raises_with_stderr(self):
        result = ExecResult(("x",), 2, "", "bad thing")
        with pytest.raises(CommandError, match=r"doing x \(exit 2\): bad thing") as info:
            result.check("doing x")
        assert info.value.result is result

