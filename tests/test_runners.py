import asyncio
import sys

import pytest

from toolgate.service.errors import ToolExecutionError
from toolgate.service.runners import (
    CallableRunner,
    CancellationSignal,
    RunnerRegistry,
    SubprocessRunner,
    build_default_runners,
)
from toolgate.storage.models import Tool

ECHO_STDIN = "import json, sys; data = json.load(sys.stdin); print(json.dumps({'got': data}))"


def _tool(*args, **options):
    return Tool(id="proc", name="Proc", runner_options={"command": [sys.executable, "-c", *args], **options})


class TestCancellationSignal:
    async def test_first_reason_wins(self):
        signal = CancellationSignal()
        assert signal.cancel("timeout") is True
        assert signal.cancel("user") is False
        assert signal.reason == "timeout"
        assert signal.is_set()


class TestSubprocessRunner:
    async def test_json_stdout_is_parsed(self):
        result = await SubprocessRunner().execute(_tool(ECHO_STDIN), {"x": 1}, CancellationSignal())

        assert result.output == {"got": {"x": 1}}
        assert result.usage["returncode"] == 0

    async def test_plain_stdout_is_text(self):
        result = await SubprocessRunner().execute(_tool("print('hello')"), {}, CancellationSignal())
        assert result.output == "hello\n"

    async def test_nonzero_exit_is_an_error(self):
        """stderr is carried in the error detail with secrets masked."""
        tool = _tool("import sys; sys.stderr.write('token=abc123'); sys.exit(3)")
        with pytest.raises(ToolExecutionError) as exc:
            await SubprocessRunner().execute(tool, {}, CancellationSignal())

        assert exc.value.error_code == "nonzero_exit"
        assert exc.value.detail["returncode"] == 3
        assert "abc123" not in exc.value.detail["stderr"]

    async def test_missing_command(self):
        with pytest.raises(ToolExecutionError) as exc:
            await SubprocessRunner().execute(Tool(id="x", name="X"), {}, CancellationSignal())
        assert exc.value.error_code == "runner_misconfigured"

    async def test_cancel_terminates_process(self):
        signal = CancellationSignal()
        runner = SubprocessRunner(terminate_grace=1.0)
        task = asyncio.ensure_future(runner.execute(_tool("import time; time.sleep(30)"), {}, signal))
        await asyncio.sleep(0.2)
        signal.cancel("user")

        with pytest.raises(ToolExecutionError) as exc:
            await asyncio.wait_for(task, timeout=5)
        assert exc.value.error_code == "cancelled"


class TestRunnerRegistry:
    async def test_callable_runner(self):
        async def double(input, cancel, on_progress):
            return input["n"] * 2

        registry = RunnerRegistry()
        registry.register("double", CallableRunner(double))

        assert "double" in registry
        assert await registry.get("double").execute(Tool(id="d", name="D"), {"n": 4}, CancellationSignal()) == 8

    def test_default_runners(self):
        registry = build_default_runners()
        assert registry.names() == ["subprocess"]
        assert registry.get("missing") is None
