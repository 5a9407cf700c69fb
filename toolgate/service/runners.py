from __future__ import annotations

import asyncio
import contextlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from toolgate.logging import get_logger, sanitize_error_message
from toolgate.service.errors import ToolExecutionError
from toolgate.storage.models import Tool

logger = get_logger(__name__)

ProgressCallback = Callable[[Any], None]

DEFAULT_TERMINATE_GRACE_SECONDS = 2.0
MAX_STDERR_CHARS = 2000


class CancellationSignal:
    """Single cancellation contract handed to every runner.

    User cancels, execution timeouts and rejected approvals all end up as a
    ``cancel(reason)`` here; runners only ever watch ``is_set``/``wait``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunResult:
    output: Any
    usage: Dict[str, Any] = field(default_factory=dict)


class ToolRunner(Protocol):
    async def execute(
        self,
        tool: Tool,
        input: Mapping[str, Any],
        cancel: CancellationSignal,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Any: ...


class CallableRunner:
    """Adapts an async function into a runner.

    The function receives ``(input, cancel, on_progress)``; registering one
    per tool is how embedding applications plug in in-process tools.
    """

    def __init__(
        self,
        func: Callable[[Mapping[str, Any], CancellationSignal, Optional[ProgressCallback]], Awaitable[Any]],
        *,
        name: Optional[str] = None,
    ) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")

    async def execute(
        self,
        tool: Tool,
        input: Mapping[str, Any],
        cancel: CancellationSignal,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Any:
        return await self.func(input, cancel, on_progress)


class SubprocessRunner:
    """Runs ``tool.runner_options["command"]`` with the JSON input on stdin.

    Stdout is parsed as JSON when it parses, otherwise returned as text.
    The process is terminated (then killed) when the signal fires or the
    awaiting task is cancelled.
    """

    def __init__(self, *, terminate_grace: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None:
        self.terminate_grace = terminate_grace

    async def execute(
        self,
        tool: Tool,
        input: Mapping[str, Any],
        cancel: CancellationSignal,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Any:
        command = tool.runner_options.get("command")
        if not command or not isinstance(command, list):
            raise ToolExecutionError(
                "tool has no command configured",
                error_code="runner_misconfigured",
                detail={"tool_id": tool.id},
            )
        env = None
        if tool.runner_options.get("env"):
            env = {**os.environ, **{str(k): str(v) for k, v in tool.runner_options["env"].items()}}
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(part) for part in command],
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=tool.runner_options.get("cwd"),
                env=env,
            )
        except OSError as exc:
            raise ToolExecutionError(
                sanitize_error_message(str(exc)), error_code="runner_spawn_failed"
            ) from exc

        communicate = asyncio.ensure_future(proc.communicate(json.dumps(dict(input)).encode()))
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not communicate.done():
                await self._terminate(proc)
                communicate.cancel()
                raise ToolExecutionError("cancelled", error_code="cancelled", detail={"reason": cancel.reason})
            stdout, stderr = communicate.result()
        except asyncio.CancelledError:
            await self._terminate(proc)
            communicate.cancel()
            raise
        finally:
            cancelled.cancel()

        if proc.returncode != 0:
            raise ToolExecutionError(
                f"command exited with status {proc.returncode}",
                error_code="nonzero_exit",
                detail={
                    "returncode": proc.returncode,
                    "stderr": sanitize_error_message(stderr.decode(errors="replace")[-MAX_STDERR_CHARS:]),
                },
            )
        text = stdout.decode(errors="replace")
        try:
            output: Any = json.loads(text)
        except ValueError:
            output = text
        return RunResult(output=output, usage={"returncode": proc.returncode, "stdout_bytes": len(stdout)})

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("runner_process_kill", pid=proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()


class RunnerRegistry:
    """Runners available to the catalog, looked up by the tool's ``runner`` name."""

    def __init__(self, runners: Optional[Dict[str, ToolRunner]] = None) -> None:
        self._runners: Dict[str, ToolRunner] = dict(runners or {})

    def register(self, name: str, runner: ToolRunner) -> None:
        if name in self._runners:
            logger.warning("runner_replaced", runner=name)
        self._runners[name] = runner

    def get(self, name: str) -> Optional[ToolRunner]:
        return self._runners.get(name)

    def names(self) -> List[str]:
        return sorted(self._runners)

    def __contains__(self, name: object) -> bool:
        return name in self._runners


def build_default_runners() -> RunnerRegistry:
    return RunnerRegistry({"subprocess": SubprocessRunner()})
