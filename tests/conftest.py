import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from toolgate.config import reset_settings_cache  # noqa: E402
from toolgate.service.approvals import ApprovalCoordinator  # noqa: E402
from toolgate.service.errors import ToolExecutionError  # noqa: E402
from toolgate.service.executions import ExecutionRegistry  # noqa: E402
from toolgate.service.policy import PermissionPolicy  # noqa: E402
from toolgate.service.runners import CallableRunner, RunnerRegistry, RunResult  # noqa: E402
from toolgate.service.tools import ToolCatalog  # noqa: E402
from toolgate.storage.memory import MemoryStore  # noqa: E402
from toolgate.storage.models import Tool  # noqa: E402

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
    "additionalProperties": False,
}


class RecordingNotifier:
    """Collects emitted lifecycle events in order."""

    def __init__(self):
        self.events = []

    def emit(self, event_type, payload, *, user_id=None):
        self.events.append((event_type, payload, user_id))

    def types(self):
        return [event_type for event_type, _, _ in self.events]

    def types_for(self, execution_id):
        return [
            event_type
            for event_type, payload, _ in self.events
            if payload.get("id") == execution_id or payload.get("toolExecutionId") == execution_id
        ]

    def count(self, event_type):
        return sum(1 for recorded, _, _ in self.events if recorded == event_type)


class FlakyStore(MemoryStore):
    """MemoryStore whose writes fail while ``failing`` is set.

    ``fail_when`` narrows the failure to matching entities.
    """

    def __init__(self, fail_when=None):
        super().__init__()
        self.failing = False
        self.fail_when = fail_when

    def save(self, entity):
        if self.failing and (self.fail_when is None or self.fail_when(entity)):
            raise ConnectionError("store unreachable")
        super().save(entity)


async def _echo(input, cancel, on_progress):
    if on_progress:
        on_progress({"step": 1})
    return RunResult(output=dict(input), usage={"calls": 1})


async def _hang(input, cancel, on_progress):
    await cancel.wait()
    return RunResult(output={"stoppedBy": cancel.reason})


async def _sleepy(input, cancel, on_progress):
    await asyncio.sleep(30)
    return {"late": True}


async def _boom(input, cancel, on_progress):
    raise ToolExecutionError("tool reported failure", error_code="tool_failed")


async def _crash(input, cancel, on_progress):
    raise RuntimeError("connect failed password=hunter2")


def build_runners():
    return RunnerRegistry(
        {
            "echo": CallableRunner(_echo),
            "hang": CallableRunner(_hang),
            "sleepy": CallableRunner(_sleepy),
            "boom": CallableRunner(_boom),
            "crash": CallableRunner(_crash),
        }
    )


def build_catalog():
    return ToolCatalog(
        [
            Tool(id="echo", name="Echo", permission_level="auto", runner="echo", input_schema=ECHO_SCHEMA),
            Tool(id="files", name="Files", category="filesystem", runner="echo"),
            Tool(id="shell", name="Shell", category="system", runner="echo"),
            Tool(id="hang", name="Hang", permission_level="auto", runner="hang", timeout_seconds=30),
            Tool(id="sleepy", name="Sleepy", permission_level="auto", runner="sleepy", timeout_seconds=0.2),
            Tool(id="boom", name="Boom", permission_level="auto", runner="boom"),
            Tool(id="crash", name="Crash", permission_level="auto", runner="crash"),
            Tool(id="disabled", name="Disabled", permission_level="auto", runner="echo", is_enabled=False),
            Tool(id="forbidden", name="Forbidden", permission_level="denied", runner="echo"),
        ]
    )


class Gateway:
    """Execution registry and approval coordinator wired to a recording notifier."""

    def __init__(self, *, max_concurrent=20, max_concurrent_per_user=3, **approval_kwargs):
        self.notifier = RecordingNotifier()
        self.catalog = build_catalog()
        self.policy = PermissionPolicy()
        self.runners = build_runners()
        self.executions = ExecutionRegistry(
            self.catalog,
            self.policy,
            self.runners,
            self.notifier,
            max_concurrent=max_concurrent,
            max_concurrent_per_user=max_concurrent_per_user,
            abandon_grace=0.1,
        )
        self.approvals = ApprovalCoordinator(self.executions, self.notifier, **approval_kwargs)

    async def close(self):
        await self.approvals.shutdown()
        await self.executions.shutdown()


async def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll until ``predicate()`` is truthy or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
