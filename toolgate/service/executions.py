from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from toolgate.logging import get_logger, sanitize_error_message
from toolgate.service import events
from toolgate.service.errors import (
    AdmissionError,
    ConflictError,
    ExecutionTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    ServiceError,
    StoreUnavailableError,
    ToolExecutionError,
    ValidationError,
)
from toolgate.service.events import EventNotifier
from toolgate.service.policy import PermissionPolicy
from toolgate.service.runners import CancellationSignal, RunnerRegistry, RunResult
from toolgate.service.tools import ToolCatalog
from toolgate.storage.common import EntityStore
from toolgate.storage.models import (
    EXECUTION_TRANSITIONS,
    ExecutionStatus,
    PermissionLevel,
    Tool,
    ToolExecution,
)

if TYPE_CHECKING:
    from toolgate.service.approvals import ApprovalCoordinator

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENT = 20
DEFAULT_MAX_CONCURRENT_PER_USER = 3
# How long an abandoned runner gets to unwind after being cancelled
DEFAULT_ABANDON_GRACE_SECONDS = 1.0
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500

_STATUS_EVENTS = {
    ExecutionStatus.APPROVED: events.EXECUTION_APPROVED,
    ExecutionStatus.REJECTED: events.EXECUTION_REJECTED,
    ExecutionStatus.EXECUTING: events.EXECUTION_STARTED,
    ExecutionStatus.COMPLETED: events.EXECUTION_COMPLETED,
    ExecutionStatus.ERROR: events.EXECUTION_FAILED,
    ExecutionStatus.TIMEOUT: events.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: events.EXECUTION_CANCELLED,
}

_ACTIVE_STATES = (
    ExecutionStatus.PENDING,
    ExecutionStatus.APPROVED,
    ExecutionStatus.EXECUTING,
)


@dataclass
class ExecutionRequest:
    tool_id: str
    user_id: str
    input: Dict[str, Any]
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class ExecutionFilters:
    user_id: Optional[str] = None
    tool_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    conversation_id: Optional[str] = None
    limit: int = DEFAULT_HISTORY_LIMIT
    offset: int = 0

    def matches(self, execution: ToolExecution) -> bool:
        if self.user_id and execution.user_id != self.user_id:
            return False
        if self.tool_id and execution.tool_id != self.tool_id:
            return False
        if self.status and execution.status != self.status:
            return False
        if self.conversation_id and execution.conversation_id != self.conversation_id:
            return False
        return True


class ExecutionRegistry:
    """Owns every tool execution and its state machine.

    Mutations are serialized by one asyncio lock. The lock is held across
    the store write-through but never while awaiting a runner or the
    approval coordinator. Admission control counts executions currently in
    ``executing`` against the global and per-user caps and rejects, rather
    than queues, anything over them.
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        policy: PermissionPolicy,
        runners: RunnerRegistry,
        notifier: EventNotifier,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_concurrent_per_user: int = DEFAULT_MAX_CONCURRENT_PER_USER,
        store: Optional[EntityStore] = None,
        abandon_grace: float = DEFAULT_ABANDON_GRACE_SECONDS,
    ) -> None:
        self.catalog = catalog
        self.policy = policy
        self.runners = runners
        self.notifier = notifier
        self.max_concurrent = max_concurrent
        self.max_concurrent_per_user = max_concurrent_per_user
        self.store = store
        self.abandon_grace = abandon_grace
        self._executions: Dict[str, ToolExecution] = {}
        self._running: Set[str] = set()
        self._signals: Dict[str, CancellationSignal] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._approvals: Optional["ApprovalCoordinator"] = None

    def bind_approvals(self, coordinator: "ApprovalCoordinator") -> None:
        self._approvals = coordinator

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Admission and submission
    # ------------------------------------------------------------------

    async def submit(self, request: ExecutionRequest, *, role: str = "user") -> ToolExecution:
        tool = self.catalog.get(request.tool_id)
        if tool is None:
            raise ValidationError("unknown tool", detail={"tool_id": request.tool_id})
        self.catalog.validate_input(tool, request.input)
        level = self.policy.classify(tool, role)
        if level == PermissionLevel.DENIED:
            logger.warning(
                "execution_denied", tool_id=tool.id, user_id=request.user_id, role=role
            )
            raise PermissionDeniedError(
                "tool execution is not permitted", detail={"tool_id": tool.id}
            )
        if self.runners.get(tool.runner) is None:
            logger.error("execution_runner_missing", tool_id=tool.id, runner=tool.runner)
            raise ServerError("tool runner unavailable", detail={"tool_id": tool.id})
        if level != PermissionLevel.AUTO and self._approvals is None:
            raise ServerError("approval workflow unavailable")

        async with self._lock:
            self._admit(request.user_id)
            execution = ToolExecution.new(
                tool.id,
                request.user_id,
                request.input,
                conversation_id=request.conversation_id,
                message_id=request.message_id,
                permission_level=level.value,
            )
            # Nothing is indexed until the store holds the record
            await self._persist(execution)
            self._executions[execution.id] = execution
            logger.info(
                "execution_submitted",
                execution_id=execution.id,
                tool_id=tool.id,
                user_id=request.user_id,
                permission_level=level.value,
            )
            if level == PermissionLevel.AUTO:
                await self._start(execution, tool)
            else:
                self._emit(events.EXECUTION_REQUESTED, execution)
            snapshot = copy.deepcopy(execution)

        if level != PermissionLevel.AUTO:
            risk = self.policy.assess_risk(tool, request.input)
            approver_class = self.policy.approver_class_for(level)
            try:
                await self._approvals.request_approval(snapshot, risk, approver_class)
            except ConflictError as exc:
                # Cancelled before the approval could be opened
                logger.info("execution_approval_skipped", execution_id=snapshot.id, reason=exc.message)
        return self.get(snapshot.id) or snapshot

    def _admit(self, user_id: str) -> None:
        if len(self._running) >= self.max_concurrent:
            logger.warning("execution_admission_rejected", scope="global", limit=self.max_concurrent)
            raise AdmissionError(
                "too many tool executions running",
                detail={"scope": "global", "limit": self.max_concurrent},
            )
        user_running = sum(1 for eid in self._running if self._executions[eid].user_id == user_id)
        if user_running >= self.max_concurrent_per_user:
            logger.warning(
                "execution_admission_rejected",
                scope="user",
                user_id=user_id,
                limit=self.max_concurrent_per_user,
            )
            raise AdmissionError(
                "too many of your tool executions are running",
                detail={"scope": "user", "limit": self.max_concurrent_per_user},
            )

    # ------------------------------------------------------------------
    # Approval outcomes
    # ------------------------------------------------------------------

    async def mark_approved(self, execution_id: str, approver_id: str) -> ToolExecution:
        async with self._lock:
            execution = self._require(execution_id)
            self._require_pending(execution, ExecutionStatus.APPROVED)
            await self._transition(
                execution,
                ExecutionStatus.APPROVED,
                approved_by=approver_id,
                approved_at=self._now(),
            )
            return copy.deepcopy(execution)

    async def mark_rejected(
        self, execution_id: str, approver_id: str, reason: Optional[str] = None
    ) -> ToolExecution:
        async with self._lock:
            execution = self._require(execution_id)
            self._require_pending(execution, ExecutionStatus.REJECTED)
            await self._transition(
                execution,
                ExecutionStatus.REJECTED,
                rejected_by=approver_id,
                rejection_reason=reason,
                error={"code": "rejected", "message": reason or "execution rejected"},
            )
            return copy.deepcopy(execution)

    async def mark_timed_out(self, execution_id: str, reason: str = "approval deadline passed") -> bool:
        """Move a pending execution to ``timeout``; False if it already moved on."""
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.PENDING:
                logger.info(
                    "execution_timeout_conflict",
                    execution_id=execution_id,
                    status=execution.status.value if execution else None,
                )
                return False
            await self._record_outcome(
                execution,
                ExecutionStatus.TIMEOUT,
                error=ExecutionTimeoutError(reason, detail={"phase": "approval"}).to_error(),
            )
            return True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, execution_id: str) -> ToolExecution:
        """Run an approved execution and wait for its outcome."""
        async with self._lock:
            execution = self._require(execution_id)
            if execution.status != ExecutionStatus.APPROVED:
                raise InvalidTransitionError(
                    "only approved executions can be dispatched",
                    detail={"execution_id": execution_id, "status": execution.status.value},
                )
            tool = self.catalog.get(execution.tool_id)
            if tool is None:
                await self._record_outcome(
                    execution,
                    ExecutionStatus.ERROR,
                    error={"code": "tool_unavailable", "message": "tool was removed"},
                )
                return copy.deepcopy(execution)
            try:
                self._admit(execution.user_id)
            except AdmissionError as exc:
                await self._record_outcome(execution, ExecutionStatus.ERROR, error=exc.to_error())
                return copy.deepcopy(execution)
            try:
                await self._transition(execution, ExecutionStatus.EXECUTING)
            except StoreUnavailableError as exc:
                await self._record_outcome(execution, ExecutionStatus.ERROR, error=exc.to_error())
                return copy.deepcopy(execution)
            signal = CancellationSignal()
            self._signals[execution_id] = signal
        await self._run(execution_id, tool, signal)
        return self.get(execution_id)

    def schedule_dispatch(self, execution_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._dispatch_in_background(execution_id))
        self._track(execution_id, task)
        return task

    async def _dispatch_in_background(self, execution_id: str) -> None:
        try:
            await self.dispatch(execution_id)
        except ServiceError as exc:
            logger.warning(
                "execution_dispatch_skipped", execution_id=execution_id, error=exc.message
            )

    async def _start(self, execution: ToolExecution, tool: Tool) -> None:
        """Move a freshly submitted execution straight to running. Caller holds the lock."""
        requested = execution.to_payload()
        try:
            await self._transition(execution, ExecutionStatus.EXECUTING, announce=False)
        except StoreUnavailableError:
            # A pending record with no approval behind it would never move again
            self._executions.pop(execution.id, None)
            await self._discard(execution.id)
            raise
        self.notifier.emit(events.EXECUTION_REQUESTED, requested, user_id=execution.user_id)
        self._emit(events.EXECUTION_STARTED, execution)
        signal = CancellationSignal()
        self._signals[execution.id] = signal
        task = asyncio.create_task(self._run(execution.id, tool, signal))
        self._track(execution.id, task)

    def _track(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks[execution_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(execution_id) is done:
                self._tasks.pop(execution_id, None)

        task.add_done_callback(_forget)

    async def _run(self, execution_id: str, tool: Tool, signal: CancellationSignal) -> None:
        runner = self.runners.get(tool.runner)
        execution = self._executions[execution_id]
        timeout = self.catalog.timeout_for(tool)
        user_id = execution.user_id

        def on_progress(chunk: Any) -> None:
            self.notifier.emit(
                events.EXECUTION_PROGRESS,
                {"id": execution_id, "toolId": tool.id, "chunk": chunk},
                user_id=user_id,
            )

        started = time.monotonic()
        run_task = asyncio.ensure_future(
            runner.execute(tool, copy.deepcopy(execution.input), signal, on_progress)
        )
        cancel_wait = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            signal.cancel("shutdown")
            run_task.cancel()
            raise
        finally:
            cancel_wait.cancel()
        duration_ms = int((time.monotonic() - started) * 1000)

        if run_task in done:
            status, changes = self._outcome(run_task, tool)
        elif signal.is_set():
            status, changes = ExecutionStatus.CANCELLED, {}
        else:
            signal.cancel("timeout")
            logger.warning(
                "execution_timeout", execution_id=execution_id, tool_id=tool.id, timeout_s=timeout
            )
            status = ExecutionStatus.TIMEOUT
            changes = {
                "error": ExecutionTimeoutError(
                    "tool did not finish in time", detail={"timeoutSeconds": timeout}
                ).to_error()
            }

        async with self._lock:
            self._signals.pop(execution_id, None)
            if execution.status != ExecutionStatus.EXECUTING:
                logger.info(
                    "execution_outcome_discarded",
                    execution_id=execution_id,
                    status=execution.status.value,
                    outcome=status.value,
                )
            else:
                usage = dict(changes.pop("usage", {}))
                usage["durationMs"] = duration_ms
                await self._record_outcome(execution, status, resource_usage=usage, **changes)

        if not run_task.done():
            await self._abandon(execution_id, run_task)

    def _outcome(self, run_task: asyncio.Future, tool: Tool) -> Tuple[ExecutionStatus, Dict[str, Any]]:
        try:
            result = run_task.result()
        except asyncio.CancelledError:
            return ExecutionStatus.ERROR, {
                "error": {"code": "runner_cancelled", "message": "runner stopped unexpectedly"}
            }
        except ToolExecutionError as exc:
            return ExecutionStatus.ERROR, {"error": exc.to_error()}
        except Exception as exc:
            logger.error(
                "execution_runner_crashed",
                tool_id=tool.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ExecutionStatus.ERROR, {
                "error": {"code": "runner_crashed", "message": sanitize_error_message(str(exc))}
            }
        if isinstance(result, RunResult):
            return ExecutionStatus.COMPLETED, {"output": result.output, "usage": result.usage}
        return ExecutionStatus.COMPLETED, {"output": result}

    async def _abandon(self, execution_id: str, run_task: asyncio.Future) -> None:
        run_task.cancel()
        done, _ = await asyncio.wait({run_task}, timeout=self.abandon_grace)
        if not done:
            logger.warning("runner_abandoned", execution_id=execution_id)
        # Retrieve the outcome so an ignored failure is not reported at GC time
        run_task.add_done_callback(lambda t: t.cancelled() or t.exception())

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ToolExecution]:
        """Wait for background work on an execution, then return its snapshot."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.get(execution_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        execution_id: str,
        *,
        actor_id: Optional[str] = None,
        reason: str = "cancelled by user",
    ) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return False
            if execution.is_terminal:
                logger.info(
                    "execution_cancel_conflict",
                    execution_id=execution_id,
                    status=execution.status.value,
                )
                return False
            was_pending = execution.status == ExecutionStatus.PENDING
            await self._transition(
                execution,
                ExecutionStatus.CANCELLED,
                error={
                    "code": "cancelled",
                    "message": reason,
                    "details": {"cancelledBy": actor_id},
                },
            )
            signal = self._signals.pop(execution_id, None)
            if signal is not None:
                signal.cancel(reason)
        if was_pending and self._approvals is not None:
            await self._approvals.withdraw(execution_id, actor_id=actor_id, reason=reason)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> Optional[ToolExecution]:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    def list_active(self, user_id: Optional[str] = None) -> List[ToolExecution]:
        active = [
            e
            for e in self._executions.values()
            if e.status in _ACTIVE_STATES and (user_id is None or e.user_id == user_id)
        ]
        return [copy.deepcopy(e) for e in sorted(active, key=lambda e: e.requested_at)]

    def list_history(self, filters: Optional[ExecutionFilters] = None) -> Tuple[List[ToolExecution], int]:
        filters = filters or ExecutionFilters()
        limit = max(1, min(filters.limit, MAX_HISTORY_LIMIT))
        offset = max(0, filters.offset)
        matched = sorted(
            (e for e in self._executions.values() if filters.matches(e)),
            key=lambda e: e.requested_at,
            reverse=True,
        )
        page = matched[offset : offset + limit]
        return [copy.deepcopy(e) for e in page], len(matched)

    def running_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self._running)
        return sum(1 for eid in self._running if self._executions[eid].user_id == user_id)

    def stats(self) -> dict:
        by_status: Dict[str, int] = {status.value: 0 for status in ExecutionStatus}
        by_tool: Dict[str, int] = {}
        for execution in self._executions.values():
            by_status[execution.status.value] += 1
            by_tool[execution.tool_id] = by_tool.get(execution.tool_id, 0) + 1
        return {
            "total": len(self._executions),
            "running": len(self._running),
            "byStatus": by_status,
            "byTool": by_tool,
            "limits": {
                "global": self.max_concurrent,
                "perUser": self.max_concurrent_per_user,
            },
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_history(self, older_than: timedelta) -> int:
        cutoff = self._now() - older_than
        async with self._lock:
            stale = [
                e.id
                for e in self._executions.values()
                if e.is_terminal and (e.completed_at or e.requested_at) < cutoff
            ]
            for execution_id in stale:
                if self.store is not None:
                    await self.store.adelete("execution", execution_id)
                self._executions.pop(execution_id, None)
        if stale:
            logger.info("execution_history_purged", count=len(stale))
        return len(stale)

    async def restore(self) -> int:
        """Reload executions from the store; interrupted ones end cancelled."""
        if self.store is None:
            return 0
        async with self._lock:
            records = await self.store.aload_all("execution")
            for execution in records:
                self._executions[execution.id] = execution
                if not execution.is_terminal:
                    await self._record_outcome(
                        execution,
                        ExecutionStatus.CANCELLED,
                        error={"code": "interrupted", "message": "service restarted"},
                    )
        logger.info("executions_restored", count=len(records))
        return len(records)

    async def shutdown(self) -> None:
        async with self._lock:
            for execution in self._executions.values():
                if not execution.is_terminal:
                    await self._record_outcome(
                        execution,
                        ExecutionStatus.CANCELLED,
                        error={"code": "cancelled", "message": "service shutting down"},
                    )
            for signal in self._signals.values():
                signal.cancel("shutdown")
            self._signals.clear()
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("execution_registry_stopped", cancelled_tasks=len(tasks))

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _require(self, execution_id: str) -> ToolExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError("execution not found", detail={"execution_id": execution_id})
        return execution

    def _require_pending(self, execution: ToolExecution, target: ExecutionStatus) -> None:
        if execution.status != ExecutionStatus.PENDING:
            # A decision that lost the race to a cancel or timeout
            logger.info(
                "execution_not_pending",
                execution_id=execution.id,
                status=execution.status.value,
                target=target.value,
            )
            raise InvalidTransitionError(
                "execution is no longer pending",
                detail={"execution_id": execution.id, "status": execution.status.value},
            )

    async def _transition(
        self,
        execution: ToolExecution,
        status: ExecutionStatus,
        *,
        persist: bool = True,
        announce: bool = True,
        **changes: Any,
    ) -> None:
        """Apply one edge of the state graph.

        The new state is built on a copy and written to the store first; the
        live record, the running set and subscribers only see it once the
        write succeeded. ``StoreUnavailableError`` leaves everything as it was.
        """
        source = execution.status
        if status not in EXECUTION_TRANSITIONS[source]:
            logger.error(
                "execution_invalid_transition",
                execution_id=execution.id,
                source=source.value,
                target=status.value,
            )
            raise InvalidTransitionError(
                f"cannot move execution from {source.value} to {status.value}",
                detail={"execution_id": execution.id},
            )
        now = self._now()
        updated = copy.deepcopy(execution)
        for name, value in changes.items():
            setattr(updated, name, value)
        updated.status = status
        updated.transitions.append((status.value, now))
        if status == ExecutionStatus.EXECUTING:
            updated.started_at = now
        if updated.is_terminal:
            updated.completed_at = now
        if persist:
            await self._persist(updated)

        vars(execution).update(vars(updated))
        if status == ExecutionStatus.EXECUTING:
            self._running.add(execution.id)
        else:
            self._running.discard(execution.id)
        logger.info(
            "execution_transition",
            execution_id=execution.id,
            source=source.value,
            target=status.value,
        )
        if announce:
            self._emit(_STATUS_EVENTS[status], execution)

    async def _record_outcome(
        self, execution: ToolExecution, status: ExecutionStatus, **changes: Any
    ) -> None:
        """Apply a final outcome even when the store refuses it.

        The stored record then stays non-terminal and ``restore`` ends it as
        interrupted on the next start.
        """
        try:
            await self._transition(execution, status, **changes)
        except StoreUnavailableError:
            await self._transition(execution, status, persist=False, **changes)

    def _emit(self, event_type: str, execution: ToolExecution) -> None:
        self.notifier.emit(event_type, execution.to_payload(), user_id=execution.user_id)

    async def _persist(self, execution: ToolExecution) -> None:
        if self.store is None:
            return
        try:
            await self.store.asave(execution)
        except Exception as exc:
            logger.error(
                "execution_persist_failed",
                execution_id=execution.id,
                status=execution.status.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError(
                "execution store unavailable", detail={"execution_id": execution.id}
            ) from exc

    async def _discard(self, execution_id: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.adelete("execution", execution_id)
        except Exception as exc:
            # restore() cancels whatever is left behind
            logger.error("execution_discard_failed", execution_id=execution_id, error=str(exc))
