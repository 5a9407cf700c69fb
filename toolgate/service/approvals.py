from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from toolgate.logging import get_logger
from toolgate.service import events
from toolgate.service.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from toolgate.service.events import EventNotifier
from toolgate.service.executions import ExecutionRegistry
from toolgate.service.policy import widen
from toolgate.storage.models import (
    ApprovalRequest,
    ApprovalStatus,
    ApproverClass,
    ExecutionStatus,
    RiskLevel,
    ToolExecution,
    UserRole,
)

logger = get_logger(__name__)

DEFAULT_APPROVAL_TIMEOUT = timedelta(minutes=5)
DEFAULT_MAX_ESCALATION_LEVELS = 3
DEFAULT_RETENTION = timedelta(hours=24)


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ApprovalCoordinator:
    """Human sign-off for executions the policy will not run automatically.

    Every pending request has one deadline timer task. When it fires the
    request is escalated (wider approver class, fresh deadline) until
    ``max_escalation_levels`` is reached; the next deadline expires it and
    times out the execution. ``expire_overdue`` applies the same rule from
    the maintenance sweep, so a lost timer cannot strand a request.
    """

    def __init__(
        self,
        executions: ExecutionRegistry,
        notifier: EventNotifier,
        *,
        default_timeout: timedelta = DEFAULT_APPROVAL_TIMEOUT,
        max_escalation_levels: int = DEFAULT_MAX_ESCALATION_LEVELS,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.executions = executions
        self.notifier = notifier
        self.default_timeout = default_timeout
        self.max_escalation_levels = max_escalation_levels
        self.retention = retention
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._requests: Dict[str, ApprovalRequest] = {}
        # execution id -> id of its pending request
        self._active: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        executions.bind_approvals(self)

    def _now(self) -> datetime:
        return self._clock()

    async def request_approval(
        self,
        execution: ToolExecution,
        risk_level: RiskLevel,
        approver_class: ApproverClass,
        deadline: Optional[timedelta] = None,
    ) -> ApprovalRequest:
        timeout = deadline or self.default_timeout
        async with self._lock:
            current = self.executions.get(execution.id)
            if current is None or current.status != ExecutionStatus.PENDING:
                raise ConflictError(
                    "execution is no longer pending", detail={"execution_id": execution.id}
                )
            if execution.id in self._active:
                raise ConflictError(
                    "execution already has a pending approval",
                    detail={"approval_id": self._active[execution.id]},
                )
            request = ApprovalRequest.new(
                execution, risk_level, approver_class, self._now(), timeout
            )
            self._requests[request.id] = request
            self._active[execution.id] = request.id
            self._arm(request, timeout)
            logger.info(
                "approval_requested",
                approval_id=request.id,
                execution_id=execution.id,
                risk_level=risk_level.value,
                approver_class=approver_class.value,
                timeout_s=timeout.total_seconds(),
            )
            self._emit(events.APPROVAL_REQUIRED, request)
            return copy.copy(request)

    def can_resolve(self, request: ApprovalRequest, actor_id: str, actor_role: str) -> bool:
        if actor_role == UserRole.ADMIN.value:
            return True
        if request.approver_class in (ApproverClass.USER, ApproverClass.BOTH):
            return actor_id == request.requested_by
        return False

    async def resolve(
        self,
        request_id: str,
        decision: ApprovalDecision | str,
        actor_id: str,
        *,
        actor_role: str = UserRole.USER.value,
        reason: Optional[str] = None,
    ) -> bool:
        """Apply a decision. Returns False when the request was already settled."""
        decision = ApprovalDecision(decision)
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError("approval request not found", detail={"approval_id": request_id})
            if not request.is_pending:
                logger.info(
                    "approval_resolve_conflict",
                    approval_id=request_id,
                    status=request.status.value,
                    actor_id=actor_id,
                )
                return False
            if not self.can_resolve(request, actor_id, actor_role):
                logger.warning(
                    "approval_resolve_forbidden",
                    approval_id=request_id,
                    actor_id=actor_id,
                    approver_class=request.approver_class.value,
                )
                raise PermissionDeniedError(
                    "not allowed to resolve this approval",
                    detail={"approverClass": request.approver_class.value},
                )
            request.status = (
                ApprovalStatus.APPROVED
                if decision == ApprovalDecision.APPROVE
                else ApprovalStatus.REJECTED
            )
            request.resolved_at = self._now()
            request.resolved_by = actor_id
            request.reason = reason
            self._settle(request)
            execution_id = request.tool_execution_id

        try:
            if decision == ApprovalDecision.APPROVE:
                await self.executions.mark_approved(execution_id, actor_id)
            else:
                await self.executions.mark_rejected(execution_id, actor_id, reason)
        except InvalidTransitionError:
            # Cancelled or timed out while the decision was in flight
            async with self._lock:
                request.status = ApprovalStatus.REJECTED
                request.reason = "execution is no longer pending"
            logger.info(
                "approval_execution_moved_on", approval_id=request_id, execution_id=execution_id
            )
            return False
        except StoreUnavailableError:
            await self._reopen(request)
            raise
        if decision == ApprovalDecision.APPROVE:
            self.executions.schedule_dispatch(execution_id)
        logger.info(
            "approval_resolved",
            approval_id=request_id,
            execution_id=execution_id,
            decision=decision.value,
            actor_id=actor_id,
        )
        return True

    async def resolve_batch(
        self,
        request_ids: Iterable[str],
        decision: ApprovalDecision | str,
        actor_id: str,
        *,
        actor_role: str,
        reason: Optional[str] = None,
    ) -> Dict[str, str]:
        if actor_role != UserRole.ADMIN.value:
            raise PermissionDeniedError("batch decisions require an admin")
        outcomes: Dict[str, str] = {}
        for request_id in request_ids:
            try:
                applied = await self.resolve(
                    request_id, decision, actor_id, actor_role=actor_role, reason=reason
                )
            except NotFoundError:
                outcomes[request_id] = "not_found"
                continue
            outcomes[request_id] = "resolved" if applied else "conflict"
        logger.info("approval_batch_resolved", actor_id=actor_id, count=len(outcomes))
        return outcomes

    async def withdraw(
        self,
        execution_id: str,
        *,
        actor_id: Optional[str] = None,
        reason: str = "execution cancelled",
    ) -> bool:
        """Close the pending request of an execution that was cancelled."""
        async with self._lock:
            request_id = self._active.get(execution_id)
            if request_id is None:
                return False
            request = self._requests[request_id]
            request.status = ApprovalStatus.REJECTED
            request.resolved_at = self._now()
            request.resolved_by = actor_id
            request.reason = reason
            self._settle(request)
        logger.info("approval_withdrawn", approval_id=request_id, execution_id=execution_id)
        return True

    async def handle_deadline(
        self, request_id: str, *, expected_level: Optional[int] = None
    ) -> Optional[str]:
        """Escalate or expire a request whose deadline passed.

        Timer tasks pass the level they were armed for so a stale timer does
        nothing; the sweep passes no level and relies on ``required_by``.
        Returns "escalated", "expired" or None when nothing changed.
        """
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or not request.is_pending:
                return None
            now = self._now()
            if expected_level is None:
                if request.required_by > now:
                    return None
            elif request.escalation_level != expected_level:
                return None

            if request.escalation_level < self.max_escalation_levels:
                previous = request.approver_class
                request.escalation_level += 1
                request.approver_class = widen(previous)
                timeout = timedelta(seconds=request.timeout_seconds)
                request.required_by = now + timeout
                self._arm(request, timeout)
                logger.info(
                    "approval_escalated",
                    approval_id=request.id,
                    level=request.escalation_level,
                    approver_class=request.approver_class.value,
                    previous_class=previous.value,
                )
                self._emit(events.APPROVAL_ESCALATED, request)
                self._emit(events.APPROVAL_REQUIRED, request)
                return "escalated"

            request.status = ApprovalStatus.EXPIRED
            request.resolved_at = now
            self._settle(request)
            execution_id = request.tool_execution_id
            logger.warning(
                "approval_expired",
                approval_id=request.id,
                execution_id=execution_id,
                escalation_level=request.escalation_level,
            )
            self._emit(events.APPROVAL_TIMEOUT, request)

        await self.executions.mark_timed_out(execution_id, "approval deadline passed")
        return "expired"

    async def expire_overdue(self) -> int:
        """Sweep pending requests past their deadline; safe to run repeatedly."""
        now = self._now()
        async with self._lock:
            overdue = [
                r.id for r in self._requests.values() if r.is_pending and r.required_by <= now
            ]
        changed = 0
        for request_id in overdue:
            if await self.handle_deadline(request_id):
                changed += 1
        return changed

    async def cleanup_expired(self, retention: Optional[timedelta] = None) -> int:
        cutoff = self._now() - (retention if retention is not None else self.retention)
        async with self._lock:
            stale = [
                r.id
                for r in self._requests.values()
                if not r.is_pending and r.resolved_at is not None and r.resolved_at < cutoff
            ]
            for request_id in stale:
                self._requests.pop(request_id, None)
        if stale:
            logger.info("approval_requests_cleaned", count=len(stale))
        return len(stale)

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        request = self._requests.get(request_id)
        return copy.copy(request) if request else None

    def get_for_execution(self, execution_id: str) -> Optional[ApprovalRequest]:
        matches = [r for r in self._requests.values() if r.tool_execution_id == execution_id]
        if not matches:
            return None
        return copy.copy(max(matches, key=lambda r: r.created_at))

    def list_pending(
        self, approver_id: Optional[str] = None, *, role: str = UserRole.USER.value
    ) -> List[ApprovalRequest]:
        pending = [r for r in self._requests.values() if r.is_pending]
        if approver_id is not None and role != UserRole.ADMIN.value:
            pending = [
                r
                for r in pending
                if r.requested_by == approver_id
                and r.approver_class in (ApproverClass.USER, ApproverClass.BOTH)
            ]
        return [copy.copy(r) for r in sorted(pending, key=lambda r: r.created_at)]

    def stats(self, approver_id: Optional[str] = None, *, role: str = UserRole.ADMIN.value) -> dict:
        requests = list(self._requests.values())
        if approver_id is not None and role != UserRole.ADMIN.value:
            requests = [r for r in requests if r.requested_by == approver_id]
        by_status = {status.value: 0 for status in ApprovalStatus}
        by_risk = {level.value: 0 for level in RiskLevel}
        by_tool: Dict[str, int] = {}
        waits: List[float] = []
        for request in requests:
            by_status[request.status.value] += 1
            by_risk[request.risk_level.value] += 1
            by_tool[request.tool_id] = by_tool.get(request.tool_id, 0) + 1
            if request.resolved_at and request.status != ApprovalStatus.EXPIRED:
                waits.append((request.resolved_at - request.created_at).total_seconds())
        return {
            "total": len(requests),
            **by_status,
            "byRiskLevel": by_risk,
            "byToolId": by_tool,
            "averageWaitSeconds": sum(waits) / len(waits) if waits else 0.0,
        }

    async def shutdown(self) -> None:
        async with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    async def _reopen(self, request: ApprovalRequest) -> None:
        """Undo a decision the execution registry could not record."""
        async with self._lock:
            current = self.executions.get(request.tool_execution_id)
            if current is None or current.status != ExecutionStatus.PENDING:
                request.status = ApprovalStatus.REJECTED
                request.reason = "execution is no longer pending"
                return
            request.status = ApprovalStatus.PENDING
            request.resolved_at = None
            request.resolved_by = None
            request.reason = None
            self._active[request.tool_execution_id] = request.id
            self._arm(request, max(request.required_by - self._now(), timedelta(0)))
        logger.warning("approval_reopened", approval_id=request.id)

    # Internals; callers hold the lock.

    def _arm(self, request: ApprovalRequest, delay: timedelta) -> None:
        self._cancel_timer(request.id)
        self._timers[request.id] = asyncio.create_task(
            self._deadline_timer(request.id, request.escalation_level, delay.total_seconds())
        )

    def _cancel_timer(self, request_id: str) -> None:
        timer = self._timers.pop(request_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _deadline_timer(self, request_id: str, level: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.handle_deadline(request_id, expected_level=level)
        except Exception as exc:
            # The maintenance sweep retries overdue requests
            logger.error("approval_deadline_failed", approval_id=request_id, error=str(exc))

    def _settle(self, request: ApprovalRequest) -> None:
        self._active.pop(request.tool_execution_id, None)
        self._cancel_timer(request.id)

    def _emit(self, event_type: str, request: ApprovalRequest) -> None:
        self.notifier.emit(event_type, request.to_payload(), user_id=request.requested_by)
