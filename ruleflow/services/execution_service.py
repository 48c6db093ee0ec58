import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from ruleflow.core.config import settings
from ruleflow.core.observability import log_event
from ruleflow.models.automation import AutomationExecution, AutomationExecutionStep, AutomationRule
from ruleflow.models.contact import Contact
from ruleflow.services import scheduler_service
from ruleflow.services.condition_service import evaluate_conditions
from ruleflow.services.effector_service import (
    ORDINARY_ACTION_TYPES,
    EffectorContext,
    EffectorResult,
    contact_snapshot,
    run_effector,
)
from ruleflow.services.errors import ExecutionNotFoundError, RetryableEffectorError

logger = logging.getLogger("ruleflow.executor")

EXECUTION_STATUSES = ("pending", "running", "waiting", "completed", "failed", "skipped", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "skipped", "cancelled")
CLAIMABLE_STATUSES = ("pending", "waiting")
PSEUDO_ACTION_TYPES = ("wait", "condition")
BRANCH_KEYS = {"then": "then_actions", "else": "else_actions"}
WAIT_UNIT_MS = {
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
}

_RETRYABLE_EXCEPTIONS = (RetryableEffectorError, httpx.TransportError, TimeoutError, ConnectionError)


@dataclass(frozen=True)
class StepRunResult:
    execution_id: str
    status: str
    steps_recorded: int = 0
    error: str | None = None
    wake_at: datetime | None = None


@dataclass
class _ListOutcome:
    kind: str
    path: list[int] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)
    error: str | None = None
    wait_ms: int = 0


def wait_duration_ms(action: dict[str, Any]) -> int:
    unit = str(action.get("unit") or "seconds").strip().lower()
    try:
        duration = float(action.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0
    return max(0, int(duration * WAIT_UNIT_MS.get(unit, WAIT_UNIT_MS["seconds"])))


def get_execution(db: Session, *, tenant_id: str, execution_id: str) -> AutomationExecution:
    execution = db.execute(
        select(AutomationExecution).where(
            AutomationExecution.id == execution_id,
            AutomationExecution.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if execution is None:
        raise ExecutionNotFoundError(execution_id)
    return execution


def list_execution_steps(db: Session, *, execution_id: str) -> list[AutomationExecutionStep]:
    return list(
        db.execute(
            select(AutomationExecutionStep)
            .where(AutomationExecutionStep.execution_id == execution_id)
            .order_by(AutomationExecutionStep.sequence.asc())
        ).scalars().all()
    )


def list_rule_executions(
    db: Session,
    *,
    tenant_id: str,
    rule_id: str,
    limit: int = 20,
    offset: int = 0,
    status: str | None = None,
) -> tuple[list[AutomationExecution], int]:
    filters = [
        AutomationExecution.tenant_id == tenant_id,
        AutomationExecution.rule_id == rule_id,
    ]
    if status:
        filters.append(AutomationExecution.status == status)

    total = int(db.execute(select(func.count(AutomationExecution.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(AutomationExecution)
        .where(*filters)
        .order_by(AutomationExecution.created_at.desc(), AutomationExecution.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def cancel_execution(
    db: Session,
    *,
    tenant_id: str,
    execution_id: str,
    now: datetime | None = None,
) -> AutomationExecution:
    now = now or datetime.now(timezone.utc)
    execution = get_execution(db, tenant_id=tenant_id, execution_id=execution_id)
    result = db.execute(
        update(AutomationExecution)
        .where(
            AutomationExecution.id == execution.id,
            AutomationExecution.status.in_(CLAIMABLE_STATUSES),
        )
        .values(status="cancelled", completed_at=now, next_wake_at=None)
        .execution_options(synchronize_session=False)
    )
    db.refresh(execution)
    if result.rowcount != 1:
        raise ValueError(f"Execution in status '{execution.status}' cannot be cancelled")
    log_event(logger, "automation.cancelled", execution_id=execution.id, rule_id=execution.rule_id)
    return execution


def claim_execution(db: Session, *, execution_id: str, resume_step: int, now: datetime) -> bool:
    lease_cutoff = now - timedelta(seconds=settings.automation_execution_lease_seconds)
    result = db.execute(
        update(AutomationExecution)
        .where(
            AutomationExecution.id == execution_id,
            AutomationExecution.current_step_index == resume_step,
            or_(
                and_(
                    AutomationExecution.status.in_(CLAIMABLE_STATUSES),
                    or_(
                        AutomationExecution.next_wake_at.is_(None),
                        AutomationExecution.next_wake_at <= now,
                    ),
                ),
                and_(
                    AutomationExecution.status == "running",
                    AutomationExecution.claimed_at.is_not(None),
                    AutomationExecution.claimed_at < lease_cutoff,
                ),
            ),
        )
        .values(status="running", claimed_at=now, next_wake_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def execute_step(
    db: Session,
    *,
    execution_id: str,
    resume_step: int,
    now: datetime | None = None,
) -> StepRunResult:
    """Advance one execution from its persisted cursor until it waits, fails or completes.

    Safe to call repeatedly with the same arguments: only an execution that is
    pending or waiting at ``resume_step`` (or running with an expired lease) is
    claimed; any other call returns a ``skipped`` result without side effects.
    The caller owns the transaction.
    """
    now = now or datetime.now(timezone.utc)
    execution = db.get(AutomationExecution, execution_id)
    if execution is None:
        raise ExecutionNotFoundError(execution_id)
    if execution.status in TERMINAL_STATUSES:
        return StepRunResult(execution_id=execution_id, status="skipped")

    if not claim_execution(db, execution_id=execution_id, resume_step=resume_step, now=now):
        log_event(
            logger,
            "automation.claim_skipped",
            execution_id=execution_id,
            resume_step=resume_step,
            status=execution.status,
        )
        return StepRunResult(execution_id=execution_id, status="skipped")

    db.refresh(execution)
    if execution.started_at is None:
        execution.started_at = now

    contact = None
    if execution.contact_id:
        contact = db.execute(
            select(Contact).where(
                Contact.id == execution.contact_id,
                Contact.tenant_id == execution.tenant_id,
            )
        ).scalar_one_or_none()

    cursor = execution.resume_cursor_json or {}
    runner = _StepRunner(db, execution=execution, contact=contact, now=now)
    outcome = runner.run_list(
        execution.actions_snapshot_json or [],
        prefix=[],
        branches=[],
        resume_path=list(cursor.get("path") or [resume_step]),
        resume_branches=list(cursor.get("branches") or []),
    )

    if outcome.kind == "waiting":
        wake_at = now + timedelta(milliseconds=outcome.wait_ms)
        resume_index = outcome.path[0]
        execution.status = "waiting"
        execution.current_step_index = resume_index
        execution.resume_cursor_json = {"path": outcome.path, "branches": outcome.branches}
        execution.next_wake_at = wake_at
        execution.claimed_at = None
        scheduler_service.enqueue(
            db,
            execution=execution,
            resume_step=resume_index,
            delay_ms=outcome.wait_ms,
            job_type=scheduler_service.JOB_TYPE_CONTINUE,
            now=now,
        )
        log_event(
            logger,
            "automation.wait",
            execution_id=execution.id,
            rule_id=execution.rule_id,
            resume_path=outcome.path,
            wake_at=wake_at,
        )
        return StepRunResult(
            execution_id=execution.id,
            status="waiting",
            steps_recorded=runner.recorded,
            wake_at=wake_at,
        )

    if outcome.kind == "retry":
        execution.status = "pending"
        execution.current_step_index = outcome.path[0]
        execution.resume_cursor_json = {"path": outcome.path, "branches": outcome.branches}
        execution.error_message = outcome.error
        execution.claimed_at = None
        log_event(
            logger,
            "automation.step_retryable",
            level=logging.WARNING,
            execution_id=execution.id,
            rule_id=execution.rule_id,
            path=outcome.path,
            error=outcome.error,
        )
        return StepRunResult(
            execution_id=execution.id,
            status="retry",
            steps_recorded=runner.recorded,
            error=outcome.error,
        )

    if outcome.kind == "failed":
        finalize_execution(db, execution=execution, status="failed", error=outcome.error, now=now)
        return StepRunResult(
            execution_id=execution.id,
            status="failed",
            steps_recorded=runner.recorded,
            error=outcome.error,
        )

    execution.resume_cursor_json = None
    execution.current_step_index = len(execution.actions_snapshot_json or [])
    finalize_execution(db, execution=execution, status="completed", error=None, now=now)
    return StepRunResult(execution_id=execution.id, status="completed", steps_recorded=runner.recorded)


def finalize_execution(
    db: Session,
    *,
    execution: AutomationExecution,
    status: str,
    error: str | None,
    now: datetime,
) -> bool:
    """Move an execution to a terminal status and bump its rule counters once.

    Returns False when another path already finalized the record.
    """
    if status not in {"completed", "failed"}:
        raise ValueError(f"Unsupported terminal status '{status}'")

    started_at = _as_utc(execution.started_at) if execution.started_at else None
    execution_time_ms = int((now - started_at).total_seconds() * 1000) if started_at else None
    db.flush()
    result = db.execute(
        update(AutomationExecution)
        .where(
            AutomationExecution.id == execution.id,
            AutomationExecution.status.not_in(TERMINAL_STATUSES),
        )
        .values(
            status=status,
            error_message=error,
            completed_at=now,
            execution_time_ms=execution_time_ms,
            next_wake_at=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(execution)
        return False

    counter_values: dict[str, Any] = {
        "run_count": AutomationRule.run_count + 1,
        "last_run_at": now,
    }
    if status == "completed":
        counter_values["success_count"] = AutomationRule.success_count + 1
    else:
        counter_values["failure_count"] = AutomationRule.failure_count + 1
    db.execute(
        update(AutomationRule)
        .where(AutomationRule.id == execution.rule_id)
        .values(**counter_values)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    db.refresh(execution)
    rule = db.get(AutomationRule, execution.rule_id)
    if rule is not None:
        db.refresh(rule)

    log_event(
        logger,
        "automation.finished",
        level=logging.INFO if status == "completed" else logging.WARNING,
        execution_id=execution.id,
        rule_id=execution.rule_id,
        status=status,
        execution_time_ms=execution_time_ms,
        error=error,
    )
    return True


def fail_exhausted_execution(
    db: Session,
    *,
    execution: AutomationExecution,
    error: str,
    now: datetime,
) -> bool:
    if execution.status in TERMINAL_STATUSES:
        return False

    cursor = execution.resume_cursor_json or {}
    path = list(cursor.get("path") or [execution.current_step_index])
    branches = list(cursor.get("branches") or [])
    action = _action_at(execution.actions_snapshot_json or [], path, branches)
    if action is not None:
        _append_step(
            db,
            execution=execution,
            path=path,
            action_type=str(action.get("type") or "unknown"),
            status="failed",
            input_json=action,
            output_json={"exhausted": True, "retry_count": execution.retry_count},
            error=error,
            now=now,
        )
    return finalize_execution(db, execution=execution, status="failed", error=error, now=now)


class _StepRunner:
    def __init__(self, db: Session, *, execution: AutomationExecution, contact: Contact | None, now: datetime):
        self.db = db
        self.execution = execution
        self.contact = contact
        self.now = now
        self.event_data: dict[str, Any] = dict(execution.trigger_event_json or {})
        self.recorded = 0

    def run_list(
        self,
        actions: list[dict[str, Any]],
        *,
        prefix: list[int],
        branches: list[str],
        resume_path: list[int] | None,
        resume_branches: list[str] | None,
    ) -> _ListOutcome:
        start = resume_path[0] if resume_path else 0
        for index in range(max(start, 0), len(actions)):
            action = actions[index] if isinstance(actions[index], dict) else {}
            path = [*prefix, index]
            action_type = str(action.get("type") or "").strip().lower()
            if not prefix:
                self.execution.current_step_index = index

            if action_type == "condition":
                resuming_inside = bool(resume_path) and len(resume_path) > 1 and index == start
                if resuming_inside:
                    branch = resume_branches[0] if resume_branches else "then"
                    nested_path = resume_path[1:]
                    nested_branches = resume_branches[1:] if resume_branches else []
                else:
                    matched = evaluate_conditions(action.get("conditions") or [], self._condition_data())
                    branch = "then" if matched else "else"
                    nested_path = None
                    nested_branches = None
                    self._record(
                        path,
                        branches,
                        action_type,
                        "success",
                        input_json={"conditions": action.get("conditions") or []},
                        output_json={
                            "condition_met": matched,
                            "branch": branch,
                            "actions": len(action.get(BRANCH_KEYS[branch]) or []),
                        },
                    )
                outcome = self.run_list(
                    action.get(BRANCH_KEYS.get(branch, "then_actions")) or [],
                    prefix=path,
                    branches=[*branches, branch],
                    resume_path=nested_path,
                    resume_branches=nested_branches,
                )
                if outcome.kind != "done":
                    return outcome
                continue

            if action_type == "wait":
                return _ListOutcome(
                    kind="waiting",
                    path=[*prefix, index + 1],
                    branches=list(branches),
                    wait_ms=wait_duration_ms(action),
                )

            if action_type not in ORDINARY_ACTION_TYPES:
                self._record(
                    path,
                    branches,
                    action_type or "unknown",
                    "skipped",
                    input_json=action,
                    output_json={"skipped": True, "reason": "Unknown action type"},
                )
                continue

            result = self._dispatch(action)
            if result.success:
                self._record(path, branches, action_type, "success", input_json=action, output_json=result.data)
                continue
            if result.retryable:
                return _ListOutcome(kind="retry", path=path, branches=list(branches), error=result.error)
            self._record(
                path,
                branches,
                action_type,
                "failed",
                input_json=action,
                output_json=result.data,
                error=result.error,
            )
            return _ListOutcome(kind="failed", path=path, branches=list(branches), error=result.error)

        return _ListOutcome(kind="done")

    def _condition_data(self) -> dict[str, Any]:
        # Branches see the contact as it is now, not as it was at dispatch.
        if self.contact is None:
            return self.event_data
        return {**self.event_data, "contact": contact_snapshot(self.contact)}

    def _dispatch(self, action: dict[str, Any]) -> EffectorResult:
        context = EffectorContext(
            tenant_id=self.execution.tenant_id,
            contact=self.contact,
            event_data=self.event_data,
            execution_id=self.execution.id,
        )
        try:
            with self.db.begin_nested():
                result = run_effector(self.db, action=action, context=context)
        except _RETRYABLE_EXCEPTIONS as exc:
            return EffectorResult(success=False, error=_short_error(exc), retryable=True)
        except Exception as exc:  # noqa: BLE001
            return EffectorResult(success=False, error=_short_error(exc))
        if not result.success and not result.error:
            return EffectorResult(success=False, data=result.data, error="Action failed", retryable=result.retryable)
        return result

    def _record(
        self,
        path: list[int],
        branches: list[str],
        action_type: str,
        status: str,
        *,
        input_json: dict[str, Any] | None,
        output_json: dict[str, Any] | None,
        error: str | None = None,
    ) -> None:
        _append_step(
            self.db,
            execution=self.execution,
            path=path,
            branches=branches,
            action_type=action_type,
            status=status,
            input_json=input_json,
            output_json=output_json,
            error=error,
            now=self.now,
        )
        self.recorded += 1
        log_event(
            logger,
            "automation.step",
            execution_id=self.execution.id,
            rule_id=self.execution.rule_id,
            step_path=_format_path(path, branches),
            action_type=action_type,
            status=status,
            error=error,
        )


def _append_step(
    db: Session,
    *,
    execution: AutomationExecution,
    path: list[int],
    action_type: str,
    status: str,
    input_json: dict[str, Any] | None,
    output_json: dict[str, Any] | None,
    error: str | None,
    now: datetime,
    branches: list[str] | None = None,
) -> AutomationExecutionStep:
    if branches is None:
        branches = list((execution.resume_cursor_json or {}).get("branches") or [])
    execution.steps_total += 1
    if status == "success":
        execution.steps_succeeded += 1
    elif status == "failed":
        execution.steps_failed += 1

    step = AutomationExecutionStep(
        id=str(uuid.uuid4()),
        execution_id=execution.id,
        sequence=execution.steps_total,
        step_index=path[0] if path else 0,
        step_path=_format_path(path, branches),
        action_type=action_type[:40],
        status=status,
        input_json=input_json,
        output_json=output_json if isinstance(output_json, dict) else None,
        error_message=error[:500] if error else None,
        executed_at=now,
    )
    db.add(step)
    db.flush()
    return step


def _action_at(actions: list[dict[str, Any]], path: list[int], branches: list[str]) -> dict[str, Any] | None:
    current: list[dict[str, Any]] = actions
    for depth, index in enumerate(path):
        if index < 0 or index >= len(current):
            return None
        node = current[index]
        if depth == len(path) - 1:
            return node
        branch = branches[depth] if depth < len(branches) else "then"
        current = node.get(BRANCH_KEYS.get(branch, "then_actions")) or []
    return None


def _format_path(path: list[int], branches: list[str]) -> str:
    parts: list[str] = []
    for depth, index in enumerate(path):
        parts.append(str(index))
        if depth < len(path) - 1 and depth < len(branches):
            parts.append(branches[depth])
    return ".".join(parts)


def _short_error(value: Exception | str) -> str:
    text = str(value).strip()
    if not text and isinstance(value, Exception):
        text = type(value).__name__
    return (text or "Automation action failed")[:500]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
