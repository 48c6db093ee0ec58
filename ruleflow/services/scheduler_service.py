import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from ruleflow.core.config import settings
from ruleflow.core.observability import log_event
from ruleflow.models.automation import AutomationExecution, AutomationJob
from ruleflow.services import execution_service

logger = logging.getLogger("ruleflow.scheduler")

JOB_TYPE_EXECUTE = "execute-automation"
JOB_TYPE_CONTINUE = "continue-automation"
BACKOFF_TYPES = ("exponential", "fixed")


@dataclass(frozen=True)
class JobRunSummary:
    claimed: int
    succeeded: int
    retried: int
    dead: int
    skipped: int


def compute_backoff_ms(*, backoff_type: str, base_delay_ms: int, attempt: int) -> int:
    if base_delay_ms <= 0:
        return 0
    if backoff_type == "fixed":
        delay = base_delay_ms
    else:
        delay = base_delay_ms * (2 ** max(0, attempt - 1))
    return min(delay, settings.automation_backoff_max_ms)


def enqueue(
    db: Session,
    *,
    execution: AutomationExecution,
    resume_step: int,
    delay_ms: int = 0,
    attempts: int | None = None,
    backoff_type: str | None = None,
    backoff_delay_ms: int | None = None,
    job_type: str = JOB_TYPE_EXECUTE,
    now: datetime | None = None,
) -> AutomationJob:
    now = now or datetime.now(timezone.utc)
    resolved_backoff = backoff_type or settings.automation_backoff_type
    if resolved_backoff not in BACKOFF_TYPES:
        raise ValueError(f"Unsupported backoff type '{resolved_backoff}'")

    job = AutomationJob(
        id=str(uuid.uuid4()),
        tenant_id=execution.tenant_id,
        execution_id=execution.id,
        job_type=job_type,
        resume_step=resume_step,
        status="queued",
        attempt_count=0,
        max_attempts=attempts or settings.automation_job_max_attempts,
        backoff_type=resolved_backoff,
        backoff_delay_ms=settings.automation_backoff_delay_ms if backoff_delay_ms is None else backoff_delay_ms,
        run_at=now + timedelta(milliseconds=max(0, delay_ms)),
    )
    db.add(job)
    db.flush()
    log_event(
        logger,
        "automation.enqueue",
        job_id=job.id,
        job_type=job_type,
        execution_id=execution.id,
        resume_step=resume_step,
        delay_ms=delay_ms,
        run_at=job.run_at,
    )
    return job


def _claimable_clause(now: datetime):
    # A running job whose lock outlived the lease belongs to a worker that died mid-run.
    lease_cutoff = now - timedelta(seconds=settings.automation_execution_lease_seconds)
    return or_(
        and_(AutomationJob.status == "queued", AutomationJob.run_at <= now),
        and_(
            AutomationJob.status == "running",
            AutomationJob.locked_at.is_not(None),
            AutomationJob.locked_at < lease_cutoff,
        ),
    )


def claim_due_jobs(
    db: Session,
    *,
    limit: int,
    worker_id: str,
    now: datetime,
    tenant_id: str | None = None,
) -> list[AutomationJob]:
    claimable = _claimable_clause(now)
    stmt = (
        select(AutomationJob.id)
        .where(claimable)
        .order_by(AutomationJob.run_at.asc())
        .limit(limit)
    )
    if tenant_id:
        stmt = stmt.where(AutomationJob.tenant_id == tenant_id)
    candidate_ids = db.execute(stmt.with_for_update(skip_locked=True)).scalars().all()

    claimed_ids: list[str] = []
    for job_id in candidate_ids:
        result = db.execute(
            update(AutomationJob)
            .where(AutomationJob.id == job_id, claimable)
            .values(
                status="running",
                attempt_count=AutomationJob.attempt_count + 1,
                locked_at=now,
                locked_by=worker_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(job_id)
    db.commit()

    if not claimed_ids:
        return []
    return list(
        db.execute(
            select(AutomationJob)
            .where(AutomationJob.id.in_(claimed_ids))
            .order_by(AutomationJob.run_at.asc())
        ).scalars().all()
    )


def run_due_jobs(
    db: Session,
    *,
    limit: int | None = None,
    worker_id: str = "inline",
    tenant_id: str | None = None,
    now: datetime | None = None,
) -> JobRunSummary:
    now = now or datetime.now(timezone.utc)
    jobs = claim_due_jobs(
        db,
        limit=limit or settings.automation_worker_batch_size,
        worker_id=worker_id,
        now=now,
        tenant_id=tenant_id,
    )

    mutable = {"claimed": len(jobs), "succeeded": 0, "retried": 0, "dead": 0, "skipped": 0}
    for job in jobs:
        outcome = _run_job(db, job=job, now=now)
        mutable[outcome] += 1
    return JobRunSummary(**mutable)


def _run_job(db: Session, *, job: AutomationJob, now: datetime) -> str:
    job_id = job.id
    try:
        result = execution_service.execute_step(
            db,
            execution_id=job.execution_id,
            resume_step=job.resume_step,
            now=now,
        )
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        log_event(
            logger,
            "automation.job_error",
            level=logging.ERROR,
            job_id=job_id,
            execution_id=job.execution_id,
            error=str(exc),
        )
        job = db.get(AutomationJob, job_id)
        outcome = _handle_retry(db, job=job, error=_short_error(exc), now=now)
        db.commit()
        return outcome

    if result.status == "retry":
        outcome = _handle_retry(db, job=job, error=result.error or "Transient failure", now=now)
        db.commit()
        return outcome

    job.status = "succeeded"
    job.locked_at = None
    job.locked_by = None
    job.last_error = None
    db.commit()
    return "skipped" if result.status == "skipped" else "succeeded"


def _handle_retry(db: Session, *, job: AutomationJob, error: str, now: datetime) -> str:
    execution = db.get(AutomationExecution, job.execution_id)
    job.last_error = error
    job.locked_at = None
    job.locked_by = None

    exhausted = job.attempt_count >= job.max_attempts
    if execution is not None:
        execution.retry_count = job.attempt_count
        if job.attempt_count >= execution.max_retries:
            exhausted = True

    if exhausted:
        job.status = "dead"
        if execution is not None:
            execution_service.fail_exhausted_execution(db, execution=execution, error=error, now=now)
        log_event(
            logger,
            "automation.exhausted",
            level=logging.WARNING,
            job_id=job.id,
            execution_id=job.execution_id,
            attempts=job.attempt_count,
            error=error,
        )
        return "dead"

    delay_ms = compute_backoff_ms(
        backoff_type=job.backoff_type,
        base_delay_ms=job.backoff_delay_ms,
        attempt=job.attempt_count,
    )
    job.status = "queued"
    job.run_at = now + timedelta(milliseconds=delay_ms)
    if execution is not None:
        job.resume_step = execution.current_step_index
    log_event(
        logger,
        "automation.retry",
        job_id=job.id,
        execution_id=job.execution_id,
        attempt=job.attempt_count,
        next_run_at=job.run_at,
        error=error,
    )
    return "retried"


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Automation job failed"
    return text[:500]
