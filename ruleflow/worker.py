import logging
import os
import time
import uuid

from ruleflow.core.config import settings
from ruleflow.core.observability import log_event, setup_observability
from ruleflow.db.session import SessionLocal
from ruleflow.services.scheduler_service import run_due_jobs

logger = logging.getLogger("ruleflow.worker")


def run_once(*, worker_id: str, batch_size: int) -> int:
    db = SessionLocal()
    try:
        summary = run_due_jobs(db, limit=batch_size, worker_id=worker_id)
    finally:
        db.close()
    if summary.claimed:
        log_event(
            logger,
            "worker.batch",
            worker_id=worker_id,
            claimed=summary.claimed,
            succeeded=summary.succeeded,
            retried=summary.retried,
            dead=summary.dead,
            skipped=summary.skipped,
        )
    return summary.claimed


def main() -> None:
    setup_observability()
    worker_id = os.getenv("WORKER_ID", f"worker-{uuid.uuid4().hex[:12]}")
    poll_ms = int(os.getenv("WORKER_POLL_MS", str(settings.automation_worker_poll_ms)))
    batch_size = int(os.getenv("WORKER_BATCH", str(settings.automation_worker_batch_size)))
    log_event(logger, "worker.started", worker_id=worker_id, poll_ms=poll_ms, batch_size=batch_size)

    while True:
        try:
            claimed = run_once(worker_id=worker_id, batch_size=batch_size)
        except KeyboardInterrupt:
            log_event(logger, "worker.stopped", worker_id=worker_id)
            return
        except Exception as exc:  # noqa: BLE001
            log_event(logger, "worker.error", level=logging.ERROR, worker_id=worker_id, error=str(exc))
            claimed = 0

        if not claimed:
            time.sleep(poll_ms / 1000)


if __name__ == "__main__":
    main()
