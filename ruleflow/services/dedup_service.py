import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ruleflow.core.observability import log_event
from ruleflow.models.webhook import WebhookEvent, WebhookLog

logger = logging.getLogger("ruleflow.webhooks")

GUARD_STATUSES = ("processed", "failed", "duplicate")


@dataclass(frozen=True)
class GuardResult:
    status: str
    provider: str
    event_id: str
    duplicate: bool
    error: str | None = None
    result: Any = None


def guard_external_event(
    db: Session,
    *,
    provider: str,
    event_id: str,
    topic: str | None,
    payload: dict[str, Any] | None,
    handler: Callable[[Session], Any],
    tenant_id: str | None = None,
) -> GuardResult:
    """Run ``handler`` at most once per (provider, event id).

    The deduplication marker is committed before the handler runs, so a redelivery
    that arrives while the first delivery is still processing, or after it failed,
    is reported as a duplicate and the handler is not invoked again.
    """
    normalized_provider = (provider or "").strip().lower()
    normalized_event_id = (event_id or "").strip()
    if not normalized_provider or not normalized_event_id:
        raise ValueError("Provider and event id are required")

    started = time.perf_counter()
    delivery_log = WebhookLog(
        id=str(uuid.uuid4()),
        provider=normalized_provider,
        event_id=normalized_event_id,
        topic=topic,
        tenant_id=tenant_id,
        status="received",
        payload_json=payload,
    )
    db.add(delivery_log)
    db.flush()

    existing = db.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == normalized_provider,
            WebhookEvent.event_id == normalized_event_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        existing.attempt_count = (existing.attempt_count or 0) + 1
        return _record_duplicate(db, delivery_log=delivery_log, started=started)

    marker = WebhookEvent(
        id=str(uuid.uuid4()),
        provider=normalized_provider,
        event_id=normalized_event_id,
        topic=topic,
        tenant_id=tenant_id,
        status="processing",
        success=False,
        attempt_count=1,
    )
    try:
        with db.begin_nested():
            db.add(marker)
            db.flush()
    except IntegrityError:
        return _record_duplicate(db, delivery_log=delivery_log, started=started)

    delivery_log.status = "processing"
    db.commit()

    try:
        result = handler(db)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        error = _short_error(exc)
        marker.status = "failed"
        marker.success = False
        marker.error_message = error
        marker.processed_at = datetime.now(timezone.utc)
        delivery_log.status = "failed"
        delivery_log.error_message = error
        delivery_log.duration_ms = _elapsed_ms(started)
        db.commit()
        log_event(
            logger,
            "webhook.failed",
            level=logging.ERROR,
            provider=normalized_provider,
            event_id=normalized_event_id,
            topic=topic,
            error=error,
        )
        return GuardResult(
            status="failed",
            provider=normalized_provider,
            event_id=normalized_event_id,
            duplicate=False,
            error=error,
        )

    marker.status = "processed"
    marker.success = True
    marker.error_message = None
    marker.processed_at = datetime.now(timezone.utc)
    delivery_log.status = "success"
    delivery_log.duration_ms = _elapsed_ms(started)
    db.commit()
    log_event(
        logger,
        "webhook.processed",
        provider=normalized_provider,
        event_id=normalized_event_id,
        topic=topic,
        duration_ms=delivery_log.duration_ms,
    )
    return GuardResult(
        status="processed",
        provider=normalized_provider,
        event_id=normalized_event_id,
        duplicate=False,
        result=result,
    )


def _record_duplicate(db: Session, *, delivery_log: WebhookLog, started: float) -> GuardResult:
    delivery_log.status = "duplicate"
    delivery_log.duration_ms = _elapsed_ms(started)
    db.commit()
    log_event(
        logger,
        "webhook.duplicate",
        level=logging.WARNING,
        provider=delivery_log.provider,
        event_id=delivery_log.event_id,
        topic=delivery_log.topic,
    )
    return GuardResult(
        status="duplicate",
        provider=delivery_log.provider,
        event_id=delivery_log.event_id,
        duplicate=True,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or value.__class__.__name__
    return text[:500]
