import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ruleflow.core.config import settings
from ruleflow.core.observability import log_event
from ruleflow.models.automation import (
    AutomationExecution,
    AutomationExecutionStep,
    AutomationJob,
    AutomationRule,
)
from ruleflow.models.contact import Contact
from ruleflow.models.messaging import OutboundMessage
from ruleflow.models.tenant import Tenant
from ruleflow.services import scheduler_service
from ruleflow.services.condition_service import evaluate_conditions, resolve_value
from ruleflow.services.effector_service import ORDINARY_ACTION_TYPES, contact_snapshot
from ruleflow.services.errors import RuleNotFoundError, UnknownActionTypeError
from ruleflow.services.execution_service import BRANCH_KEYS, PSEUDO_ACTION_TYPES

logger = logging.getLogger("ruleflow.automation")

RULE_STATUSES = ("draft", "active", "paused")
DELAY_TYPES = ("immediate", "delay", "schedule")
KEYWORD_MATCH_TYPES = ("exact", "contains", "starts_with")

TRIGGER_TYPES = (
    # contact
    "contact_created",
    "tag_added",
    "tag_removed",
    "lifecycle_changed",
    "contact_birthday",
    # inbox
    "message_received",
    "keyword_match",
    "conversation_closed",
    # e-commerce
    "order_created",
    "order_confirmed",
    "order_shipped",
    "order_delivered",
    "order_cancelled",
    "payment_success",
    "payment_failed",
    "refund_processed",
    "cod_order_created",
    "cart_abandoned",
    "cart_recovered",
    "first_order",
    "repeat_order",
    "high_value_order",
    "customer_inactive",
    # instagram
    "instagram_comment",
    "instagram_dm",
    "instagram_story_mention",
    "instagram_story_reply",
    # reviews and support
    "positive_review",
    "negative_review",
    "sla_warning",
    # time based
    "schedule",
    "inactivity",
    "date_field_match",
)

_MESSAGE_TEXT_PATHS = ("text", "message.text", "message.body", "message", "body")
_ORDER_TOTAL_PATHS = ("total", "order.total", "total_price", "order.total_price", "amount")


@dataclass(frozen=True)
class DispatchSummary:
    matched: int
    dispatched: int
    skipped: int
    failed: int
    execution_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AutomationStats:
    total: int
    active: int
    paused: int
    draft: int
    total_runs: int
    total_successes: int
    total_failures: int
    success_rate: int


def validate_actions(actions: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    if not actions:
        return []
    known = set(ORDINARY_ACTION_TYPES) | set(PSEUDO_ACTION_TYPES)
    for action in actions:
        action_type = str((action or {}).get("type") or "").strip().lower()
        if action_type not in known:
            raise UnknownActionTypeError(action_type or "<missing>")
        if action_type == "condition":
            for key in BRANCH_KEYS.values():
                validate_actions(action.get(key))
    return actions


def create_rule(
    db: Session,
    *,
    tenant_id: str,
    name: str,
    trigger_type: str,
    actions: list[dict[str, Any]],
    trigger_config: dict[str, Any] | None = None,
    conditions: list[dict[str, Any]] | None = None,
    delay_config: dict[str, Any] | None = None,
    description: str | None = None,
    priority: int = 0,
    status: str = "draft",
    template_key: str | None = None,
) -> AutomationRule:
    _ensure_trigger_type(trigger_type)
    _ensure_status(status)
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValueError("Rule name is required")

    rule = AutomationRule(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name=cleaned_name,
        description=description,
        status=status,
        trigger_type=trigger_type,
        trigger_config_json=dict(trigger_config or {}),
        conditions_json=list(conditions or []),
        actions_json=validate_actions(list(actions or [])),
        delay_config_json=dict(delay_config) if delay_config else None,
        priority=priority,
        template_key=template_key,
        version=1,
        run_count=0,
        success_count=0,
        failure_count=0,
    )
    db.add(rule)
    db.flush()
    log_event(logger, "automation.rule_created", tenant_id=tenant_id, rule_id=rule.id, trigger_type=trigger_type)
    return rule


def get_rule(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    rule = db.execute(
        select(AutomationRule).where(
            AutomationRule.id == rule_id,
            AutomationRule.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


def list_rules(
    db: Session,
    *,
    tenant_id: str,
    status: str | None = None,
    trigger_type: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AutomationRule], int]:
    filters = [AutomationRule.tenant_id == tenant_id]
    if status:
        filters.append(AutomationRule.status == status)
    if trigger_type:
        filters.append(AutomationRule.trigger_type == trigger_type)

    total = int(db.execute(select(func.count(AutomationRule.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(AutomationRule)
        .where(*filters)
        .order_by(AutomationRule.priority.desc(), AutomationRule.created_at.desc(), AutomationRule.id.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def update_rule(db: Session, *, tenant_id: str, rule_id: str, changes: dict[str, Any]) -> AutomationRule:
    rule = get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    changed = False

    if changes.get("name") is not None:
        cleaned_name = str(changes["name"]).strip()
        if not cleaned_name:
            raise ValueError("Rule name is required")
        rule.name = cleaned_name
        changed = True
    if "description" in changes:
        rule.description = changes["description"]
        changed = True
    if changes.get("status") is not None:
        _ensure_status(changes["status"])
        rule.status = changes["status"]
        changed = True
    if changes.get("trigger_type") is not None:
        _ensure_trigger_type(changes["trigger_type"])
        rule.trigger_type = changes["trigger_type"]
        changed = True
    if changes.get("trigger_config") is not None:
        rule.trigger_config_json = dict(changes["trigger_config"])
        changed = True
    if changes.get("conditions") is not None:
        rule.conditions_json = list(changes["conditions"])
        changed = True
    if changes.get("actions") is not None:
        rule.actions_json = validate_actions(list(changes["actions"]))
        changed = True
    if "delay_config" in changes:
        rule.delay_config_json = dict(changes["delay_config"]) if changes["delay_config"] else None
        changed = True
    if changes.get("priority") is not None:
        rule.priority = int(changes["priority"])
        changed = True

    if changed:
        rule.version += 1
    db.flush()
    return rule


def activate_rule(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    rule = get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    rule.status = "active"
    db.flush()
    log_event(logger, "automation.rule_activated", tenant_id=tenant_id, rule_id=rule.id)
    return rule


def pause_rule(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    rule = get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    rule.status = "paused"
    db.flush()
    log_event(logger, "automation.rule_paused", tenant_id=tenant_id, rule_id=rule.id)
    return rule


def delete_rule(db: Session, *, tenant_id: str, rule_id: str) -> None:
    rule = get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    execution_ids = select(AutomationExecution.id).where(AutomationExecution.rule_id == rule.id)
    db.execute(delete(AutomationJob).where(AutomationJob.execution_id.in_(execution_ids)))
    db.execute(delete(AutomationExecutionStep).where(AutomationExecutionStep.execution_id.in_(execution_ids)))
    db.execute(
        update(OutboundMessage)
        .where(OutboundMessage.execution_id.in_(execution_ids))
        .values(execution_id=None)
    )
    db.execute(delete(AutomationExecution).where(AutomationExecution.rule_id == rule.id))
    db.delete(rule)
    db.flush()
    log_event(logger, "automation.rule_deleted", tenant_id=tenant_id, rule_id=rule_id)


def find_enabled_rules(db: Session, *, tenant_id: str, trigger_type: str) -> list[AutomationRule]:
    return list(
        db.execute(
            select(AutomationRule)
            .where(
                AutomationRule.tenant_id == tenant_id,
                AutomationRule.trigger_type == trigger_type,
                AutomationRule.status == "active",
            )
            .order_by(AutomationRule.priority.desc(), AutomationRule.created_at.asc(), AutomationRule.id.asc())
        ).scalars().all()
    )


def trigger_config_matches(trigger_type: str, trigger_config: dict[str, Any] | None, event_data: dict[str, Any]) -> bool:
    config = trigger_config or {}

    keywords = [str(item).strip().lower() for item in (config.get("keywords") or []) if str(item).strip()]
    if keywords:
        text = _first_text(event_data, _MESSAGE_TEXT_PATHS).strip().lower()
        if not text:
            return False
        match_type = str(config.get("match_type") or "contains").strip().lower()
        if match_type == "exact":
            return text in keywords
        if match_type == "starts_with":
            return any(text.startswith(keyword) for keyword in keywords)
        return any(keyword in text for keyword in keywords)

    min_order_value = config.get("min_order_value")
    if min_order_value is not None:
        total = _first_number(event_data, _ORDER_TOTAL_PATHS)
        if total is None:
            return False
        try:
            return total >= float(min_order_value)
        except (TypeError, ValueError):
            return False

    return True


def compute_initial_delay_ms(
    delay_config: dict[str, Any] | None,
    *,
    now: datetime,
    default_timezone: str | None = None,
) -> int:
    if not delay_config:
        return 0
    delay_type = str(delay_config.get("type") or "immediate").strip().lower()

    if delay_type == "delay":
        try:
            seconds = float(delay_config.get("delay_seconds") or 0)
        except (TypeError, ValueError):
            return 0
        return max(0, int(seconds * 1000))

    if delay_type == "schedule":
        hour, minute = _parse_schedule_time(delay_config.get("schedule_time"))
        if hour is None:
            return 0
        tz = _resolve_timezone(delay_config.get("schedule_timezone"), default_timezone)
        now_utc = now.astimezone(timezone.utc)
        local_date = now_utc.astimezone(tz).date()
        # Offsets differ across DST transitions, so subtract in UTC.
        target = datetime.combine(local_date, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)
        if target <= now_utc:
            next_date = local_date + timedelta(days=1)
            target = datetime.combine(next_date, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)
        return max(0, int((target - now_utc).total_seconds() * 1000))

    return 0


def trigger_event(
    db: Session,
    *,
    tenant_id: str,
    trigger_type: str,
    event_data: dict[str, Any] | None,
    contact_id: str | None = None,
    source: str | None = None,
    now: datetime | None = None,
) -> DispatchSummary:
    """Create and schedule one execution per active rule whose trigger config and conditions match."""
    now = now or datetime.now(timezone.utc)
    rules = find_enabled_rules(db, tenant_id=tenant_id, trigger_type=trigger_type)
    if not rules:
        log_event(logger, "automation.no_rules", level=logging.DEBUG, tenant_id=tenant_id, trigger_type=trigger_type)
        return DispatchSummary(matched=0, dispatched=0, skipped=0, failed=0)

    bag = dict(event_data or {})
    contact = None
    if contact_id:
        contact = db.execute(
            select(Contact).where(
                Contact.id == contact_id,
                Contact.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if contact is None:
            log_event(
                logger,
                "automation.contact_missing",
                level=logging.WARNING,
                tenant_id=tenant_id,
                contact_id=contact_id,
            )
        elif "contact" not in bag:
            bag["contact"] = contact_snapshot(contact)

    tenant_timezone = db.execute(select(Tenant.timezone).where(Tenant.id == tenant_id)).scalar_one_or_none()
    mutable = {"matched": 0, "dispatched": 0, "skipped": 0, "failed": 0}
    execution_ids: list[str] = []

    for rule in rules:
        if not trigger_config_matches(rule.trigger_type, rule.trigger_config_json, bag):
            mutable["skipped"] += 1
            continue
        if not evaluate_conditions(rule.conditions_json or [], bag):
            mutable["skipped"] += 1
            continue
        mutable["matched"] += 1

        try:
            with db.begin_nested():
                delay_ms = compute_initial_delay_ms(
                    rule.delay_config_json,
                    now=now,
                    default_timezone=tenant_timezone,
                )
                execution = AutomationExecution(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    rule_id=rule.id,
                    rule_version=rule.version,
                    contact_id=contact.id if contact else None,
                    trigger_type=trigger_type,
                    trigger_source=source,
                    trigger_event_json=bag,
                    actions_snapshot_json=list(rule.actions_json or []),
                    status="pending",
                    current_step_index=0,
                    resume_cursor_json=None,
                    next_wake_at=now + timedelta(milliseconds=delay_ms) if delay_ms else None,
                    retry_count=0,
                    max_retries=settings.automation_execution_max_retries,
                )
                db.add(execution)
                db.flush()
                scheduler_service.enqueue(
                    db,
                    execution=execution,
                    resume_step=0,
                    delay_ms=delay_ms,
                    attempts=settings.automation_job_max_attempts,
                    backoff_type=settings.automation_backoff_type,
                    backoff_delay_ms=settings.automation_backoff_delay_ms,
                    now=now,
                )
        except Exception as exc:  # noqa: BLE001
            mutable["failed"] += 1
            log_event(
                logger,
                "automation.dispatch_failed",
                level=logging.ERROR,
                tenant_id=tenant_id,
                rule_id=rule.id,
                error=str(exc),
            )
            continue

        mutable["dispatched"] += 1
        execution_ids.append(execution.id)
        log_event(
            logger,
            "automation.dispatch",
            tenant_id=tenant_id,
            rule_id=rule.id,
            execution_id=execution.id,
            trigger_type=trigger_type,
            delay_ms=delay_ms,
        )

    return DispatchSummary(execution_ids=execution_ids, **mutable)


def get_stats(db: Session, *, tenant_id: str) -> AutomationStats:
    row = db.execute(
        select(
            func.count(AutomationRule.id),
            func.sum(func.coalesce(AutomationRule.run_count, 0)),
            func.sum(func.coalesce(AutomationRule.success_count, 0)),
            func.sum(func.coalesce(AutomationRule.failure_count, 0)),
        ).where(AutomationRule.tenant_id == tenant_id)
    ).one()
    status_counts = dict(
        db.execute(
            select(AutomationRule.status, func.count(AutomationRule.id))
            .where(AutomationRule.tenant_id == tenant_id)
            .group_by(AutomationRule.status)
        ).all()
    )
    total_runs = int(row[1] or 0)
    total_successes = int(row[2] or 0)
    return AutomationStats(
        total=int(row[0] or 0),
        active=int(status_counts.get("active", 0)),
        paused=int(status_counts.get("paused", 0)),
        draft=int(status_counts.get("draft", 0)),
        total_runs=total_runs,
        total_successes=total_successes,
        total_failures=int(row[3] or 0),
        success_rate=int(total_successes * 100 / total_runs + 0.5) if total_runs > 0 else 0,
    )


def unique_rule_name(db: Session, *, tenant_id: str, seed_name: str) -> str:
    base = (seed_name or "Automation Rule").strip() or "Automation Rule"
    candidate = base
    suffix = 2
    while db.execute(
        select(AutomationRule.id).where(
            AutomationRule.tenant_id == tenant_id,
            func.lower(AutomationRule.name) == candidate.lower(),
        )
    ).scalar_one_or_none():
        candidate = f"{base} ({suffix})"
        suffix += 1
    return candidate


def _ensure_trigger_type(trigger_type: str) -> None:
    if trigger_type not in TRIGGER_TYPES:
        raise ValueError(f"Unknown trigger type '{trigger_type}'")


def _ensure_status(status: str) -> None:
    if status not in RULE_STATUSES:
        raise ValueError(f"Unknown rule status '{status}'")


def _first_text(event_data: dict[str, Any], paths: tuple[str, ...]) -> str:
    for path in paths:
        value = resolve_value(event_data, path)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _first_number(event_data: dict[str, Any], paths: tuple[str, ...]) -> float | None:
    for path in paths:
        value = resolve_value(event_data, path)
        if value is None or isinstance(value, (bool, dict, list)):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def _parse_schedule_time(value: Any) -> tuple[int | None, int]:
    text = str(value or "").strip()
    hour_text, _, minute_text = text.partition(":")
    try:
        hour = int(hour_text)
        minute = int(minute_text or 0)
    except ValueError:
        return None, 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None, 0
    return hour, minute


def _resolve_timezone(*candidates: str | None) -> ZoneInfo:
    for name in [*candidates, settings.automation_default_timezone]:
        if not name:
            continue
        try:
            return ZoneInfo(str(name))
        except (ZoneInfoNotFoundError, ValueError):
            log_event(logger, "automation.invalid_timezone", level=logging.WARNING, timezone=name)
    return ZoneInfo("UTC")
