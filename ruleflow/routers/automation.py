from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ruleflow.core.api_docs import error_responses
from ruleflow.core.deps import get_db
from ruleflow.core.security_current import get_current_tenant
from ruleflow.models.automation import AutomationExecution, AutomationExecutionStep, AutomationRule
from ruleflow.schemas.automation import (
    AutomationDispatchOut,
    AutomationEventIn,
    AutomationExecutionListOut,
    AutomationExecutionOut,
    AutomationExecutionStepOut,
    AutomationJobRunOut,
    AutomationRuleCreateIn,
    AutomationRuleListOut,
    AutomationRuleOut,
    AutomationRuleUpdateIn,
    AutomationStatsOut,
    AutomationTemplateCatalogOut,
    AutomationTemplateInstallIn,
    AutomationTemplateInstallOut,
    AutomationTemplateOut,
    AutomationTemplateSummaryOut,
    dump_actions,
)
from ruleflow.schemas.common import PaginationMeta
from ruleflow.services import automation_service, execution_service, scheduler_service, template_service
from ruleflow.services.errors import ExecutionNotFoundError, RuleNotFoundError
from ruleflow.services.tenant_service import TenantPrincipal

router = APIRouter(prefix="/automations", tags=["automation"])


def _rule_or_404(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    try:
        return automation_service.get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Automation rule not found") from None


def _execution_or_404(db: Session, *, tenant_id: str, execution_id: str) -> AutomationExecution:
    try:
        return execution_service.get_execution(db, tenant_id=tenant_id, execution_id=execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(status_code=404, detail="Automation execution not found") from None


def _rule_out(rule: AutomationRule) -> AutomationRuleOut:
    return AutomationRuleOut(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        status=rule.status,
        trigger_type=rule.trigger_type,
        trigger_config=rule.trigger_config_json if isinstance(rule.trigger_config_json, dict) else {},
        conditions=[item for item in (rule.conditions_json or []) if isinstance(item, dict)],
        actions=[item for item in (rule.actions_json or []) if isinstance(item, dict)],
        delay_config=rule.delay_config_json if isinstance(rule.delay_config_json, dict) else None,
        priority=rule.priority,
        template_key=rule.template_key,
        version=rule.version,
        run_count=rule.run_count,
        success_count=rule.success_count,
        failure_count=rule.failure_count,
        last_run_at=rule.last_run_at,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _step_out(step: AutomationExecutionStep) -> AutomationExecutionStepOut:
    return AutomationExecutionStepOut(
        id=step.id,
        sequence=step.sequence,
        step_index=step.step_index,
        step_path=step.step_path,
        action_type=step.action_type,
        status=step.status,
        input_json=step.input_json if isinstance(step.input_json, dict) else None,
        output_json=step.output_json if isinstance(step.output_json, dict) else None,
        error_message=step.error_message,
        executed_at=step.executed_at,
    )


def _execution_out(execution: AutomationExecution, *, steps: list[AutomationExecutionStep]) -> AutomationExecutionOut:
    return AutomationExecutionOut(
        id=execution.id,
        rule_id=execution.rule_id,
        rule_version=execution.rule_version,
        contact_id=execution.contact_id,
        trigger_type=execution.trigger_type,
        trigger_source=execution.trigger_source,
        status=execution.status,
        current_step_index=execution.current_step_index,
        steps_total=execution.steps_total,
        steps_succeeded=execution.steps_succeeded,
        steps_failed=execution.steps_failed,
        next_wake_at=execution.next_wake_at,
        error_message=execution.error_message,
        retry_count=execution.retry_count,
        max_retries=execution.max_retries,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        execution_time_ms=execution.execution_time_ms,
        created_at=execution.created_at,
        steps=[_step_out(item) for item in steps],
    )


def _template_out(item: dict[str, Any]) -> AutomationTemplateOut:
    return AutomationTemplateOut(
        template_key=item["template_key"],
        name=item["name"],
        description=item["description"],
        category=item["category"],
        trigger_type=item["trigger_type"],
        preview=item["preview"],
        trigger_config=item.get("trigger_config") or {},
        conditions=item.get("conditions") or [],
        actions=item.get("actions") or [],
        delay_config=item.get("delay_config"),
    )


def _steps_by_execution_ids(db: Session, *, execution_ids: list[str]) -> dict[str, list[AutomationExecutionStep]]:
    if not execution_ids:
        return {}
    rows = db.execute(
        select(AutomationExecutionStep)
        .where(AutomationExecutionStep.execution_id.in_(execution_ids))
        .order_by(AutomationExecutionStep.execution_id.asc(), AutomationExecutionStep.sequence.asc())
    ).scalars().all()
    out: dict[str, list[AutomationExecutionStep]] = {execution_id: [] for execution_id in execution_ids}
    for row in rows:
        out.setdefault(row.execution_id, []).append(row)
    return out


def _rule_changes(payload: AutomationRuleUpdateIn) -> dict[str, Any]:
    fields = payload.model_fields_set
    changes: dict[str, Any] = {}
    for key in ("name", "description", "status", "trigger_type", "priority"):
        if key in fields:
            changes[key] = getattr(payload, key)
    if payload.trigger_config is not None:
        changes["trigger_config"] = payload.trigger_config.model_dump(exclude_none=True)
    if payload.conditions is not None:
        changes["conditions"] = [item.model_dump(mode="json") for item in payload.conditions]
    if payload.actions is not None:
        changes["actions"] = dump_actions(payload.actions)
    if "delay_config" in fields:
        changes["delay_config"] = (
            payload.delay_config.model_dump(exclude_none=True) if payload.delay_config is not None else None
        )
    return changes


@router.get(
    "/templates",
    response_model=AutomationTemplateCatalogOut,
    summary="List automation templates",
    responses=error_responses(401, 500),
)
def list_templates(
    category: str | None = Query(default=None),
    _: TenantPrincipal = Depends(get_current_tenant),
):
    items = template_service.list_automation_templates(category=category)
    return AutomationTemplateCatalogOut(items=[AutomationTemplateSummaryOut(**item) for item in items])


@router.get(
    "/templates/{template_key}",
    response_model=AutomationTemplateOut,
    summary="Get automation template with full configuration",
    responses=error_responses(401, 404, 500),
)
def get_template(
    template_key: str,
    _: TenantPrincipal = Depends(get_current_tenant),
):
    try:
        template = template_service.get_automation_template(template_key)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    return _template_out(template)


@router.post(
    "/templates/install",
    response_model=AutomationTemplateInstallOut,
    summary="Install automation template as a rule",
    responses=error_responses(401, 404, 409, 500),
)
def install_template(
    payload: AutomationTemplateInstallIn,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    try:
        rule, template = template_service.install_template_rule(
            db,
            tenant_id=principal.tenant_id,
            template_key=payload.template_key,
            activate=payload.activate,
        )
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None
    db.refresh(rule)
    return AutomationTemplateInstallOut(template=_template_out(template), rule=_rule_out(rule))


@router.post(
    "/rules",
    response_model=AutomationRuleOut,
    summary="Create automation rule",
    responses=error_responses(401, 409, 422, 500),
)
def create_rule(
    payload: AutomationRuleCreateIn,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    try:
        rule = automation_service.create_rule(
            db,
            tenant_id=principal.tenant_id,
            name=payload.name,
            description=payload.description,
            status=payload.status,
            trigger_type=payload.trigger_type.strip(),
            trigger_config=payload.trigger_config.model_dump(exclude_none=True),
            conditions=[item.model_dump(mode="json") for item in payload.conditions],
            actions=dump_actions(payload.actions),
            delay_config=payload.delay_config.model_dump(exclude_none=True) if payload.delay_config else None,
            priority=payload.priority,
        )
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.get(
    "/rules",
    response_model=AutomationRuleListOut,
    summary="List automation rules",
    responses=error_responses(401, 422, 500),
)
def list_rules(
    status: str | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    normalized_status = status.strip().lower() if status else None
    normalized_trigger = trigger_type.strip() if trigger_type else None
    if normalized_status and normalized_status not in automation_service.RULE_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown rule status '{status}'")

    rows, total = automation_service.list_rules(
        db,
        tenant_id=principal.tenant_id,
        status=normalized_status,
        trigger_type=normalized_trigger,
        limit=limit,
        offset=offset,
    )
    items = [_rule_out(row) for row in rows]
    count = len(items)
    return AutomationRuleListOut(
        items=items,
        pagination=PaginationMeta.for_page(total=total, limit=limit, offset=offset, count=count),
        status=normalized_status,
        trigger_type=normalized_trigger,
    )


@router.get(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Get automation rule",
    responses=error_responses(401, 404, 500),
)
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    return _rule_out(_rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id))


@router.patch(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Update automation rule",
    responses=error_responses(401, 404, 409, 422, 500),
)
def update_rule(
    rule_id: str,
    payload: AutomationRuleUpdateIn,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    _rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    try:
        rule = automation_service.update_rule(
            db,
            tenant_id=principal.tenant_id,
            rule_id=rule_id,
            changes=_rule_changes(payload),
        )
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation rule name already exists") from None
    db.refresh(rule)
    return _rule_out(rule)


@router.post(
    "/rules/{rule_id}/activate",
    response_model=AutomationRuleOut,
    summary="Activate automation rule",
    responses=error_responses(401, 404, 500),
)
def activate_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    _rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    rule = automation_service.activate_rule(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    db.commit()
    db.refresh(rule)
    return _rule_out(rule)


@router.post(
    "/rules/{rule_id}/pause",
    response_model=AutomationRuleOut,
    summary="Pause automation rule",
    responses=error_responses(401, 404, 500),
)
def pause_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    _rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    rule = automation_service.pause_rule(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    db.commit()
    db.refresh(rule)
    return _rule_out(rule)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete automation rule and its execution history",
    responses=error_responses(401, 404, 500),
)
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    _rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    automation_service.delete_rule(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/rules/{rule_id}/executions",
    response_model=AutomationExecutionListOut,
    summary="List rule executions with step logs",
    responses=error_responses(401, 404, 422, 500),
)
def list_rule_executions(
    rule_id: str,
    status: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    rule = _rule_or_404(db, tenant_id=principal.tenant_id, rule_id=rule_id)
    normalized_status = status.strip().lower() if status else None
    if normalized_status and normalized_status not in execution_service.EXECUTION_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown execution status '{status}'")

    executions, total = execution_service.list_rule_executions(
        db,
        tenant_id=principal.tenant_id,
        rule_id=rule.id,
        limit=limit,
        offset=offset,
        status=normalized_status,
    )
    steps_map = _steps_by_execution_ids(db, execution_ids=[item.id for item in executions])
    items = [_execution_out(item, steps=steps_map.get(item.id, [])) for item in executions]
    count = len(items)
    return AutomationExecutionListOut(
        items=items,
        pagination=PaginationMeta.for_page(total=total, limit=limit, offset=offset, count=count),
        rule_id=rule.id,
        status=normalized_status,
    )


@router.get(
    "/executions/{execution_id}",
    response_model=AutomationExecutionOut,
    summary="Get execution details",
    responses=error_responses(
        401,
        404,
        500,
        path="/automations/executions/{execution_id}",
        messages={404: "Execution not found"},
    ),
)
def get_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    execution = _execution_or_404(db, tenant_id=principal.tenant_id, execution_id=execution_id)
    steps = execution_service.list_execution_steps(db, execution_id=execution.id)
    return _execution_out(execution, steps=steps)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=AutomationExecutionOut,
    summary="Cancel a pending or waiting execution",
    responses=error_responses(
        401,
        404,
        409,
        500,
        path="/automations/executions/{execution_id}/cancel",
        messages={404: "Execution not found", 409: "Execution already finished"},
    ),
)
def cancel_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    _execution_or_404(db, tenant_id=principal.tenant_id, execution_id=execution_id)
    try:
        execution = execution_service.cancel_execution(
            db,
            tenant_id=principal.tenant_id,
            execution_id=execution_id,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from None
    db.commit()
    db.refresh(execution)
    steps = execution_service.list_execution_steps(db, execution_id=execution.id)
    return _execution_out(execution, steps=steps)


@router.get(
    "/stats",
    response_model=AutomationStatsOut,
    summary="Automation rule and run statistics",
    responses=error_responses(401, 500),
)
def get_stats(
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    stats = automation_service.get_stats(db, tenant_id=principal.tenant_id)
    return AutomationStatsOut(
        total=stats.total,
        active=stats.active,
        paused=stats.paused,
        draft=stats.draft,
        total_runs=stats.total_runs,
        total_successes=stats.total_successes,
        total_failures=stats.total_failures,
        success_rate=stats.success_rate,
    )


@router.post(
    "/events",
    response_model=AutomationDispatchOut,
    summary="Ingest a business event and dispatch matching rules",
    responses=error_responses(401, 422, 500),
)
def ingest_event(
    payload: AutomationEventIn,
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    trigger_type = payload.trigger_type.strip()
    if trigger_type not in automation_service.TRIGGER_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown trigger type '{payload.trigger_type}'")

    summary = automation_service.trigger_event(
        db,
        tenant_id=principal.tenant_id,
        trigger_type=trigger_type,
        event_data=payload.event_data,
        contact_id=payload.contact_id,
        source=payload.source,
    )
    db.commit()
    return AutomationDispatchOut(
        trigger_type=trigger_type,
        matched=summary.matched,
        dispatched=summary.dispatched,
        skipped=summary.skipped,
        failed=summary.failed,
        execution_ids=summary.execution_ids,
    )


@router.post(
    "/jobs/run",
    response_model=AutomationJobRunOut,
    summary="Run due automation jobs for the current tenant",
    responses=error_responses(401, 422, 500),
)
def run_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: TenantPrincipal = Depends(get_current_tenant),
):
    summary = scheduler_service.run_due_jobs(
        db,
        limit=limit,
        worker_id=f"api:{principal.key_id}",
        tenant_id=principal.tenant_id,
    )
    return AutomationJobRunOut(
        claimed=summary.claimed,
        succeeded=summary.succeeded,
        retried=summary.retried,
        dead=summary.dead,
        skipped=summary.skipped,
    )
