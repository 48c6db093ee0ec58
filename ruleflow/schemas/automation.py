from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ruleflow.schemas.common import PaginationMeta


AutomationRuleStatus = Literal["draft", "active", "paused"]
AutomationExecutionStatus = Literal["pending", "running", "waiting", "completed", "failed", "skipped", "cancelled"]
AutomationStepStatus = Literal["success", "failed", "skipped"]
MessageChannel = Literal["whatsapp", "email", "sms", "instagram"]
AssignmentStrategy = Literal["round_robin", "least_busy", "specific"]
WaitUnit = Literal["seconds", "minutes", "hours", "days"]
DelayType = Literal["immediate", "delay", "schedule"]
KeywordMatchType = Literal["exact", "contains", "starts_with"]


class AutomationConditionIn(BaseModel):
    field: str = Field(min_length=1, max_length=200)
    # Operators outside the evaluator's set are stored and evaluate as a match.
    operator: str = Field(default="equals", min_length=1, max_length=40)
    value: Any | None = None


class SendMessageActionIn(BaseModel):
    type: Literal["send_message"]
    channel: MessageChannel = "whatsapp"
    template_id: str | None = Field(default=None, max_length=120)
    message: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def validate_has_content(self) -> "SendMessageActionIn":
        if not self.template_id and not self.message:
            raise ValueError("Either template_id or message is required")
        return self


class AddTagActionIn(BaseModel):
    type: Literal["add_tag"]
    tag: str = Field(min_length=1, max_length=80)


class RemoveTagActionIn(BaseModel):
    type: Literal["remove_tag"]
    tag: str = Field(min_length=1, max_length=80)


class UpdateFieldActionIn(BaseModel):
    type: Literal["update_field"]
    field: str = Field(min_length=1, max_length=120)
    value: Any | None = None


class UpdateLifecycleActionIn(BaseModel):
    type: Literal["update_lifecycle"]
    stage: str = Field(min_length=1, max_length=40)


class AssignToAgentActionIn(BaseModel):
    type: Literal["assign_to_agent"]
    strategy: AssignmentStrategy = "round_robin"
    agent_id: str | None = Field(default=None, max_length=36)

    @model_validator(mode="after")
    def validate_specific_agent(self) -> "AssignToAgentActionIn":
        if self.strategy == "specific" and not self.agent_id:
            raise ValueError("agent_id is required for the specific strategy")
        return self


class WebhookActionIn(BaseModel):
    type: Literal["webhook"]
    url: str = Field(min_length=8, max_length=2048)
    method: Literal["GET", "POST"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)


class WaitActionIn(BaseModel):
    type: Literal["wait"]
    duration: float = Field(ge=0)
    unit: WaitUnit = "seconds"


class ConditionActionIn(BaseModel):
    type: Literal["condition"]
    conditions: list[AutomationConditionIn] = Field(default_factory=list)
    then_actions: list["AutomationActionIn"] = Field(default_factory=list)
    else_actions: list["AutomationActionIn"] = Field(default_factory=list)


AutomationActionIn = Annotated[
    Union[
        SendMessageActionIn,
        AddTagActionIn,
        RemoveTagActionIn,
        UpdateFieldActionIn,
        UpdateLifecycleActionIn,
        AssignToAgentActionIn,
        WebhookActionIn,
        WaitActionIn,
        ConditionActionIn,
    ],
    Field(discriminator="type"),
]

ConditionActionIn.model_rebuild()


class AutomationTriggerConfigIn(BaseModel):
    keywords: list[str] | None = None
    match_type: KeywordMatchType | None = None
    min_order_value: float | None = Field(default=None, ge=0)
    cron_expression: str | None = Field(default=None, max_length=120)
    inactivity_days: int | None = Field(default=None, ge=1, le=3650)
    date_field: str | None = Field(default=None, max_length=120)
    days_offset: int | None = None


class AutomationDelayConfigIn(BaseModel):
    type: DelayType = "immediate"
    delay_seconds: int | None = Field(default=None, ge=0)
    schedule_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    schedule_timezone: str | None = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def validate_delay_fields(self) -> "AutomationDelayConfigIn":
        if self.type == "delay" and self.delay_seconds is None:
            raise ValueError("delay_seconds is required for delay type")
        if self.type == "schedule" and not self.schedule_time:
            raise ValueError("schedule_time is required for schedule type")
        return self


def dump_actions(actions: list[Any]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json", exclude_none=True) for item in actions]


class AutomationRuleCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    status: AutomationRuleStatus = "draft"
    trigger_type: str = Field(min_length=1, max_length=60)
    trigger_config: AutomationTriggerConfigIn = Field(default_factory=AutomationTriggerConfigIn)
    conditions: list[AutomationConditionIn] = Field(default_factory=list)
    actions: list[AutomationActionIn] = Field(default_factory=list)
    delay_config: AutomationDelayConfigIn | None = None
    priority: int = Field(default=0, ge=-1000, le=1000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "VIP on big orders",
                "trigger_type": "order_created",
                "conditions": [{"field": "total", "operator": "greater_than", "value": 5000}],
                "actions": [
                    {"type": "add_tag", "tag": "vip"},
                    {"type": "wait", "duration": 1, "unit": "hours"},
                    {"type": "send_message", "channel": "whatsapp", "message": "Thanks {{contact.name}}!"},
                ],
            }
        }
    )

    @model_validator(mode="after")
    def validate_actions_not_empty(self) -> "AutomationRuleCreateIn":
        if not self.actions:
            raise ValueError("At least one action is required")
        return self


class AutomationRuleUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    status: AutomationRuleStatus | None = None
    trigger_type: str | None = Field(default=None, min_length=1, max_length=60)
    trigger_config: AutomationTriggerConfigIn | None = None
    conditions: list[AutomationConditionIn] | None = None
    actions: list[AutomationActionIn] | None = None
    delay_config: AutomationDelayConfigIn | None = None
    priority: int | None = Field(default=None, ge=-1000, le=1000)

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationRuleUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        if self.actions is not None and not self.actions:
            raise ValueError("At least one action is required")
        return self


class AutomationRuleOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    status: AutomationRuleStatus
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    delay_config: dict[str, Any] | None = None
    priority: int
    template_key: str | None = None
    version: int
    run_count: int
    success_count: int
    failure_count: int
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AutomationRuleListOut(BaseModel):
    items: list[AutomationRuleOut]
    pagination: PaginationMeta
    status: AutomationRuleStatus | None = None
    trigger_type: str | None = None


class AutomationExecutionStepOut(BaseModel):
    id: str
    sequence: int
    step_index: int
    step_path: str
    action_type: str
    status: AutomationStepStatus
    input_json: dict[str, Any] | None = None
    output_json: dict[str, Any] | None = None
    error_message: str | None = None
    executed_at: datetime | None = None


class AutomationExecutionOut(BaseModel):
    id: str
    rule_id: str
    rule_version: int
    contact_id: str | None = None
    trigger_type: str
    trigger_source: str | None = None
    status: AutomationExecutionStatus
    current_step_index: int
    steps_total: int
    steps_succeeded: int
    steps_failed: int
    next_wake_at: datetime | None = None
    error_message: str | None = None
    retry_count: int
    max_retries: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_time_ms: int | None = None
    created_at: datetime
    steps: list[AutomationExecutionStepOut] = []


class AutomationExecutionListOut(BaseModel):
    items: list[AutomationExecutionOut]
    pagination: PaginationMeta
    rule_id: str
    status: AutomationExecutionStatus | None = None


class AutomationStatsOut(BaseModel):
    total: int
    active: int
    paused: int
    draft: int
    total_runs: int
    total_successes: int
    total_failures: int
    success_rate: int


class AutomationTemplateSummaryOut(BaseModel):
    template_key: str
    name: str
    description: str
    category: str
    trigger_type: str
    preview: str


class AutomationTemplateCatalogOut(BaseModel):
    items: list[AutomationTemplateSummaryOut]


class AutomationTemplateOut(AutomationTemplateSummaryOut):
    trigger_config: dict[str, Any]
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    delay_config: dict[str, Any] | None = None


class AutomationTemplateInstallIn(BaseModel):
    template_key: str = Field(min_length=1, max_length=60)
    activate: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "template_key": "cod_confirmation",
                "activate": False,
            }
        }
    )


class AutomationTemplateInstallOut(BaseModel):
    template: AutomationTemplateOut
    rule: AutomationRuleOut


class AutomationEventIn(BaseModel):
    trigger_type: str = Field(min_length=1, max_length=60)
    contact_id: str | None = Field(default=None, max_length=36)
    event_data: dict[str, Any] = Field(default_factory=dict)
    source: str | None = Field(default="api", max_length=40)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "trigger_type": "order_created",
                "contact_id": "9f0c5a8e-5a3e-4d8f-9c55-1f7d2c9f1a11",
                "event_data": {"total": 6000, "order": {"name": "#1001"}},
            }
        }
    )


class AutomationDispatchOut(BaseModel):
    trigger_type: str
    matched: int
    dispatched: int
    skipped: int
    failed: int
    execution_ids: list[str]


class AutomationJobRunOut(BaseModel):
    claimed: int
    succeeded: int
    retried: int
    dead: int
    skipped: int
