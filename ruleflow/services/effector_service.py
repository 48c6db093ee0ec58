import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from ruleflow.core.config import settings
from ruleflow.core.observability import log_event
from ruleflow.models.contact import Agent, Contact
from ruleflow.models.messaging import OutboundMessage
from ruleflow.services.condition_service import is_missing, resolve_field, resolve_value
from ruleflow.services.errors import UnknownActionTypeError
from ruleflow.services.messaging_provider import (
    MESSAGE_CHANNELS,
    MessageSendRequest,
    get_messaging_provider,
    provider_name_for_channel,
)

logger = logging.getLogger("ruleflow.effectors")

ORDINARY_ACTION_TYPES = (
    "send_message",
    "add_tag",
    "remove_tag",
    "update_field",
    "update_lifecycle",
    "assign_to_agent",
    "webhook",
)

ASSIGNMENT_STRATEGIES = ("round_robin", "least_busy", "specific")
_UPDATABLE_CONTACT_FIELDS = {"name", "phone", "email", "lifecycle_stage"}
_CUSTOM_FIELD_PREFIX = "customFields."
_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")
_RETRYABLE_STATUS_CODES = {408, 425, 429}


@dataclass(frozen=True)
class EffectorResult:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = False


@dataclass
class EffectorContext:
    tenant_id: str
    contact: Contact | None
    event_data: dict[str, Any]
    execution_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ActionEffector(Protocol):
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        ...


def contact_snapshot(contact: Contact | None) -> dict[str, Any] | None:
    if contact is None:
        return None
    return {
        "id": contact.id,
        "name": contact.name,
        "phone": contact.phone,
        "email": contact.email,
        "tags": list(contact.tags_json or []),
        "customFields": dict(contact.custom_fields_json or {}),
        "lifecycleStage": contact.lifecycle_stage,
        "assignedAgentId": contact.assigned_agent_id,
    }


def render_message(template: str, *, contact: Contact | None, event_data: dict[str, Any]) -> str:
    context = dict(event_data or {})
    snapshot = contact_snapshot(contact)
    if snapshot is not None:
        context["contact"] = snapshot

    def _replace(match: re.Match[str]) -> str:
        resolved = resolve_field(context, match.group(1))
        if is_missing(resolved):
            return match.group(0)
        if resolved is None:
            return ""
        if not isinstance(resolved, (str, int, float, bool)):
            return match.group(0)
        return str(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template or "")


class SendMessageEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        channel = str(action.get("channel") or "whatsapp").strip().lower()
        if channel not in MESSAGE_CHANNELS:
            return EffectorResult(success=False, error=f"Unsupported channel '{channel}'")

        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact for send_message")

        recipient = _recipient_for_channel(contact, channel)
        if not recipient:
            return EffectorResult(success=False, error=f"Contact has no {_recipient_label(channel)}")

        template_id = str(action.get("template_id") or "").strip() or None
        message = render_message(str(action.get("message") or ""), contact=contact, event_data=context.event_data)
        content = message.strip() or (f"[template:{template_id}]" if template_id else "")
        if not content:
            return EffectorResult(success=False, error="send_message requires message or template_id")

        provider = get_messaging_provider(
            provider_name_for_channel(channel, settings.messaging_provider_default)
        )
        result = provider.send_message(
            MessageSendRequest(
                tenant_id=context.tenant_id,
                channel=channel,
                recipient=recipient,
                content=content,
                template_id=template_id,
            )
        )
        outbound_message = OutboundMessage(
            id=str(uuid.uuid4()),
            tenant_id=context.tenant_id,
            execution_id=context.execution_id,
            contact_id=contact.id,
            channel=channel,
            provider=result.provider,
            recipient=recipient,
            content=content[:2000],
            template_id=template_id,
            status=result.status,
            external_message_id=result.message_id,
        )
        db.add(outbound_message)
        db.flush()
        return EffectorResult(
            success=True,
            data={
                "channel": channel,
                "provider": result.provider,
                "status": result.status,
                "recipient": recipient,
                "message_id": result.message_id,
                "outbound_message_id": outbound_message.id,
            },
        )


class AddTagEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact for tag operation")
        tag = str(action.get("tag") or "").strip()
        if not tag:
            return EffectorResult(success=False, error="No tag name specified")

        tags = list(contact.tags_json or [])
        if tag not in tags:
            contact.tags_json = [*tags, tag]
            db.flush()
        return EffectorResult(success=True, data={"tag_added": tag})


class RemoveTagEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact for tag operation")
        tag = str(action.get("tag") or "").strip()
        if not tag:
            return EffectorResult(success=False, error="No tag name specified")

        contact.tags_json = [item for item in (contact.tags_json or []) if item != tag]
        db.flush()
        return EffectorResult(success=True, data={"tag_removed": tag})


class UpdateFieldEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact to update")
        field_name = str(action.get("field") or "").strip()
        if not field_name:
            return EffectorResult(success=False, error="No field name specified")
        value = action.get("value")

        if field_name.startswith(_CUSTOM_FIELD_PREFIX):
            key = field_name[len(_CUSTOM_FIELD_PREFIX):]
            if not key:
                return EffectorResult(success=False, error="Custom field key is empty")
            contact.custom_fields_json = {**(contact.custom_fields_json or {}), key: value}
        elif field_name in _UPDATABLE_CONTACT_FIELDS:
            setattr(contact, field_name, None if value is None else str(value))
        else:
            return EffectorResult(success=False, error=f"Unsupported contact field '{field_name}'")

        db.flush()
        return EffectorResult(success=True, data={"field": field_name, "value": value})


class UpdateLifecycleEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact to update")
        stage = str(action.get("stage") or "").strip()
        if not stage:
            return EffectorResult(success=False, error="No lifecycle stage specified")

        previous = contact.lifecycle_stage
        contact.lifecycle_stage = stage
        db.flush()
        return EffectorResult(success=True, data={"lifecycle": stage, "previous": previous})


class AssignToAgentEffector:
    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        contact = context.contact
        if contact is None:
            return EffectorResult(success=False, error="No contact to assign")
        strategy = str(action.get("strategy") or "round_robin").strip().lower()
        if strategy not in ASSIGNMENT_STRATEGIES:
            return EffectorResult(success=False, error=f"Unsupported assignment strategy '{strategy}'")

        agents = db.execute(
            select(Agent).where(
                Agent.tenant_id == context.tenant_id,
                Agent.is_active.is_(True),
            )
        ).scalars().all()

        if strategy == "specific":
            agent_id = str(action.get("agent_id") or "").strip()
            agent = next((item for item in agents if item.id == agent_id), None)
            if agent is None:
                return EffectorResult(success=False, error=f"Agent '{agent_id}' is not available")
        elif not agents:
            return EffectorResult(success=False, error="No active agents available")
        elif strategy == "least_busy":
            agent = min(agents, key=lambda item: (item.open_conversations, _sort_time(item.last_assigned_at), item.id))
        else:
            agent = min(agents, key=lambda item: (_sort_time(item.last_assigned_at), item.id))

        contact.assigned_agent_id = agent.id
        agent.last_assigned_at = datetime.now(timezone.utc)
        agent.open_conversations += 1
        db.flush()
        return EffectorResult(success=True, data={"agent_id": agent.id, "strategy": strategy})


class WebhookEffector:
    def __init__(self, transport: httpx.BaseTransport | None = None):
        self.transport = transport

    def execute(self, db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
        url = str(action.get("url") or "").strip()
        if not url:
            return EffectorResult(success=False, error="No webhook URL specified")
        method = str(action.get("method") or "POST").strip().upper()
        headers = {"Content-Type": "application/json"}
        headers.update({str(key): str(value) for key, value in (action.get("headers") or {}).items()})
        body = {
            "event": context.event_data,
            "contact": _webhook_contact(context.contact),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            with httpx.Client(timeout=settings.webhook_action_timeout_seconds, transport=self.transport) as client:
                if method == "GET":
                    response = client.get(url, headers=headers)
                else:
                    response = client.request(method, url, headers=headers, json=body)
        except httpx.TransportError as exc:
            return EffectorResult(success=False, error=f"Webhook transport error: {exc}", retryable=True)

        if response.status_code < 400:
            return EffectorResult(success=True, data={"status": response.status_code})
        return EffectorResult(
            success=False,
            data={"status": response.status_code},
            error=f"HTTP {response.status_code}",
            retryable=response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS_CODES,
        )


_EFFECTORS: dict[str, ActionEffector] = {
    "send_message": SendMessageEffector(),
    "add_tag": AddTagEffector(),
    "remove_tag": RemoveTagEffector(),
    "update_field": UpdateFieldEffector(),
    "update_lifecycle": UpdateLifecycleEffector(),
    "assign_to_agent": AssignToAgentEffector(),
    "webhook": WebhookEffector(),
}

_unregistered = sorted(set(ORDINARY_ACTION_TYPES) - set(_EFFECTORS))
if _unregistered:
    raise RuntimeError(f"Missing effectors for action types: {', '.join(_unregistered)}")


def register_effector(action_type: str, effector: ActionEffector) -> ActionEffector | None:
    normalized = (action_type or "").strip().lower()
    if normalized not in ORDINARY_ACTION_TYPES:
        raise UnknownActionTypeError(action_type)
    previous = _EFFECTORS.get(normalized)
    _EFFECTORS[normalized] = effector
    return previous


def get_effector(action_type: str) -> ActionEffector:
    normalized = (action_type or "").strip().lower()
    effector = _EFFECTORS.get(normalized)
    if effector is None:
        raise UnknownActionTypeError(action_type)
    return effector


def run_effector(db: Session, *, action: dict[str, Any], context: EffectorContext) -> EffectorResult:
    action_type = str(action.get("type") or "").strip().lower()
    result = get_effector(action_type).execute(db, action=action, context=context)
    log_event(
        logger,
        "automation.effector",
        level=logging.DEBUG,
        action_type=action_type,
        tenant_id=context.tenant_id,
        execution_id=context.execution_id,
        success=result.success,
        retryable=result.retryable,
    )
    return result


def _recipient_for_channel(contact: Contact, channel: str) -> str | None:
    if channel == "email":
        return (contact.email or "").strip() or None
    if channel == "instagram":
        value = resolve_value(contact.custom_fields_json or {}, "instagram_id")
        return str(value).strip() if value else None
    return (contact.phone or "").strip() or None


def _recipient_label(channel: str) -> str:
    if channel == "email":
        return "email address"
    if channel == "instagram":
        return "instagram id"
    return "phone number"


def _webhook_contact(contact: Contact | None) -> dict[str, Any] | None:
    if contact is None:
        return None
    return {
        "id": contact.id,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
    }


def _sort_time(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
