import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ruleflow.models.contact import Agent, Contact
from ruleflow.services.effector_service import (
    EffectorContext,
    WebhookEffector,
    get_effector,
    register_effector,
    render_message,
    run_effector,
)
from ruleflow.services.errors import UnknownActionTypeError
from ruleflow.services.tenant_service import create_tenant


def _tenant_and_contact(db, **fields) -> tuple[str, Contact]:
    tenant = create_tenant(db, name=f"Effects {uuid.uuid4().hex[:6]}")
    contact = Contact(
        id=str(uuid.uuid4()),
        tenant_id=tenant.id,
        name=fields.get("name", "Emeka"),
        phone=fields.get("phone", "+2348030000003"),
        email=fields.get("email", "emeka@example.com"),
        tags_json=fields.get("tags", []),
        custom_fields_json=fields.get("custom_fields", {}),
        lifecycle_stage="lead",
    )
    db.add(contact)
    db.commit()
    return tenant.id, contact


def _agent(db, tenant_id: str, name: str, *, open_conversations: int = 0, last_assigned_at=None, active=True):
    agent = Agent(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name=name,
        is_active=active,
        open_conversations=open_conversations,
        last_assigned_at=last_assigned_at,
    )
    db.add(agent)
    db.commit()
    return agent


def test_render_message_substitutes_contact_and_event_values():
    contact = Contact(id="c-1", tenant_id="t-1", name="Ngozi", tags_json=[], custom_fields_json={"city": "Enugu"})
    rendered = render_message(
        "Hi {{ contact.name }} from {{contact.customFields.city}}, order {{orderNumber}} {{note}}{{missing}}",
        contact=contact,
        event_data={"orderNumber": 1042, "note": None},
    )
    assert rendered == "Hi Ngozi from Enugu, order 1042 {{missing}}"


def test_tag_and_field_effectors(db_session):
    tenant_id, contact = _tenant_and_contact(db_session, tags=["lead"])
    context = EffectorContext(tenant_id=tenant_id, contact=contact, event_data={})

    assert run_effector(db_session, action={"type": "add_tag", "tag": "vip"}, context=context).success
    assert run_effector(db_session, action={"type": "add_tag", "tag": "vip"}, context=context).success
    assert contact.tags_json == ["lead", "vip"]

    assert run_effector(db_session, action={"type": "remove_tag", "tag": "lead"}, context=context).success
    assert contact.tags_json == ["vip"]

    custom = run_effector(
        db_session,
        action={"type": "update_field", "field": "customFields.codConfirmed", "value": True},
        context=context,
    )
    assert custom.success
    assert contact.custom_fields_json == {"codConfirmed": True}

    assert run_effector(db_session, action={"type": "update_field", "field": "name", "value": "Emeka O."}, context=context).success
    assert contact.name == "Emeka O."

    rejected = run_effector(db_session, action={"type": "update_field", "field": "tenant_id", "value": "x"}, context=context)
    assert rejected.success is False
    assert rejected.retryable is False

    lifecycle = run_effector(db_session, action={"type": "update_lifecycle", "stage": "customer"}, context=context)
    assert lifecycle.data == {"lifecycle": "customer", "previous": "lead"}


def test_effectors_report_missing_contact():
    context = EffectorContext(tenant_id="t-1", contact=None, event_data={})
    for action in (
        {"type": "add_tag", "tag": "x"},
        {"type": "send_message", "message": "hello"},
        {"type": "assign_to_agent"},
    ):
        result = get_effector(action["type"]).execute(None, action=action, context=context)
        assert result.success is False
        assert result.error


def test_assignment_strategies(db_session):
    tenant_id, contact = _tenant_and_contact(db_session)
    earlier = datetime(2026, 10, 1, tzinfo=timezone.utc)
    busy = _agent(db_session, tenant_id, "Busy", open_conversations=9)
    idle = _agent(db_session, tenant_id, "Idle", open_conversations=1, last_assigned_at=earlier + timedelta(days=1))
    _agent(db_session, tenant_id, "Away", active=False)
    context = EffectorContext(tenant_id=tenant_id, contact=contact, event_data={})

    least_busy = run_effector(db_session, action={"type": "assign_to_agent", "strategy": "least_busy"}, context=context)
    assert least_busy.data == {"agent_id": idle.id, "strategy": "least_busy"}
    assert contact.assigned_agent_id == idle.id

    round_robin = run_effector(db_session, action={"type": "assign_to_agent", "strategy": "round_robin"}, context=context)
    assert round_robin.data["agent_id"] == busy.id

    specific = run_effector(
        db_session,
        action={"type": "assign_to_agent", "strategy": "specific", "agent_id": idle.id},
        context=context,
    )
    assert specific.success
    assert contact.assigned_agent_id == idle.id

    missing = run_effector(
        db_session,
        action={"type": "assign_to_agent", "strategy": "specific", "agent_id": "nobody"},
        context=context,
    )
    assert missing.success is False


def test_send_message_routes_by_channel(db_session):
    tenant_id, contact = _tenant_and_contact(db_session, email=None)
    context = EffectorContext(tenant_id=tenant_id, contact=contact, event_data={"orderNumber": "A-9"})

    sent = run_effector(
        db_session,
        action={"type": "send_message", "channel": "sms", "message": "Order {{orderNumber}} shipped"},
        context=context,
    )
    assert sent.success
    assert sent.data["recipient"] == "+2348030000003"
    assert sent.data["provider"] == "sms_stub"

    templated = run_effector(
        db_session,
        action={"type": "send_message", "channel": "whatsapp", "template_id": "order_shipped"},
        context=context,
    )
    assert templated.success

    no_email = run_effector(db_session, action={"type": "send_message", "channel": "email", "message": "x"}, context=context)
    assert no_email.success is False
    assert no_email.error == "Contact has no email address"


def test_webhook_effector_posts_event_and_contact():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(503)

    contact = Contact(id="c-9", tenant_id="t-1", name="Kemi", email="kemi@example.com", phone=None)
    effector = WebhookEffector(transport=httpx.MockTransport(handler))
    result = effector.execute(
        None,
        action={"type": "webhook", "url": "https://hooks.example.com/x", "headers": {"X-Token": "abc"}},
        context=EffectorContext(tenant_id="t-1", contact=contact, event_data={"orderId": "77"}),
    )

    assert result.success is False
    assert result.retryable is True
    assert result.error == "HTTP 503"
    assert captured["method"] == "POST"
    assert captured["headers"]["x-token"] == "abc"
    assert captured["body"]["event"] == {"orderId": "77"}
    assert captured["body"]["contact"] == {"id": "c-9", "name": "Kemi", "email": "kemi@example.com", "phone": None}


def test_registry_rejects_pseudo_and_unknown_types():
    with pytest.raises(UnknownActionTypeError):
        get_effector("wait")
    with pytest.raises(UnknownActionTypeError):
        register_effector("teleport", WebhookEffector())
