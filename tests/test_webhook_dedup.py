import json
import uuid

import pytest
from sqlalchemy import func, select

from ruleflow.core.config import settings
from ruleflow.core.security import build_webhook_signature
from ruleflow.models.automation import AutomationExecution
from ruleflow.models.contact import Contact
from ruleflow.models.webhook import StoreConnection, WebhookEvent, WebhookLog
from ruleflow.services import automation_service
from ruleflow.services.dedup_service import guard_external_event
from ruleflow.services.tenant_service import create_tenant
from ruleflow.services.webhook_ingest_service import build_event_data, triggers_for_topic


def _signed_post(client, provider: str, payload: dict, headers: dict[str, str]):
    body = json.dumps(payload).encode("utf-8")
    signature = build_webhook_signature(signing_secret=settings.webhook_signing_secret, payload_bytes=body)
    return client.post(
        f"/webhooks/{provider}",
        content=body,
        headers={"Content-Type": "application/json", "X-Ruleflow-Signature": signature, **headers},
    )


def _connected_store(session_local, *, provider: str, shop_domain: str) -> str:
    db = session_local()
    try:
        tenant = create_tenant(db, name=f"Store {uuid.uuid4().hex[:6]}")
        db.add(
            StoreConnection(
                id=str(uuid.uuid4()),
                tenant_id=tenant.id,
                provider=provider,
                shop_domain=shop_domain,
                status="connected",
            )
        )
        automation_service.create_rule(
            db,
            tenant_id=tenant.id,
            name="Thank buyers",
            trigger_type="order_created",
            actions=[{"type": "add_tag", "tag": "buyer"}],
            status="active",
        )
        automation_service.create_rule(
            db,
            tenant_id=tenant.id,
            name="COD follow-up",
            trigger_type="cod_order_created",
            actions=[{"type": "add_tag", "tag": "cod"}],
            status="active",
        )
        db.commit()
        return tenant.id
    finally:
        db.close()


def test_guard_runs_handler_once_per_event_id(db_session):
    calls: list[str] = []

    def handler(session):
        calls.append("ran")
        return {"handled": True}

    first = guard_external_event(
        db_session,
        provider="Shopify",
        event_id="evt-1",
        topic="orders/create",
        payload={"id": 1},
        handler=handler,
    )
    second = guard_external_event(
        db_session,
        provider="shopify",
        event_id="evt-1",
        topic="orders/create",
        payload={"id": 1},
        handler=handler,
    )

    assert first.status == "processed"
    assert first.result == {"handled": True}
    assert second.status == "duplicate"
    assert second.duplicate is True
    assert calls == ["ran"]

    marker = db_session.execute(select(WebhookEvent)).scalar_one()
    assert marker.provider == "shopify"
    assert marker.status == "processed"
    assert marker.success is True
    assert marker.attempt_count == 2

    statuses = db_session.execute(select(WebhookLog.status).order_by(WebhookLog.created_at)).scalars().all()
    assert sorted(statuses) == ["duplicate", "success"]


def test_failed_first_delivery_still_suppresses_redelivery(db_session):
    calls: list[str] = []

    def failing(session):
        calls.append("ran")
        raise RuntimeError("downstream exploded")

    first = guard_external_event(
        db_session,
        provider="woocommerce",
        event_id="delivery-9",
        topic="order.created",
        payload={},
        handler=failing,
    )
    second = guard_external_event(
        db_session,
        provider="woocommerce",
        event_id="delivery-9",
        topic="order.created",
        payload={},
        handler=failing,
    )

    assert first.status == "failed"
    assert first.error == "downstream exploded"
    assert second.status == "duplicate"
    assert calls == ["ran"]

    marker = db_session.execute(select(WebhookEvent)).scalar_one()
    assert marker.status == "failed"
    assert marker.success is False
    assert marker.error_message == "downstream exploded"


class _NoRow:
    def scalar_one_or_none(self):
        return None


def test_concurrent_delivery_losing_the_insert_is_a_duplicate(test_context, db_session, monkeypatch):
    _, session_local = test_context
    calls: list[str] = []

    # The other delivery commits its marker between this delivery's lookup and insert.
    rival = session_local()
    try:
        rival.add(
            WebhookEvent(
                id=str(uuid.uuid4()),
                provider="shopify",
                event_id="evt-race",
                topic="orders/create",
                status="processing",
                success=False,
                attempt_count=1,
            )
        )
        rival.commit()
    finally:
        rival.close()

    original_execute = db_session.execute
    lookups = {"hidden": 0}

    def execute_missing_first_lookup(statement, *args, **kwargs):
        if lookups["hidden"] == 0:
            lookups["hidden"] += 1
            return _NoRow()
        return original_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", execute_missing_first_lookup)

    result = guard_external_event(
        db_session,
        provider="shopify",
        event_id="evt-race",
        topic="orders/create",
        payload={"id": 7},
        handler=lambda session: calls.append("ran"),
    )
    monkeypatch.undo()

    assert lookups["hidden"] == 1
    assert result.status == "duplicate"
    assert result.duplicate is True
    assert calls == []

    markers = db_session.execute(select(WebhookEvent).where(WebhookEvent.event_id == "evt-race")).scalars().all()
    assert len(markers) == 1
    assert markers[0].status == "processing"
    log_statuses = db_session.execute(
        select(WebhookLog.status).where(WebhookLog.event_id == "evt-race")
    ).scalars().all()
    assert log_statuses == ["duplicate"]


def test_guard_requires_provider_and_event_id(db_session):
    with pytest.raises(ValueError):
        guard_external_event(db_session, provider="shopify", event_id=" ", topic=None, payload=None, handler=lambda s: None)


def test_topic_mapping_fans_out_cod_and_high_value():
    cod_order = {"payment_gateway_names": ["Cash on Delivery (COD)"], "total_price": "120.00"}
    assert triggers_for_topic("shopify", "orders/create", cod_order) == [
        "order_created",
        "cod_order_created",
        "high_value_order",
    ]
    assert triggers_for_topic("woocommerce", "order.created", {"payment_method": "bacs"}) == [
        "order_created",
        "high_value_order",
    ]
    assert triggers_for_topic("shopify", "checkouts/update", {}) == ["cart_abandoned"]
    assert triggers_for_topic("shopify", "app/uninstalled", {}) == []

    event = build_event_data("shopify", "orders/create", {"id": 55, "order_number": 1055, **cod_order})
    assert event["orderId"] == "55"
    assert event["total"] == 120.0
    assert event["paymentMethod"] == "cod"


def test_signed_store_webhook_dispatches_once(test_context):
    client, session_local = test_context
    tenant_id = _connected_store(session_local, provider="shopify", shop_domain="acme.myshopify.com")
    payload = {
        "id": 9001,
        "order_number": 1001,
        "total_price": "250.00",
        "currency": "NGN",
        "payment_gateway_names": ["Cash on Delivery"],
        "customer": {"first_name": "Ife", "last_name": "Ade", "email": "IFE@example.com", "phone": "+2348030000004"},
    }
    headers = {
        "X-Shopify-Webhook-Id": "wh-9001",
        "X-Shopify-Topic": "orders/create",
        "X-Shopify-Shop-Domain": "https://ACME.myshopify.com/",
    }

    first = _signed_post(client, "shopify", payload, headers)
    assert first.status_code == 200, first.text
    body = first.json()
    assert body["ok"] is True
    assert body["status"] == "processed"
    assert body["tenant_id"] == tenant_id
    assert body["trigger_types"] == ["order_created", "cod_order_created", "high_value_order"]
    assert body["dispatched"] == 2

    replay = _signed_post(client, "shopify", payload, headers)
    assert replay.status_code == 200, replay.text
    assert replay.json()["status"] == "duplicate"
    assert replay.json()["duplicate"] is True

    db = session_local()
    try:
        executions = db.execute(
            select(func.count(AutomationExecution.id)).where(AutomationExecution.tenant_id == tenant_id)
        ).scalar_one()
        assert executions == 2
        contact = db.execute(select(Contact).where(Contact.tenant_id == tenant_id)).scalar_one()
        assert contact.email == "ife@example.com"
        assert contact.name == "Ife Ade"
        marker = db.execute(select(WebhookEvent).where(WebhookEvent.event_id == "wh-9001")).scalar_one()
        assert marker.tenant_id == tenant_id
        assert marker.attempt_count == 2
    finally:
        db.close()


def test_store_webhook_signature_and_payload_checks(test_context):
    client, _ = test_context

    unsigned = client.post("/webhooks/shopify", json={"id": 1})
    assert unsigned.status_code == 401, unsigned.text
    assert "Missing webhook signature" in unsigned.text

    bad = client.post(
        "/webhooks/shopify",
        json={"id": 1},
        headers={"X-Ruleflow-Signature": "sha256=deadbeef"},
    )
    assert bad.status_code == 401, bad.text
    assert "Invalid webhook signature" in bad.text

    unknown = _signed_post(client, "magento", {"id": 1}, {})
    assert unknown.status_code == 404, unknown.text

    body = b"[1, 2, 3]"
    signature = build_webhook_signature(signing_secret=settings.webhook_signing_secret, payload_bytes=body)
    not_object = client.post(
        "/webhooks/woocommerce",
        content=body,
        headers={"Content-Type": "application/json", "X-Ruleflow-Signature": signature},
    )
    assert not_object.status_code == 400, not_object.text


def test_webhook_for_unknown_store_is_recorded_as_failed(test_context):
    client, session_local = test_context
    payload = {"id": 77, "billing": {"email": "nobody@example.com"}}
    headers = {"X-WC-Webhook-Topic": "order.created", "X-WC-Webhook-Source": "https://unknown-shop.example/"}

    first = _signed_post(client, "woocommerce", payload, headers)
    assert first.status_code == 200, first.text
    assert first.json()["ok"] is False
    assert first.json()["status"] == "failed"
    assert "No connected store" in first.json()["error"]
    assert first.json()["event_id"].startswith("order.created:")

    replay = _signed_post(client, "woocommerce", payload, headers)
    assert replay.json()["status"] == "duplicate"

    db = session_local()
    try:
        assert db.execute(select(func.count(AutomationExecution.id))).scalar_one() == 0
    finally:
        db.close()
