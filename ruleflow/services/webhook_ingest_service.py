import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ruleflow.core.observability import log_event
from ruleflow.models.contact import Contact
from ruleflow.models.webhook import StoreConnection
from ruleflow.services import automation_service
from ruleflow.services.dedup_service import GuardResult, guard_external_event

logger = logging.getLogger("ruleflow.webhooks")

STORE_PROVIDERS = ("shopify", "woocommerce")

TOPIC_TRIGGER_MAP: dict[str, dict[str, str]] = {
    "shopify": {
        "orders/create": "order_created",
        "orders/paid": "payment_success",
        "orders/fulfilled": "order_shipped",
        "orders/cancelled": "order_cancelled",
        "refunds/create": "refund_processed",
        "checkouts/create": "cart_abandoned",
        "checkouts/update": "cart_abandoned",
        "customers/create": "contact_created",
    },
    "woocommerce": {
        "order.created": "order_created",
        "order.completed": "order_delivered",
        "order.cancelled": "order_cancelled",
        "order.refunded": "refund_processed",
        "customer.created": "contact_created",
    },
}

_COD_GATEWAYS = {"cash on delivery", "cash on delivery (cod)", "cod"}


@dataclass(frozen=True)
class IngestOutcome:
    tenant_id: str
    trigger_types: list[str] = field(default_factory=list)
    contact_id: str | None = None
    dispatched: int = 0
    execution_ids: list[str] = field(default_factory=list)


def fallback_event_id(*, topic: str | None, payload_bytes: bytes) -> str:
    digest = hashlib.sha256(payload_bytes).hexdigest()
    return f"{(topic or 'unknown').strip().lower()}:{digest[:40]}"


def resolve_store_connection(db: Session, *, provider: str, shop_domain: str | None) -> StoreConnection | None:
    normalized = (shop_domain or "").strip().lower()
    if not normalized:
        return None
    return db.execute(
        select(StoreConnection).where(
            StoreConnection.provider == provider,
            StoreConnection.shop_domain == normalized,
            StoreConnection.status == "connected",
        )
    ).scalar_one_or_none()


def triggers_for_topic(provider: str, topic: str | None, payload: dict[str, Any]) -> list[str]:
    normalized_topic = (topic or "").strip().lower()
    trigger_type = TOPIC_TRIGGER_MAP.get(provider, {}).get(normalized_topic)
    if trigger_type is None:
        return []
    triggers = [trigger_type]
    if trigger_type == "order_created":
        if _is_cash_on_delivery(provider, payload):
            triggers.append("cod_order_created")
        triggers.append("high_value_order")
    return triggers


def build_event_data(provider: str, topic: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    total = payload.get("total_price", payload.get("total"))
    try:
        total_value: float | None = float(total) if total is not None else None
    except (TypeError, ValueError):
        total_value = None
    return {
        "provider": provider,
        "topic": topic,
        "order": payload,
        "orderId": str(payload.get("id")) if payload.get("id") is not None else None,
        "orderNumber": payload.get("order_number") or payload.get("number"),
        "total": total_value,
        "currency": payload.get("currency"),
        "paymentMethod": "cod" if _is_cash_on_delivery(provider, payload) else "prepaid",
        "checkout_url": payload.get("abandoned_checkout_url") or payload.get("checkout_url"),
    }


def resolve_contact(db: Session, *, tenant_id: str, provider: str, payload: dict[str, Any]) -> Contact | None:
    customer = _customer_fields(provider, payload)
    email = customer["email"]
    phone = customer["phone"]
    if not email and not phone:
        return None

    contact = None
    if email:
        contact = db.execute(
            select(Contact).where(Contact.tenant_id == tenant_id, Contact.email == email)
        ).scalars().first()
    if contact is None and phone:
        contact = db.execute(
            select(Contact).where(Contact.tenant_id == tenant_id, Contact.phone == phone)
        ).scalars().first()

    if contact is None:
        contact = Contact(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=customer["name"],
            email=email,
            phone=phone,
            tags_json=[],
            custom_fields_json={},
            lifecycle_stage="lead",
        )
        db.add(contact)
        db.flush()
        log_event(logger, "webhook.contact_created", tenant_id=tenant_id, contact_id=contact.id, provider=provider)
        return contact

    if not contact.email and email:
        contact.email = email
    if not contact.phone and phone:
        contact.phone = phone
    if not contact.name and customer["name"]:
        contact.name = customer["name"]
    db.flush()
    return contact


def ingest_store_webhook(
    db: Session,
    *,
    provider: str,
    topic: str | None,
    shop_domain: str | None,
    event_id: str,
    payload: dict[str, Any],
) -> GuardResult:
    normalized_provider = (provider or "").strip().lower()
    if normalized_provider not in STORE_PROVIDERS:
        raise ValueError(f"Unsupported store provider '{provider}'")

    connection = resolve_store_connection(db, provider=normalized_provider, shop_domain=shop_domain)
    tenant_id = connection.tenant_id if connection else None

    def _handle(session: Session) -> IngestOutcome:
        if tenant_id is None:
            raise LookupError(f"No connected store for {normalized_provider} domain '{shop_domain}'")

        trigger_types = triggers_for_topic(normalized_provider, topic, payload)
        if not trigger_types:
            log_event(logger, "webhook.unmapped_topic", provider=normalized_provider, topic=topic)
            return IngestOutcome(tenant_id=tenant_id)

        contact = resolve_contact(session, tenant_id=tenant_id, provider=normalized_provider, payload=payload)
        event_data = build_event_data(normalized_provider, topic, payload)
        dispatched = 0
        execution_ids: list[str] = []
        for trigger_type in trigger_types:
            summary = automation_service.trigger_event(
                session,
                tenant_id=tenant_id,
                trigger_type=trigger_type,
                event_data=event_data,
                contact_id=contact.id if contact else None,
                source=normalized_provider,
            )
            dispatched += summary.dispatched
            execution_ids.extend(summary.execution_ids)
        return IngestOutcome(
            tenant_id=tenant_id,
            trigger_types=trigger_types,
            contact_id=contact.id if contact else None,
            dispatched=dispatched,
            execution_ids=execution_ids,
        )

    return guard_external_event(
        db,
        provider=normalized_provider,
        event_id=event_id,
        topic=topic,
        payload=payload,
        handler=_handle,
        tenant_id=tenant_id,
    )


def _is_cash_on_delivery(provider: str, payload: dict[str, Any]) -> bool:
    if provider == "woocommerce":
        return str(payload.get("payment_method") or "").strip().lower() == "cod"
    gateways = payload.get("payment_gateway_names") or []
    return any(str(name).strip().lower() in _COD_GATEWAYS for name in gateways)


def _customer_fields(provider: str, payload: dict[str, Any]) -> dict[str, str | None]:
    if provider == "woocommerce":
        source = payload.get("billing") or {}
    else:
        source = payload.get("customer") or {}
    first = str(source.get("first_name") or "").strip()
    last = str(source.get("last_name") or "").strip()
    email = str(source.get("email") or payload.get("email") or "").strip().lower() or None
    phone = str(source.get("phone") or payload.get("phone") or "").strip() or None
    return {
        "name": " ".join(part for part in (first, last) if part) or None,
        "email": email,
        "phone": phone,
    }
