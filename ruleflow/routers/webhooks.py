import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ruleflow.core.api_docs import error_responses
from ruleflow.core.config import settings
from ruleflow.core.deps import get_db
from ruleflow.core.security import verify_webhook_signature
from ruleflow.schemas.webhook import StoreWebhookOut
from ruleflow.services.webhook_ingest_service import (
    STORE_PROVIDERS,
    IngestOutcome,
    fallback_event_id,
    ingest_store_webhook,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Ruleflow-Signature"

# (event id, topic, shop domain) header names per store provider
_PROVIDER_HEADERS: dict[str, tuple[str, str, str]] = {
    "shopify": ("X-Shopify-Webhook-Id", "X-Shopify-Topic", "X-Shopify-Shop-Domain"),
    "woocommerce": ("X-WC-Webhook-Delivery-ID", "X-WC-Webhook-Topic", "X-WC-Webhook-Source"),
}


def _assert_webhook_signature(payload_bytes: bytes, signature_header: str | None) -> None:
    if not signature_header:
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    provided = signature_header.strip()
    if not provided.startswith("sha256="):
        provided = f"sha256={provided}"
    if not verify_webhook_signature(
        signing_secret=settings.webhook_signing_secret,
        payload_bytes=payload_bytes,
        signature=provided,
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _normalize_shop_domain(value: str | None) -> str | None:
    text = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    return text.rstrip("/") or None


@router.post(
    "/{provider}",
    response_model=StoreWebhookOut,
    summary="Receive e-commerce store webhook",
    responses=error_responses(
        400,
        401,
        404,
        422,
        500,
        path="/webhooks/shopify",
        messages={401: "Invalid webhook signature", 404: "Unsupported store provider"},
    ),
)
async def receive_store_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
):
    normalized_provider = provider.strip().lower()
    if normalized_provider not in STORE_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unsupported store provider '{provider}'")

    raw_body = await request.body()
    _assert_webhook_signature(raw_body, request.headers.get(SIGNATURE_HEADER))

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    event_id_header, topic_header, domain_header = _PROVIDER_HEADERS[normalized_provider]
    topic = (request.headers.get(topic_header) or "").strip().lower() or None
    event_id = (request.headers.get(event_id_header) or "").strip() or fallback_event_id(
        topic=topic,
        payload_bytes=raw_body,
    )

    result = ingest_store_webhook(
        db,
        provider=normalized_provider,
        topic=topic,
        shop_domain=_normalize_shop_domain(request.headers.get(domain_header)),
        event_id=event_id,
        payload=payload,
    )
    outcome = result.result if isinstance(result.result, IngestOutcome) else None
    return StoreWebhookOut(
        ok=result.status != "failed",
        provider=result.provider,
        event_id=result.event_id,
        status=result.status,
        duplicate=result.duplicate,
        tenant_id=outcome.tenant_id if outcome else None,
        trigger_types=outcome.trigger_types if outcome else [],
        dispatched=outcome.dispatched if outcome else 0,
        error=result.error,
    )
