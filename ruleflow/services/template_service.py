import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from ruleflow.core.observability import log_event
from ruleflow.models.automation import AutomationRule
from ruleflow.services import automation_service

logger = logging.getLogger("ruleflow.templates")

_AUTOMATION_TEMPLATE_LIBRARY: list[dict[str, Any]] = [
    {
        "template_key": "order_confirmation",
        "name": "Order Confirmation",
        "description": "Automatically send order confirmation via WhatsApp.",
        "category": "Orders",
        "trigger_type": "order_created",
        "preview": "Order Created -> Send Confirmation -> Add Tag",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "order_confirmation",
                "message": "Hi {{contact.name}}, we received your order {{order.name}}. Thank you!",
            },
            {"type": "add_tag", "tag": "order_confirmed"},
        ],
    },
    {
        "template_key": "cod_confirmation",
        "name": "COD Order Confirmation",
        "description": "Request and track cash-on-delivery order confirmations.",
        "category": "Orders",
        "trigger_type": "cod_order_created",
        "preview": "COD Order -> Confirmation Request -> Wait 6h -> Reminder if unconfirmed",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "cod_confirmation_request",
                "message": "Hi {{contact.name}}, please reply YES to confirm your cash on delivery order.",
            },
            {"type": "add_tag", "tag": "cod_pending_confirmation"},
            {"type": "wait", "duration": 6, "unit": "hours"},
            {
                "type": "condition",
                "conditions": [{"field": "codConfirmed", "operator": "equals", "value": False}],
                "then_actions": [
                    {
                        "type": "send_message",
                        "channel": "whatsapp",
                        "template_id": "cod_confirmation_reminder",
                        "message": "Reminder: your order is waiting for confirmation.",
                    },
                ],
                "else_actions": [],
            },
        ],
    },
    {
        "template_key": "shipping_update",
        "name": "Shipping Update",
        "description": "Notify customers when orders are shipped.",
        "category": "Orders",
        "trigger_type": "order_shipped",
        "preview": "Order Shipped -> Send Tracking -> Add Tag",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "order_shipped",
                "message": "Good news {{contact.name}}, your order is on its way.",
            },
            {"type": "add_tag", "tag": "shipping_notified"},
        ],
    },
    {
        "template_key": "delivery_confirmation",
        "name": "Delivery Confirmation",
        "description": "Confirm delivery and request feedback a day later.",
        "category": "Orders",
        "trigger_type": "order_delivered",
        "preview": "Order Delivered -> Confirmation -> Wait 24h -> Feedback Request",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "order_delivered",
                "message": "Your order has been delivered. Enjoy!",
            },
            {"type": "wait", "duration": 24, "unit": "hours"},
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "feedback_request",
                "message": "How was your order, {{contact.name}}? Reply with a rating from 1 to 5.",
            },
        ],
    },
    {
        "template_key": "order_cancellation",
        "name": "Order Cancellation",
        "description": "Notify the customer when an order is cancelled.",
        "category": "Orders",
        "trigger_type": "order_cancelled",
        "preview": "Order Cancelled -> Notify -> Add Tag -> Offer Help",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "order_cancelled",
                "message": "Your order has been cancelled.",
            },
            {"type": "add_tag", "tag": "order_cancelled"},
            {
                "type": "send_message",
                "channel": "whatsapp",
                "message": (
                    "We're sorry to see your order cancelled. Is there anything we can help with? "
                    "Reply to this message to connect with our team."
                ),
            },
        ],
    },
    {
        "template_key": "abandoned_cart_1h",
        "name": "Abandoned Cart (1 Hour)",
        "description": "First cart recovery reminder after one hour.",
        "category": "Cart Recovery",
        "trigger_type": "cart_abandoned",
        "preview": "Cart Abandoned -> Wait 1h -> Reminder -> Add Tag",
        "trigger_config": {},
        "conditions": [],
        "delay_config": {"type": "delay", "delay_seconds": 3600},
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "abandoned_cart_reminder",
                "message": "Hi {{contact.name}}, your cart is still waiting: {{checkout_url}}",
            },
            {"type": "add_tag", "tag": "cart_reminder_1h"},
        ],
    },
    {
        "template_key": "abandoned_cart_24h",
        "name": "Abandoned Cart (24 Hours)",
        "description": "Follow up with a discount after 24 hours unless the cart was recovered.",
        "category": "Cart Recovery",
        "trigger_type": "cart_abandoned",
        "preview": "Cart Abandoned -> Wait 24h -> 10% Discount -> Add Tag",
        "trigger_config": {},
        "conditions": [{"field": "recoveryStatus", "operator": "not_equals", "value": "recovered"}],
        "delay_config": {"type": "delay", "delay_seconds": 86400},
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "abandoned_cart_discount_10",
                "message": "Still thinking it over? Here is 10% off to complete your order: {{checkout_url}}",
            },
            {"type": "add_tag", "tag": "cart_reminder_24h"},
        ],
    },
    {
        "template_key": "payment_failed",
        "name": "Payment Failed Retry",
        "description": "Help customers complete failed payments.",
        "category": "Payments",
        "trigger_type": "payment_failed",
        "preview": "Payment Failed -> Notify -> Wait 2h -> Retry Reminder",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "payment_failed",
                "message": "Your payment did not go through. You can retry from your order page.",
            },
            {"type": "wait", "duration": 2, "unit": "hours"},
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "payment_retry_reminder",
                "message": "Reminder: your order is still awaiting payment.",
            },
        ],
    },
    {
        "template_key": "first_order_welcome",
        "name": "First Order Welcome",
        "description": "Welcome new customers and move them to the customer stage.",
        "category": "Customer Lifecycle",
        "trigger_type": "first_order",
        "preview": "First Order -> Welcome Message -> Add Tag -> Update Lifecycle",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "welcome_first_order",
                "message": "Welcome aboard {{contact.name}}! Thanks for your first order.",
            },
            {"type": "add_tag", "tag": "new_customer"},
            {"type": "update_lifecycle", "stage": "customer"},
        ],
    },
    {
        "template_key": "high_value_vip",
        "name": "High Value Order VIP",
        "description": "VIP treatment for high value orders with priority support.",
        "category": "Customer Lifecycle",
        "trigger_type": "high_value_order",
        "preview": "High Value Order -> Add VIP Tag -> Assign Agent",
        "trigger_config": {"min_order_value": 5000},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {"type": "add_tag", "tag": "vip_customer"},
            {"type": "update_lifecycle", "stage": "vip"},
            {"type": "assign_to_agent", "strategy": "round_robin"},
        ],
    },
    {
        "template_key": "negative_review_recovery",
        "name": "Negative Review Recovery",
        "description": "Reach out to resolve issues raised in negative reviews.",
        "category": "Reviews",
        "trigger_type": "negative_review",
        "preview": "Negative Review -> Apology -> Assign Support -> Add Tag",
        "trigger_config": {},
        "conditions": [],
        "delay_config": None,
        "actions": [
            {
                "type": "send_message",
                "channel": "whatsapp",
                "template_id": "negative_review_apology",
                "message": "We're sorry your experience fell short, {{contact.name}}. A team member will reach out shortly.",
            },
            {"type": "assign_to_agent", "strategy": "least_busy"},
            {"type": "add_tag", "tag": "review_recovery"},
        ],
    },
]

_SUMMARY_KEYS = ("template_key", "name", "description", "category", "trigger_type", "preview")


def list_automation_templates(*, category: str | None = None) -> list[dict[str, Any]]:
    normalized = (category or "").strip().lower()
    return [
        {key: item[key] for key in _SUMMARY_KEYS}
        for item in _AUTOMATION_TEMPLATE_LIBRARY
        if not normalized or item["category"].lower() == normalized
    ]


def get_automation_template(template_key: str) -> dict[str, Any]:
    normalized = (template_key or "").strip().lower()
    for template in _AUTOMATION_TEMPLATE_LIBRARY:
        if template["template_key"] == normalized:
            return json.loads(json.dumps(template))
    available = ", ".join(sorted(item["template_key"] for item in _AUTOMATION_TEMPLATE_LIBRARY))
    raise ValueError(f"Unknown template '{template_key}'. Available: {available}")


def install_template_rule(
    db: Session,
    *,
    tenant_id: str,
    template_key: str,
    activate: bool = False,
) -> tuple[AutomationRule, dict[str, Any]]:
    template = get_automation_template(template_key)
    rule = automation_service.create_rule(
        db,
        tenant_id=tenant_id,
        name=automation_service.unique_rule_name(db, tenant_id=tenant_id, seed_name=template["name"]),
        description=template["description"],
        trigger_type=template["trigger_type"],
        trigger_config=template["trigger_config"],
        conditions=template["conditions"],
        actions=template["actions"],
        delay_config=template["delay_config"],
        status="active" if activate else "draft",
        template_key=template["template_key"],
    )
    log_event(logger, "automation.template_installed", tenant_id=tenant_id, template_key=template["template_key"], rule_id=rule.id)
    return rule, template
