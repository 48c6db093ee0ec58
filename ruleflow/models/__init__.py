from ruleflow.models.tenant import Tenant, TenantApiKey
from ruleflow.models.contact import Agent, Contact
from ruleflow.models.automation import (
    AutomationExecution,
    AutomationExecutionStep,
    AutomationJob,
    AutomationRule,
)
from ruleflow.models.webhook import StoreConnection, WebhookEvent, WebhookLog
from ruleflow.models.messaging import OutboundMessage
