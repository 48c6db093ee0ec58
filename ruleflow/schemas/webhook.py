from pydantic import BaseModel


class StoreWebhookOut(BaseModel):
    ok: bool
    provider: str
    event_id: str
    status: str
    duplicate: bool
    tenant_id: str | None = None
    trigger_types: list[str] = []
    dispatched: int = 0
    error: str | None = None
