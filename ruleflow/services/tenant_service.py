import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from ruleflow.core.id_utils import generate_slug_suffix, generate_tenant_id
from ruleflow.core.security import generate_api_key_material, hash_api_key
from ruleflow.models.tenant import Tenant, TenantApiKey

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class TenantPrincipal:
    key_id: str
    tenant_id: str
    key_name: str


def create_tenant(db: Session, *, name: str, timezone_name: str | None = None) -> Tenant:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Tenant name is required")

    base_slug = _SLUG_RE.sub("-", cleaned.lower()).strip("-") or "tenant"
    slug = base_slug
    while db.execute(select(Tenant.id).where(Tenant.slug == slug)).scalar_one_or_none():
        slug = f"{base_slug}-{generate_slug_suffix()}"

    tenant = Tenant(
        id=generate_tenant_id(),
        name=cleaned,
        slug=slug,
        status="active",
        timezone=timezone_name,
    )
    db.add(tenant)
    db.flush()
    return tenant


def issue_api_key(db: Session, *, tenant_id: str, name: str = "default") -> tuple[TenantApiKey, str]:
    raw_key, key_prefix, key_hash = generate_api_key_material()
    row = TenantApiKey(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name=(name or "default").strip() or "default",
        key_prefix=key_prefix,
        key_hash=key_hash,
        status="active",
    )
    db.add(row)
    db.flush()
    return row, raw_key


def resolve_tenant_principal(db: Session, *, api_key: str) -> TenantPrincipal | None:
    key_hash = hash_api_key(api_key)
    row = db.execute(
        select(TenantApiKey).where(
            TenantApiKey.key_hash == key_hash,
            TenantApiKey.status == "active",
        )
    ).scalar_one_or_none()
    if not row:
        return None

    now = datetime.now(timezone.utc)
    if row.expires_at and _as_utc(row.expires_at) < now:
        return None

    tenant_status = db.execute(select(Tenant.status).where(Tenant.id == row.tenant_id)).scalar_one_or_none()
    if tenant_status != "active":
        return None

    row.last_used_at = now
    return TenantPrincipal(key_id=row.id, tenant_id=row.tenant_id, key_name=row.name)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
