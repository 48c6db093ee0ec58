from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ruleflow.core.deps import get_db
from ruleflow.services.tenant_service import TenantPrincipal, resolve_tenant_principal

API_KEY_HEADER = "X-Ruleflow-Api-Key"


def get_current_tenant(
    x_api_key: str | None = Header(default=None, alias=API_KEY_HEADER),
    db: Session = Depends(get_db),
) -> TenantPrincipal:
    if not x_api_key or not x_api_key.strip():
        raise HTTPException(status_code=401, detail="Missing API key")

    principal = resolve_tenant_principal(db, api_key=x_api_key.strip())
    if not principal:
        raise HTTPException(status_code=401, detail="Invalid API key")

    db.commit()
    return principal
