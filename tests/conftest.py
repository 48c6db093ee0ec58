import pytest
import os
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WEBHOOK_SIGNING_SECRET", "test-webhook-secret")

import ruleflow.models  # noqa: F401
from ruleflow.core.config import settings
from ruleflow.core.deps import get_db
from ruleflow.db.base import Base
from ruleflow.main import app
from ruleflow.services.tenant_service import create_tenant, issue_api_key


@pytest.fixture()
def test_context():
    original_secret = settings.webhook_signing_secret
    settings.webhook_signing_secret = "test-webhook-secret"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.webhook_signing_secret = original_secret


@pytest.fixture()
def db_session(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def tenant_auth(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        tenant = create_tenant(db, name="Acme Store", timezone_name="UTC")
        _, raw_key = issue_api_key(db, tenant_id=tenant.id, name="tests")
        db.commit()
        tenant_id = tenant.id
    finally:
        db.close()
    return tenant_id, {"X-Ruleflow-Api-Key": raw_key}
