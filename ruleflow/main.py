from sqlalchemy import text

from ruleflow.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from ruleflow.core.config import settings
from ruleflow.db.session import engine
from ruleflow.routers import automation, webhooks

app = FastAPI(
    title=settings.app_name,
    version="0.3.0",
    description=(
        "Multi-tenant automation rule engine.\n\n"
        "Swagger quick test flow:\n"
        "1. Provision a tenant API key and send it in the `X-Ruleflow-Api-Key` header.\n"
        "2. Create a rule with `POST /automations/rules` (or install one from `/automations/templates`).\n"
        "3. Activate it, send an event to `POST /automations/events`, then drain due jobs with "
        "`POST /automations/jobs/run`."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "automation", "description": "Rules, templates, event dispatch, executions and job runs."},
        {"name": "webhooks", "description": "Signed e-commerce store webhooks (Shopify, WooCommerce)."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(automation.router)
app.include_router(webhooks.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
