"""
tenantflow - FastAPI application

Admin surface for the per-tenant workflow provisioning engine. The signup
flow calls the orchestrator directly; these routes cover manual re-runs,
status, cleanup and reconciliation.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI

from tenantflow.api.routes import health, provisioning
from tenantflow.config import settings
from tenantflow.core.security import get_current_admin
from tenantflow.database import SessionLocal, init_db
from tenantflow.services import build_provisioning_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting %s...", settings.app_name)

    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error("Database initialization failed: %s", e)

    services = build_provisioning_services(settings, SessionLocal)
    app.state.provisioning = services
    logger.info(
        "Provisioning %s templates against %s",
        len(settings.provisioning_template_ids),
        settings.n8n_base_url,
    )
    yield
    await services.aclose()
    logger.info("Shutting down %s...", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Per-tenant n8n workflow provisioning",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root() -> dict:
    return {
        "name": settings.app_name,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(health.router, prefix=settings.api_v1_prefix, tags=["Health"])
app.include_router(
    provisioning.router,
    prefix=f"{settings.api_v1_prefix}/provisioning",
    tags=["Provisioning"],
    dependencies=[Depends(get_current_admin)],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tenantflow.main:app", host="0.0.0.0", port=8000)
