import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coupon_engine.core.config import CORS_ORIGINS, DATABASE_URL, REDEMPTION_COMMIT_MODE
from coupon_engine.core.database import Base, engine
from coupon_engine.core.logging_setup import configure_logging
from coupon_engine.core.startup_checks import (
    ensure_migrations_applied,
    validate_database_environment,
    validate_money_settings,
)
from coupon_engine.middleware.observability import ObservabilityMiddleware
import coupon_engine.models  # models must be registered before create_all
import coupon_engine.services.event_handlers  # subscribes the event bus handlers

from coupon_engine.routers.admin_audit import router as admin_audit_router
from coupon_engine.routers.admin_campaigns import coupons_router as admin_coupons_router
from coupon_engine.routers.admin_campaigns import router as admin_campaigns_router
from coupon_engine.routers.checkout_coupons import router as checkout_coupons_router
from coupon_engine.routers.internal_metrics import router as internal_metrics_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


app = FastAPI(
    title="Coupon Engine API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        validate_money_settings()
        # dev databases are created in place; everything else goes through alembic
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        logger.info("%s ready commit_mode=%s", STARTUP_PREFIX, REDEMPTION_COMMIT_MODE)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


# Routers
app.include_router(checkout_coupons_router)
app.include_router(admin_campaigns_router)
app.include_router(admin_coupons_router)
app.include_router(admin_audit_router)
app.include_router(internal_metrics_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
