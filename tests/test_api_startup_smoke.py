import pytest
from fastapi.testclient import TestClient


REQUIRED_ROUTES = {
    "/api/coupons/preview",
    "/api/coupons/apply",
    "/api/coupons/mine",
    "/api/coupons/{coupon_code}",
    "/api/admin/coupon-campaigns",
    "/api/admin/coupon-campaigns/{identifier}",
    "/api/admin/coupon-campaigns/{campaign_id}/generate-codes",
    "/api/admin/coupon-campaigns/{campaign_id}/usage-stats",
    "/api/admin/coupon-campaigns/{campaign_id}/coupons",
    "/api/admin/coupons",
    "/api/admin/coupons/{entry_id}",
    "/api/admin/coupons/{entry_id}/deactivate",
    "/api/admin/audit",
    "/internal/metrics",
    "/health",
}


def test_api_startup_and_router_registration(monkeypatch):
    from coupon_engine import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)

    with TestClient(main.app) as client:
        response = client.get("/")
        health_response = client.get("/health", headers={"X-Request-ID": "req-123"})
        openapi_response = client.get("/openapi.json")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert health_response.json() == {"status": "healthy"}
    assert health_response.headers["X-Request-ID"] == "req-123"
    assert openapi_response.status_code == 200

    paths = {route.path for route in main.app.routes}
    assert REQUIRED_ROUTES.issubset(paths)


def test_startup_refuses_sqlite_in_production(monkeypatch):
    from coupon_engine.core import startup_checks

    monkeypatch.setenv("ENV", "production")
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setattr(startup_checks, "DATABASE_URL", "sqlite:///./prod.db")

    with pytest.raises(RuntimeError):
        startup_checks.validate_database_environment()


def test_migration_check_is_skipped_in_dev(monkeypatch, tmp_path):
    from coupon_engine.core import startup_checks

    monkeypatch.setenv("ENVIRONMENT", "dev")

    # no engine access happens when the check is skipped
    startup_checks.ensure_migrations_applied(engine=None, alembic_config_path=tmp_path / "missing.ini")


def test_startup_refuses_minor_units_beyond_stored_scale(monkeypatch):
    from coupon_engine.core import config, startup_checks

    monkeypatch.setattr(config, "CURRENCY_MINOR_UNITS", 3)

    with pytest.raises(RuntimeError):
        startup_checks.validate_money_settings()

    monkeypatch.setattr(config, "CURRENCY_MINOR_UNITS", 0)
    startup_checks.validate_money_settings()
