from flask import Blueprint, current_app
from sqlalchemy import text

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "doccontrol", "company": current_app.config.get("COMPANY_CODE")}


@bp.get("/health")
def health():
    """Health check endpoint. Checks the database connection; returns JSON."""
    engine = current_app.extensions["sqlalchemy_engine"]
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.error("Health check DB failure: %s", e)
        return {"ok": False, "database": "unavailable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO liveness checks. No DB access, minimal overhead.
    """
    return "ok", 200
