import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.doccontrol.auth import bp as auth_bp, load_current_user
from app.doccontrol.config import load_config
from app.doccontrol.db import init_db, teardown_db_session
from app.doccontrol.modules.document_control.admin import bp as doc_control_bp
from app.doccontrol.modules.document_control.errors import DocumentControlError
from app.doccontrol.modules.document_control.public import bp as doc_public_bp
from app.doccontrol.modules.document_control.qr import QrCodeService
from app.doccontrol.modules.document_control.side_effects import LogNotifier, SideEffectDispatcher
from app.doccontrol.routes import bp as routes_bp
from app.doccontrol.security import ensure_csrf_token, validate_csrf
from app.doccontrol.storage import S3Storage, storage_from_config

_UNGUARDED_PREFIXES = ("/health", "/healthz", "/qr/")


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.doccontrol").setLevel(level)
    app.logger.setLevel(level)


def create_app(overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if overrides:
        app.config.update(overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout carry no state worth forging
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if app.config.get("SIDE_EFFECT_MODE") != "thread":
            app.logger.warning("SIDE_EFFECT_MODE=%s in production; transitions will wait on side effects.", app.config.get("SIDE_EFFECT_MODE"))

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    storage = storage_from_config(app.config)
    if isinstance(storage, S3Storage):
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                storage._client().head_bucket(Bucket=storage.bucket)
                app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    qr = QrCodeService(storage, secret_key=app.config["SECRET_KEY"], app_url=app.config["APP_URL"])
    dispatcher = SideEffectDispatcher(
        app.extensions["sqlalchemy_sessionmaker"],
        notifier=LogNotifier(),
        qr_generator=qr,
        mode=app.config.get("SIDE_EFFECT_MODE") or "thread",
        max_workers=int(app.config.get("SIDE_EFFECT_WORKERS") or 2),
    )
    app.extensions["doccontrol_storage"] = storage
    app.extensions["doccontrol_qr"] = qr
    app.extensions["doccontrol_dispatcher"] = dispatcher

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(doc_control_bp, url_prefix="/api/documents")
    app.register_blueprint(doc_public_bp, url_prefix="/qr")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): the document tables must exist before serving.
    app.config.setdefault("_schema_health_missing", [])
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in ("documents", "document_approvals", "document_revisions", "document_number_counters") if not insp.has_table(t)]
        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.warning("DB schema incomplete; run scripts/init_db.py. Missing: %s", ", ".join(missing))
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    @app.errorhandler(DocumentControlError)
    def _err_domain(e: DocumentControlError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            app.logger.error("%s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "forbidden", "message": "You do not have access to this resource.", "missing_permission": missing}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return jsonify({"error": "file_too_large", "message": f"File too large. Maximum size is {limit_mb}MB."}), 413

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": (e.name or "error").lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
