import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.fieldops.auth import bp as auth_bp, load_current_identity
from app.fieldops.catalog import load_role_catalog
from app.fieldops.config import load_config
from app.fieldops.db import init_db, teardown_db_session
from app.fieldops.errors import AccessError, ResolutionError
from app.fieldops.modules.audit_log.admin import bp as audit_log_bp
from app.fieldops.modules.custom_roles.admin import bp as custom_roles_bp
from app.fieldops.modules.invitations.admin import bp as invitations_bp
from app.fieldops.modules.team.admin import bp as team_bp
from app.fieldops.routes import bp as routes_bp

# Public mutating endpoints (no session yet, so no CSRF token to present).
_CSRF_EXEMPT_ENDPOINTS = {"invitations.invitations_accept"}


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")
    logging.getLogger("app.fieldops").setLevel(app.config.get("LOG_LEVEL") or "INFO")

    from app.fieldops.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.fieldops.catalog import get_role_color, get_role_display_name, get_role_icon, get_role_level
        from app.fieldops.guard import has_perm

        return {
            "has_perm": has_perm,
            "csrf_token": ensure_csrf_token(),
            "get_role_display_name": get_role_display_name,
            "get_role_color": get_role_color,
            "get_role_icon": get_role_icon,
            "get_role_level": get_role_level,
        }

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            endpoint = request.endpoint or ""
            if endpoint.startswith("auth.") or endpoint in _CSRF_EXEMPT_ENDPOINTS:
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

    # Read-only for the process lifetime; a bad catalog stops the boot.
    app.extensions["role_catalog"] = load_role_catalog(app.config.get("ROLE_CATALOG_PATH"))

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

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(custom_roles_bp, url_prefix="/api")
    app.register_blueprint(team_bp, url_prefix="/api")
    app.register_blueprint(invitations_bp, url_prefix="/api")
    app.register_blueprint(audit_log_bp, url_prefix="/api")

    # Identity must be loaded before the CSRF guard runs, so insert it first.
    app.before_request_funcs.setdefault(None, []).insert(0, load_current_identity)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(AccessError)
    def _err_access(e: AccessError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(e, ResolutionError):
            app.logger.error("Permission resolution failed (request_id=%s): %s", rid, e.message, exc_info=e)
        elif e.status_code in (401, 403):
            app.logger.warning(
                "Access denied: %s path=%s missing_permission=%s request_id=%s",
                e.code,
                request.path,
                getattr(g, "missing_permission", None),
                rid,
            )
        else:
            app.logger.info("Request rejected: %s (%s) request_id=%s", e.code, e.message, rid)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": (e.name or "error").lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in DO logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    logging.getLogger(__name__).info(
        "create_app() complete; role catalog v%s loaded", app.extensions["role_catalog"].version
    )

    return app
