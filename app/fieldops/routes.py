from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including the loaded role catalog version."""
    catalog = current_app.extensions.get("role_catalog")
    return {"ok": True, "role_catalog_version": catalog.version if catalog else None}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
