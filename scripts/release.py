"""
Release-phase helper.

Goal:
- Fail fast if DATABASE_URL is missing (avoid silently using SQLite in prod).
- Validate the role catalog before anything touches the database.
- Run alembic migrations.
- Seed the first tenant/admin user (idempotent; does NOT overwrite existing passwords).
- Move pending invitations past their expiry to `expired`.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    # Guardrail: prevent accidental prod deploys against SQLite.
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print("=== FieldOps release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)

    from app.fieldops.catalog import load_role_catalog

    catalog = load_role_catalog(os.environ.get("ROLE_CATALOG_PATH") or None)
    print(f"Role catalog v{catalog.version} OK ({len(catalog.names())} built-in roles).", flush=True)

    print("Running Alembic migrations...", flush=True)
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["url_overridden"] = True
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)

    print("Seeding tenant/admin (idempotent)...", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)

    from app.fieldops.modules.invitations.service import expire_stale_invitations
    from scripts._db_utils import script_session

    with script_session(db_url) as s:
        expired = expire_stale_invitations(s)
    print(f"Expired {expired} stale invitation(s).", flush=True)
    print("=== FieldOps release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
