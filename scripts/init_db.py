import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.fieldops.catalog import load_role_catalog
from app.fieldops.models import Tenant, User
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the first tenant and its administrator in an idempotent way.
    Does NOT overwrite an existing admin user's password or role.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@fieldops.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_name = (os.environ.get("TENANT_NAME") or "Default Company").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///fieldops.db").strip()

    # Highest built-in role from the configured catalog (admin by default).
    catalog = load_role_catalog(os.environ.get("ROLE_CATALOG_PATH") or None)
    admin_role = catalog.names()[0]

    with script_session(db_url) as s:
        tenant = s.execute(select(Tenant).where(Tenant.name == tenant_name)).scalar_one_or_none()
        if not tenant:
            tenant = Tenant(name=tenant_name)
            s.add(tenant)
            s.flush()

        user = s.execute(select(User).where(User.email == admin_email)).scalar_one_or_none()
        if not user:
            user = User(
                tenant_id=tenant.id,
                email=admin_email,
                full_name="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                builtin_role=admin_role,
            )
            s.add(user)

    print("Initialized database (seed_only).")
    print(f"Tenant: {tenant_name}")
    print(f"Admin email: {admin_email} (role: {admin_role})")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
