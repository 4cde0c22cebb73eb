import os
import sys
from pathlib import Path

from sqlalchemy import create_engine

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.doccontrol.db import _engine_kwargs, make_sessionmaker, session_scope
from app.doccontrol.models import Base
from app.doccontrol.seed import ensure_department, ensure_roles, ensure_section, ensure_user


def init_db(*, database_url: str | None = None, create_schema: bool = True) -> None:
    """
    Create tables (no migrations in this project) and seed roles, permissions,
    one department/section and a superadmin, idempotently.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    dept_code = (os.environ.get("SEED_DEPARTMENT_CODE") or "IT").strip()
    dept_name = (os.environ.get("SEED_DEPARTMENT_NAME") or "Information Technology").strip()
    sect_code = (os.environ.get("SEED_SECTION_CODE") or "DEV").strip()
    sect_name = (os.environ.get("SEED_SECTION_NAME") or "Development").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///doccontrol.db").strip()
    engine = create_engine(db_url, **_engine_kwargs(db_url))
    if create_schema:
        Base.metadata.create_all(bind=engine)

    with session_scope(make_sessionmaker(engine)) as s:
        roles = ensure_roles(s)
        dept = ensure_department(s, dept_code, dept_name)
        sect = ensure_section(s, dept, sect_code, sect_name)
        ensure_user(s, admin_email, admin_password, roles["superadmin"], name="Administrator", department=dept, section=sect)

    engine.dispose()
    print("Initialized database.")
    print(f"Superadmin email: {admin_email}")
    print("Superadmin password: (from ADMIN_PASSWORD)")


def main() -> None:
    init_db(database_url=None)


if __name__ == "__main__":
    main()
