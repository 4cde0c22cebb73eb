from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.doccontrol.models import Department, Permission, Role, Section, User
from app.doccontrol.rbac import PERMISSION_NAMES, ROLE_LABELS, RoleKey, role_permission_keys


def ensure_perm(s: Session, key: str, name: str) -> Permission:
    p = s.execute(select(Permission).where(Permission.key == key)).scalar_one_or_none()
    if not p:
        p = Permission(key=key, name=name)
        s.add(p)
    return p


def ensure_roles(s: Session) -> dict[str, Role]:
    """
    Idempotently create the three roles and attach exactly the permissions
    ROLE_CAPABILITIES grants. Extra permissions on a role are left alone.
    """
    perms = {key: ensure_perm(s, key, name) for key, name in PERMISSION_NAMES.items()}
    roles: dict[str, Role] = {}
    for role_key in RoleKey:
        role = s.execute(select(Role).where(Role.key == role_key.value)).scalar_one_or_none()
        if not role:
            role = Role(key=role_key.value, name=ROLE_LABELS[role_key])
            s.add(role)
        for pkey in role_permission_keys(role_key):
            if perms[pkey] not in role.permissions:
                role.permissions.append(perms[pkey])
        roles[role_key.value] = role
    s.flush()
    return roles


def ensure_department(s: Session, code: str, name: str) -> Department:
    code = code.strip().upper()
    dept = s.execute(select(Department).where(Department.code == code)).scalar_one_or_none()
    if not dept:
        dept = Department(code=code, name=name, is_active=True)
        s.add(dept)
        s.flush()
    return dept


def ensure_section(s: Session, department: Department, code: str, name: str) -> Section:
    code = code.strip().upper()
    sect = s.execute(
        select(Section).where(Section.department_id == department.id, Section.code == code)
    ).scalar_one_or_none()
    if not sect:
        sect = Section(department_id=department.id, code=code, name=name, is_active=True)
        s.add(sect)
        s.flush()
    return sect


def ensure_user(
    s: Session,
    email: str,
    password: str,
    role: Role,
    *,
    name: str | None = None,
    department: Department | None = None,
    section: Section | None = None,
) -> User:
    """Does NOT overwrite an existing user's password."""
    email = email.strip().lower()
    user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        user = User(
            email=email,
            name=name,
            password_hash=generate_password_hash(password),
            is_active=True,
            department_id=department.id if department else None,
            section_id=section.id if section else None,
        )
        s.add(user)
    if role not in user.roles:
        user.roles.append(role)
    s.flush()
    return user
