import pytest
from sqlalchemy import select

from app.doccontrol import create_app
from app.doccontrol.db import session_scope
from app.doccontrol.models import Base, Department, Section, User
from app.doccontrol.modules.document_control.lifecycle import transition
from app.doccontrol.modules.document_control.service import attach_file, create_document
from app.doccontrol.modules.document_control.status import DocumentStatus
from app.doccontrol.seed import ensure_department, ensure_roles, ensure_section, ensure_user

S = DocumentStatus

# Who performs each step in the happy-path helpers below.
STEP_ACTORS = {
    S.SUBMITTED: "author",
    S.UNDER_REVIEW: "reviewer",
    S.VERIFIED: "reviewer",
    S.NEEDS_REVISION: "reviewer",
    S.REJECTED: "reviewer",
    S.APPROVED: "boss",
    S.PUBLISHED: "boss",
    S.ARCHIVED: "boss",
    S.DRAFT: "author",
}

PATH_TO = {
    S.DRAFT: [],
    S.SUBMITTED: [S.SUBMITTED],
    S.UNDER_REVIEW: [S.SUBMITTED, S.UNDER_REVIEW],
    S.NEEDS_REVISION: [S.SUBMITTED, S.UNDER_REVIEW, S.NEEDS_REVISION],
    S.VERIFIED: [S.SUBMITTED, S.UNDER_REVIEW, S.VERIFIED],
    S.APPROVED: [S.SUBMITTED, S.UNDER_REVIEW, S.VERIFIED, S.APPROVED],
    S.PUBLISHED: [S.SUBMITTED, S.UNDER_REVIEW, S.VERIFIED, S.APPROVED, S.PUBLISHED],
    S.REJECTED: [S.SUBMITTED, S.REJECTED],
    S.ARCHIVED: [S.SUBMITTED, S.UNDER_REVIEW, S.VERIFIED, S.APPROVED, S.PUBLISHED, S.ARCHIVED],
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("SIDE_EFFECT_MODE", "inline")
    monkeypatch.setenv("COMPANY_CODE", "AKM")
    monkeypatch.setenv("APP_URL", "https://docs.example.com")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = ensure_roles(s)
        it = ensure_department(s, "IT", "Information Technology")
        dev = ensure_section(s, it, "DEV", "Development")
        ensure_section(s, it, "OPS", "Operations")
        hr = ensure_department(s, "HR", "Human Resources")
        rec = ensure_section(s, hr, "REC", "Recruitment")
        ensure_user(s, "author@example.com", "pw", roles["user"], name="Author", department=it, section=dev)
        ensure_user(s, "other@example.com", "pw", roles["user"], name="Other", department=it, section=dev)
        ensure_user(s, "reviewer@example.com", "pw", roles["admin"], name="Reviewer", department=it, section=dev)
        ensure_user(s, "hr-admin@example.com", "pw", roles["admin"], name="HR Admin", department=hr, section=rec)
        ensure_user(s, "boss@example.com", "pw", roles["superadmin"], name="Boss", department=it, section=dev)

    yield app

    app.extensions["doccontrol_dispatcher"].shutdown()
    engine.dispose()


@pytest.fixture()
def s(app):
    session = app.extensions["sqlalchemy_sessionmaker"]()
    yield session
    session.close()


@pytest.fixture()
def storage(app):
    return app.extensions["doccontrol_storage"]


@pytest.fixture()
def dispatcher(app):
    return app.extensions["doccontrol_dispatcher"]


@pytest.fixture()
def users(s):
    return {u.email.split("@")[0]: u for u in s.execute(select(User)).scalars()}


@pytest.fixture()
def org(s):
    out = {}
    for d in s.execute(select(Department)).scalars():
        out[d.code] = d
    for sect in s.execute(select(Section)).scalars():
        out[f"{sect.department.code}/{sect.code}"] = sect
    return out


@pytest.fixture()
def make_document(s, users, org):
    def _make(creator="author", title="Quality Manual", dept="IT", sect="DEV", **extra):
        data = {"title": title, "department_id": org[dept].id, "section_id": org[f"{dept}/{sect}"].id}
        data.update(extra)
        return create_document(s, data, users[creator], company_code="AKM")

    return _make


@pytest.fixture()
def attach(s, users, storage):
    def _attach(doc, content=b"%PDF-1.4 test", name="manual.pdf", actor="author", **kwargs):
        return attach_file(s, doc, content, name, users[actor], storage=storage, content_type="application/pdf", **kwargs)

    return _attach


@pytest.fixture()
def advance(s, users, storage, dispatcher):
    """Walk a document through the given statuses with the usual actor for each step."""

    def _advance(doc, *targets):
        for target in targets:
            comment = "Please fix section 2" if target in (S.NEEDS_REVISION, S.REJECTED) else None
            transition(
                s,
                doc,
                target,
                actor=users[STEP_ACTORS[target]],
                comment=comment,
                storage=storage,
                dispatcher=dispatcher,
            )
        return doc

    return _advance


@pytest.fixture()
def document_in(make_document, attach, advance):
    """Build a document with a file attached, sitting in the requested status."""

    def _in(status):
        doc = make_document()
        attach(doc)
        return advance(doc, *PATH_TO[status])

    return _in
