import json

import pytest
from sqlalchemy import select

from app.doccontrol.models import AuditEvent
from app.doccontrol.modules.document_control.errors import InvalidTransition
from app.doccontrol.modules.document_control.status import DocumentStatus

S = DocumentStatus


@pytest.fixture()
def qr(app):
    return app.extensions["doccontrol_qr"]


def test_publish_generates_qr_artifact(document_in, s, qr, storage):
    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    assert doc.has_qr_code()
    payload = json.loads(storage.get_bytes(doc.qr_code_path))
    assert payload["document_number"] == doc.document_number
    assert payload["url"] == f"https://docs.example.com/qr/validate/{doc.id}/{doc.qr_code_token}"
    assert qr.validate(doc, doc.qr_code_token)


def test_validate_rejects_wrong_token_and_unpublished(document_in, s, qr):
    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    assert not qr.validate(doc, "0" * 64)
    assert not qr.validate(None, doc.qr_code_token)

    approved = document_in(S.APPROVED)
    assert not qr.validate(approved, "anything")


def test_validate_fails_when_artifact_missing(document_in, s, qr, storage):
    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    storage.delete(doc.qr_code_path)
    assert not qr.validate(doc, doc.qr_code_token)


def test_archived_document_no_longer_validates(document_in, advance, s, qr):
    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    token = doc.qr_code_token
    advance(doc, S.ARCHIVED)
    assert not qr.validate(doc, token)


def test_regenerate_replaces_token(document_in, s, users, qr, storage):
    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    old_path, old_token = doc.qr_code_path, doc.qr_code_token

    path, token = qr.regenerate(s, doc, users["boss"])
    assert token != old_token
    assert doc.qr_code_token == token
    assert storage.exists(path)
    assert not storage.exists(old_path)
    assert not qr.validate(doc, old_token)
    assert qr.validate(doc, token)
    assert s.execute(select(AuditEvent).where(AuditEvent.action == "doc.qr_regenerate")).scalar_one()


def test_regenerate_requires_published(document_in, users, s, qr):
    doc = document_in(S.APPROVED)
    with pytest.raises(InvalidTransition):
        qr.regenerate(s, doc, users["boss"])


def test_concurrent_qr_fill_discards_the_losing_artifact(app, document_in, s, storage):
    from sqlalchemy.orm.attributes import set_committed_value

    from app.doccontrol.modules.document_control.models import Document

    doc = document_in(S.PUBLISHED)
    s.refresh(doc)
    winning_path, winning_token = doc.qr_code_path, doc.qr_code_token
    qr_dir = storage.root / "documents" / "qr" / doc.document_number
    assert [p.name for p in qr_dir.iterdir()] == [winning_path.rsplit("/", 1)[-1]]

    dispatcher = app.extensions["doccontrol_dispatcher"]
    with app.extensions["sqlalchemy_sessionmaker"]() as worker:
        stale = worker.get(Document, doc.id)
        # as loaded by a worker that read the row before another one filled it
        set_committed_value(stale, "qr_code_path", None)
        set_committed_value(stale, "qr_code_token", None)
        dispatcher._ensure_qr(worker, stale)
        worker.commit()

    s.refresh(doc)
    assert (doc.qr_code_path, doc.qr_code_token) == (winning_path, winning_token)
    assert [p.name for p in qr_dir.iterdir()] == [winning_path.rsplit("/", 1)[-1]]
