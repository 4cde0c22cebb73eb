from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.doccontrol.models import AuditEvent
from app.doccontrol.modules.document_control.errors import (
    InvalidTransition,
    StorageFailure,
    Unauthorized,
    ValidationFailed,
)
from app.doccontrol.modules.document_control.models import DocumentAccess, DocumentRevision, ImmutableRecordError
from app.doccontrol.modules.document_control.service import (
    attach_file,
    can_edit,
    create_document,
    delete_document,
    document_statistics,
    generate_next_version,
    get_document,
    get_document_by_number,
    get_history,
    list_documents,
    read_file,
    record_access,
    time_since_previous,
    update_document,
)
from app.doccontrol.modules.document_control.status import DocumentStatus
from app.doccontrol.storage import LocalStorage, StorageError

S = DocumentStatus


class FailingPutStorage(LocalStorage):
    def put_bytes(self, key, data, *, content_type=None):
        raise StorageError("bucket unavailable")


@pytest.mark.parametrize(
    "current,is_major,expected",
    [
        (None, False, "1.0"),
        ("", True, "1.0"),
        ("1.0", False, "1.1"),
        ("1.3", True, "2.0"),
        ("1.9", False, "1.10"),
        ("2.10", True, "3.0"),
    ],
)
def test_generate_next_version(current, is_major, expected):
    assert generate_next_version(current, is_major) == expected


def test_generate_next_version_rejects_garbage():
    with pytest.raises(ValueError):
        generate_next_version("v1")


def test_create_document_starts_as_draft(make_document, s):
    doc = make_document(description="How we work", tags="iso, sop, iso", effective_date="2025-01-01")
    assert doc.status is S.DRAFT
    assert doc.version == "1.0"
    assert doc.file_path is None and not doc.has_file()
    assert doc.tags == ["iso", "sop"]
    assert doc.lock_version == 1
    ev = s.execute(select(AuditEvent).where(AuditEvent.action == "doc.create")).scalar_one()
    assert ev.entity_id == str(doc.id)


def test_create_document_collects_validation_errors(s, users, org):
    with pytest.raises(ValidationFailed) as exc:
        create_document(
            s,
            {
                "title": " ",
                "department_id": org["IT"].id,
                "section_id": org["HR/REC"].id,
                "effective_date": "2025-05-01",
                "expiry_date": "2025-04-01",
            },
            users["author"],
            company_code="AKM",
        )
    errors = exc.value.errors
    assert "Title is required." in errors
    assert "Section does not belong to the selected department." in errors
    assert "Expiry date cannot be before the effective date." in errors


def test_create_document_rejects_bad_dates(s, users, org):
    with pytest.raises(ValidationFailed):
        create_document(
            s,
            {"title": "T", "department_id": org["IT"].id, "section_id": org["IT/DEV"].id, "expiry_date": "31/12/2025"},
            users["author"],
            company_code="AKM",
        )


def test_first_revision_is_1_0_then_bumps(make_document, attach, s, storage):
    doc = make_document()
    attach(doc, content=b"first")
    first_path = doc.file_path
    assert doc.version == "1.0"
    assert doc.revisions[0].version == "1.0"
    assert doc.revisions[0].version_type == "major"

    attach(doc, content=b"second", name="manual-v2.pdf", notes="typos")
    assert doc.version == "1.1"
    attach(doc, content=b"third", is_major=True)
    assert doc.version == "2.0"

    versions = [r.version for r in s.execute(select(DocumentRevision).order_by(DocumentRevision.id)).scalars()]
    assert versions == ["1.0", "1.1", "2.0"]
    assert doc.revisions[1].revision_notes == "typos"
    assert doc.revisions[1].version_type == "minor"

    # superseded working file is gone; revision copies stay
    assert not storage.exists(first_path)
    for rev in doc.revisions:
        assert storage.exists(rev.file_path)
        assert rev.file_path.startswith(f"documents/revisions/{doc.document_number}/v{rev.version}/")
    assert storage.get_bytes(doc.file_path) == b"third"
    assert doc.original_filename == "manual.pdf"
    assert doc.file_type == "pdf"
    assert doc.file_size == 5


def test_draft_can_accumulate_revisions_before_submission(make_document, attach, advance, s):
    doc = make_document()
    for i in range(3):
        attach(doc, content=f"draft {i}".encode())
    advance(doc, S.SUBMITTED)
    assert doc.version == "1.2"
    assert get_history(s, doc)[0].document_revision_id == doc.revisions[-1].id


def test_attach_checks_edit_permission(make_document, attach, advance, users):
    doc = make_document()
    with pytest.raises(Unauthorized):
        attach(doc, actor="other")
    # admins may edit documents of their own department only
    attach(doc, actor="reviewer")
    with pytest.raises(Unauthorized):
        attach(doc, actor="hr-admin")

    advance(doc, S.SUBMITTED)
    assert not can_edit(doc, users["author"])
    assert can_edit(doc, users["reviewer"])
    with pytest.raises(Unauthorized):
        attach(doc, actor="author")


def test_attach_refused_once_approved(document_in, attach, users):
    doc = document_in(S.APPROVED)
    assert not can_edit(doc, users["boss"])
    with pytest.raises(Unauthorized):
        attach(doc, actor="boss")


def test_attach_rejects_empty_file(make_document, attach):
    doc = make_document()
    with pytest.raises(ValidationFailed):
        attach(doc, content=b"")


def test_attach_storage_failure_leaves_document_untouched(make_document, s, users, tmp_path):
    doc = make_document()
    with pytest.raises(StorageFailure):
        attach_file(s, doc, b"data", "x.pdf", users["author"], storage=FailingPutStorage(root=tmp_path / "storage"))
    assert doc.file_path is None
    assert doc.revisions == []


def test_update_document_fields(make_document, s, users):
    doc = make_document()
    update_document(s, doc, {"title": "Quality Manual v2", "is_confidential": True, "status": "published"}, users["author"])
    assert doc.title == "Quality Manual v2"
    assert doc.is_confidential is True
    assert doc.status is S.DRAFT
    assert doc.lock_version == 2
    with pytest.raises(ValidationFailed):
        update_document(s, doc, {"effective_date": "2025-06-01", "expiry_date": "2025-01-01"}, users["author"])


def test_revisions_and_approvals_are_append_only(document_in, s):
    doc = document_in(S.SUBMITTED)
    rev = doc.revisions[0]
    rev.revision_notes = "rewritten history"
    with pytest.raises(ImmutableRecordError):
        s.flush()
    s.rollback()

    approval = get_history(s, doc)[0]
    s.delete(approval)
    with pytest.raises(ImmutableRecordError):
        s.flush()
    s.rollback()
    assert len(get_history(s, doc)) == 1


def test_soft_delete_rules(make_document, attach, document_in, s, users):
    doc = make_document()
    with pytest.raises(Unauthorized):
        delete_document(s, doc, users["other"])
    delete_document(s, doc, users["author"])
    assert doc.is_deleted
    assert get_document(s, doc.id) is None
    assert get_document(s, doc.id, include_deleted=True) is doc
    assert get_document_by_number(s, doc.document_number) is None
    with pytest.raises(ValidationFailed):
        delete_document(s, doc, users["boss"])

    submitted = document_in(S.SUBMITTED)
    with pytest.raises(Unauthorized):
        delete_document(s, submitted, users["author"])
    delete_document(s, submitted, users["boss"])

    published = document_in(S.PUBLISHED)
    with pytest.raises(InvalidTransition):
        delete_document(s, published, users["boss"])
    assert not published.is_deleted


def test_soft_deleted_file_is_kept(make_document, attach, s, users, storage):
    doc = make_document()
    attach(doc)
    delete_document(s, doc, users["author"])
    assert storage.exists(doc.file_path)


def test_list_documents_filters(make_document, s, users, org):
    a = make_document(title="Access Policy")
    b = make_document(title="Backup SOP", creator="other")
    c = make_document(title="Hiring Guide", dept="HR", sect="REC")
    delete_document(s, a, users["author"])

    assert {d.id for d in list_documents(s)} == {b.id, c.id}
    assert [d.id for d in list_documents(s, department_id=org["HR"].id)] == [c.id]
    assert [d.id for d in list_documents(s, creator_id=users["other"].id)] == [b.id]
    assert [d.id for d in list_documents(s, search="backup")] == [b.id]
    assert [d.id for d in list_documents(s, search=b.document_number)] == [b.id]
    assert get_document_by_number(s, f" {b.document_number} ") is b
    assert list_documents(s, status="published") == []


def test_time_since_previous(document_in, s):
    doc = document_in(S.UNDER_REVIEW)
    history = get_history(s, doc)
    gaps = time_since_previous(history)
    assert gaps[0] is None
    assert gaps[1] is not None and gaps[1] >= 0


def test_time_since_previous_minutes():
    class Rec:
        def __init__(self, at):
            self.created_at = at

    t0 = datetime(2025, 8, 1, 9, 0)
    assert time_since_previous([Rec(t0), Rec(t0 + timedelta(minutes=90))]) == [None, 90.0]


def test_record_access_counts_without_bumping_lock_version(make_document, attach, s, users):
    doc = make_document()
    attach(doc)
    version = doc.lock_version
    record_access(s, doc, actor=users["author"], download_type="view")
    record_access(s, doc, actor=users["author"], download_type="download", access_method="api")
    record_access(s, doc, download_type="download", access_method="qr", is_successful=False, error_message="bad token")
    s.refresh(doc)
    assert doc.view_count == 1
    assert doc.download_count == 1
    assert doc.lock_version == version
    rows = s.execute(select(DocumentAccess).where(DocumentAccess.document_id == doc.id)).scalars().all()
    assert len(rows) == 3
    assert [r.is_successful for r in rows].count(False) == 1

    with pytest.raises(ValueError):
        record_access(s, doc, access_method="carrier-pigeon")


def test_read_file(make_document, attach, storage):
    doc = make_document()
    with pytest.raises(ValidationFailed):
        read_file(storage, doc)
    attach(doc, content=b"hello world")
    fobj, name = read_file(storage, doc)
    assert fobj.read() == b"hello world"
    assert name == "manual.pdf"


def test_statistics(make_document, document_in, s):
    make_document()
    document_in(S.SUBMITTED)
    document_in(S.PUBLISHED)
    stats = document_statistics(s)
    assert stats["total"] == 3
    assert stats["by_status"]["draft"] == 1
    assert stats["published"] == 1
    assert stats["pending_review"] == 1
    assert stats["by_department"] == {"IT": 3}


def test_non_text_fields_are_validation_errors(s, users, org):
    with pytest.raises(ValidationFailed) as exc:
        create_document(
            s,
            {
                "title": 42,
                "document_type": ["sop"],
                "department_id": org["IT"].id,
                "section_id": org["IT/DEV"].id,
                "effective_date": 20250101,
            },
            users["author"],
            company_code="AKM",
        )
    errors = exc.value.errors
    assert "Title must be text." in errors
    assert "Document type must be text." in errors
    assert "Effective date must be a date (YYYY-MM-DD)." in errors


def test_update_rejects_non_text_description(make_document, s, users):
    doc = make_document()
    with pytest.raises(ValidationFailed):
        update_document(s, doc, {"description": {"html": "<p>x</p>"}}, users["author"])
    assert doc.description is None
