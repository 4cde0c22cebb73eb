from datetime import date, datetime, timedelta

from sqlalchemy import select

from app.doccontrol.modules.document_control.jobs import (
    archive_expired_documents,
    expiring_documents,
    notify_expiring_documents,
    prune_access_records,
)
from app.doccontrol.modules.document_control.models import DocumentAccess
from app.doccontrol.modules.document_control.service import get_history, record_access
from app.doccontrol.modules.document_control.side_effects import SideEffectDispatcher, TransitionKind
from app.doccontrol.modules.document_control.status import DocumentStatus

S = DocumentStatus

TODAY = date(2025, 8, 20)


def test_archive_expired_documents(document_in, s, storage, dispatcher):
    expired = document_in(S.PUBLISHED)
    fresh = document_in(S.PUBLISHED)
    never = document_in(S.PUBLISHED)
    draft = document_in(S.DRAFT)
    for doc, expiry in ((expired, TODAY - timedelta(days=1)), (fresh, TODAY), (draft, TODAY - timedelta(days=10))):
        doc.expiry_date = expiry
    s.commit()

    archived = archive_expired_documents(s, storage=storage, dispatcher=dispatcher, today=TODAY)

    assert archived == [expired.document_number]
    assert expired.status is S.ARCHIVED
    assert expired.file_path.startswith("documents/archived/")
    last = get_history(s, expired)[-1]
    assert last.user_id is None and last.user_role == "system" and last.action == "archived_expired"
    assert fresh.status is S.PUBLISHED
    assert never.status is S.PUBLISHED
    assert draft.status is S.DRAFT

    assert archive_expired_documents(s, storage=storage, today=TODAY) == []


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, document, actor, extra):
        self.events.append((event, document.document_number, extra.get("days_until_expiry")))


def test_expiry_warnings(app, document_in, s):
    in_7 = document_in(S.PUBLISHED)
    in_8 = document_in(S.PUBLISHED)
    in_30 = document_in(S.PUBLISHED)
    in_7.expiry_date = TODAY + timedelta(days=7)
    in_8.expiry_date = TODAY + timedelta(days=8)
    in_30.expiry_date = TODAY + timedelta(days=30)
    s.commit()

    found = expiring_documents(s, today=TODAY)
    assert [(d.id, days) for d, days in found] == [(in_7.id, 7), (in_30.id, 30)]

    notifier = RecordingNotifier()
    dispatcher = SideEffectDispatcher(app.extensions["sqlalchemy_sessionmaker"], notifier=notifier, mode="inline")
    assert notify_expiring_documents(s, dispatcher=dispatcher, today=TODAY, warning_days=(7,)) == 1
    assert notifier.events == [(TransitionKind.EXPIRING, in_7.document_number, 7)]


def test_prune_access_records(make_document, s):
    doc = make_document()
    record_access(s, doc)
    record_access(s, doc)
    rows = s.execute(select(DocumentAccess).order_by(DocumentAccess.id)).scalars().all()
    rows[0].created_at = datetime(2020, 1, 1)
    s.commit()

    assert prune_access_records(s, retention_days=365, now=datetime(2025, 8, 20)) == 1
    assert len(s.execute(select(DocumentAccess)).scalars().all()) == 1
