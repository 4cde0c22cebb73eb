"""
Periodic maintenance. Run from scripts/run_maintenance.py (cron) or tests.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.doccontrol.audit import RequestContext
from app.doccontrol.modules.document_control.errors import DocumentControlError
from app.doccontrol.modules.document_control.lifecycle import transition
from app.doccontrol.modules.document_control.models import Document, DocumentAccess
from app.doccontrol.modules.document_control.side_effects import SideEffectDispatcher, TransitionKind
from app.doccontrol.modules.document_control.status import DocumentStatus
from app.doccontrol.storage import Storage
from app.doccontrol.utils import utcnow

logger = logging.getLogger(__name__)

JOB_AGENT = "doccontrol-maintenance"


def archive_expired_documents(
    s: Session,
    *,
    storage: Storage,
    dispatcher: SideEffectDispatcher | None = None,
    today: date | None = None,
) -> list[str]:
    """Published documents whose expiry_date has passed move to Archived. Returns archived numbers."""
    today = today or utcnow().date()
    ids = s.execute(
        select(Document.id)
        .where(
            Document.status == DocumentStatus.PUBLISHED,
            Document.deleted_at.is_(None),
            Document.expiry_date.is_not(None),
            Document.expiry_date < today,
        )
        .order_by(Document.id)
    ).scalars().all()

    archived = []
    for doc_id in ids:
        doc = s.get(Document, doc_id)
        if doc is None:
            continue
        try:
            transition(
                s,
                doc,
                DocumentStatus.ARCHIVED,
                actor=None,
                system=True,
                storage=storage,
                dispatcher=dispatcher,
                context=RequestContext.system(JOB_AGENT),
            )
        except DocumentControlError as e:
            logger.warning("Could not archive expired document %s: %s", doc.document_number, e.message)
            continue
        archived.append(doc.document_number)
    if archived:
        logger.info("Archived %d expired document(s)", len(archived))
    return archived


def expiring_documents(s: Session, *, today: date | None = None, warning_days: tuple[int, ...] = (30, 14, 7, 3, 1)) -> list[tuple[Document, int]]:
    """Published documents expiring in exactly one of `warning_days` days."""
    today = today or utcnow().date()
    targets = {today + timedelta(days=d): d for d in warning_days}
    if not targets:
        return []
    docs = s.execute(
        select(Document)
        .where(
            Document.status == DocumentStatus.PUBLISHED,
            Document.deleted_at.is_(None),
            Document.expiry_date.in_(list(targets)),
        )
        .order_by(Document.expiry_date, Document.id)
    ).scalars().all()
    return [(d, targets[d.expiry_date]) for d in docs]


def notify_expiring_documents(
    s: Session,
    *,
    dispatcher: SideEffectDispatcher,
    today: date | None = None,
    warning_days: tuple[int, ...] = (30, 14, 7, 3, 1),
) -> int:
    found = expiring_documents(s, today=today, warning_days=warning_days)
    for doc, days in found:
        dispatcher.dispatch(TransitionKind.EXPIRING, doc.id, None, {"days_until_expiry": days})
    return len(found)


def prune_access_records(s: Session, *, retention_days: int = 365, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    res = s.execute(delete(DocumentAccess).where(DocumentAccess.created_at < cutoff))
    s.commit()
    n = int(res.rowcount or 0)
    if n:
        logger.info("Pruned %d access record(s) older than %s", n, cutoff.date().isoformat())
    return n
