"""
Post-commit side effects of lifecycle transitions.

Everything here runs after the transition committed and works from ids,
opening its own session. Failures are logged and never reach the caller.
Jobs must tolerate running twice: notifications may repeat, QR generation
is skipped when the document already has a code.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session, object_session, sessionmaker

from app.doccontrol.db import session_scope
from app.doccontrol.models import User
from app.doccontrol.modules.document_control.models import Document
from app.doccontrol.modules.document_control.qr import QrGenerator
from app.doccontrol.rbac import Capability, RoleKey, has_capability, has_role

logger = logging.getLogger(__name__)


class TransitionKind(str, enum.Enum):
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    REVIEW_STARTED = "review_started"
    REVISION_REQUESTED = "revision_requested"
    VERIFIED = "verified"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"
    REOPENED = "reopened"
    ARCHIVED = "archived"
    ARCHIVED_EXPIRED = "archived_expired"
    # not a transition; emitted by the expiry job
    EXPIRING = "expiring"


class Notifier(Protocol):
    def notify(self, event: TransitionKind, document: Document, actor: User | None, extra: dict[str, Any]) -> None:
        ...


def reviewers_for(s: Session, document: Document) -> list[User]:
    users = s.execute(select(User).where(User.is_active.is_(True)).order_by(User.id)).scalars().all()
    out = []
    for u in users:
        if not has_capability(u, Capability.REVIEW):
            continue
        # admins review their own department; superadmins review everything
        if has_role(u, RoleKey.SUPERADMIN) or u.department_id == document.department_id:
            out.append(u)
    return out


def approvers_for(s: Session, document: Document) -> list[User]:
    users = s.execute(select(User).where(User.is_active.is_(True)).order_by(User.id)).scalars().all()
    return [u for u in users if has_capability(u, Capability.APPROVE)]


class LogNotifier:
    """Resolves recipients and logs the notification; delivery is someone else's job."""

    def recipients(self, event: TransitionKind, document: Document) -> list[User]:
        s = object_session(document)
        if event in (TransitionKind.SUBMITTED, TransitionKind.RESUBMITTED):
            return reviewers_for(s, document) if s is not None else []
        if event is TransitionKind.VERIFIED:
            return approvers_for(s, document) if s is not None else []
        return [document.creator] if document.creator is not None else []

    def notify(self, event: TransitionKind, document: Document, actor: User | None, extra: dict[str, Any]) -> None:
        to = [u.email for u in self.recipients(event, document) if actor is None or u.id != actor.id]
        if not to:
            logger.info("No recipients for %s on %s", event.value, document.document_number)
            return
        logger.info(
            "Notify %s: document=%s actor=%s recipients=%s comment=%r",
            event.value,
            document.document_number,
            actor.email if actor else "system",
            ",".join(to),
            extra.get("comment"),
        )


class SideEffectDispatcher:
    def __init__(
        self,
        sessionmaker_: sessionmaker,
        *,
        notifier: Notifier,
        qr_generator: QrGenerator | None = None,
        mode: str = "thread",
        max_workers: int = 2,
    ) -> None:
        if mode not in ("thread", "inline"):
            raise ValueError(f"Unknown side effect mode: {mode!r}")
        self.sessionmaker = sessionmaker_
        self.notifier = notifier
        self.qr_generator = qr_generator
        self.mode = mode
        self._executor = (
            ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="doc-side-effects")
            if mode == "thread"
            else None
        )

    def dispatch(
        self,
        event: TransitionKind,
        document_id: int,
        actor_id: int | None,
        extra: dict[str, Any] | None = None,
    ) -> Future | None:
        extra = dict(extra or {})
        try:
            if self._executor is None:
                self.run(event, document_id, actor_id, extra)
                return None
            return self._executor.submit(self.run, event, document_id, actor_id, extra)
        except Exception:
            logger.exception("Could not dispatch %s for document %s", event.value, document_id)
            return None

    def run(self, event: TransitionKind, document_id: int, actor_id: int | None, extra: dict[str, Any]) -> None:
        try:
            with session_scope(self.sessionmaker) as s:
                document = s.get(Document, document_id)
                if document is None:
                    logger.warning("Side effect %s skipped: document %s not found", event.value, document_id)
                    return
                actor = s.get(User, actor_id) if actor_id is not None else None
                self._notify(event, document, actor, extra)
                if event is TransitionKind.PUBLISHED:
                    self._ensure_qr(s, document)
        except Exception:
            logger.exception("Side effect %s failed for document %s", event.value, document_id)

    def _notify(self, event: TransitionKind, document: Document, actor: User | None, extra: dict[str, Any]) -> None:
        try:
            self.notifier.notify(event, document, actor, extra)
        except Exception:
            logger.exception("Notification %s failed for %s", event.value, document.document_number)

    def _ensure_qr(self, s: Session, document: Document) -> None:
        if self.qr_generator is None or document.has_qr_code() or not document.is_published():
            return
        path, token = self.qr_generator.generate(document)
        # SQL-side write: leaves lock_version alone and only fills an empty slot
        res = s.execute(
            update(Document)
            .where(Document.id == document.id, Document.qr_code_token.is_(None))
            .values(qr_code_path=path, qr_code_token=token)
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            logger.info("QR for %s already filled by another worker; dropping %s", document.document_number, path)
            self.qr_generator.discard(path)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
