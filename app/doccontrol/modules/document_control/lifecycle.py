"""
Document lifecycle transitions.

`transition()` is the only writer of Document.status. One call is one unit
of work: status + timestamps + assignment, the approval record and the file
relocation commit together or not at all. The status write is flushed
first; the ORM issues it as UPDATE ... WHERE lock_version = <read value>,
so when two requests race from the same source status only the first
commit wins and the other gets ConcurrentModification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.doccontrol.audit import RequestContext
from app.doccontrol.models import User
from app.doccontrol.modules.document_control.errors import (
    ConcurrentModification,
    InvalidTransition,
    MissingComment,
    MissingFile,
    Unauthorized,
    ValidationFailed,
)
from app.doccontrol.modules.document_control.models import Document, DocumentApproval
from app.doccontrol.modules.document_control.relocation import relocate, undo_relocation
from app.doccontrol.modules.document_control.side_effects import SideEffectDispatcher, TransitionKind
from app.doccontrol.modules.document_control.status import STATUS_TABLE, DocumentStatus, parse_status
from app.doccontrol.rbac import Capability, has_capability, role_at_time
from app.doccontrol.storage import Storage
from app.doccontrol.utils import utcnow

logger = logging.getLogger(__name__)

S = DocumentStatus


@dataclass(frozen=True)
class TransitionRule:
    action: str
    capability: Capability | None = None
    creator_only: bool = False
    requires_file: bool = False
    requires_comment: bool = False
    timestamp_field: str | None = None
    assign_reviewer: bool = False
    assign_approver: bool = False
    # action recorded when the system (no actor) performs the move; None = not allowed
    system_action: str | None = None


TRANSITION_RULES: dict[tuple[DocumentStatus, DocumentStatus], TransitionRule] = {
    (S.DRAFT, S.SUBMITTED): TransitionRule("submitted", creator_only=True, requires_file=True, timestamp_field="submitted_at"),
    (S.NEEDS_REVISION, S.SUBMITTED): TransitionRule("resubmitted", creator_only=True, requires_file=True, timestamp_field="submitted_at"),
    (S.SUBMITTED, S.UNDER_REVIEW): TransitionRule(
        "review_started", Capability.REVIEW, timestamp_field="reviewed_at", assign_reviewer=True
    ),
    (S.SUBMITTED, S.REJECTED): TransitionRule("rejected", Capability.REVIEW, requires_comment=True),
    (S.UNDER_REVIEW, S.NEEDS_REVISION): TransitionRule("revision_requested", Capability.REVIEW, requires_comment=True),
    (S.UNDER_REVIEW, S.VERIFIED): TransitionRule("verified", Capability.REVIEW, timestamp_field="verified_at"),
    (S.UNDER_REVIEW, S.REJECTED): TransitionRule("rejected", Capability.REVIEW, requires_comment=True),
    (S.VERIFIED, S.APPROVED): TransitionRule(
        "approved", Capability.APPROVE, timestamp_field="approved_at", assign_approver=True
    ),
    (S.VERIFIED, S.NEEDS_REVISION): TransitionRule("revision_requested", Capability.REVIEW, requires_comment=True),
    (S.VERIFIED, S.REJECTED): TransitionRule("rejected", Capability.REVIEW, requires_comment=True),
    (S.APPROVED, S.PUBLISHED): TransitionRule("published", Capability.APPROVE, timestamp_field="published_at"),
    (S.PUBLISHED, S.ARCHIVED): TransitionRule(
        "archived", Capability.APPROVE, timestamp_field="archived_at", system_action="archived_expired"
    ),
    (S.REJECTED, S.DRAFT): TransitionRule("reopened", creator_only=True),
}

_table_pairs = {(src, dst) for src, info in STATUS_TABLE.items() for dst in info.next_statuses}
if _table_pairs != set(TRANSITION_RULES):
    raise RuntimeError("TRANSITION_RULES out of sync with STATUS_TABLE")


def _authorize(document: Document, rule: TransitionRule, actor: User | None, system: bool) -> None:
    if system:
        if rule.system_action is None:
            raise Unauthorized("This transition cannot be performed by the system.", action=rule.action)
        return
    if actor is None or not actor.is_active:
        raise Unauthorized("An active user is required for this transition.", action=rule.action)
    if rule.creator_only and actor.id != document.creator_id:
        raise Unauthorized("Only the document creator can perform this action.", action=rule.action)
    if rule.capability is not None and not has_capability(actor, rule.capability):
        raise Unauthorized(
            "You do not have permission to perform this action.",
            action=rule.action,
            required=rule.capability.value,
        )


def check_transition(
    document: Document,
    target: DocumentStatus | str,
    *,
    actor: User | None,
    comment: str | None = None,
    system: bool = False,
) -> TransitionRule:
    """Run every precondition without touching the document. Raises the specific error kind."""
    if comment is not None and not isinstance(comment, str):
        raise ValidationFailed(["Comment must be text."])
    try:
        target = parse_status(target)
    except ValueError as e:
        raise InvalidTransition(str(e)) from None
    current = document.status
    if document.deleted_at is not None:
        raise InvalidTransition("Deleted documents cannot change status.", current=current.value, target=target.value)
    if not current.can_transition_to(target):
        raise InvalidTransition(
            f"Cannot move a document from {current.label} to {target.label}.",
            current=current.value,
            target=target.value,
        )
    rule = TRANSITION_RULES[(current, target)]
    _authorize(document, rule, actor, system)
    if rule.requires_file and not document.has_file():
        raise MissingFile("Attach a file before submitting the document.")
    if rule.requires_comment and not (comment or "").strip():
        raise MissingComment("A comment is required for this action.", action=rule.action)
    return rule


def transition(
    s: Session,
    document: Document,
    target: DocumentStatus | str,
    *,
    actor: User | None,
    storage: Storage,
    comment: str | None = None,
    dispatcher: SideEffectDispatcher | None = None,
    context: RequestContext | None = None,
    system: bool = False,
    now: datetime | None = None,
) -> Document:
    rule = check_transition(document, target, actor=actor, comment=comment, system=system)
    target = parse_status(target)
    previous = document.status
    comment = (comment or "").strip() or None
    now = now or utcnow()
    ctx = context or (RequestContext.system() if system else RequestContext())
    action = rule.system_action if system else rule.action

    moved: tuple[str, str] | None = None
    try:
        with document.status_change():
            document.status = target
        if rule.timestamp_field:
            setattr(document, rule.timestamp_field, now)
        if rule.assign_reviewer and actor is not None:
            document.current_reviewer_id = actor.id
        if rule.assign_approver and actor is not None:
            document.approved_by_id = actor.id
        s.flush()

        latest = document.latest_revision
        s.add(
            DocumentApproval(
                document_id=document.id,
                document_revision_id=latest.id if latest is not None else None,
                previous_status=previous,
                new_status=target,
                action=action,
                user_id=None if system else actor.id,
                user_role="system" if system else role_at_time(actor),
                comments=comment,
                ip_address=ctx.ip_address,
                user_agent=(ctx.user_agent or "")[:512] or None,
                request_id=ctx.request_id,
                created_at=now,
            )
        )
        s.flush()

        moved = relocate(storage, document.file_path, target, now)
        if moved is not None:
            document.file_path = moved[1]
            s.flush()

        s.commit()
    except StaleDataError as e:
        s.rollback()
        undo_relocation(storage, moved)
        logger.info("Concurrent transition on %s (%s -> %s)", document.id, previous.value, target.value)
        raise ConcurrentModification(
            "The document was changed by someone else. Reload it and try again.",
            document_id=document.id,
        ) from e
    except Exception:
        s.rollback()
        undo_relocation(storage, moved)
        raise

    logger.info(
        "Document %s: %s -> %s by %s",
        document.document_number,
        previous.value,
        target.value,
        "system" if system else actor.email,
    )

    if dispatcher is not None:
        kind = TransitionKind(action)
        dispatcher.dispatch(
            kind,
            document.id,
            None if system else actor.id,
            {"comment": comment, "previous_status": previous.value, "new_status": target.value},
        )
    return document


def available_transitions(document: Document, actor: User | None) -> list[dict]:
    """Targets `actor` is allowed to request right now, with the input each one needs."""
    out = []
    if document.deleted_at is not None:
        return out
    for target in sorted(document.status.next_statuses, key=list(S).index):
        rule = TRANSITION_RULES[(document.status, target)]
        try:
            _authorize(document, rule, actor, system=False)
        except Unauthorized:
            continue
        out.append(
            {
                "status": target.value,
                "label": target.label,
                "action": rule.action,
                "requires_comment": rule.requires_comment,
                "blocked": "missing_file" if rule.requires_file and not document.has_file() else None,
            }
        )
    return out
