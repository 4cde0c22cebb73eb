from __future__ import annotations

import io
import logging
import re
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.doccontrol.audit import RequestContext, record_event
from app.doccontrol.models import Department, Section, User
from app.doccontrol.modules.document_control.errors import (
    ConcurrentModification,
    InvalidTransition,
    StorageFailure,
    Unauthorized,
    ValidationFailed,
)
from app.doccontrol.modules.document_control.models import (
    ACCESS_METHODS,
    ACCESS_TYPES,
    Document,
    DocumentAccess,
    DocumentApproval,
    DocumentRevision,
)
from app.doccontrol.modules.document_control.numbering import generate_document_number
from app.doccontrol.modules.document_control.relocation import build_storage_key, revision_storage_key, stored_filename
from app.doccontrol.modules.document_control.status import INITIAL_STATUS, DocumentStatus, parse_status
from app.doccontrol.rbac import RoleKey, has_role, role_at_time, user_has_permission
from app.doccontrol.storage import Storage, StorageError
from app.doccontrol.utils import file_digest_and_bytes, file_extension, parse_date, sanitize_upload_filename, utcnow

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)$")

EDITABLE_FIELDS = ("title", "description", "document_type", "is_confidential", "effective_date", "expiry_date", "tags")


def generate_next_version(current: str | None, is_major: bool = False) -> str:
    """
    "major.minor" bump. No current version means this is the first revision.

    >>> generate_next_version("1.0")
    '1.1'
    >>> generate_next_version("1.3", is_major=True)
    '2.0'
    """
    cur = (current or "").strip()
    if not cur:
        return "1.0"
    m = _VERSION_RE.match(cur)
    if not m:
        raise ValueError(f"Unsupported version format: {current!r}")
    major, minor = int(m.group(1)), int(m.group(2))
    if is_major:
        return f"{major + 1}.0"
    return f"{major}.{minor + 1}"


def _clean_tags(raw: Any, errors: list[str]) -> list[str] | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        errors.append("Tags must be a list of strings.")
        return None
    tags = []
    for t in raw:
        t = str(t).strip()
        if t and t not in tags:
            tags.append(t[:64])
    return tags or None


def _text(data: dict[str, Any], key: str, errors: list[str]) -> str | None:
    """Stripped string value of `key`; None (and an error) when it is not text."""
    raw = data.get(key)
    if raw is None:
        return ""
    if not isinstance(raw, str):
        errors.append(f"{key.replace('_', ' ').capitalize()} must be text.")
        return None
    return raw.strip()


def _validate_fields(data: dict[str, Any], errors: list[str], *, partial: bool) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "title" in data or not partial:
        title = _text(data, "title", errors)
        if title == "":
            errors.append("Title is required.")
        elif title is not None and len(title) > 255:
            errors.append("Title must be at most 255 characters.")
        out["title"] = title
    if "description" in data:
        out["description"] = _text(data, "description", errors) or None
    if "document_type" in data or not partial:
        out["document_type"] = (_text(data, "document_type", errors) or "")[:64] or "general"
    if "is_confidential" in data:
        out["is_confidential"] = bool(data.get("is_confidential"))
    for key in ("effective_date", "expiry_date"):
        if key in data:
            try:
                out[key] = parse_date(data.get(key))
            except (TypeError, ValueError):
                errors.append(f"{key.replace('_', ' ').capitalize()} must be a date (YYYY-MM-DD).")
    if "tags" in data:
        out["tags"] = _clean_tags(data.get("tags"), errors)
    return out


def _check_dates(effective, expiry, errors: list[str]) -> None:
    if effective and expiry and expiry < effective:
        errors.append("Expiry date cannot be before the effective date.")


def create_document(
    s: Session,
    data: dict[str, Any],
    creator: User,
    *,
    company_code: str,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Document:
    """
    Create a Draft document with a freshly allocated number.
    Raises ValidationFailed with every problem found, or Unauthorized.
    """
    if creator is None or not user_has_permission(creator, "docs.create"):
        raise Unauthorized("You do not have permission to create documents.")

    errors: list[str] = []
    fields = _validate_fields(data, errors, partial=False)

    department = section = None
    try:
        department_id = int(data.get("department_id") or 0)
        section_id = int(data.get("section_id") or 0)
    except (TypeError, ValueError):
        department_id = section_id = 0
    if department_id:
        department = s.get(Department, department_id)
    if department is None or not department.is_active:
        errors.append("Department is required.")
    if section_id:
        section = s.get(Section, section_id)
    if section is None or not section.is_active:
        errors.append("Section is required.")
    elif department is not None and section.department_id != department.id:
        errors.append("Section does not belong to the selected department.")
    _check_dates(fields.get("effective_date"), fields.get("expiry_date"), errors)
    if errors:
        raise ValidationFailed(errors)

    now = now or utcnow()
    number = generate_document_number(s, department, section, company_code=company_code, now=now)
    doc = Document(
        document_number=number,
        status=INITIAL_STATUS,
        version="1.0",
        department_id=department.id,
        section_id=section.id,
        creator_id=creator.id,
        created_at=now,
        updated_at=now,
        **fields,
    )
    try:
        s.add(doc)
        s.flush()
        record_event(
            s,
            actor=creator,
            action="doc.create",
            entity_type="Document",
            entity_id=str(doc.id),
            metadata={"document_number": number, "title": doc.title},
            context=context,
        )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        logger.exception("Could not create document %s", number)
        raise
    logger.info("Document %s created by %s", number, creator.email)
    return doc


def can_edit(document: Document, actor: User | None) -> bool:
    """Status table decides which roles may edit; ownership decides which documents."""
    if actor is None or not actor.is_active or document.deleted_at is not None:
        return False
    if not user_has_permission(actor, "docs.edit"):
        return False
    if not document.status.can_be_edited_by(role_at_time(actor)):
        return False
    if has_role(actor, RoleKey.SUPERADMIN) or actor.id == document.creator_id:
        return True
    return has_role(actor, RoleKey.ADMIN) and actor.department_id == document.department_id


def update_document(
    s: Session,
    document: Document,
    data: dict[str, Any],
    actor: User,
    *,
    context: RequestContext | None = None,
) -> Document:
    """Edit descriptive fields. Status, number and file are not editable here."""
    if not can_edit(document, actor):
        raise Unauthorized("You cannot edit this document in its current status.", status=document.status.value)
    errors: list[str] = []
    fields = _validate_fields({k: v for k, v in data.items() if k in EDITABLE_FIELDS}, errors, partial=True)
    _check_dates(
        fields.get("effective_date", document.effective_date),
        fields.get("expiry_date", document.expiry_date),
        errors,
    )
    if errors:
        raise ValidationFailed(errors)

    changed = {k: v for k, v in fields.items() if getattr(document, k) != v}
    if not changed:
        return document
    try:
        for k, v in changed.items():
            setattr(document, k, v)
        record_event(
            s,
            actor=actor,
            action="doc.update",
            entity_type="Document",
            entity_id=str(document.id),
            metadata={"fields": sorted(changed)},
            context=context,
        )
        s.commit()
    except StaleDataError as e:
        s.rollback()
        raise ConcurrentModification("The document was changed by someone else. Reload it and try again.") from e
    except SQLAlchemyError:
        s.rollback()
        raise
    return document


def attach_file(
    s: Session,
    document: Document,
    file_bytes: bytes,
    original_name: str,
    actor: User,
    *,
    storage: Storage,
    content_type: str | None = None,
    is_major: bool = False,
    notes: str | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Document:
    """
    Store a new working file and an immutable revision copy, bump the version.

    The working file lands in the folder of the current status so the
    relocation policy keeps holding. The superseded working file is removed
    only after the commit succeeded.
    """
    if document.deleted_at is not None:
        raise ValidationFailed(["Document has been deleted."])
    if not can_edit(document, actor):
        raise Unauthorized("You cannot change the file of this document in its current status.", status=document.status.value)
    if not file_bytes:
        raise ValidationFailed(["File is empty."])

    now = now or utcnow()
    filename = sanitize_upload_filename(original_name)
    ext = file_extension(filename)
    sha256, size = file_digest_and_bytes(file_bytes)
    latest = document.latest_revision
    version = generate_next_version(latest.version if latest is not None else None, is_major)

    working_key = build_storage_key(document.status, stored_filename(ext), now)
    revision_key = revision_storage_key(document.document_number, version, filename)
    written: list[str] = []
    try:
        for key in (working_key, revision_key):
            storage.put_bytes(key, file_bytes, content_type=content_type)
            written.append(key)
    except StorageError as e:
        logger.error("Upload for %s failed at %s: %s", document.document_number, working_key, e)
        _discard(storage, written)
        raise StorageFailure("Could not store the uploaded file.", path=working_key) from e

    old_path = document.file_path
    try:
        document.original_filename = filename
        document.file_path = working_key
        document.file_type = ext or None
        document.content_type = content_type
        document.file_size = size
        document.file_hash = sha256
        document.version = version
        document.revisions.append(
            DocumentRevision(
                version=version,
                status=document.status,
                original_filename=filename,
                file_path=revision_key,
                file_type=ext or None,
                content_type=content_type,
                file_size=size,
                file_hash=sha256,
                revision_notes=(notes or "").strip() or None,
                created_by_id=actor.id,
                created_at=now,
            )
        )
        record_event(
            s,
            actor=actor,
            action="doc.attach_file",
            entity_type="Document",
            entity_id=str(document.id),
            metadata={"version": version, "filename": filename, "sha256": sha256, "size_bytes": size},
            context=context,
        )
        s.commit()
    except StaleDataError as e:
        s.rollback()
        _discard(storage, written)
        raise ConcurrentModification("The document was changed by someone else. Reload it and try again.") from e
    except SQLAlchemyError:
        s.rollback()
        _discard(storage, written)
        raise

    if old_path and old_path != working_key:
        _discard(storage, [old_path])
    logger.info("Attached %s to %s as v%s", filename, document.document_number, version)
    return document


def _discard(storage: Storage, keys: Sequence[str]) -> None:
    for key in keys:
        try:
            storage.delete(key)
        except StorageError:
            logger.warning("Could not delete stored file %s", key, exc_info=True)


def delete_document(
    s: Session,
    document: Document,
    actor: User,
    *,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Document:
    """Soft delete. The stored file stays; published documents are archived, never deleted."""
    if document.deleted_at is not None:
        raise ValidationFailed(["Document is already deleted."])
    if document.is_published():
        raise InvalidTransition("Published documents cannot be deleted. Archive them instead.")
    allowed = has_role(actor, RoleKey.SUPERADMIN) or (
        actor.id == document.creator_id and document.status is DocumentStatus.DRAFT
    )
    if not actor.is_active or not allowed:
        raise Unauthorized("You cannot delete this document.")
    try:
        document.deleted_at = now or utcnow()
        record_event(
            s,
            actor=actor,
            action="doc.delete",
            entity_type="Document",
            entity_id=str(document.id),
            metadata={"document_number": document.document_number, "status": document.status.value},
            context=context,
        )
        s.commit()
    except StaleDataError as e:
        s.rollback()
        raise ConcurrentModification("The document was changed by someone else. Reload it and try again.") from e
    except SQLAlchemyError:
        s.rollback()
        raise
    logger.info("Document %s deleted by %s", document.document_number, actor.email)
    return document


def active_documents():
    return select(Document).where(Document.deleted_at.is_(None))


def get_document(s: Session, document_id: int, *, include_deleted: bool = False) -> Document | None:
    doc = s.get(Document, document_id)
    if doc is None or (doc.deleted_at is not None and not include_deleted):
        return None
    return doc


def get_document_by_number(s: Session, document_number: str) -> Document | None:
    return s.execute(active_documents().where(Document.document_number == document_number.strip())).scalar_one_or_none()


def list_documents(
    s: Session,
    *,
    status: DocumentStatus | str | None = None,
    department_id: int | None = None,
    section_id: int | None = None,
    creator_id: int | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Document]:
    q = active_documents()
    if status:
        q = q.where(Document.status == parse_status(status))
    if department_id:
        q = q.where(Document.department_id == department_id)
    if section_id:
        q = q.where(Document.section_id == section_id)
    if creator_id:
        q = q.where(Document.creator_id == creator_id)
    if search:
        like = f"%{search.strip()}%"
        q = q.where(or_(Document.title.ilike(like), Document.document_number.ilike(like)))
    q = q.order_by(Document.created_at.desc(), Document.id.desc()).limit(max(1, min(limit, 500))).offset(max(0, offset))
    return list(s.execute(q).scalars().all())


def get_history(s: Session, document: Document) -> list[DocumentApproval]:
    return list(
        s.execute(
            select(DocumentApproval)
            .where(DocumentApproval.document_id == document.id)
            .order_by(DocumentApproval.created_at.asc(), DocumentApproval.id.asc())
        )
        .scalars()
        .all()
    )


def time_since_previous(history: Sequence[DocumentApproval]) -> list[float | None]:
    """Minutes between each record and the one before it (None for the first)."""
    out: list[float | None] = []
    prev = None
    for rec in history:
        out.append(None if prev is None else round((rec.created_at - prev.created_at).total_seconds() / 60.0, 2))
        prev = rec
    return out


def record_access(
    s: Session,
    document: Document,
    *,
    actor: User | None = None,
    download_type: str = "view",
    access_method: str = "web",
    is_successful: bool = True,
    error_message: str | None = None,
    additional_data: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> DocumentAccess:
    """
    Log one view/download attempt and bump the document counters.
    Counters are incremented in SQL so they never collide with lifecycle writes.
    """
    if download_type not in ACCESS_TYPES:
        raise ValueError(f"Unknown access type: {download_type!r}")
    if access_method not in ACCESS_METHODS:
        raise ValueError(f"Unknown access method: {access_method!r}")
    ctx = context or RequestContext()
    row = DocumentAccess(
        document_id=document.id,
        user_id=actor.id if actor else None,
        download_type=download_type,
        access_method=access_method,
        is_successful=is_successful,
        error_message=(error_message or "")[:512] or None,
        ip_address=ctx.ip_address,
        user_agent=(ctx.user_agent or "")[:512] or None,
        additional_data=additional_data,
    )
    try:
        s.add(row)
        if is_successful:
            counter = Document.download_count if download_type == "download" else Document.view_count
            s.execute(
                update(Document)
                .where(Document.id == document.id)
                .values({counter.key: counter + 1})
                .execution_options(synchronize_session=False)
            )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        raise
    return row


def read_file(storage: Storage, document: Document) -> tuple[io.BytesIO, str]:
    if not document.has_file():
        raise ValidationFailed(["Document has no file attached."])
    try:
        data = storage.get_bytes(document.file_path)
    except StorageError as e:
        logger.error("Could not read %s for %s: %s", document.file_path, document.document_number, e)
        raise StorageFailure("Stored file could not be read.", path=document.file_path) from e
    bio = io.BytesIO(data)
    bio.seek(0)
    return bio, document.original_filename


def document_statistics(s: Session) -> dict[str, Any]:
    by_status = {st.value: 0 for st in DocumentStatus}
    for st, n in s.execute(
        select(Document.status, func.count(Document.id)).where(Document.deleted_at.is_(None)).group_by(Document.status)
    ).all():
        by_status[parse_status(st).value] = int(n)

    by_department = {}
    for code, n in s.execute(
        select(Department.code, func.count(Document.id))
        .join(Department, Department.id == Document.department_id)
        .where(Document.deleted_at.is_(None))
        .group_by(Department.code)
        .order_by(Department.code)
    ).all():
        by_department[code] = int(n)

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_department": by_department,
        "published": by_status[DocumentStatus.PUBLISHED.value],
        "pending_review": by_status[DocumentStatus.SUBMITTED.value] + by_status[DocumentStatus.UNDER_REVIEW.value],
        "pending_approval": by_status[DocumentStatus.VERIFIED.value],
    }
