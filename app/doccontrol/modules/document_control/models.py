from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Iterator
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column, object_session, relationship, validates

from app.doccontrol.models import Base
from app.doccontrol.modules.document_control.status import (
    PROGRESSION_ORDER,
    REGRESSION_STATUSES,
    DocumentStatus,
    parse_status,
)
from app.doccontrol.utils import format_file_size, utcnow

if TYPE_CHECKING:
    from app.doccontrol.models import Department, Section, User


class StatusWriteError(RuntimeError):
    """Raised when code outside the lifecycle tries to assign Document.status."""


class ImmutableRecordError(RuntimeError):
    """Raised when an append-only row (revision, approval, access) is updated or deleted."""


def _status_column_type() -> Enum:
    return Enum(
        DocumentStatus,
        name="document_status",
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_status_created", "status", "created_at"),
        Index("idx_documents_department_status", "department_id", "status"),
        Index("idx_documents_section_status", "section_id", "status"),
        Index("idx_documents_creator", "creator_id"),
        Index("idx_documents_qr_token", "qr_code_token"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Format: AKM-IT-DEV-2025-08-0001. Assigned once by create_document().
    document_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False, default="general")  # SOP, Policy, Manual...

    status: Mapped[DocumentStatus] = mapped_column(_status_column_type(), nullable=False, default=DocumentStatus.DRAFT)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")

    # Current working file (null until attach_file)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # pdf, docx...
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # sha256

    is_confidential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False)
    section_id: Mapped[int] = mapped_column(ForeignKey("sections.id", ondelete="RESTRICT"), nullable=False)
    creator_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    current_reviewer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Workflow timestamps
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Public verification
    qr_code_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    qr_code_token: Mapped[str | None] = mapped_column(String(64), nullable=True)

    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Optimistic concurrency: every ORM UPDATE is guarded by WHERE lock_version = <read value>.
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": lock_version}

    department: Mapped["Department"] = relationship(lazy="selectin")
    section: Mapped["Section"] = relationship(lazy="selectin")
    creator: Mapped["User"] = relationship(foreign_keys=[creator_id], lazy="selectin")
    current_reviewer: Mapped["User | None"] = relationship(foreign_keys=[current_reviewer_id], lazy="selectin")
    approved_by: Mapped["User | None"] = relationship(foreign_keys=[approved_by_id], lazy="selectin")

    revisions: Mapped[list["DocumentRevision"]] = relationship(
        back_populates="document",
        order_by="DocumentRevision.id",
        lazy="selectin",
    )
    approvals: Mapped[list["DocumentApproval"]] = relationship(
        order_by=lambda: (DocumentApproval.created_at, DocumentApproval.id),
        lazy="select",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} number={self.document_number!r} status={self.status}>"

    @validates("status")
    def _guard_status(self, key: str, value: DocumentStatus | str) -> DocumentStatus:
        new = parse_status(value)
        if getattr(self, "_status_unlocked", False):
            return new
        if sa_inspect(self).transient and new is DocumentStatus.DRAFT:
            return new
        raise StatusWriteError("Document.status may only change through the lifecycle transition().")

    @validates("document_number")
    def _guard_number(self, key: str, value: str) -> str:
        current = self.__dict__.get("document_number")
        if current and current != value:
            raise StatusWriteError("document_number is immutable once assigned.")
        return value

    @contextmanager
    def status_change(self) -> Iterator[None]:
        """Unlocks the status validator for the lifecycle module only."""
        self._status_unlocked = True
        try:
            yield
        finally:
            self._status_unlocked = False

    def has_file(self) -> bool:
        return bool(self.file_path) and bool(self.original_filename)

    def is_published(self) -> bool:
        return self.status is DocumentStatus.PUBLISHED

    def is_publicly_accessible(self) -> bool:
        return self.is_published() and not self.is_confidential and self.deleted_at is None

    def has_qr_code(self) -> bool:
        return bool(self.qr_code_path) and bool(self.qr_code_token)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def formatted_file_size(self) -> str:
        return format_file_size(self.file_size)

    @property
    def latest_revision(self) -> "DocumentRevision | None":
        return self.revisions[-1] if self.revisions else None


class DocumentRevision(Base):
    """Immutable snapshot of a document's file + status at a version."""

    __tablename__ = "document_revisions"
    __table_args__ = (
        UniqueConstraint("document_id", "version", name="uq_document_revision_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[str] = mapped_column(String(16), nullable=False)  # "1.0", "1.1", "2.0"
    status: Mapped[DocumentStatus] = mapped_column(_status_column_type(), nullable=False)

    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)  # revision copy, never relocated
    file_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    revision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship(back_populates="revisions", lazy="selectin")

    @property
    def version_type(self) -> str:
        parts = self.version.split(".")
        if len(parts) >= 2 and int(parts[1] or 0) != 0:
            return "minor"
        return "major"


ACTION_LABELS = {
    "submitted": "Submitted for Review",
    "resubmitted": "Resubmitted after Revision",
    "review_started": "Started Review",
    "revision_requested": "Requested Revision",
    "verified": "Verified Document",
    "approved": "Approved Document",
    "published": "Published Document",
    "rejected": "Rejected Document",
    "reopened": "Reopened as Draft",
    "archived": "Archived Document",
    "archived_expired": "Archived (expired)",
}


class DocumentApproval(Base):
    """
    Append-only lifecycle audit record: exactly one per committed transition.
    Ordering by (created_at, id) reconstructs the full history.
    """

    __tablename__ = "document_approvals"
    __table_args__ = (
        Index("idx_document_approvals_document", "document_id", "created_at"),
        Index("idx_document_approvals_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    document_revision_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_revisions.id", ondelete="SET NULL"),
        nullable=True,
    )

    previous_status: Mapped[DocumentStatus] = mapped_column(_status_column_type(), nullable=False)
    new_status: Mapped[DocumentStatus] = mapped_column(_status_column_type(), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)  # null = system
    user_role: Mapped[str] = mapped_column(String(32), nullable=False)  # role at time of action
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship(lazy="selectin")

    @property
    def action_label(self) -> str:
        return ACTION_LABELS.get(self.action, self.action.replace("_", " ").capitalize())

    def is_regression(self) -> bool:
        return self.new_status in REGRESSION_STATUSES

    def is_progression(self) -> bool:
        if self.is_regression():
            return False
        try:
            prev = PROGRESSION_ORDER.index(self.previous_status)
            new = PROGRESSION_ORDER.index(self.new_status)
        except ValueError:
            return False
        return new > prev


ACCESS_METHODS = ("web", "api", "qr", "direct_link")
ACCESS_TYPES = ("view", "download")


class DocumentAccess(Base):
    """One row per view/download attempt. High volume, pruned by retention job."""

    __tablename__ = "document_accesses"
    __table_args__ = (
        Index("idx_document_accesses_document", "document_id", "created_at"),
        Index("idx_document_accesses_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    download_type: Mapped[str] = mapped_column(String(16), nullable=False, default="view")
    access_method: Mapped[str] = mapped_column(String(16), nullable=False, default="web")
    is_successful: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(String(512), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    additional_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class DocumentNumberCounter(Base):
    """Monotonic per department/section/month counter behind document numbers."""

    __tablename__ = "document_number_counters"
    __table_args__ = (
        UniqueConstraint("department_id", "section_id", "period", name="uq_document_number_counter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    section_id: Mapped[int] = mapped_column(ForeignKey("sections.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)  # "YYYY-MM"
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


def _refuse_update(mapper, connection, target) -> None:
    s = object_session(target)
    if s is not None and not s.is_modified(target, include_collections=False):
        return
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only.")


def _refuse_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only.")


for _model in (DocumentRevision, DocumentApproval):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
