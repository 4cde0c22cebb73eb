"""
Document status table.

STATUS_TABLE is the single source of truth for the lifecycle: display data,
canonical storage folder, allowed next states and which roles may edit a
document's content while it sits in a given state. The state machine and the
API both read from it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class DocumentStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    NEEDS_REVISION = "needs_revision"
    VERIFIED = "verified"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"
    ARCHIVED = "archived"

    @property
    def info(self) -> "StatusInfo":
        return STATUS_TABLE[self]

    @property
    def label(self) -> str:
        return STATUS_TABLE[self].label

    @property
    def folder(self) -> str:
        return STATUS_TABLE[self].folder

    @property
    def next_statuses(self) -> frozenset["DocumentStatus"]:
        return STATUS_TABLE[self].next_statuses

    @property
    def is_terminal(self) -> bool:
        return not STATUS_TABLE[self].next_statuses

    def can_transition_to(self, target: "DocumentStatus") -> bool:
        return target in STATUS_TABLE[self].next_statuses

    def can_be_edited_by(self, role_key: str) -> bool:
        return role_key in STATUS_TABLE[self].edit_roles


@dataclass(frozen=True)
class StatusInfo:
    label: str
    color: str
    description: str
    folder: str
    next_statuses: frozenset[DocumentStatus]
    edit_roles: frozenset[str]


S = DocumentStatus
_ALL_ROLES = frozenset({"user", "admin", "superadmin"})
_REVIEWERS = frozenset({"admin", "superadmin"})
_NOBODY: frozenset[str] = frozenset()

STATUS_TABLE: dict[DocumentStatus, StatusInfo] = {
    S.DRAFT: StatusInfo(
        "Draft", "gray", "Document is being prepared", "drafts",
        frozenset({S.SUBMITTED}), _ALL_ROLES,
    ),
    S.SUBMITTED: StatusInfo(
        "Submitted", "info", "Document submitted for review", "submitted",
        frozenset({S.UNDER_REVIEW, S.REJECTED}), _REVIEWERS,
    ),
    S.UNDER_REVIEW: StatusInfo(
        "Under Review", "warning", "Document is being reviewed by admin", "submitted",
        frozenset({S.NEEDS_REVISION, S.VERIFIED, S.REJECTED}), _REVIEWERS,
    ),
    S.NEEDS_REVISION: StatusInfo(
        "Needs Revision", "danger", "Document requires revision", "drafts",
        frozenset({S.SUBMITTED}), _ALL_ROLES,
    ),
    S.VERIFIED: StatusInfo(
        "Verified", "success", "Document verified by admin", "verified",
        frozenset({S.APPROVED, S.NEEDS_REVISION, S.REJECTED}), frozenset({"superadmin"}),
    ),
    S.APPROVED: StatusInfo(
        "Approved", "primary", "Document approved by superadmin", "approved",
        frozenset({S.PUBLISHED}), _NOBODY,
    ),
    S.PUBLISHED: StatusInfo(
        "Published", "success", "Document published and accessible to public", "published",
        frozenset({S.ARCHIVED}), _NOBODY,
    ),
    S.REJECTED: StatusInfo(
        "Rejected", "danger", "Document rejected", "rejected",
        frozenset({S.DRAFT}), _NOBODY,
    ),
    S.ARCHIVED: StatusInfo(
        "Archived", "gray", "Document archived", "archived",
        frozenset(), _NOBODY,
    ),
}

INITIAL_STATUS = DocumentStatus.DRAFT

# Happy-path order, used to classify audit rows as progression vs regression.
PROGRESSION_ORDER: tuple[DocumentStatus, ...] = (
    S.DRAFT,
    S.SUBMITTED,
    S.UNDER_REVIEW,
    S.VERIFIED,
    S.APPROVED,
    S.PUBLISHED,
)
REGRESSION_STATUSES = frozenset({S.NEEDS_REVISION, S.REJECTED})


def allowed_transitions() -> list[tuple[DocumentStatus, DocumentStatus]]:
    """Every (source, target) pair the lifecycle accepts."""
    return [(src, dst) for src, info in STATUS_TABLE.items() for dst in sorted(info.next_statuses, key=list(S).index)]


def parse_status(value: str | DocumentStatus) -> DocumentStatus:
    if isinstance(value, DocumentStatus):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unknown document status: {value!r}")
    try:
        return DocumentStatus((value or "").strip().lower())
    except ValueError:
        raise ValueError(f"Unknown document status: {value!r}") from None


def status_choices() -> list[dict[str, str]]:
    return [{"value": st.value, "label": info.label, "color": info.color} for st, info in STATUS_TABLE.items()]
