from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.doccontrol.auth import request_context
from app.doccontrol.db import db_session
from app.doccontrol.models import User
from app.doccontrol.modules.document_control import lifecycle, service
from app.doccontrol.modules.document_control.errors import ValidationFailed
from app.doccontrol.modules.document_control.models import Document, DocumentApproval, DocumentRevision
from app.doccontrol.modules.document_control.status import status_choices
from app.doccontrol.rbac import RoleKey, has_role, require_permission

bp = Blueprint("doc_control", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _storage():
    return current_app.extensions["doccontrol_storage"]


def _dispatcher():
    return current_app.extensions.get("doccontrol_dispatcher")


def _iso(value):
    return value.isoformat() if value is not None else None


def can_view(document: Document, user: User) -> bool:
    if not document.is_confidential:
        return True
    if has_role(user, RoleKey.SUPERADMIN) or user.id == document.creator_id:
        return True
    return user.department_id == document.department_id


def _get_doc_or_404(s: Session, doc_id: int) -> Document:
    d = service.get_document(s, doc_id)
    if d is None or not can_view(d, _current_user()):
        abort(404)
    return d


def document_json(d: Document, *, detail: bool = False) -> dict:
    out = {
        "id": d.id,
        "document_number": d.document_number,
        "title": d.title,
        "document_type": d.document_type,
        "status": d.status.value,
        "status_label": d.status.label,
        "version": d.version,
        "is_confidential": d.is_confidential,
        "department": d.department.code if d.department else None,
        "section": d.section.code if d.section else None,
        "creator_id": d.creator_id,
        "has_file": d.has_file(),
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
    }
    if detail:
        out.update(
            {
                "description": d.description,
                "tags": d.tags or [],
                "effective_date": _iso(d.effective_date),
                "expiry_date": _iso(d.expiry_date),
                "original_filename": d.original_filename,
                "file_path": d.file_path,
                "file_type": d.file_type,
                "file_size": d.file_size,
                "file_size_display": d.formatted_file_size,
                "file_hash": d.file_hash,
                "current_reviewer_id": d.current_reviewer_id,
                "approved_by_id": d.approved_by_id,
                "submitted_at": _iso(d.submitted_at),
                "reviewed_at": _iso(d.reviewed_at),
                "verified_at": _iso(d.verified_at),
                "approved_at": _iso(d.approved_at),
                "published_at": _iso(d.published_at),
                "archived_at": _iso(d.archived_at),
                "has_qr_code": d.has_qr_code(),
                "view_count": d.view_count,
                "download_count": d.download_count,
                "lock_version": d.lock_version,
            }
        )
    return out


def approval_json(a: DocumentApproval, minutes_since_previous: float | None = None) -> dict:
    return {
        "id": a.id,
        "previous_status": a.previous_status.value,
        "new_status": a.new_status.value,
        "action": a.action,
        "action_label": a.action_label,
        "user_id": a.user_id,
        "user_role": a.user_role,
        "comments": a.comments,
        "document_revision_id": a.document_revision_id,
        "is_progression": a.is_progression(),
        "is_regression": a.is_regression(),
        "minutes_since_previous": minutes_since_previous,
        "created_at": _iso(a.created_at),
    }


def revision_json(r: DocumentRevision) -> dict:
    return {
        "id": r.id,
        "version": r.version,
        "version_type": r.version_type,
        "status": r.status.value,
        "original_filename": r.original_filename,
        "file_size": r.file_size,
        "file_hash": r.file_hash,
        "revision_notes": r.revision_notes,
        "created_by_id": r.created_by_id,
        "created_at": _iso(r.created_at),
    }


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return dict(request.form)
    if not isinstance(data, dict):
        raise ValidationFailed(["Request body must be a JSON object."])
    return data


def _int_arg(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailed([f"{name} must be an integer."]) from None


@bp.get("/")
@require_permission("docs.view")
def list_documents():
    s = db_session()
    u = _current_user()
    creator_id = u.id if request.args.get("mine") in ("1", "true") else None
    try:
        docs = service.list_documents(
            s,
            status=request.args.get("status") or None,
            department_id=_int_arg("department_id"),
            section_id=_int_arg("section_id"),
            creator_id=creator_id,
            search=request.args.get("q") or None,
            limit=_int_arg("limit") or 50,
            offset=_int_arg("offset") or 0,
        )
    except ValueError as e:
        raise ValidationFailed([str(e)]) from None
    return jsonify({"documents": [document_json(d) for d in docs if can_view(d, u)]})


@bp.get("/statuses")
@require_permission("docs.view")
def statuses():
    return jsonify({"statuses": status_choices()})


@bp.get("/stats")
@require_permission("docs.view")
def stats():
    return jsonify(service.document_statistics(db_session()))


@bp.post("/")
@require_permission("docs.create")
def create_document():
    s = db_session()
    d = service.create_document(
        s,
        _json_body(),
        _current_user(),
        company_code=current_app.config["COMPANY_CODE"],
        context=request_context(),
    )
    return jsonify({"document": document_json(d, detail=True)}), 201


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def document_detail(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    service.record_access(s, d, actor=u, download_type="view", access_method="api", context=request_context())
    return jsonify(
        {
            "document": document_json(d, detail=True),
            "available_transitions": lifecycle.available_transitions(d, u),
            "can_edit": service.can_edit(d, u),
        }
    )


@bp.patch("/<int:doc_id>")
@require_permission("docs.edit")
def update_document(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    service.update_document(s, d, _json_body(), _current_user(), context=request_context())
    return jsonify({"document": document_json(d, detail=True)})


@bp.post("/<int:doc_id>/file")
@require_permission("docs.edit")
def upload_file(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationFailed(["File is required."])
    service.attach_file(
        s,
        d,
        f.read(),
        f.filename,
        _current_user(),
        storage=_storage(),
        content_type=f.mimetype or None,
        is_major=(request.form.get("is_major") or "").lower() in ("1", "true", "on"),
        notes=request.form.get("notes"),
        context=request_context(),
    )
    return jsonify({"document": document_json(d, detail=True)})


@bp.post("/<int:doc_id>/transition")
@require_permission("docs.view")
def transition(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    data = _json_body()
    target = data.get("status")
    if not isinstance(target, str) or not target.strip():
        raise ValidationFailed(["status is required."])
    lifecycle.transition(
        s,
        d,
        target,
        actor=_current_user(),
        comment=data.get("comment"),
        storage=_storage(),
        dispatcher=_dispatcher(),
        context=request_context(),
    )
    return jsonify({"document": document_json(d, detail=True)})


@bp.get("/<int:doc_id>/transitions")
@require_permission("docs.view")
def available_transitions(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    return jsonify({"status": d.status.value, "transitions": lifecycle.available_transitions(d, _current_user())})


@bp.get("/<int:doc_id>/history")
@require_permission("docs.view")
def history(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    records = service.get_history(s, d)
    gaps = service.time_since_previous(records)
    return jsonify({"history": [approval_json(a, m) for a, m in zip(records, gaps)]})


@bp.get("/<int:doc_id>/revisions")
@require_permission("docs.view")
def revisions(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    return jsonify({"revisions": [revision_json(r) for r in d.revisions]})


@bp.get("/<int:doc_id>/download")
@require_permission("docs.download")
def download(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    fobj, filename = service.read_file(_storage(), d)
    service.record_access(s, d, actor=u, download_type="download", access_method="api", context=request_context())
    return send_file(
        fobj,
        mimetype=d.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=filename,
    )


@bp.delete("/<int:doc_id>")
@require_permission("docs.edit")
def delete_document(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    service.delete_document(s, d, _current_user(), context=request_context())
    return jsonify({"ok": True, "document_number": d.document_number})


@bp.post("/<int:doc_id>/qr/regenerate")
@require_permission("docs.approve")
def regenerate_qr(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    qr = current_app.extensions["doccontrol_qr"]
    path, token = qr.regenerate(s, d, _current_user(), context=request_context())
    return jsonify({"qr_code_path": path, "validation_url": qr.validation_url(d.id, token)})
