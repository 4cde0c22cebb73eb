from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from app.doccontrol.auth import request_context
from app.doccontrol.db import db_session
from app.doccontrol.modules.document_control import service

bp = Blueprint("doc_public", __name__)


@bp.get("/validate/<int:doc_id>/<token>")
def validate_qr(doc_id: int, token: str):
    """Public verification target encoded in a published document's QR code."""
    s = db_session()
    qr = current_app.extensions["doccontrol_qr"]
    doc = service.get_document(s, doc_id)
    if not qr.validate(doc, token):
        if doc is not None:
            service.record_access(
                s,
                doc,
                access_method="qr",
                is_successful=False,
                error_message="Invalid or expired QR code",
                context=request_context(),
            )
        return jsonify({"valid": False, "message": "Invalid or expired QR code."}), 404

    service.record_access(s, doc, access_method="qr", context=request_context())
    body = {
        "valid": True,
        "document_number": doc.document_number,
        "title": doc.title,
        "version": doc.version,
        "status": doc.status.label,
        "department": doc.department.name if doc.department else None,
        "published_at": doc.published_at.isoformat() if doc.published_at else None,
        "effective_date": doc.effective_date.isoformat() if doc.effective_date else None,
        "expiry_date": doc.expiry_date.isoformat() if doc.expiry_date else None,
        "file_hash": doc.file_hash,
    }
    if doc.is_confidential:
        body = {k: body[k] for k in ("valid", "document_number", "version", "status", "published_at")}
    return jsonify(body)
