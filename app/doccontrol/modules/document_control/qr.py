"""
Public verification tokens for published documents.

The artifact stored per document is the JSON payload a QR image would
encode (validation URL + identifiers). Rendering the image itself is left
to whatever prints or displays it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from typing import Protocol

from sqlalchemy.orm import Session

from app.doccontrol.audit import RequestContext, record_event
from app.doccontrol.models import User
from app.doccontrol.modules.document_control.errors import InvalidTransition, StorageFailure
from app.doccontrol.modules.document_control.models import Document
from app.doccontrol.storage import Storage, StorageError
from app.doccontrol.utils import utcnow

logger = logging.getLogger(__name__)

QR_PREFIX = "documents/qr"


class QrGenerator(Protocol):
    def generate(self, document: Document) -> tuple[str, str]:
        """Write the QR artifact for a document. Returns (path, token)."""
        ...

    def discard(self, path: str) -> None:
        """Remove an artifact that ended up unused."""
        ...


class QrCodeService:
    def __init__(self, storage: Storage, *, secret_key: str, app_url: str) -> None:
        self.storage = storage
        self._key = (secret_key or "").encode("utf-8")
        self.app_url = (app_url or "").rstrip("/")

    def make_token(self, document: Document) -> str:
        published = document.published_at.isoformat() if document.published_at else ""
        payload = f"{document.id}|{document.document_number}|{document.file_hash or ''}|{published}|{secrets.token_hex(8)}"
        return hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def validation_url(self, document_id: int, token: str) -> str:
        return f"{self.app_url}/qr/validate/{document_id}/{token}"

    def generate(self, document: Document) -> tuple[str, str]:
        token = self.make_token(document)
        path = f"{QR_PREFIX}/{document.document_number}/{token[:16]}.json"
        payload = {
            "document_id": document.id,
            "document_number": document.document_number,
            "version": document.version,
            "url": self.validation_url(document.id, token),
            "generated_at": utcnow().isoformat(),
        }
        try:
            self.storage.put_bytes(path, json.dumps(payload, sort_keys=True).encode("utf-8"), content_type="application/json")
        except StorageError as e:
            raise StorageFailure("Could not store QR artifact.", path=path) from e
        logger.info("QR artifact written for %s at %s", document.document_number, path)
        return path, token

    def validate(self, document: Document | None, token: str) -> bool:
        if document is None or document.deleted_at is not None:
            return False
        if not document.is_published() or not document.has_qr_code():
            return False
        if not hmac.compare_digest(document.qr_code_token or "", token or ""):
            return False
        return self.storage.exists(document.qr_code_path or "")

    def regenerate(
        self,
        s: Session,
        document: Document,
        actor: User,
        *,
        context: RequestContext | None = None,
    ) -> tuple[str, str]:
        """Replace the QR artifact of a published document, invalidating the old token."""
        if not document.is_published():
            raise InvalidTransition("QR codes exist only for published documents.", status=document.status.value)
        old_path = document.qr_code_path
        path, token = self.generate(document)
        try:
            document.qr_code_path = path
            document.qr_code_token = token
            record_event(
                s,
                actor=actor,
                action="doc.qr_regenerate",
                entity_type="Document",
                entity_id=str(document.id),
                metadata={"document_number": document.document_number, "previous_path": old_path},
                context=context,
            )
            s.commit()
        except Exception:
            s.rollback()
            self.discard(path)
            raise
        if old_path and old_path != path:
            self.discard(old_path)
        return path, token

    def discard(self, path: str) -> None:
        try:
            self.storage.delete(path)
        except StorageError:
            logger.warning("Could not delete QR artifact %s", path, exc_info=True)
