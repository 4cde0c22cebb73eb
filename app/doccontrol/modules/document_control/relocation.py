from __future__ import annotations

import logging
import uuid
from datetime import datetime

from app.doccontrol.modules.document_control.errors import StorageFailure
from app.doccontrol.modules.document_control.status import DocumentStatus
from app.doccontrol.storage import Storage, StorageError

logger = logging.getLogger(__name__)

ROOT_PREFIX = "documents"
REVISIONS_PREFIX = f"{ROOT_PREFIX}/revisions"


def folder_for_status(status: DocumentStatus) -> str:
    return status.folder


def stored_filename(extension: str) -> str:
    ext = (extension or "").lower().lstrip(".")
    return f"{uuid.uuid4().hex}.{ext}" if ext else uuid.uuid4().hex


def build_storage_key(status: DocumentStatus, filename: str, now: datetime) -> str:
    # documents/{folder}/{YYYY}/{MM}/{filename}
    return f"{ROOT_PREFIX}/{folder_for_status(status)}/{now.year:04d}/{now.month:02d}/{filename}"


def revision_storage_key(document_number: str, version: str, filename: str) -> str:
    return f"{REVISIONS_PREFIX}/{document_number}/v{version}/{filename}"


def folder_of_key(key: str) -> str | None:
    parts = key.split("/")
    if len(parts) >= 2 and parts[0] == ROOT_PREFIX:
        return parts[1]
    return None


def relocate(
    storage: Storage,
    file_path: str | None,
    target: DocumentStatus,
    now: datetime,
) -> tuple[str, str] | None:
    """
    Move a working file into the canonical folder for `target`.

    Returns (old_key, new_key), or None when there is no file or it already
    sits in the right folder. Raises StorageFailure if the move fails or the
    destination cannot be confirmed afterwards; the source is left in place
    (or restored) in that case.
    """
    if not file_path:
        return None
    folder = folder_for_status(target)
    if folder_of_key(file_path) == folder:
        return None

    new_key = build_storage_key(target, file_path.rsplit("/", 1)[-1], now)
    try:
        storage.make_directory(new_key.rsplit("/", 1)[0])
        storage.move(file_path, new_key)
    except StorageError as e:
        logger.error("Relocation failed %s -> %s: %s", file_path, new_key, e)
        _restore(storage, new_key, file_path)
        raise StorageFailure(f"Could not move document file to {folder}.", source=file_path, destination=new_key) from e

    try:
        arrived = storage.exists(new_key)
    except StorageError as e:
        logger.error("Could not confirm relocation %s -> %s: %s", file_path, new_key, e)
        _restore(storage, new_key, file_path)
        raise StorageFailure(
            f"Could not confirm the document file in {folder}.", source=file_path, destination=new_key
        ) from e
    if not arrived:
        logger.error("Relocation destination missing after move: %s (source %s)", new_key, file_path)
        _restore(storage, new_key, file_path)
        raise StorageFailure(f"Document file did not arrive in {folder}.", source=file_path, destination=new_key)

    logger.info("Relocated document file %s -> %s", file_path, new_key)
    return file_path, new_key


def _restore(storage: Storage, moved_key: str, original_key: str) -> None:
    try:
        if not storage.exists(original_key):
            storage.move(moved_key, original_key)
    except StorageError:
        logger.exception("Could not move %s back to %s", moved_key, original_key)


def undo_relocation(storage: Storage, moved: tuple[str, str] | None) -> None:
    """Best-effort reverse of relocate() after the surrounding transaction failed."""
    if moved is None:
        return
    old_key, new_key = moved
    _restore(storage, new_key, old_key)
