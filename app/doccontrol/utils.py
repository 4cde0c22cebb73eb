from __future__ import annotations

import hashlib
from datetime import date, datetime, timezone

from werkzeug.utils import secure_filename


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz, as elsewhere in the schema)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_date(s: str | date | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if s is None or isinstance(s, date):
        return s
    if not isinstance(s, str):
        raise TypeError(f"Expected a YYYY-MM-DD string, got {type(s).__name__}")
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def file_extension(filename: str) -> str:
    fn = sanitize_upload_filename(filename)
    if "." not in fn:
        return ""
    return fn.rsplit(".", 1)[1].lower()


def format_file_size(size: int | None) -> str:
    if not size:
        return "0 B"
    value = float(size)
    units = ["B", "KB", "MB", "GB"]
    i = 0
    while value > 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"
