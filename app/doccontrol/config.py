import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    company_code: str
    app_url: str
    side_effect_mode: str
    side_effect_workers: int
    download_retention_days: int
    expiry_warning_days: tuple[int, ...]
    csrf_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _parse_days(raw: str) -> tuple[int, ...]:
    days = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            days.append(int(part))
    return tuple(sorted(set(days), reverse=True))


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///doccontrol.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        company_code=_getenv("COMPANY_CODE", "AKM").upper(),
        app_url=_getenv("APP_URL", "http://localhost:5000").rstrip("/"),
        side_effect_mode=_getenv("SIDE_EFFECT_MODE", "thread").lower(),
        side_effect_workers=_getint("SIDE_EFFECT_WORKERS", 2),
        download_retention_days=_getint("DOWNLOAD_RETENTION_DAYS", 365),
        expiry_warning_days=_parse_days(_getenv("EXPIRY_WARNING_DAYS", "30,14,7,3,1")),
        csrf_enabled=_getbool("CSRF_ENABLED", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # document control
        "COMPANY_CODE": s.company_code,
        "APP_URL": s.app_url,
        "SIDE_EFFECT_MODE": s.side_effect_mode,
        "SIDE_EFFECT_WORKERS": s.side_effect_workers,
        "DOWNLOAD_RETENTION_DAYS": s.download_retention_days,
        "EXPIRY_WARNING_DAYS": s.expiry_warning_days,
        "CSRF_ENABLED": s.csrf_enabled,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
