from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


class Storage:
    """
    Key/value file store used by the document core.

    Keys are forward-slash paths ("documents/drafts/2025/08/<uuid>.pdf").
    Backends raise StorageError on I/O failure instead of returning False.
    """

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def get_bytes(self, key: str) -> bytes:
        with self.open(key) as fh:
            return fh.read()

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def move(self, src: str, dst: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def make_directory(self, prefix: str) -> None:
        """No-op for flat object stores."""
        return None


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in safe_key.split("/"):
            raise StorageError(f"Refusing path traversal in storage key: {key!r}")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"put failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except OSError as e:
            raise StorageError(f"open failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def move(self, src: str, dst: str) -> None:
        sp, dp = self._path(src), self._path(dst)
        if not sp.is_file():
            raise StorageError(f"move source missing: {src}")
        if dp.exists():
            raise StorageError(f"move destination already exists: {dst}")
        try:
            dp.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(sp), str(dp))
        except OSError as e:
            raise StorageError(f"move failed {src} -> {dst}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"delete failed for {key}: {e}") from e

    def make_directory(self, prefix: str) -> None:
        try:
            self._path(prefix).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"mkdir failed for {prefix}: {e}") from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except Exception as e:
            raise StorageError(f"put failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise StorageError(f"open failed for {key}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"head failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"head failed for {key}: {e}") from e

    def move(self, src: str, dst: str) -> None:
        # S3 has no rename: copy then delete the source.
        client = self._client()
        try:
            client.copy_object(Bucket=self.bucket, Key=dst, CopySource={"Bucket": self.bucket, "Key": src})
        except Exception as e:
            raise StorageError(f"move (copy) failed {src} -> {dst}: {e}") from e
        try:
            client.delete_object(Bucket=self.bucket, Key=src)
        except Exception as e:
            # Roll the copy back so the object lives in exactly one place.
            try:
                client.delete_object(Bucket=self.bucket, Key=dst)
            except Exception:
                logger.exception("Could not remove copied object %s after failed move", dst)
            raise StorageError(f"move (delete source) failed {src} -> {dst}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client().delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise StorageError(f"delete failed for {key}: {e}") from e


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    # default local
    root = (config.get("STORAGE_ROOT") or "").strip()
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")
