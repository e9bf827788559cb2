from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from travel_flow.core.config import settings
from travel_flow.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

_RETRYABLE_S3_CODES = {
    "RequestCanceled",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
}


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


class ObjectStorage:
    """Binary store for trip attachments, addressed by slash-separated keys."""

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def move(self, *, from_key: str, to_key: str) -> StoredObject:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except Exception:
            log_exception(
                logger,
                "storage.put.failure",
                backend="local",
                storage_key=key,
                byte_size=len(body),
            )
            raise
        log_event(
            logger,
            "storage.put.success",
            backend="local",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            log_event(logger, "storage.get.failure", backend="local", storage_key=key)
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    def delete(self, *, key: str) -> None:
        path = self._path(key)
        if not path.exists():
            return
        try:
            path.unlink()
        except Exception:
            log_exception(logger, "storage.delete.failure", backend="local", storage_key=key)
            raise

    def move(self, *, from_key: str, to_key: str) -> StoredObject:
        src = self._path(from_key)
        dst = self._path(to_key)
        if not src.exists():
            raise StorageError(f"Object not found: {from_key}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.replace(dst)
        log_event(
            logger,
            "storage.move.success",
            backend="local",
            from_key=from_key,
            storage_key=to_key,
        )
        return StoredObject(key=to_key, byte_size=dst.stat().st_size)


class S3ObjectStorage(ObjectStorage):
    def __init__(self) -> None:
        # boto3 needs a concrete region even for S3-compatible endpoints.
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"

        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        config = Config(
            s3={"addressing_style": "virtual"},
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=30,
            read_timeout=60,
        )
        self._client = session.client(
            "s3", endpoint_url=settings.s3_endpoint_url or None, config=config
        )
        self._bucket = settings.s3_bucket

    def _retry_delay_s(self, attempt: int) -> float:
        # attempt=1 => 0.25s, attempt=2 => 0.5s, ... capped at 3s
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    def _should_retry_error(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            code = (error.response.get("Error") or {}).get("Code")
            return code in _RETRYABLE_S3_CODES
        return isinstance(error, BotoCoreError)

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        max_attempts = 4
        for attempt in range(1, max_attempts + 1):
            try:
                self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra)
                break
            except Exception as e:  # noqa: BLE001
                if attempt < max_attempts and self._should_retry_error(e):
                    delay_s = self._retry_delay_s(attempt)
                    log_event(
                        logger,
                        "storage.put.retry",
                        backend="s3",
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    "storage.put.failure",
                    backend="s3",
                    storage_key=key,
                    byte_size=len(body),
                    attempt=attempt,
                )
                raise StorageError(f"Failed to store object: {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend="s3",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
            return resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.get.failure", backend="s3", storage_key=key)
            raise StorageError(f"Object not found: {key}") from e

    def delete(self, *, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.delete.failure", backend="s3", storage_key=key)
            raise StorageError(f"Failed to delete object: {key}") from e

    def move(self, *, from_key: str, to_key: str) -> StoredObject:
        try:
            self._client.copy_object(
                Bucket=self._bucket,
                Key=to_key,
                CopySource={"Bucket": self._bucket, "Key": from_key},
            )
            head = self._client.head_object(Bucket=self._bucket, Key=to_key)
        except (BotoCoreError, ClientError) as e:
            log_exception(
                logger, "storage.move.failure", backend="s3", from_key=from_key, storage_key=to_key
            )
            raise StorageError(f"Failed to move object: {from_key}") from e
        self.delete(key=from_key)
        log_event(logger, "storage.move.success", backend="s3", from_key=from_key, storage_key=to_key)
        return StoredObject(key=to_key, byte_size=int(head.get("ContentLength") or 0))


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
