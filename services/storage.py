# -*- coding: utf-8 -*-

import base64
import datetime
import json
import logging
import os
import threading

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

logger = logging.getLogger("api.storage")


class StorageError(RuntimeError):
    pass


class StorageNotFoundError(StorageError):
    pass


# =========================================================
# GCS BACKEND
# =========================================================
class GcsStorage:
    """Blob store on a single GCS bucket. Keys are object names inside the bucket."""

    def __init__(self, bucket_name: str | None = None):
        self.bucket_name = (bucket_name or os.getenv("GCS_BUCKET_NAME") or "").strip()
        if not self.bucket_name:
            raise RuntimeError("GCS_BUCKET_NAME not set")
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client

        creds_b64 = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
        if creds_b64:
            creds = json.loads(base64.b64decode(creds_b64))
            self._client = storage.Client.from_service_account_info(creds)
        else:
            self._client = storage.Client()

        return self._client

    def _blob(self, key: str):
        return self._get_client().bucket(self.bucket_name).blob(key)

    def upload(self, key: str, data: bytes, content_type: str = "application/pdf", metadata: dict | None = None) -> dict:
        blob = self._blob(key)
        if metadata:
            blob.metadata = {k: str(v) for k, v in metadata.items()}
        try:
            blob.upload_from_string(data, content_type=content_type)
        except gcs_exceptions.GoogleAPICallError as exc:
            raise StorageError(f"Upload failed for {key}: {exc.__class__.__name__}") from exc
        return {
            "bucket": self.bucket_name,
            "key": key,
            "gcs_uri": f"gs://{self.bucket_name}/{key}",
            "size": len(data),
        }

    def download(self, key: str) -> bytes:
        try:
            return self._blob(key).download_as_bytes()
        except gcs_exceptions.NotFound as exc:
            raise StorageNotFoundError(key) from exc
        except gcs_exceptions.GoogleAPICallError as exc:
            raise StorageError(f"Download failed for {key}: {exc.__class__.__name__}") from exc

    def delete(self, key: str) -> bool:
        try:
            self._blob(key).delete()
            return True
        except gcs_exceptions.NotFound:
            return False

    def exists(self, key: str) -> bool:
        return bool(self._blob(key).exists())

    def signed_url(self, key: str, expires_minutes: int = 60) -> str:
        return self._blob(key).generate_signed_url(
            version="v4",
            expiration=datetime.timedelta(minutes=expires_minutes),
            method="GET",
        )


# =========================================================
# IN-MEMORY BACKEND (local development)
# =========================================================
class MemoryStorage:
    def __init__(self):
        self._objects: dict[str, tuple[bytes, str, dict]] = {}
        self._lock = threading.Lock()

    def upload(self, key: str, data: bytes, content_type: str = "application/pdf", metadata: dict | None = None) -> dict:
        with self._lock:
            self._objects[key] = (bytes(data), content_type, dict(metadata or {}))
        return {"bucket": "memory", "key": key, "gcs_uri": f"memory://{key}", "size": len(data)}

    def download(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise StorageNotFoundError(key)
            return self._objects[key][0]

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._objects.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def signed_url(self, key: str, expires_minutes: int = 60) -> str:
        return f"memory://{key}"

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


def create_storage():
    backend = str(os.getenv("STORAGE_BACKEND", "gcs")).strip().lower()
    if backend == "memory":
        logger.warning("storage_backend_memory objects are not persisted")
        return MemoryStorage()
    return GcsStorage()
