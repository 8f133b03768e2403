"""scjail_etl.image_store

Object-storage collaborators for booking photos. The bucket (or base
directory) is fixed at construction; put() returns the stored object path.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from scjail_etl.shared import ObjectStoreError


class ImageStore(Protocol):
    def put(self, key: str, content: bytes, content_type: str = "image/jpeg") -> str:
        """Store content under key and return the object path."""
        ...


@dataclass
class GcsImageStore:
    """Upload photo bytes to a GCS bucket."""

    bucket_name: str

    def put(self, key: str, content: bytes, content_type: str = "image/jpeg") -> str:
        from google.cloud import storage  # type: ignore[import-untyped]

        # API, auth and transport (requests/urllib3) failures all surface as ObjectStoreError.
        try:
            client = storage.Client()
            blob = client.bucket(self.bucket_name).blob(key)
            blob.upload_from_string(content, content_type=content_type)
        except Exception as exc:  # noqa: BLE001
            raise ObjectStoreError(f"gs://{self.bucket_name}/{key}: {exc}") from exc
        return key


@dataclass
class LocalImageStore:
    """Write photo bytes under a local directory (local runs and tests)."""

    base_dir: Path

    def put(self, key: str, content: bytes, content_type: str = "image/jpeg") -> str:
        dest = self.base_dir / key
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(content)
        except OSError as exc:
            raise ObjectStoreError(f"{dest}: {exc}") from exc
        return key
