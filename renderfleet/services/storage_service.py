"""Artifact store: site bundles, chunk outputs and final renders.

Two implementations share one surface:

- ``LocalArtifactStore`` keeps buckets as directories (development)
- ``GCSArtifactStore`` talks to Google Cloud Storage (production)

Bucket selection/creation is memoized per region for the process lifetime.
The remote bucket stays the system of record; listings are never cached.
"""

import base64
import hashlib
import logging
import secrets
import shutil
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

from google.api_core import exceptions as gcloud_exceptions
from google.auth import compute_engine
from google.auth import default as google_auth_default
from google.auth.transport import requests as auth_requests
from google.cloud import storage

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import (
    AccessDeniedError,
    NotFoundError,
    QuotaExceededError,
    RenderfleetError,
    StorageError,
)
from renderfleet.schemas.site import (
    BucketInfo,
    ObjectDeletion,
    PrefixDeleteResult,
    StoredObject,
)
from renderfleet.services.naming import bucket_name

logger = logging.getLogger(__name__)


class _ArtifactStoreBase:
    """Behaviour shared by both stores."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._buckets: dict[str, BucketInfo] = {}

    def _region(self, region: str | None) -> str:
        return region or self.settings.default_region

    def get_or_create_bucket(self, region: str | None = None) -> BucketInfo:
        """Return the bucket for a region, creating it on first use."""
        region = self._region(region)
        bucket = self._buckets.get(region)
        if bucket is None:
            bucket = self._select_or_create_bucket(region)
            self._buckets[region] = bucket
            logger.info(f"[STORE] Using bucket {bucket.name} for region {region}")
        return bucket

    def _select_or_create_bucket(self, region: str) -> BucketInfo:
        raise NotImplementedError

    def delete_object(self, path: str, *, region: str | None = None) -> int:
        raise NotImplementedError

    def get_object_list(self, prefix: str, *, region: str | None = None) -> list[StoredObject]:
        raise NotImplementedError

    def object_exists(self, path: str, *, region: str | None = None) -> bool:
        return any(obj.path == path for obj in self.get_object_list(path, region=region))

    def delete_all_under_prefix(self, prefix: str, *, region: str | None = None) -> PrefixDeleteResult:
        """Delete every object under a prefix.

        Best-effort: a failing object is recorded and the remaining objects
        are still deleted.
        """
        result = PrefixDeleteResult(prefix=prefix)
        for obj in self.get_object_list(prefix, region=region):
            try:
                freed = self.delete_object(obj.path, region=region)
            except RenderfleetError as e:
                logger.warning(f"[STORE] Failed to delete {obj.path}: {e.message}")
                result.results.append(
                    ObjectDeletion(path=obj.path, size=obj.size, deleted=False, error=e.message)
                )
                continue
            result.freed_bytes += freed
            result.results.append(ObjectDeletion(path=obj.path, size=freed, deleted=True))
        return result


class LocalArtifactStore(_ArtifactStoreBase):
    """Filesystem-backed store for development without GCS."""

    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__(settings)
        self.base_path = Path(self.settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _select_or_create_bucket(self, region: str) -> BucketInfo:
        name = bucket_name(self.settings.bucket_prefix, region, "local")
        (self.base_path / name).mkdir(parents=True, exist_ok=True)
        return BucketInfo(name=name, region=region)

    def _get_full_path(self, path: str, region: str | None) -> Path:
        bucket = self.get_or_create_bucket(region)
        root = (self.base_path / bucket.name).resolve()
        full_path = (root / path).resolve()
        if root != full_path and root not in full_path.parents:
            raise AccessDeniedError(f"Path escapes bucket: {path}")
        return full_path

    def _describe(self, full_path: Path, path: str) -> StoredObject:
        stat = full_path.stat()
        return StoredObject(
            path=path,
            size=stat.st_size,
            md5=hashlib.md5(full_path.read_bytes()).hexdigest(),
            updated_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def put_object(
        self,
        path: str,
        data: bytes,
        *,
        region: str | None = None,
        content_type: str | None = None,
    ) -> StoredObject:
        full_path = self._get_full_path(path, region)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return self._describe(full_path, path)

    def upload_file(self, local_path: str, path: str, *, region: str | None = None) -> StoredObject:
        full_path = self._get_full_path(path, region)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(local_path, str(full_path))
        return self._describe(full_path, path)

    def get_object(self, path: str, *, region: str | None = None) -> bytes:
        full_path = self._get_full_path(path, region)
        if not full_path.is_file():
            raise NotFoundError(path)
        return full_path.read_bytes()

    def download_file(self, path: str, local_path: str, *, region: str | None = None) -> str:
        full_path = self._get_full_path(path, region)
        if not full_path.is_file():
            raise NotFoundError(path)
        shutil.copy(str(full_path), local_path)
        return local_path

    def get_object_list(self, prefix: str, *, region: str | None = None) -> list[StoredObject]:
        root = self._get_full_path("", region)
        objects = []
        for full_path in sorted(root.rglob("*")):
            if not full_path.is_file():
                continue
            path = full_path.relative_to(root).as_posix()
            if path.startswith(prefix):
                objects.append(self._describe(full_path, path))
        return objects

    def delete_object(self, path: str, *, region: str | None = None) -> int:
        full_path = self._get_full_path(path, region)
        if not full_path.is_file():
            raise NotFoundError(path)
        size = full_path.stat().st_size
        try:
            full_path.unlink()
        except PermissionError as e:
            raise AccessDeniedError(str(e)) from e
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e
        return size

    def public_url(self, path: str, *, region: str | None = None) -> str:
        bucket = self.get_or_create_bucket(region)
        return f"{self.settings.local_storage_base_url}/{bucket.name}/{path}"

    def presign(self, path: str, ttl_minutes: int | None = None, *, region: str | None = None) -> str:
        if not self._get_full_path(path, region).is_file():
            raise NotFoundError(path)
        ttl = ttl_minutes or self.settings.presign_default_ttl_minutes
        expires = int((datetime.now(timezone.utc) + timedelta(minutes=ttl)).timestamp())
        return f"{self.public_url(path, region=region)}?expires={expires}"

    def get_file_path(self, storage_key: str) -> Path:
        """Resolve a ``<bucket>/<path>`` key from a public URL to a file on disk."""
        root = self.base_path.resolve()
        full_path = (root / storage_key).resolve()
        if root not in full_path.parents:
            raise AccessDeniedError(f"Path escapes storage root: {storage_key}")
        return full_path


def _translate_gcs_error(exc: gcloud_exceptions.GoogleAPICallError, resource: str) -> RenderfleetError:
    if isinstance(exc, gcloud_exceptions.NotFound):
        return NotFoundError(resource)
    if isinstance(exc, gcloud_exceptions.TooManyRequests):
        return QuotaExceededError(exc.message)
    if isinstance(exc, (gcloud_exceptions.Forbidden, gcloud_exceptions.Unauthorized)):
        return AccessDeniedError(exc.message)
    return StorageError(f"{resource}: {exc.message}")


class GCSArtifactStore(_ArtifactStoreBase):
    """Google Cloud Storage store for production."""

    def __init__(self, settings: Settings | None = None, client: storage.Client | None = None) -> None:
        super().__init__(settings)
        self._client = client
        self._credentials = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            if self.settings.gcp_project_id:
                self._client = storage.Client(project=self.settings.gcp_project_id)
            else:
                self._client = storage.Client()
        return self._client

    def _bucket(self, region: str | None) -> storage.Bucket:
        return self.client.bucket(self.get_or_create_bucket(region).name)

    def _select_or_create_bucket(self, region: str) -> BucketInfo:
        location = region.upper()
        try:
            for bucket in self.client.list_buckets(prefix=self.settings.bucket_prefix):
                if (bucket.location or "").upper() == location:
                    return BucketInfo(name=bucket.name, region=region)

            name = bucket_name(self.settings.bucket_prefix, region, secrets.token_hex(5))
            logger.info(f"[STORE] Creating bucket {name} in {location}")
            bucket = self.client.create_bucket(name, location=location)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, f"bucket in {region}") from e
        return BucketInfo(name=bucket.name, region=region)

    @staticmethod
    def _describe(blob: storage.Blob) -> StoredObject:
        md5 = base64.b64decode(blob.md5_hash).hex() if blob.md5_hash else None
        return StoredObject(path=blob.name, size=blob.size or 0, md5=md5, updated_at=blob.updated)

    def put_object(
        self,
        path: str,
        data: bytes,
        *,
        region: str | None = None,
        content_type: str | None = None,
    ) -> StoredObject:
        blob = self._bucket(region).blob(path)
        try:
            blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e
        return self._describe(blob)

    def upload_file(self, local_path: str, path: str, *, region: str | None = None) -> StoredObject:
        blob = self._bucket(region).blob(path)
        try:
            blob.upload_from_filename(local_path)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e
        return self._describe(blob)

    def get_object(self, path: str, *, region: str | None = None) -> bytes:
        try:
            return self._bucket(region).blob(path).download_as_bytes()
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e

    def download_file(self, path: str, local_path: str, *, region: str | None = None) -> str:
        try:
            self._bucket(region).blob(path).download_to_filename(local_path)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e
        return local_path

    def get_object_list(self, prefix: str, *, region: str | None = None) -> list[StoredObject]:
        bucket_info = self.get_or_create_bucket(region)
        try:
            blobs = self.client.list_blobs(bucket_info.name, prefix=prefix)
            return [self._describe(blob) for blob in blobs]
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, prefix) from e

    def delete_object(self, path: str, *, region: str | None = None) -> int:
        blob = self._bucket(region).blob(path)
        try:
            blob.reload()
            size = blob.size or 0
            blob.delete()
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e
        return size

    def public_url(self, path: str, *, region: str | None = None) -> str:
        bucket = self.get_or_create_bucket(region)
        return f"https://storage.googleapis.com/{bucket.name}/{path}"

    def _signing_kwargs(self) -> dict[str, str]:
        """On Cloud Run the default credentials cannot sign locally; sign via IAM."""
        if self._credentials is None:
            self._credentials, _ = google_auth_default()
        if isinstance(self._credentials, compute_engine.Credentials):
            if not self._credentials.valid:
                self._credentials.refresh(auth_requests.Request())
            return {
                "service_account_email": self._credentials.service_account_email,
                "access_token": self._credentials.token,
            }
        return {}

    def presign(self, path: str, ttl_minutes: int | None = None, *, region: str | None = None) -> str:
        ttl = ttl_minutes or self.settings.presign_default_ttl_minutes
        blob = self._bucket(region).blob(path)
        try:
            if not blob.exists():
                raise NotFoundError(path)
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(minutes=ttl),
                method="GET",
                **self._signing_kwargs(),
            )
        except gcloud_exceptions.GoogleAPICallError as e:
            raise _translate_gcs_error(e, path) from e


ArtifactStore = LocalArtifactStore | GCSArtifactStore


@lru_cache
def get_storage_service() -> ArtifactStore:
    settings = get_settings()
    if settings.use_local_storage:
        return LocalArtifactStore(settings)
    return GCSArtifactStore(settings)
