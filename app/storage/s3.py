"""
S3 Document Storage — Organization-Isolated

Every original upload is stored content-addressed under the owning
organization's prefix:

    s3://<BUCKET>/tenants/<organization_id>/documents/<md5>.<ext>

  - The prefix is built server-side from the authenticated organization;
    a key outside it is rejected before any S3 call.
  - The same bytes uploaded twice by one organization map onto the same
    key; the (organization_id, file_hash) unique constraint stops the
    second Document row.
  - Bundle children have no object of their own: their text is the
    fragment recorded at creation time.

Encryption: SSE-KMS with the configured key when `s3_kms_key_arn` is set,
SSE-S3 (AES256) otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

DOCUMENTS_RESOURCE = "documents"


@dataclass(frozen=True)
class StoredObject:
    """Returned by put_document / head."""
    organization_id: UUID
    key:             str
    bucket:          str
    size_bytes:      int
    content_type:    str
    etag:            str
    version_id:      str | None = None


class StorageScopeError(PermissionError):
    """A key outside the organization's prefix was requested."""


def content_addressed_key(organization_id: UUID, file_hash: str, extension: str) -> str:
    """tenants/<org>/documents/<md5>.<ext> — extension without the dot, lowercased."""
    ext = extension.lower().lstrip(".")
    name = f"{file_hash}.{ext}" if ext else file_hash
    return f"tenants/{organization_id}/{DOCUMENTS_RESOURCE}/{name}"


class S3StorageService:
    """
    Async S3 operations bound to one organization.

    Created per request (API) or per task (worker); there is no way to read
    or write another organization's prefix through an instance.
    """

    def __init__(
        self,
        organization_id: UUID,
        bucket:          str | None = None,
        kms_key_arn:     str | None = None,
    ) -> None:
        self._org     = organization_id
        self._bucket  = bucket or settings.s3_bucket
        self._kms_key = settings.s3_kms_key_arn if kms_key_arn is None else kms_key_arn
        self._session = aioboto3.Session()

    @property
    def prefix(self) -> str:
        return f"tenants/{self._org}/"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        return self._session.client("s3", region_name=settings.aws_region)

    def _sse_params(self) -> dict:
        if self._kms_key:
            return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key}
        return {"ServerSideEncryption": "AES256"}

    def _check_scope(self, key: str) -> None:
        if not key.startswith(self.prefix) or ".." in key:
            raise StorageScopeError(f"Key outside organization prefix: {key}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def put_document(
        self,
        body:         bytes,
        file_hash:    str,
        extension:    str,
        content_type: str,
        metadata:     dict[str, str] | None = None,
    ) -> StoredObject:
        """Upload an original file under its content-addressed key."""
        key = content_addressed_key(self._org, file_hash, extension)

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata={
                    "organization_id": str(self._org),
                    "md5":             file_hash,
                    **(metadata or {}),
                },
                Tagging=f"organization_id={self._org}&resource={DOCUMENTS_RESOURCE}",
                **self._sse_params(),
            )

        logger.info(
            "S3 upload ok | org=%s key=%s size=%d", self._org, key, len(body),
        )
        return StoredObject(
            organization_id=self._org,
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    async def get_document(self, key: str) -> bytes:
        """Download by stored key. Raises FileNotFoundError when the object is gone."""
        self._check_scope(key)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def delete_document(self, key: str, hard: bool = False) -> None:
        """Soft delete tags the object; bucket lifecycle rules expire it later."""
        self._check_scope(key)
        async with self._client() as s3:
            if hard:
                await s3.delete_object(Bucket=self._bucket, Key=key)
                logger.warning("S3 hard delete | org=%s key=%s", self._org, key)
            else:
                await s3.put_object_tagging(
                    Bucket=self._bucket,
                    Key=key,
                    Tagging={"TagSet": [{"Key": "deleted", "Value": "true"}]},
                )
                logger.info("S3 soft delete | org=%s key=%s", self._org, key)

    async def head(self, key: str) -> dict:
        self._check_scope(key)
        async with self._client() as s3:
            try:
                return await s3.head_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
