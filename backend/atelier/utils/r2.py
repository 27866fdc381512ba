"""Cloudflare R2 artifact store: S3-compatible object storage for design images.

Objects are written once under unique keys and never overwritten:
    designs/{design_id}/{output_id}_{view_type}_{suffix}.{ext}

The adapter is constructed explicitly by the process bootstrap. Without a
complete R2 configuration it is built in a disabled state: every operation
reports `storage_unavailable` (or False / None) instead of raising, so
callers can keep inline payloads rather than crash.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import re
import uuid
from dataclasses import dataclass
from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from atelier.config import Settings
from atelier.errors import InvalidPayloadError
from atelier.models.contracts import StorageErrorKind

logger = structlog.get_logger()

R2_HOST_SUFFIX = ".r2.cloudflarestorage.com"
CACHE_CONTROL = "public, max-age=31536000, immutable"  # keys are unique per upload

EXTENSION_BY_MIME: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}
DEFAULT_EXTENSION = "png"

_DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)

# Storage errors are expected, handle-able conditions; anything else escapes.
_TRANSPORT_ERRORS = (ClientError, BotoCoreError, OSError)


@dataclass(frozen=True)
class R2Config:
    account_id: str
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    public_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> R2Config:
        return cls(
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket_name=settings.r2_bucket_name,
            public_url=settings.r2_public_url,
        )

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("account_id", "access_key_id", "secret_access_key", "bucket_name")
            if not getattr(self, name)
        ]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}{R2_HOST_SUFFIX}"


def build_client(config: R2Config) -> Any:
    """Create an S3 client pointed at Cloudflare R2."""
    return boto3.client(
        "s3",
        endpoint_url=config.endpoint_url,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        config=Config(signature_version="s3v4"),
        region_name="auto",
    )


@dataclass(frozen=True)
class DecodedImage:
    data: bytes
    mime_type: str
    extension: str


def decode_data_uri(data_uri: str) -> DecodedImage:
    """Decode `data:<mime>;base64,<payload>` into image bytes.

    Raises InvalidPayloadError when the URI is not two-part, the MIME type is
    not an image, or the base64 is malformed or empty. Payloads of the mapped
    raster types must also open in Pillow; other image/* types (svg, heic,
    avif) are stored as-is under the default extension.
    """
    match = _DATA_URI_RE.match(data_uri.strip()) if data_uri else None
    if match is None:
        raise InvalidPayloadError("Invalid data URI: expected data:image/<type>;base64,<data>")

    mime_type = match.group(1).strip().lower()
    if not mime_type.startswith("image/"):
        raise InvalidPayloadError(f"Unsupported MIME type: {mime_type}")

    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidPayloadError("Failed to decode base64 data") from exc
    if not data:
        raise InvalidPayloadError("Data URI payload is empty")

    extension = EXTENSION_BY_MIME.get(mime_type)
    if extension is not None:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except Exception as exc:
            raise InvalidPayloadError("Payload is not a decodable image") from exc
    else:
        logger.warning("r2_unknown_mime_type", mime_type=mime_type, fallback=DEFAULT_EXTENSION)
        extension = DEFAULT_EXTENSION
    return DecodedImage(data=data, mime_type=mime_type, extension=extension)


def random_suffix(length: int = 10) -> str:
    return uuid.uuid4().hex[:length]


@dataclass(frozen=True)
class UploadResult:
    success: bool
    url: str | None = None
    key: str | None = None
    error: str | None = None
    error_kind: StorageErrorKind | None = None

    @classmethod
    def stored(cls, url: str, key: str) -> UploadResult:
        return cls(success=True, url=url, key=key)

    @classmethod
    def failed(cls, kind: StorageErrorKind, error: str) -> UploadResult:
        return cls(success=False, error=error, error_kind=kind)


_UNAVAILABLE = UploadResult.failed("storage_unavailable", "R2 storage not configured")


@dataclass(frozen=True)
class StoredBlob:
    data: bytes
    content_type: str


class R2Storage:
    """Put/get/delete/exists for design images in one R2 bucket."""

    def __init__(self, config: R2Config, client: Any = None) -> None:
        self.config = config
        if client is None and config.is_complete:
            client = build_client(config)
        self._client = client
        if self._client is None:
            logger.warning("r2_storage_disabled", missing=config.missing_fields())

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Any:
        return self._client

    @property
    def bucket(self) -> str:
        return self.config.bucket_name

    def public_url(self, key: str) -> str:
        if self.config.public_url:
            return f"{self.config.public_url.rstrip('/')}/{key}"
        return f"https://{self.config.bucket_name}.{self.config.account_id}{R2_HOST_SUFFIX}/{key}"

    @staticmethod
    def build_key(
        design_id: str, view_type: str, extension: str, output_id: str | None = None
    ) -> str:
        output_id = output_id or f"output-{random_suffix()}"
        return f"designs/{design_id}/{output_id}_{view_type}_{random_suffix()}.{extension}"

    async def put(self, key: str, data: bytes, mime_type: str) -> UploadResult:
        """Write one immutable object. Returns a typed result, never raises on I/O."""
        if self._client is None:
            return _UNAVAILABLE
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
                ContentLength=len(data),
                CacheControl=CACHE_CONTROL,
            )
        except _TRANSPORT_ERRORS as exc:
            logger.error("r2_upload_failed", key=key, size=len(data), error=str(exc))
            return UploadResult.failed("upload_failed", str(exc) or type(exc).__name__)
        logger.info("r2_upload", key=key, size=len(data), content_type=mime_type)
        return UploadResult.stored(self.public_url(key), key)

    async def upload_data_uri(
        self,
        data_uri: str,
        design_id: str,
        view_type: str = "variation",
        output_id: str | None = None,
    ) -> UploadResult:
        """Decode a data URI and store it under a fresh unique key."""
        if self._client is None:
            return _UNAVAILABLE
        try:
            decoded = decode_data_uri(data_uri)
        except InvalidPayloadError as exc:
            logger.warning("r2_invalid_payload", design_id=design_id, error=exc.message)
            return UploadResult.failed("invalid_payload", exc.message)
        key = self.build_key(design_id, view_type, decoded.extension, output_id)
        return await self.put(key, decoded.data, decoded.mime_type)

    async def get(self, key: str) -> StoredBlob | None:
        if self._client is None:
            return None
        try:

            def _read() -> StoredBlob:
                response = self._client.get_object(Bucket=self.bucket, Key=key)
                body = response["Body"]
                try:
                    data = body.read()
                finally:
                    body.close()
                return StoredBlob(data=data, content_type=response.get("ContentType") or "image/png")

            return await asyncio.to_thread(_read)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") not in ("404", "NoSuchKey"):
                logger.error("r2_get_failed", key=key, error=str(exc))
            return None
        except (BotoCoreError, OSError) as exc:
            logger.error("r2_get_failed", key=key, error=str(exc))
            return None

    async def delete(self, key: str) -> bool:
        """Best-effort delete. Failures are logged and reported as False."""
        if self._client is None:
            logger.warning("r2_delete_skipped_unavailable", key=key)
            return False
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)
        except _TRANSPORT_ERRORS as exc:
            logger.error("r2_delete_failed", key=key, error=str(exc))
            return False
        logger.info("r2_delete", key=key)
        return True

    async def exists(self, key: str) -> bool:
        """HeadObject check. Any error counts as "does not exist"."""
        if self._client is None:
            return False
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
            return True
        except _TRANSPORT_ERRORS as exc:
            logger.debug("r2_head_missing", key=key, error=str(exc))
            return False

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a prefix (e.g. 'designs/{id}/'). Returns count deleted."""
        if self._client is None:
            return 0

        def _delete_all() -> int:
            paginator = self._client.get_paginator("list_objects_v2")
            deleted_count = 0
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                objects = page.get("Contents", [])
                if not objects:
                    continue
                delete_keys = [{"Key": obj["Key"]} for obj in objects]
                response = self._client.delete_objects(
                    Bucket=self.bucket, Delete={"Objects": delete_keys}
                )
                errors = response.get("Errors", [])
                if errors:
                    logger.warning("r2_delete_partial_failure", prefix=prefix, errors=errors)
                deleted_count += len(delete_keys) - len(errors)
            return deleted_count

        try:
            deleted = await asyncio.to_thread(_delete_all)
        except _TRANSPORT_ERRORS as exc:
            logger.error("r2_delete_prefix_failed", prefix=prefix, error=str(exc))
            return 0
        logger.info("r2_delete_prefix", prefix=prefix, deleted_count=deleted)
        return deleted

    async def ping(self) -> bool:
        """head_bucket probe for the health endpoint."""
        if self._client is None:
            return False
        try:
            await asyncio.to_thread(self._client.head_bucket, Bucket=self.bucket)
            return True
        except _TRANSPORT_ERRORS:
            return False
