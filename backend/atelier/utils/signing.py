"""Presigned URL generation for private R2 objects, and the reverse mapping.

`sign()` never raises: a missing configuration or a boto error yields None
and callers fall back to the stored URL. `extract_key()` turns any URL this
service issued (public, virtual-host, path-style presigned) or a bare key
back into the object key; anything else is None.
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import unquote, urlsplit

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from atelier.utils.r2 import R2_HOST_SUFFIX, R2Config, build_client
from atelier.utils.retry import RetryExhaustedError, RetryPolicy

logger = structlog.get_logger()

DISPLAY_TTL_SECONDS = 3600  # general display
DOWNLOAD_TTL_SECONDS = 7200  # bulk download, client keeps URLs for a session

_SIGNING_ERRORS = (ClientError, BotoCoreError, ValueError)


class UrlSigner:
    def __init__(
        self,
        config: R2Config,
        client: Any = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        if client is None and config.is_complete:
            client = build_client(config)
        self._client = client
        self._retry = retry_policy

        public = urlsplit(config.public_url) if config.public_url else None
        self._public_host = (public.hostname or "").lower() if public else ""
        self._public_path = public.path.rstrip("/") if public else ""

    @property
    def available(self) -> bool:
        return self._client is not None and bool(self.config.bucket_name)

    async def sign(self, key: str, ttl_seconds: int = DISPLAY_TTL_SECONDS) -> str | None:
        """Return a time-limited GET URL for `key`, or None on any failure."""
        if not self.available:
            logger.warning("r2_sign_unavailable", key=key)
            return None
        if not key:
            return None

        async def _presign() -> str:
            return await asyncio.to_thread(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.config.bucket_name, "Key": key},
                ExpiresIn=ttl_seconds,
            )

        try:
            if self._retry is not None:
                return await self._retry.run(_presign, retry_on=_SIGNING_ERRORS)
            return await _presign()
        except (*_SIGNING_ERRORS, RetryExhaustedError) as exc:
            logger.error("r2_presign_failed", key=key, ttl_seconds=ttl_seconds, error=str(exc))
            return None

    def is_storage_url(self, url: str) -> bool:
        """True for bare keys and for URLs on our R2 / public hosts."""
        if not url or url.startswith("data:"):
            return False
        try:
            parts = urlsplit(url.strip())
        except ValueError:
            return False
        if not parts.scheme:
            return True
        host = (parts.hostname or "").lower()
        return host.endswith(R2_HOST_SUFFIX) or (bool(self._public_host) and host == self._public_host)

    def extract_key(self, url: str) -> str | None:
        """Recover the object key from a URL or bare key. Never raises."""
        if not isinstance(url, str) or not url.strip() or url.startswith("data:"):
            return None
        try:
            parts = urlsplit(url.strip())
        except ValueError:
            logger.warning("r2_extract_key_unparsable", url=url[:100])
            return None

        path = unquote(parts.path)
        if not parts.scheme and not parts.netloc:
            return path.lstrip("/") or None
        if parts.scheme not in ("http", "https"):
            return None

        host = (parts.hostname or "").lower()
        if self._public_host and host == self._public_host:
            if self._public_path:
                if not path.startswith(self._public_path + "/"):
                    return None
                path = path[len(self._public_path) :]
            return path.lstrip("/") or None

        if not host.endswith(R2_HOST_SUFFIX):
            return None
        key = path.lstrip("/")
        subdomain = host[: -len(R2_HOST_SUFFIX)]
        if "." not in subdomain:
            # Path-style (account endpoint): first segment is the bucket
            _, _, key = key.partition("/")
        return key or None
