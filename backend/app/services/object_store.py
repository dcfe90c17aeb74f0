"""S3 object-store boundary.

The server process holds the only bucket credentials. Everything above this
module talks in plain keys and gets back presigned URLs; botocore errors are
translated into ``ObjectNotFoundError`` / ``ObjectStoreError`` here so no caller
has to inspect error codes.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator
from urllib.parse import urlencode, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings, settings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRESIGN_OPERATIONS = {"PUT": "put_object", "GET": "get_object"}


class ObjectStoreError(Exception):
    """The store could not complete a call for infrastructural reasons."""

    def __init__(self, message: str, *, key: str | None = None):
        self.key = key
        super().__init__(message)


class ObjectNotFoundError(ObjectStoreError):
    """The addressed key does not exist."""


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    def __init__(self, client: Any, bucket: str, *, region: str, public_base_url: str | None = None):
        self.client = client
        self.bucket = bucket
        self.region = region
        self.public_base_url = (public_base_url or f"https://{bucket}.s3.{region}.amazonaws.com").rstrip("/")
        self._public_host = urlsplit(self.public_base_url).hostname or ""

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            region_name=cfg.s3_region,
            endpoint_url=cfg.s3_endpoint_url,
            aws_access_key_id=cfg.aws_access_key_id,
            aws_secret_access_key=cfg.aws_secret_access_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=cfg.s3_connect_timeout_seconds,
                read_timeout=cfg.s3_read_timeout_seconds,
                retries={"total_max_attempts": 1},
                s3={"addressing_style": "virtual"},
            ),
        )
        return cls(client, cfg.s3_bucket, region=cfg.s3_region, public_base_url=cfg.s3_public_base_url)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def owns(self, reference: str) -> bool:
        """True when ``reference`` is a bare key or a URL served from this bucket."""
        if "://" not in reference:
            return True
        host = (urlsplit(reference).hostname or "").lower()
        if host == self._public_host.lower():
            return True
        bucket = self.bucket.lower()
        return host.startswith(f"{bucket}.s3.") and host.endswith("amazonaws.com")

    def presign(self, key: str, method: str, expires_in: int, *, content_type: str | None = None) -> str:
        operation = _PRESIGN_OPERATIONS.get(method.upper())
        if operation is None:
            raise ValueError(f"Unsupported presign method: {method}")
        params: dict[str, str] = {"Bucket": self.bucket, "Key": key}
        if content_type and operation == "put_object":
            params["ContentType"] = content_type
        try:
            return self.client.generate_presigned_url(
                ClientMethod=operation, Params=params, ExpiresIn=int(expires_in)
            )
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError("presign failed", key=key) from exc

    def copy(self, source_key: str, dest_key: str, *, tags: dict[str, str] | None = None) -> None:
        """Server-side copy; ``tags`` replaces the object tags on the destination."""
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "CopySource": {"Bucket": self.bucket, "Key": source_key},
            "Key": dest_key,
        }
        if tags:
            params["Tagging"] = urlencode(tags)
            params["TaggingDirective"] = "REPLACE"
        try:
            self.client.copy_object(**params)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError("source object missing", key=source_key) from exc
            raise ObjectStoreError("copy failed", key=source_key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError("copy failed", key=source_key) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError("delete failed", key=key) from exc

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise ObjectStoreError("head failed", key=key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError("head failed", key=key) from exc
        return True

    def list_keys(self, prefix: str, *, start_after: str | None = None, limit: int = 1000) -> list[str]:
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": limit}
        if start_after:
            params["StartAfter"] = start_after
        try:
            response = self.client.list_objects_v2(**params)
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError("list failed", key=prefix) from exc
        return [item["Key"] for item in response.get("Contents", [])]

    def iter_keys(self, prefix: str, *, start_after: str | None = None, page_size: int = 1000) -> Iterator[str]:
        """Every key under ``prefix`` in listing order, one ``list_keys`` page at a time."""
        while True:
            page = self.list_keys(prefix, start_after=start_after, limit=page_size)
            yield from page
            if len(page) < page_size:
                return
            start_after = page[-1]

    def get_tags(self, key: str) -> dict[str, str]:
        try:
            response = self.client.get_object_tagging(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError("object missing", key=key) from exc
            raise ObjectStoreError("tagging lookup failed", key=key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError("tagging lookup failed", key=key) from exc
        return {tag["Key"]: tag["Value"] for tag in response.get("TagSet", [])}
