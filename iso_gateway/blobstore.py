from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .headers import parse_http_date
from .models import ObjectBody, ObjectMetadata

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from .models import ByteRange, Conditions, FetchResult
    from .settings import OriginSettings

LOG = logging.getLogger("iso_gateway.blobstore")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
CONDITION_FAILED_CODES = {"304", "NotModified", "412", "PreconditionFailed"}
CHUNK_SIZE = 1024 * 64


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(func, *args, **kwargs)


def error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


class BlobStore(Protocol):
    """Read-only access to stored objects."""

    async def head(self, key: str) -> ObjectMetadata | None:
        """Return the object's metadata, or ``None`` if it does not exist."""
        ...

    async def get(
        self,
        key: str,
        *,
        byte_range: ByteRange | None = None,
        only_if: Conditions | None = None,
    ) -> FetchResult | None:
        """Return the object's body, or ``None`` if it does not exist.

        When ``only_if`` is given and does not hold, the object's metadata is
        returned without a body.
        """
        ...


class S3BlobStore:
    """Blob store backed by a bucket on an S3-compatible service."""

    def __init__(self, client: Any, bucket: str):
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: OriginSettings) -> S3BlobStore:
        session = Session(
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            aws_session_token=settings.session_token,
            region_name=settings.region,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 1},
                s3={"addressing_style": settings.addressing_style},
            ),
        )
        return cls(client, settings.bucket)

    def describe(self) -> str:
        endpoint = self._client.meta.endpoint_url or "aws"
        return f"s3://{self._bucket} ({endpoint})"

    async def head(self, key: str) -> ObjectMetadata | None:
        try:
            result = await _run_sync(
                partial(self._client.head_object, Bucket=self._bucket, Key=key)
            )
        except ClientError as error:
            if error_code(error) in NOT_FOUND_CODES:
                LOG.debug("head miss for s3://%s/%s", self._bucket, key)
                return None
            raise
        return self._metadata(key, result)

    async def get(
        self,
        key: str,
        *,
        byte_range: ByteRange | None = None,
        only_if: Conditions | None = None,
    ) -> FetchResult | None:
        get_kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if byte_range is not None:
            get_kwargs["Range"] = byte_range.to_header()
        if only_if is not None:
            get_kwargs.update(self._condition_kwargs(only_if))

        try:
            result = await _run_sync(partial(self._client.get_object, **get_kwargs))
        except ClientError as error:
            code = error_code(error)
            if code in NOT_FOUND_CODES:
                LOG.debug("get miss for s3://%s/%s", self._bucket, key)
                return None
            if code in CONDITION_FAILED_CODES and only_if is not None:
                LOG.debug(
                    "condition failed (%s) for s3://%s/%s", code, self._bucket, key
                )
                return await self.head(key)
            raise

        streaming_body = result["Body"]

        async def iterator() -> AsyncIterator[bytes]:
            while True:
                chunk = await _run_sync(streaming_body.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

        async def close() -> None:
            await _run_sync(streaming_body.close)

        return ObjectBody(
            metadata=self._metadata(key, result),
            stream=iterator(),
            closer=close,
        )

    @staticmethod
    def _condition_kwargs(only_if: Conditions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if only_if.etag_matches is not None:
            kwargs["IfMatch"] = f'"{only_if.etag_matches}"'
        if only_if.etag_does_not_match is not None:
            kwargs["IfNoneMatch"] = f'"{only_if.etag_does_not_match}"'
        if only_if.uploaded_before is not None:
            kwargs["IfUnmodifiedSince"] = only_if.uploaded_before
        if only_if.uploaded_after is not None:
            kwargs["IfModifiedSince"] = only_if.uploaded_after
        return kwargs

    @staticmethod
    def _metadata(key: str, result: Mapping[str, Any]) -> ObjectMetadata:
        content_range = result.get("ContentRange")
        if content_range and "/" in content_range:
            # ranged responses report the window in ContentLength
            size = int(content_range.rsplit("/", 1)[1])
        else:
            size = int(result.get("ContentLength", 0))

        uploaded = result.get("LastModified") or datetime.fromtimestamp(0, UTC)
        if uploaded.tzinfo is None:
            uploaded = uploaded.replace(tzinfo=UTC)

        expires = result.get("Expires")
        if not isinstance(expires, datetime):
            expires = parse_http_date(result.get("ExpiresString"))

        return ObjectMetadata(
            key=key,
            size=size,
            etag=str(result.get("ETag", "")).strip('"'),
            uploaded=uploaded,
            content_type=result.get("ContentType"),
            content_encoding=result.get("ContentEncoding"),
            content_language=result.get("ContentLanguage"),
            content_disposition=result.get("ContentDisposition"),
            cache_control=result.get("CacheControl"),
            cache_expiry=expires,
        )

