from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .headers import format_http_date
from .models import GatewayResponse, ObjectBody, metadata_of

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .models import ByteRange, FetchResult, ObjectMetadata

LOG = logging.getLogger("iso_gateway.assembler")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_PAD_CHUNK = 1024 * 64


async def fixed_length(body: ObjectBody, length: int) -> AsyncIterator[bytes]:
    """Yield exactly ``length`` bytes of ``body``, truncating or zero-padding.

    The body is closed once the stream ends or is abandoned.
    """
    remaining = length
    try:
        async for chunk in body.stream:
            if len(chunk) > remaining:
                LOG.warning(
                    "%s produced more than the declared %d bytes, truncating",
                    body.metadata.key,
                    length,
                )
                chunk = chunk[:remaining]
            if chunk:
                remaining -= len(chunk)
                yield chunk
            if not remaining:
                break
        if remaining:
            LOG.warning(
                "%s ended %d bytes short of the declared %d, padding",
                body.metadata.key,
                remaining,
                length,
            )
        while remaining:
            pad = min(remaining, _PAD_CHUNK)
            remaining -= pad
            yield bytes(pad)
    finally:
        await body.aclose()


def content_range(byte_range: ByteRange, size: int) -> str:
    first, last = byte_range.bounds(size)
    return f"bytes {first}-{last}/{size}"


def validator_headers(metadata: ObjectMetadata) -> dict[str, str]:
    return {
        "etag": metadata.http_etag,
        "last-modified": format_http_date(metadata.uploaded),
    }


class ResponseAssembler:
    def __init__(self, allowed_origins: str = "", cache_control: str = ""):
        self._allowed_origins = allowed_origins
        self._cache_control = cache_control

    def assemble(
        self,
        result: FetchResult,
        key: str,
        byte_range: ByteRange | None,
        *,
        not_found: bool = False,
    ) -> GatewayResponse:
        """Build the final response for an object read.

        ``not_found`` marks ``result`` as the configured not-found object
        standing in for a missing one. Absent header values are sent as
        empty strings.
        """
        metadata = metadata_of(result)
        ranged = byte_range is not None and not not_found

        content_length = metadata.size
        body = None
        if isinstance(result, ObjectBody):
            if metadata.size != 0:
                if ranged:
                    content_length = byte_range.length_for(metadata.size)
                body = fixed_length(result, content_length)
            else:
                body = _closing_empty(result)

        if not_found:
            status_code = 404
        elif byte_range is not None:
            status_code = 206
        else:
            status_code = 200

        cache_control = metadata.cache_control
        if cache_control is None:
            cache_control = "" if not_found else self._cache_control

        headers = {
            "accept-ranges": "bytes",
            "access-control-allow-origin": self._allowed_origins,
            "etag": "" if not_found else metadata.http_etag,
            "cache-control": cache_control,
            "expires": (
                format_http_date(metadata.cache_expiry)
                if metadata.cache_expiry is not None
                else ""
            ),
            "last-modified": "" if not_found else format_http_date(metadata.uploaded),
            "content-encoding": metadata.content_encoding or "",
            "content-type": metadata.content_type or DEFAULT_CONTENT_TYPE,
            "content-language": metadata.content_language or "",
            "content-disposition": f'attachment; filename="{key}"',
            "content-range": (
                content_range(byte_range, metadata.size) if ranged else ""
            ),
            "content-length": str(content_length),
        }
        return GatewayResponse(status_code=status_code, headers=headers, body=body)


async def _closing_empty(body: ObjectBody) -> AsyncIterator[bytes]:
    await body.aclose()
    return
    yield
