from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
    from datetime import datetime


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata of a stored object, as reported by the blob store."""

    key: str
    size: int
    etag: str
    uploaded: datetime
    content_type: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_disposition: str | None = None
    cache_control: str | None = None
    cache_expiry: datetime | None = None

    @property
    def http_etag(self) -> str:
        return f'"{self.etag}"'


@dataclass
class ObjectBody:
    """An object's content stream paired with its metadata."""

    metadata: ObjectMetadata
    stream: AsyncIterator[bytes]
    closer: Callable[[], Awaitable[None]] | None = None
    _closed: bool = field(default=False, init=False, repr=False)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.closer is not None:
            await self.closer()


# A blob store call yields metadata alone (HEAD, failed condition) or a body.
FetchResult = Union[ObjectMetadata, ObjectBody]


def metadata_of(result: FetchResult) -> ObjectMetadata:
    if isinstance(result, ObjectBody):
        return result.metadata
    return result


@dataclass(frozen=True)
class OffsetRange:
    offset: int
    length: int

    def length_for(self, size: int) -> int:
        return self.length

    def bounds(self, size: int) -> tuple[int, int]:
        return self.offset, self.offset + self.length - 1

    def to_header(self) -> str:
        return f"bytes={self.offset}-{self.offset + self.length - 1}"


@dataclass(frozen=True)
class SuffixRange:
    suffix: int

    def length_for(self, size: int) -> int:
        return self.suffix

    def bounds(self, size: int) -> tuple[int, int]:
        return size - self.suffix, size - 1

    def to_header(self) -> str:
        return f"bytes=-{self.suffix}"


ByteRange = Union[OffsetRange, SuffixRange]


@dataclass(frozen=True)
class Conditions:
    """Preconditions forwarded to a conditional blob store read."""

    etag_matches: str | None = None
    etag_does_not_match: str | None = None
    uploaded_before: datetime | None = None
    uploaded_after: datetime | None = None

    def __bool__(self) -> bool:
        return any(
            value is not None
            for value in (
                self.etag_matches,
                self.etag_does_not_match,
                self.uploaded_before,
                self.uploaded_after,
            )
        )


class PreconditionOutcome(enum.Enum):
    PROCEED = "proceed"
    NOT_MODIFIED = "not_modified"
    PRECONDITION_FAILED = "precondition_failed"


@dataclass(frozen=True)
class GatewayRequest:
    """Framework-neutral view of an incoming request.

    Header names are stored lower-cased.
    """

    method: str
    path: str
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    host: str = ""

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        *,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        host: str = "",
    ) -> GatewayRequest:
        return cls(
            method=method.upper(),
            path=path,
            query=dict(query or {}),
            headers={k.lower(): v for k, v in (headers or {}).items()},
            host=host,
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass
class GatewayResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: AsyncIterable[bytes] | None = None

    async def read(self) -> bytes:
        """Drain the body; used by callers that need the full content."""
        if self.body is None:
            return b""
        return b"".join([chunk async for chunk in self.body])
