from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlencode

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .models import GatewayResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .models import GatewayRequest
    from .settings import CacheSettings

LOG = logging.getLogger("iso_gateway.edge_cache")

KEYED_HEADERS = (
    "range",
    "if-range",
    "if-match",
    "if-none-match",
    "if-modified-since",
    "if-unmodified-since",
)
_UNCACHEABLE_DIRECTIVES = {"no-store", "no-cache", "private"}
DEFAULT_MEMORY_BYTES = 256 * 1024 * 1024


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(func, *args, **kwargs)


def cache_key(request: GatewayRequest) -> str:
    """Derive the cache key of a request.

    Method, host, path, the sorted query and the headers that change what a
    read returns all take part.
    """
    parts = [request.method, request.host, request.path]
    parts.append(urlencode(sorted(request.query.items())))
    for name in KEYED_HEADERS:
        value = request.header(name)
        if value is not None:
            parts.append(f"{name}:{value}")
    return hashlib.sha256("\n".join(parts).encode()).hexdigest()


def freshness_lifetime(cache_control: str) -> float | None:
    """Seconds a response with ``cache_control`` may be reused.

    Returns ``None`` when no lifetime is given, and ``0`` when the response
    must not be stored at all.
    """
    lifetime = None
    shared_lifetime = None
    for directive in cache_control.split(","):
        name, _, value = directive.strip().partition("=")
        name = name.lower()
        if name in _UNCACHEABLE_DIRECTIVES:
            return 0
        if name in {"max-age", "s-maxage"}:
            try:
                seconds = max(0, int(value.strip().strip('"')))
            except ValueError:
                continue
            if name == "s-maxage":
                shared_lifetime = seconds
            else:
                lifetime = seconds
    return shared_lifetime if shared_lifetime is not None else lifetime


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes = b""
    stored_at: float = field(default_factory=time.time)

    @property
    def reusable(self) -> bool:
        return 200 <= self.status_code < 300 or self.status_code == 304

    def expired(self, now: float | None = None) -> bool:
        lifetime = freshness_lifetime(self.headers.get("cache-control", ""))
        if lifetime is None:
            return False
        now = time.time() if now is None else now
        return now - self.stored_at >= lifetime

    def to_response(self) -> GatewayResponse:
        async def body() -> AsyncIterator[bytes]:
            yield self.body

        return GatewayResponse(
            status_code=self.status_code,
            headers=dict(self.headers),
            body=body() if self.body else None,
        )


class EdgeCache(Protocol):
    async def match(self, key: str) -> CachedResponse | None: ...

    async def put(self, key: str, response: CachedResponse) -> None: ...


class MemoryEdgeCache:
    """Process-local cache evicting the least recently used entry.

    Both the number of entries and the total size of their bodies are
    bounded; a body larger than ``max_bytes`` is never stored.
    """

    def __init__(self, capacity: int = 1024, max_bytes: int = DEFAULT_MEMORY_BYTES):
        if capacity <= 0:
            msg = "Capacity must be positive"
            raise ValueError(msg)
        if max_bytes <= 0:
            msg = "max_bytes must be positive"
            raise ValueError(msg)
        self.capacity = capacity
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size_bytes(self) -> int:
        return self._bytes

    async def match(self, key: str) -> CachedResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired():
            self._remove(key)
            return None
        self._entries.move_to_end(key)
        return entry

    async def put(self, key: str, response: CachedResponse) -> None:
        if freshness_lifetime(response.headers.get("cache-control", "")) == 0:
            return
        if len(response.body) > self.max_bytes:
            LOG.debug(
                "not caching %s in memory (%d bytes, limit %d)",
                key,
                len(response.body),
                self.max_bytes,
            )
            return
        if key in self._entries:
            self._remove(key)
        self._entries[key] = response
        self._bytes += len(response.body)
        while len(self._entries) > self.capacity or self._bytes > self.max_bytes:
            evicted = next(iter(self._entries))
            self._remove(evicted)
            LOG.debug("evicted cache entry %s", evicted)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._bytes -= len(entry.body)


class S3EdgeCache:
    """Cache storing one object per entry in an S3 bucket.

    Status and headers travel in the object's user metadata.
    """

    prefix = "edge/"

    def __init__(self, client: Any, bucket: str):
        self._client = client
        self._bucket = bucket
        self._bucket_ready = False

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> S3EdgeCache:
        session = Session(
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            region_name=settings.region,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.endpoint,
            config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
        )
        return cls(client, settings.bucket_name)

    async def match(self, key: str) -> CachedResponse | None:
        try:
            result = await _run_sync(
                partial(
                    self._client.get_object,
                    Bucket=self._bucket,
                    Key=self.prefix + key,
                )
            )
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code in {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}:
                return None
            raise

        stream = result["Body"]
        try:
            body = await _run_sync(stream.read)
        finally:
            await _run_sync(stream.close)

        metadata = result.get("Metadata") or {}
        entry = CachedResponse(
            status_code=int(metadata.get("status", "200")),
            headers=json.loads(metadata.get("headers", "{}")),
            body=body,
            stored_at=float(metadata.get("stored-at", "0")),
        )
        if entry.expired():
            LOG.debug("cache entry %s expired", key)
            return None
        return entry

    async def put(self, key: str, response: CachedResponse) -> None:
        if freshness_lifetime(response.headers.get("cache-control", "")) == 0:
            return
        await self._ensure_bucket()
        await _run_sync(
            partial(
                self._client.put_object,
                Bucket=self._bucket,
                Key=self.prefix + key,
                Body=response.body,
                Metadata={
                    "status": str(response.status_code),
                    "headers": json.dumps(response.headers, separators=(",", ":")),
                    "stored-at": repr(response.stored_at),
                },
            )
        )
        LOG.debug("stored cache entry %s (%d bytes)", key, len(response.body))

    async def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        try:
            await _run_sync(partial(self._client.head_bucket, Bucket=self._bucket))
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code not in {"404", "NoSuchBucket", "NotFound"}:
                raise
            await _run_sync(partial(self._client.create_bucket, Bucket=self._bucket))
            LOG.info("created cache bucket %s", self._bucket)
        self._bucket_ready = True


def build_edge_cache(settings: CacheSettings) -> EdgeCache:
    if settings.backend == "s3":
        return S3EdgeCache.from_settings(settings)
    return MemoryEdgeCache(
        capacity=settings.max_entries, max_bytes=settings.max_memory_bytes
    )
