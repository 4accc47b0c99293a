from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import anyio

from .assembler import ResponseAssembler, validator_headers
from .background import BackgroundTasks
from .blobstore import S3BlobStore
from .edge_cache import CachedResponse, build_edge_cache, cache_key
from .errors import GatewayError, MethodNotAllowed, NotFound
from .keys import KeyResolver
from .models import GatewayResponse, PreconditionOutcome, metadata_of
from .preconditions import PreconditionEvaluator, Preconditions
from .ranges import apply_if_range, negotiate_range
from .retry import RetryExecutor, RetryingBlobStore, RetryPolicy
from .settings import (
    load_cache_settings_from_env,
    load_gateway_settings_from_env,
    load_origin_settings_from_env,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
    from types import TracebackType

    from .blobstore import BlobStore
    from .edge_cache import EdgeCache
    from .models import FetchResult, GatewayRequest
    from .settings import GatewaySettings

LOG = logging.getLogger("iso_gateway.gateway")

ALLOWED_METHODS = ("GET", "HEAD", "OPTIONS")
ALLOW = ", ".join(ALLOWED_METHODS)
DEFAULT_MAX_CACHEABLE_SIZE = 512 * 1024 * 1024


def text_response(
    status_code: int, message: str, headers: dict[str, str] | None = None
) -> GatewayResponse:
    encoded = message.encode()

    async def body() -> AsyncIterator[bytes]:
        yield encoded

    return GatewayResponse(
        status_code=status_code,
        headers={
            "content-type": "text/plain;charset=UTF-8",
            "content-length": str(len(encoded)),
            **(headers or {}),
        },
        body=body(),
    )


def error_response(error: GatewayError) -> GatewayResponse:
    headers = {}
    if isinstance(error, MethodNotAllowed):
        headers["allow"] = error.allow
    return text_response(error.status_code, error.message, headers)


class Gateway:
    """Serves the gateway's objects with conditional and range support."""

    def __init__(
        self,
        settings: GatewaySettings,
        store: BlobStore,
        cache: EdgeCache,
        *,
        max_cacheable_size: int = DEFAULT_MAX_CACHEABLE_SIZE,
        sleep: Callable[[float], Awaitable[object]] = anyio.sleep,
    ):
        self._settings = settings
        self._store = store
        self._cache = cache
        self._max_cacheable_size = max_cacheable_size
        self._resolver = KeyResolver.from_settings(settings)
        self._backend = RetryingBlobStore(
            store, RetryExecutor(RetryPolicy.from_setting(settings.retries), sleep)
        )
        self._evaluator = PreconditionEvaluator(self._backend)
        self._assembler = ResponseAssembler(
            allowed_origins=settings.allowed_origins,
            cache_control=settings.cache_control,
        )
        self.background = BackgroundTasks()

    @property
    def settings(self) -> GatewaySettings:
        return self._settings

    @classmethod
    def from_env(cls) -> Gateway:
        """Create a Gateway from environment variables.

        Returns:
            Gateway reading from the configured origin bucket.
        """
        cache_settings = load_cache_settings_from_env()
        return cls(
            settings=load_gateway_settings_from_env(),
            store=S3BlobStore.from_settings(load_origin_settings_from_env()),
            cache=build_edge_cache(cache_settings),
            max_cacheable_size=cache_settings.max_object_size,
        )

    async def __aenter__(self) -> Gateway:
        await self.background.__aenter__()
        LOG.info(
            "gateway ready (store=%s, cache=%s, retries=%s)",
            self._describe_store(),
            type(self._cache).__name__
            if self._settings.caching_enabled
            else "disabled",
            self._settings.retries,
        )
        return self

    def _describe_store(self) -> str:
        describe = getattr(self._store, "describe", None)
        return describe() if describe is not None else type(self._store).__name__

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool | None:
        return await self.background.__aexit__(exc_type, exc, tb)

    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        LOG.debug("handle method=%s path=%s", request.method, request.path)
        try:
            if request.method not in ALLOWED_METHODS:
                raise MethodNotAllowed(ALLOW)
            if request.method == "OPTIONS":
                return GatewayResponse(status_code=200, headers={"allow": ALLOW})

            caching = self._settings.caching_enabled
            key = cache_key(request)
            if caching and request.method == "GET":
                cached = await self._lookup(key)
                if cached is not None:
                    LOG.info("cache HIT for %s", request.path)
                    return cached.to_response()
                LOG.info("cache MISS for %s", request.path)

            response, storable = await self._serve(request)
        except GatewayError as error:
            LOG.debug("%s for %s: %s", error.status_code, request.path, error.message)
            return error_response(error)

        if caching and storable:
            response = self._store_deferred(key, response)
        return response

    async def _serve(self, request: GatewayRequest) -> tuple[GatewayResponse, bool]:
        key = self._resolver.resolve(request.path, request.query)

        head = None
        byte_range = None
        range_header = request.header("range")
        if request.method == "GET" and range_header:
            head = await self._backend.head(key)
            if head is None:
                raise NotFound("File Not Found")
            byte_range = negotiate_range(range_header, head.size)
        byte_range = apply_if_range(byte_range, request.header("if-range"), head)

        evaluation = await self._evaluator.evaluate(
            key,
            request.method,
            Preconditions.from_headers(request.headers),
            byte_range,
        )
        if evaluation.outcome is PreconditionOutcome.PRECONDITION_FAILED:
            return GatewayResponse(status_code=412), False
        if evaluation.outcome is PreconditionOutcome.NOT_MODIFIED:
            assert evaluation.result is not None
            headers = validator_headers(metadata_of(evaluation.result))
            return GatewayResponse(status_code=304, headers=headers), False

        result = evaluation.result
        not_found = False
        if result is None:
            result = await self._fetch_not_found(request.method)
            if result is None:
                raise NotFound("File Not Found")
            not_found = True

        response = self._assembler.assemble(result, key, byte_range, not_found=not_found)
        storable = (
            request.method == "GET"
            and range_header is None
            and byte_range is None
            and not not_found
        )
        return response, storable

    async def _fetch_not_found(self, method: str) -> FetchResult | None:
        fallback = self._settings.notfound_file
        if not fallback:
            return None
        LOG.debug("serving not-found object %s", fallback)
        if method == "HEAD":
            return await self._backend.head(fallback)
        return await self._backend.get(fallback)

    async def _lookup(self, key: str) -> CachedResponse | None:
        try:
            cached = await self._cache.match(key)
        except Exception:
            LOG.warning("cache lookup failed (treating as miss)", exc_info=True)
            return None
        if cached is None or not cached.reusable:
            return None
        return cached

    def _store_deferred(self, key: str, response: GatewayResponse) -> GatewayResponse:
        declared = int(response.headers.get("content-length") or 0)
        if declared > self._max_cacheable_size:
            LOG.debug(
                "not caching %d bytes (limit %d)", declared, self._max_cacheable_size
            )
            return response

        status_code = response.status_code
        headers = dict(response.headers)
        if response.body is None:
            self._spawn_store(key, CachedResponse(status_code, headers))
            return response

        source = response.body

        async def tee() -> AsyncIterator[bytes]:
            chunks = []
            try:
                async for chunk in source:
                    chunks.append(chunk)
                    yield chunk
            finally:
                await _aclose(source)
            self._spawn_store(key, CachedResponse(status_code, headers, b"".join(chunks)))

        response.body = tee()
        return response

    def _spawn_store(self, key: str, entry: CachedResponse) -> None:
        self.background.spawn(self._store_entry, key, entry, name=f"cache-put {key}")

    async def _store_entry(self, key: str, entry: CachedResponse) -> None:
        await self._cache.put(key, entry)
        LOG.debug("cached response %s (%d bytes)", key, len(entry.body))


async def _aclose(source: AsyncIterable[bytes]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()
