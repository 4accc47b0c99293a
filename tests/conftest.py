from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
from iso_gateway.edge_cache import MemoryEdgeCache
from iso_gateway.gateway import Gateway
from iso_gateway.models import ObjectBody, ObjectMetadata
from iso_gateway.settings import GatewaySettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable, Generator

    from botocore.client import BaseClient
    from iso_gateway.models import ByteRange, Conditions, FetchResult

UPLOADED = datetime(2024, 10, 20, 12, 0, 0, tzinfo=UTC)
ISO_KEY = "secureblue-kinoite-nvidia-hardened-20241020.iso"


def _chunks(data: bytes, size: int = 7) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


@dataclass
class FakeBlobStore:
    """In-memory blob store recording every call it receives."""

    objects: dict[str, tuple[bytes, ObjectMetadata]] = field(default_factory=dict)
    calls: list[tuple] = field(default_factory=list)
    failures: int = 0
    closed: list[str] = field(default_factory=list)

    def add(
        self,
        key: str,
        data: bytes,
        *,
        etag: str | None = None,
        uploaded: datetime = UPLOADED,
        **attributes,
    ) -> ObjectMetadata:
        metadata = ObjectMetadata(
            key=key,
            size=len(data),
            etag=etag or f"etag-{key}",
            uploaded=uploaded,
            **attributes,
        )
        self.objects[key] = (data, metadata)
        return metadata

    def _maybe_fail(self) -> None:
        if self.failures:
            self.failures -= 1
            msg = "backend unavailable"
            raise ConnectionError(msg)

    async def head(self, key: str) -> ObjectMetadata | None:
        self.calls.append(("head", key))
        self._maybe_fail()
        entry = self.objects.get(key)
        return entry[1] if entry else None

    async def get(
        self,
        key: str,
        *,
        byte_range: ByteRange | None = None,
        only_if: Conditions | None = None,
    ) -> FetchResult | None:
        self.calls.append(("get", key, byte_range, only_if))
        self._maybe_fail()
        entry = self.objects.get(key)
        if entry is None:
            return None
        data, metadata = entry
        if only_if is not None and not self._holds(only_if, metadata):
            return metadata
        if byte_range is not None:
            first, last = byte_range.bounds(metadata.size)
            data = data[first : last + 1]
        return self.body(metadata, data)

    def body(self, metadata: ObjectMetadata, data: bytes) -> ObjectBody:
        async def stream() -> AsyncIterator[bytes]:
            for chunk in _chunks(data):
                yield chunk

        async def close() -> None:
            self.closed.append(metadata.key)

        return ObjectBody(metadata=metadata, stream=stream(), closer=close)

    @staticmethod
    def _holds(only_if: Conditions, metadata: ObjectMetadata) -> bool:
        if only_if.etag_matches is not None and only_if.etag_matches != metadata.etag:
            return False
        if (
            only_if.etag_does_not_match is not None
            and only_if.etag_does_not_match == metadata.etag
        ):
            return False
        if (
            only_if.uploaded_before is not None
            and metadata.uploaded > only_if.uploaded_before
        ):
            return False
        if (
            only_if.uploaded_after is not None
            and metadata.uploaded <= only_if.uploaded_after
        ):
            return False
        return True

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def edge_cache() -> MemoryEdgeCache:
    return MemoryEdgeCache(capacity=16)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def settings() -> GatewaySettings:
    return GatewaySettings(
        allowed_origins="https://secureblue.dev",
        cache_control="public, max-age=3600",
        date_suffix="20241020",
    )


@pytest.fixture
def make_gateway(
    store: FakeBlobStore, edge_cache: MemoryEdgeCache, sleeps: list[float]
) -> Callable[..., Gateway]:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(settings: GatewaySettings, **overrides) -> Gateway:
        return Gateway(
            settings,
            overrides.pop("store", store),
            overrides.pop("cache", edge_cache),
            sleep=record_sleep,
            **overrides,
        )

    return factory


@pytest.fixture
async def gateway(
    make_gateway: Callable[..., Gateway], settings: GatewaySettings
) -> AsyncGenerator[Gateway]:
    async with make_gateway(settings) as gateway:
        yield gateway


def with_settings(settings: GatewaySettings, **changes) -> GatewaySettings:
    return settings.model_copy(update=changes)


# MinIO, for the opt-in integration tests


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-iso-gateway"


@pytest.fixture(scope="session")
def minio_service(
    request: pytest.FixtureRequest,
    minio_access_key: str,
    minio_secret_key: str,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request, urlopen

    if shutil.which("docker") is None:
        pytest.skip("docker is not available")
    try:
        docker_service = request.getfixturevalue("docker_service")
    except Exception as exc:  # noqa: BLE001
        pytest.skip(f"docker is not available: {exc}")

    def check(_service) -> bool:
        url = f"http://{_service.host}:{_service.port}/minio/health/ready"
        try:
            with urlopen(url=Request(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=False,
        )


@pytest.fixture
def minio_client(minio_service: MinioService) -> BaseClient:
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=f"http://{minio_service.endpoint}",
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def origin_env(minio_service: MinioService) -> Generator[dict[str, str]]:
    """Point the origin settings at the MinIO service."""
    env_vars = {
        "ISO_GATEWAY_ORIGIN_ENDPOINT": f"http://{minio_service.endpoint}",
        "ISO_GATEWAY_ORIGIN_ACCESS_KEY_ID": minio_service.access_key,
        "ISO_GATEWAY_ORIGIN_SECRET_ACCESS_KEY": minio_service.secret_key,
        "ISO_GATEWAY_ORIGIN_REGION": "us-east-1",
        "ISO_GATEWAY_ORIGIN_BUCKET": "iso-gateway-origin",
        "ISO_GATEWAY_ORIGIN_ADDRESSING_STYLE": "path",
    }

    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value

    yield env_vars

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
