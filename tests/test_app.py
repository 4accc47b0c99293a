"""Tests for the Litestar application wiring."""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

import pytest
from conftest import ISO_KEY, FakeBlobStore
from iso_gateway.app import (
    create_app,
    logging_config,
    split_media_type,
    to_gateway_request,
)
from iso_gateway.edge_cache import MemoryEdgeCache
from iso_gateway.gateway import Gateway
from litestar import Request
from litestar.testing import TestClient

if TYPE_CHECKING:
    from collections.abc import Iterator

    from iso_gateway.settings import GatewaySettings
    from litestar.types import HTTPScope

DATA = b"0123456789" * 100
KEYRING = b"-----BEGIN PGP PUBLIC KEY BLOCK-----\n"
CHECKSUM = b"SHA256 (image.iso) = 00ff\n"


@pytest.fixture
def client(
    store: FakeBlobStore, settings: GatewaySettings
) -> Iterator[TestClient]:
    store.add(ISO_KEY, DATA, etag="v1", content_type="application/x-iso9660-image")
    store.add("secureblue-keyring.gpg", KEYRING, content_type="application/pgp-keys")
    store.add(
        ISO_KEY + "-CHECKSUM", CHECKSUM, content_type="text/plain; charset=US-ASCII"
    )
    gateway = Gateway(settings, store, MemoryEdgeCache(16))
    with TestClient(app=create_app(gateway)) as client:
        yield client


class TestApp:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_download(self, client: TestClient):
        response = client.get("/download", params={"de": "kinoite", "nvidia": "nvidia"})
        assert response.status_code == 200
        assert response.content == DATA
        assert response.headers["etag"] == '"v1"'
        assert response.headers["accept-ranges"] == "bytes"
        assert response.headers["content-type"].startswith("application/x-iso9660-image")
        assert response.headers["content-disposition"] == (
            f'attachment; filename="{ISO_KEY}"'
        )

    def test_range(self, client: TestClient):
        response = client.get(
            "/download",
            params={"de": "kinoite", "nvidia": "nvidia"},
            headers={"Range": "bytes=10-19"},
        )
        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 10-19/1000"
        assert response.content == DATA[10:20]

    def test_head(self, client: TestClient, store: FakeBlobStore):
        response = client.head("/download", params={"de": "kinoite", "nvidia": "nvidia"})
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["etag"] == '"v1"'
        assert store.operations() == ["head"]

    def test_not_modified(self, client: TestClient):
        response = client.get(
            "/download",
            params={"de": "kinoite", "nvidia": "nvidia"},
            headers={"If-None-Match": '"v1"'},
        )
        assert response.status_code == 304
        assert response.headers["etag"] == '"v1"'

    def test_missing_parameters(self, client: TestClient):
        response = client.get("/download", params={"de": "kinoite"})
        assert response.status_code == 400
        assert response.text == "Missing parameters"
        assert response.headers["content-type"] == "text/plain; charset=utf-8"

    def test_keyring(self, client: TestClient):
        """The keyring is served under its own name through the mount."""
        response = client.get("/secureblue-keyring.gpg")
        assert response.status_code == 200
        assert response.content == KEYRING
        assert response.headers["content-type"].startswith("application/pgp-keys")
        assert response.headers["content-disposition"] == (
            'attachment; filename="secureblue-keyring.gpg"'
        )

    def test_keyring_head(self, client: TestClient):
        response = client.head("/secureblue-keyring.gpg")
        assert response.status_code == 200
        assert response.headers["content-length"] == str(len(KEYRING))

    def test_head_reports_object_length(self, client: TestClient):
        response = client.head("/download", params={"de": "kinoite", "nvidia": "nvidia"})
        assert response.headers["content-length"] == "1000"

    def test_checksum_keeps_its_charset(self, client: TestClient):
        response = client.get(
            "/downloadSHA256SUM", params={"de": "kinoite", "nvidia": "nvidia"}
        )
        assert response.status_code == 200
        assert response.content == CHECKSUM
        assert response.headers["content-type"] == "text/plain; charset=us-ascii"

    def test_error_has_one_charset(self, client: TestClient):
        response = client.get("/nothing-here")
        assert response.headers["content-type"].count("charset") == 1

    def test_method_not_allowed(self, client: TestClient):
        response = client.delete("/download")
        assert response.status_code == 405
        assert response.headers["allow"] == "GET, HEAD, OPTIONS"

    def test_unknown_path(self, client: TestClient):
        response = client.get("/nothing-here")
        assert response.status_code == 404

    def test_metrics(self, client: TestClient):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200


class TestRequestConversion:
    def test_to_gateway_request(self):
        scope = cast(
            "HTTPScope",
            {
                "type": "http",
                "method": "get",
                "path": "/download",
                "query_string": b"de=kinoite&nvidia=main&de=silverblue",
                "headers": [
                    (b"host", b"dl.secureblue.dev"),
                    (b"If-None-Match", b'"v1"'),
                ],
            },
        )

        async def receive():
            return {"type": "http.request", "body": b""}

        request = Request(scope=scope, receive=receive)
        converted = to_gateway_request(request, "/download")
        assert converted.method == "GET"
        assert converted.query == {"de": "kinoite", "nvidia": "main"}
        assert converted.header("if-none-match") == '"v1"'
        assert converted.host == "dl.secureblue.dev"


class TestSplitMediaType:
    @pytest.mark.parametrize(
        ("content_type", "expected"),
        [
            ("text/plain;charset=UTF-8", ("text/plain", "utf-8")),
            ("text/html; charset=\"ISO-8859-1\"", ("text/html", "iso-8859-1")),
            ("text/plain", ("text/plain", "utf-8")),
            ("text/csv; header=present", ("text/csv; header=present", "utf-8")),
            ("application/pgp-keys", ("application/pgp-keys", "utf-8")),
        ],
    )
    def test_split(self, content_type, expected):
        assert split_media_type(content_type) == expected


class TestLoggingConfig:
    def test_disabled(self):
        assert logging_config(False) == {}

    def test_enabled(self):
        config = logging_config(True)["logging_config"]
        assert "iso_gateway" in config.loggers
