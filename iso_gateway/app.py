from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from litestar import Litestar, MediaType, Request, get
from litestar.handlers import asgi
from litestar.logging.config import LoggingConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response, Stream

from .gateway import Gateway
from .models import GatewayRequest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar.types import Receive, Scope, Send

    from .models import GatewayResponse


prometheus_config = PrometheusConfig(app_name="iso_gateway", prefix="iso_gateway")


def to_gateway_request(request: Request, path: str) -> GatewayRequest:
    query = {name: request.query_params.get(name) for name in request.query_params}
    return GatewayRequest.build(
        request.method,
        path,
        query={name: value for name, value in query.items() if value is not None},
        headers=dict(request.headers.items()),
        host=request.headers.get("host", ""),
    )


def split_media_type(content_type: str) -> tuple[str, str]:
    """Split the charset off a text content type.

    Litestar appends ``; charset=<encoding>`` to ``text/*`` media types, so
    the charset is handed over as the encoding instead.
    """
    media_type, _, params = content_type.partition(";")
    media_type = media_type.strip()
    if not media_type.lower().startswith("text/"):
        return content_type, "utf-8"
    encoding = "utf-8"
    kept = []
    for param in params.split(";"):
        name, _, value = param.strip().partition("=")
        if not name:
            continue
        if name.lower() == "charset":
            encoding = value.strip().strip('"').lower() or encoding
        else:
            kept.append(param.strip())
    return "; ".join([media_type, *kept]), encoding


def to_litestar_response(response: GatewayResponse) -> Response:
    # content-type travels as the media type so it is sent once
    headers = dict(response.headers)
    media_type, encoding = split_media_type(
        headers.pop("content-type", None) or MediaType.TEXT
    )
    if response.body is None:
        return Response(
            content=b"",
            status_code=response.status_code,
            headers=headers,
            media_type=media_type,
            encoding=encoding,
        )
    return Stream(
        content=response.body,
        status_code=response.status_code,
        headers=headers,
        media_type=media_type,
        encoding=encoding,
    )


def logging_config(enabled: bool) -> dict[str, Any]:
    if not enabled:
        return {}
    return {
        "logging_config": LoggingConfig(
            loggers={
                "litestar": {
                    "level": "INFO",
                    "handlers": ["queue_listener"],
                    "propagate": False,
                },
                "iso_gateway": {
                    "level": "INFO",
                    "handlers": ["queue_listener"],
                    "propagate": False,
                },
            }
        )
    }


def create_app(gateway: Gateway | None = None) -> Litestar:
    """Create the gateway ASGI application."""
    gateway = gateway or Gateway.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def gateway_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            path = f"/{path}"
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/") or "/"
        response = await gateway.handle(to_gateway_request(request, path))
        asgi_response = to_litestar_response(response).to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    @asynccontextmanager
    async def lifespan(app: Litestar) -> AsyncIterator[None]:
        async with gateway:
            yield

    return Litestar(
        route_handlers=[health, gateway_handler, PrometheusController],
        lifespan=[lifespan],
        middleware=[prometheus_config.middleware],
        **logging_config(gateway.settings.logging),
    )


app = create_app()
