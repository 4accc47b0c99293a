"""HTTP gateway serving release images from an S3-compatible bucket."""

from .gateway import Gateway
from .models import GatewayRequest, GatewayResponse
from .settings import CacheSettings, GatewaySettings, OriginSettings

__all__ = [
    "CacheSettings",
    "Gateway",
    "GatewayRequest",
    "GatewayResponse",
    "GatewaySettings",
    "OriginSettings",
]
