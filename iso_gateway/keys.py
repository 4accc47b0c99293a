from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import BadRequest, NotFound

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .settings import GatewaySettings

ISO_DOWNLOAD_PATH = "/download"
CHECKSUM_DOWNLOAD_PATH = "/downloadSHA256SUM"
CHECKSUM_SUFFIX = "-CHECKSUM"


class KeyResolver:
    """Maps a request path and query onto an object key."""

    def __init__(self, product: str, date_suffix: str, keyring_filename: str):
        self._product = product
        self._date_suffix = date_suffix
        self._keyring_filename = keyring_filename

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> KeyResolver:
        return cls(
            product=settings.product,
            date_suffix=settings.date_suffix,
            keyring_filename=settings.keyring_filename,
        )

    def resolve(self, path: str, query: Mapping[str, str]) -> str:
        """Return the object key for ``path``.

        Raises:
            BadRequest: A download path is missing ``de`` or ``nvidia``.
            NotFound: The path is not one of the served shapes.
        """
        if path in {ISO_DOWNLOAD_PATH, CHECKSUM_DOWNLOAD_PATH}:
            de = query.get("de")
            nvidia = query.get("nvidia")
            if not de or not nvidia:
                raise BadRequest
            key = self.iso_key(de, nvidia)
            if path == CHECKSUM_DOWNLOAD_PATH:
                key += CHECKSUM_SUFFIX
            return key
        if path[1:] == self._keyring_filename:
            return self._keyring_filename
        raise NotFound

    def iso_key(self, de: str, nvidia: str) -> str:
        return f"{self._product}-{de}-{nvidia}-hardened-{self._date_suffix}.iso"
