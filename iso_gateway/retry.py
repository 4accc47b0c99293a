from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import anyio

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .blobstore import BlobStore
    from .models import ByteRange, Conditions, FetchResult, ObjectMetadata

LOG = logging.getLogger("iso_gateway.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failed backend call is retried.

    ``retries`` counts attempts after the first one; ``None`` retries forever.
    """

    retries: int | None = 0
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_setting(cls, retries: int) -> RetryPolicy:
        return cls(retries=None if retries == -1 else retries)

    def allows(self, failures: int) -> bool:
        return self.retries is None or failures <= self.retries

    def delay(self, failures: int) -> float:
        return min(self.base_delay * 2 ** (failures - 1), self.max_delay)


class RetryExecutor:
    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[object]] = anyio.sleep,
    ):
        self.policy = policy
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run ``operation``, retrying failures with capped exponential backoff.

        The last failure is re-raised once the policy is exhausted.
        """
        failures = 0
        while True:
            try:
                return await operation()
            except Exception as error:
                failures += 1
                if not self.policy.allows(failures):
                    LOG.error(
                        "%s failed after %d attempt(s): %s", description, failures, error
                    )
                    raise
                delay = self.policy.delay(failures)
                LOG.info(
                    "attempt %d of %s failed, retrying in %.1fs: %s",
                    failures,
                    description,
                    delay,
                    error,
                )
                await self._sleep(delay)


class RetryingBlobStore:
    """Blob store whose calls all go through a :class:`RetryExecutor`."""

    def __init__(self, store: BlobStore, executor: RetryExecutor):
        self._store = store
        self._executor = executor

    async def head(self, key: str) -> ObjectMetadata | None:
        return await self._executor.run(lambda: self._store.head(key), f"head {key}")

    async def get(
        self,
        key: str,
        *,
        byte_range: ByteRange | None = None,
        only_if: Conditions | None = None,
    ) -> FetchResult | None:
        return await self._executor.run(
            lambda: self._store.get(key, byte_range=byte_range, only_if=only_if),
            f"get {key}",
        )
