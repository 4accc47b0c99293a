from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .headers import parse_http_date, strip_etag
from .models import Conditions, ObjectBody, PreconditionOutcome

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from .models import ByteRange, FetchResult
    from .retry import RetryingBlobStore

LOG = logging.getLogger("iso_gateway.preconditions")


@dataclass(frozen=True)
class Preconditions:
    """The conditional headers of a request, normalised.

    Weak or multi-valued entity tags and unparseable dates are dropped.
    """

    if_match: str | None = None
    if_none_match: str | None = None
    if_modified_since: datetime | None = None
    if_unmodified_since: datetime | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Preconditions:
        return cls(
            if_match=strip_etag(headers.get("if-match")),
            if_none_match=strip_etag(headers.get("if-none-match")),
            if_modified_since=parse_http_date(headers.get("if-modified-since")),
            if_unmodified_since=parse_http_date(headers.get("if-unmodified-since")),
        )

    def match_conditions(self) -> Conditions:
        return Conditions(
            etag_matches=self.if_match,
            uploaded_before=self.if_unmodified_since,
        )

    def freshness_conditions(self) -> Conditions:
        # If-None-Match replaces If-Modified-Since entirely
        if self.if_none_match is not None:
            return Conditions(etag_does_not_match=self.if_none_match)
        return Conditions(uploaded_after=self.if_modified_since)


@dataclass
class Evaluation:
    outcome: PreconditionOutcome
    result: FetchResult | None


async def _discard(result: FetchResult | None) -> None:
    if isinstance(result, ObjectBody):
        await result.aclose()


class PreconditionEvaluator:
    def __init__(self, backend: RetryingBlobStore):
        self._backend = backend

    async def evaluate(
        self,
        key: str,
        method: str,
        preconditions: Preconditions,
        byte_range: ByteRange | None,
    ) -> Evaluation:
        """Issue the backend reads a request needs and classify the outcome.

        Stages run in a fixed order: If-Match/If-Unmodified-Since, then
        If-None-Match/If-Modified-Since, then the plain HEAD or GET. A body
        produced by an earlier stage is reused by the last one.
        """
        result: FetchResult | None = None

        match = preconditions.match_conditions()
        if match:
            result = await self._backend.get(key, byte_range=byte_range, only_if=match)
            if result is not None and not isinstance(result, ObjectBody):
                LOG.debug("precondition failed for %s", key)
                return Evaluation(PreconditionOutcome.PRECONDITION_FAILED, result)

        freshness = preconditions.freshness_conditions()
        if freshness:
            previous = result
            result = await self._backend.get(
                key, byte_range=byte_range, only_if=freshness
            )
            await _discard(previous)
            if result is not None and not isinstance(result, ObjectBody):
                LOG.debug("not modified: %s", key)
                return Evaluation(PreconditionOutcome.NOT_MODIFIED, result)

        if method == "HEAD":
            await _discard(result)
            result = await self._backend.head(key)
        elif not isinstance(result, ObjectBody):
            result = await self._backend.get(key, byte_range=byte_range)
        return Evaluation(PreconditionOutcome.PROCEED, result)

