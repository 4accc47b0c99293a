from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .errors import MalformedRange, RangeNotSatisfiable, UnsatisfiableRange
from .headers import parse_http_date
from .models import ByteRange, ObjectMetadata, OffsetRange, SuffixRange

LOG = logging.getLogger("iso_gateway.ranges")

_LEADING_INT = re.compile(r"\s*\+?(\d+)")


@dataclass(frozen=True)
class Span:
    start: int
    end: int


@dataclass(frozen=True)
class RangeSet:
    unit: str
    spans: list[Span]


def _parse_int(text: str) -> int | None:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def parse_range_header(size: int, header: str) -> RangeSet:
    """Parse a ``Range`` header against an object of ``size`` bytes.

    Each entry is ``first-last``, ``first-`` or ``-suffix``; ``last`` is
    clamped to the end of the object and invalid entries are skipped.

    Raises:
        MalformedRange: There is no ``unit=`` prefix.
        UnsatisfiableRange: No entry selects any byte of the object.
    """
    unit, sep, entries = header.partition("=")
    if not sep:
        msg = f"malformed range header {header!r}"
        raise MalformedRange(msg)

    spans: list[Span] = []
    for entry in entries.split(","):
        parts = entry.split("-")
        start = _parse_int(parts[0])
        end = _parse_int(parts[1]) if len(parts) > 1 else None

        if start is None:
            if end is None:
                continue
            start, end = size - end, size - 1
        elif end is None:
            end = size - 1

        end = min(end, size - 1)
        if start > end or start < 0:
            continue
        spans.append(Span(start, end))

    if not spans:
        msg = f"unsatisfiable range {header!r} for size {size}"
        raise UnsatisfiableRange(msg)
    return RangeSet(unit=unit, spans=spans)


def negotiate_range(header: str, size: int) -> ByteRange:
    """Resolve a ``Range`` header to the single window the backend can serve.

    Raises:
        RangeNotSatisfiable: The header is malformed, unsatisfiable, not in
            bytes, or asks for more than one range.
    """
    try:
        parsed = parse_range_header(size, header)
    except (MalformedRange, UnsatisfiableRange) as error:
        LOG.debug("rejecting range: %s", error)
        raise RangeNotSatisfiable from error

    if parsed.unit != "bytes" or len(parsed.spans) != 1:
        LOG.debug("rejecting range unit=%s count=%d", parsed.unit, len(parsed.spans))
        raise RangeNotSatisfiable

    span = parsed.spans[0]
    if span.end + 1 == size:
        return SuffixRange(suffix=size - span.start)
    return OffsetRange(offset=span.start, length=span.end - span.start + 1)


def if_range_holds(if_range: str, metadata: ObjectMetadata) -> bool:
    """Check an ``If-Range`` validator against the object's current state.

    A date holds when it is not later than the upload time; an entity tag
    holds only when it is strong and identical to the object's tag.
    """
    since = parse_http_date(if_range)
    if since is not None and since <= metadata.uploaded:
        return True
    if if_range.startswith("W/"):
        return False
    return if_range == metadata.http_etag


def apply_if_range(
    byte_range: ByteRange | None,
    if_range: str | None,
    metadata: ObjectMetadata | None,
) -> ByteRange | None:
    if byte_range is None or not if_range or metadata is None:
        return byte_range
    if if_range_holds(if_range, metadata):
        return byte_range
    LOG.debug(
        "If-Range %r does not match %s, serving whole object", if_range, metadata.key
    )
    return None
