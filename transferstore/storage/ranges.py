from __future__ import annotations

import re
from dataclasses import dataclass

from transferstore.storage.errors import InvalidRange

_CONTENT_RANGE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


@dataclass(frozen=True)
class RangeRequest:
    """A byte interval requested by a reader.

    ``end`` is inclusive and ``None`` means "to the end of the object".
    A suffix request ("the last n bytes") is expressed with ``start=None``
    and ``end=n``.
    """

    start: int | None
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start is None:
            if self.end is None or self.end <= 0:
                raise InvalidRange("suffix range needs a positive length")
            return
        if self.start < 0:
            raise InvalidRange(f"negative range start {self.start}")
        if self.end is not None and self.end < self.start:
            raise InvalidRange(f"range end {self.end} before start {self.start}")

    @classmethod
    def suffix(cls, length: int) -> RangeRequest:
        return cls(start=None, end=length)

    @classmethod
    def from_header(cls, value: str) -> RangeRequest:
        """Parse an HTTP ``Range`` header holding a single byte range."""
        if not value.startswith("bytes="):
            raise InvalidRange(f"unsupported range unit in {value!r}")
        byte_range = value[len("bytes=") :].strip()
        if "," in byte_range:
            raise InvalidRange("multiple ranges are not supported")
        start, sep, end = byte_range.partition("-")
        if not sep:
            raise InvalidRange(f"invalid range {value!r}")
        try:
            first = int(start) if start else None
            last = int(end) if end else None
        except ValueError as exc:
            raise InvalidRange(f"invalid range {value!r}") from exc
        if first is None:
            if last is None:
                raise InvalidRange(f"invalid range {value!r}")
            return cls.suffix(last)
        return cls(start=first, end=last)

    def header(self) -> str:
        """The backend-native ``Range`` parameter."""
        if self.start is None:
            return f"bytes=-{self.end}"
        return f"bytes={self.start}-{'' if self.end is None else self.end}"

    @property
    def length(self) -> int | None:
        if self.start is None:
            return self.end
        if self.end is None:
            return None
        return self.end - self.start + 1


@dataclass(frozen=True)
class RangeResult:
    """The byte interval the backend actually served."""

    start: int
    end: int
    total: int | None

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        total = "*" if self.total is None else self.total
        return f"bytes {self.start}-{self.end}/{total}"


def parse_content_range(value: str) -> RangeResult:
    match = _CONTENT_RANGE.match(value.strip())
    if match is None:
        raise InvalidRange(f"invalid content range {value!r}")
    start, end, total = match.groups()
    return RangeResult(
        start=int(start),
        end=int(end),
        total=None if total == "*" else int(total),
    )
