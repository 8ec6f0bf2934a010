"""Mapping of upload tokens onto object keys.

Every upload lives under the prefix ``"<token>/"``. The uploaded file is stored
as ``"<token>/<filename>"`` and its metadata sibling as
``"<token>/<filename>.metadata"``. There is no index: looking a token up means
listing its prefix and picking the first key of the wanted kind.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from transferstore.storage.errors import InvalidFilename, InvalidToken

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".metadata"


class ObjectKind(enum.Enum):
    DATA = "data"
    METADATA = "metadata"


def token_prefix(token: str) -> str:
    if not token or "/" in token:
        raise InvalidToken(f"invalid token {token!r}")
    return f"{token}/"


def object_key(token: str, filename: str, kind: ObjectKind = ObjectKind.DATA) -> str:
    if not filename:
        raise InvalidFilename("filename must not be empty")
    if kind is ObjectKind.METADATA:
        return f"{token_prefix(token)}{filename}{METADATA_SUFFIX}"
    if filename.endswith(METADATA_SUFFIX):
        # would be indistinguishable from a metadata object when listing
        raise InvalidFilename(f"data filename {filename!r} ends with {METADATA_SUFFIX!r}")
    return f"{token_prefix(token)}{filename}"


def matches(key: str, kind: ObjectKind) -> bool:
    return key.endswith(METADATA_SUFFIX) == (kind is ObjectKind.METADATA)


@dataclass(frozen=True)
class ResolvedKey:
    key: str
    # last path segment of a data key, empty for metadata keys
    filename: str


@dataclass
class KeyResolver:
    # yields every key starting with the given prefix, in listing order
    list_keys: Callable[[str], AsyncIterator[str]]

    async def resolve(self, token: str, kind: ObjectKind) -> ResolvedKey | None:
        prefix = token_prefix(token)
        keys = self.list_keys(prefix)
        try:
            async for key in keys:
                if not matches(key, kind):
                    continue
                filename = key.rsplit("/", 1)[-1] if kind is ObjectKind.DATA else ""
                logger.debug("resolved %s key for token %s: %s", kind.value, token, key)
                return ResolvedKey(key=key, filename=filename)
        finally:
            aclose = getattr(keys, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.debug("no %s key for token %s", kind.value, token)
        return None
