from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import IO, Protocol

import anyio
from botocore.exceptions import BotoCoreError, ClientError

from transferstore.storage.errors import (
    BackendUnavailable,
    InvalidFilename,
    InvalidRange,
    InvalidToken,
    ObjectNotFound,
    PartialDeleteFailure,
    StorageError,
    translate,
)
from transferstore.storage.keys import ObjectKind
from transferstore.storage.ranges import RangeRequest, RangeResult

__all__ = [
    "BackendUnavailable",
    "ByteStream",
    "Download",
    "InvalidFilename",
    "InvalidRange",
    "InvalidToken",
    "ObjectKind",
    "ObjectNotFound",
    "PartialDeleteFailure",
    "PurgeReport",
    "RangeRequest",
    "RangeResult",
    "StorageBackend",
    "StorageError",
]

CHUNK_SIZE = 64 * 1024


class ByteStream(Protocol):
    def read(self, amt: int | None = None) -> bytes: ...

    def close(self) -> None: ...


@dataclass
class Download:
    filename: str
    content_length: int
    content_type: str | None
    # None when the backend served the whole object
    range: RangeResult | None
    body: ByteStream
    _consumed: bool = field(default=False, repr=False)

    async def iter_bytes(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the body in chunks. The stream can only be consumed once."""
        if self._consumed:
            raise RuntimeError("download body has already been consumed")
        self._consumed = True
        while True:
            try:
                chunk = await anyio.to_thread.run_sync(self.body.read, chunk_size)
            except (BotoCoreError, ClientError) as exc:
                raise translate(exc) from exc
            if not chunk:
                return
            yield chunk

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self.iter_bytes()])


@dataclass
class PurgeReport:
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, StorageError] = field(default_factory=dict)
    # set when listing the bucket failed part way through the scan
    error: StorageError | None = None

    def __bool__(self) -> bool:
        return bool(self.deleted or self.failed) or self.error is not None


class StorageBackend(Protocol):
    @property
    def type(self) -> str: ...

    def is_range_supported(self) -> bool: ...

    def is_not_exist(self, exc: BaseException | None) -> bool: ...

    async def head(self, token: str, kind: ObjectKind = ObjectKind.DATA) -> int: ...

    def get(
        self,
        token: str,
        kind: ObjectKind = ObjectKind.DATA,
        range: RangeRequest | None = None,
    ) -> AbstractAsyncContextManager[Download | None]: ...

    async def put(
        self,
        token: str,
        filename: str,
        body: IO[bytes] | bytes,
        content_type: str | None,
        content_length: int | None = None,
        kind: ObjectKind = ObjectKind.DATA,
    ) -> None: ...

    async def delete(self, token: str) -> None: ...

    async def purge(self, retention: timedelta) -> PurgeReport: ...
