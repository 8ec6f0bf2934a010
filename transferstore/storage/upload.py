from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import IO, Any

import anyio
from boto3.s3.transfer import TransferConfig

DEFAULT_CONCURRENCY = 20
DEFAULT_PART_SIZE = 5 * 1024 * 1024


class UploadCancelled(Exception):
    pass


@dataclass(frozen=True)
class UploadPolicy:
    disable_multipart: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    part_size: int = DEFAULT_PART_SIZE
    retention: timedelta = timedelta(0)

    @property
    def effective_concurrency(self) -> int:
        return 1 if self.disable_multipart else self.concurrency

    def transfer_config(self) -> TransferConfig:
        if self.disable_multipart:
            # one part at a time, on the calling thread
            return TransferConfig(
                multipart_threshold=self.part_size,
                multipart_chunksize=self.part_size,
                max_concurrency=1,
                use_threads=False,
            )
        return TransferConfig(
            multipart_threshold=self.part_size,
            multipart_chunksize=self.part_size,
            max_concurrency=self.concurrency,
        )

    def expires_at(self, now: datetime) -> datetime | None:
        if self.retention <= timedelta(0):
            return None
        return now + self.retention

    def extra_args(self, content_type: str | None, now: datetime) -> dict[str, Any]:
        extra: dict[str, Any] = {}
        if content_type:
            extra["ContentType"] = content_type
        expires = self.expires_at(now)
        if expires is not None:
            extra["Expires"] = expires
        return extra


async def upload(
    client: Any,
    bucket: str,
    key: str,
    body: IO[bytes],
    policy: UploadPolicy,
    extra_args: dict[str, Any],
) -> None:
    """Stream ``body`` to ``bucket/key`` with boto3's managed transfer.

    The managed transfer aborts the multi-part upload when any part fails.
    Cancelling the calling task makes the next progress callback raise inside
    the transfer, which fails it the same way.
    """
    cancelled = threading.Event()

    def progress(_: int) -> None:
        if cancelled.is_set():
            raise UploadCancelled(key)

    call = partial(
        client.upload_fileobj,
        body,
        bucket,
        key,
        ExtraArgs=extra_args,
        Callback=progress,
        Config=policy.transfer_config(),
    )
    try:
        await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
    except anyio.get_cancelled_exc_class():
        cancelled.set()
        raise
