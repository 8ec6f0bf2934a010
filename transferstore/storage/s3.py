from __future__ import annotations

import io
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import IO, Any

import anyio
import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from transferstore.config import CredentialsProvider, S3Config, StaticCredentials
from transferstore.storage import Download, ObjectKind, PurgeReport, RangeRequest, StorageBackend
from transferstore.storage.errors import (
    BackendUnavailable,
    ObjectNotFound,
    PartialDeleteFailure,
    is_not_exist,
    translate,
)
from transferstore.storage.keys import KeyResolver, object_key, token_prefix
from transferstore.storage.ranges import parse_content_range
from transferstore.storage.upload import UploadPolicy, upload

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class S3Storage(StorageBackend):
    """Token storage on an S3 bucket.

    ``client`` is a boto3 S3 client shared by all in-flight operations; every
    blocking call on it runs in an anyio worker thread.
    """

    client: Any
    bucket: str
    policy: UploadPolicy = field(default_factory=UploadPolicy)
    # delete old objects in purge() instead of relying on upload-time expiry
    active_purge: bool = False
    clock: Callable[[], datetime] = _utcnow
    resolver: KeyResolver = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.resolver = KeyResolver(self._list_keys)

    @classmethod
    @asynccontextmanager
    async def connect(
        cls, config: S3Config, credentials: CredentialsProvider | None = None
    ) -> AsyncIterator[S3Storage]:
        provider = credentials or StaticCredentials(config.access_key_id, config.secret_access_key)
        creds = provider.credentials()
        session = boto3.Session(
            aws_access_key_id=creds.access_key_id or None,
            aws_secret_access_key=creds.secret_access_key or None,
            aws_session_token=creds.session_token,
        )
        policy = config.upload_policy
        boto_config = BotoConfig(
            s3={"addressing_style": "path" if config.force_path_style else "auto"},
            max_pool_connections=max(10, policy.effective_concurrency),
        )
        client = await anyio.to_thread.run_sync(
            partial(
                session.client,
                "s3",
                region_name=config.region,
                endpoint_url=config.endpoint,
                config=boto_config,
            )
        )
        try:
            yield cls(client, config.bucket, policy=policy, active_purge=config.active_purge)
        finally:
            client.close()

    @property
    def type(self) -> str:
        return "s3"

    def is_range_supported(self) -> bool:
        return True

    def is_not_exist(self, exc: BaseException | None) -> bool:
        return is_not_exist(exc)

    async def _call(
        self, method: Callable[..., Any], key: str | None = None, abandon: bool = True, **kwargs: Any
    ) -> Any:
        try:
            return await anyio.to_thread.run_sync(partial(method, **kwargs), abandon_on_cancel=abandon)
        except (BotoCoreError, ClientError) as exc:
            raise translate(exc, key) from exc

    async def _list_objects(self, prefix: str) -> AsyncIterator[dict[str, Any]]:
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            page = await self._call(self.client.list_objects_v2, **params)
            for item in page.get("Contents", []):
                yield item
            if not page.get("IsTruncated"):
                return
            params["ContinuationToken"] = page["NextContinuationToken"]

    async def _list_keys(self, prefix: str) -> AsyncIterator[str]:
        async for item in self._list_objects(prefix):
            yield item["Key"]

    async def _delete_key(self, key: str) -> None:
        try:
            await self._call(self.client.delete_object, key=key, Bucket=self.bucket, Key=key)
        except ObjectNotFound:
            pass

    async def head(self, token: str, kind: ObjectKind = ObjectKind.DATA) -> int:
        resolved = await self.resolver.resolve(token, kind)
        if resolved is None:
            return 0
        try:
            response = await self._call(
                self.client.head_object, key=resolved.key, Bucket=self.bucket, Key=resolved.key
            )
        except ObjectNotFound:
            # deleted between listing and HEAD
            return 0
        return int(response["ContentLength"])

    @asynccontextmanager
    async def get(
        self,
        token: str,
        kind: ObjectKind = ObjectKind.DATA,
        range: RangeRequest | None = None,
    ) -> AsyncIterator[Download | None]:
        resolved = await self.resolver.resolve(token, kind)
        if resolved is None:
            yield None
            return
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": resolved.key}
        if range is not None:
            params["Range"] = range.header()
            logger.debug("reading %s of %s", params["Range"], resolved.key)
        # not abandoned on cancel, the body must be closed below
        response = await self._call(self.client.get_object, key=resolved.key, abandon=False, **params)
        body = response["Body"]
        try:
            content_range = response.get("ContentRange")
            yield Download(
                filename=resolved.filename,
                content_length=int(response.get("ContentLength", 0)),
                content_type=response.get("ContentType"),
                range=parse_content_range(content_range) if content_range else None,
                body=body,
            )
        finally:
            body.close()

    async def put(
        self,
        token: str,
        filename: str,
        body: IO[bytes] | bytes,
        content_type: str | None,
        content_length: int | None = None,
        kind: ObjectKind = ObjectKind.DATA,
    ) -> None:
        key = object_key(token, filename, kind)
        if isinstance(body, (bytes, bytearray)):
            body = io.BytesIO(body)
        logger.info(
            "Uploading file %s to S3 bucket %s (declared size %s)", filename, self.bucket, content_length
        )
        extra_args = self.policy.extra_args(content_type, self.clock())
        try:
            await upload(self.client, self.bucket, key, body, self.policy, extra_args)
        except (BotoCoreError, ClientError, S3UploadFailedError) as exc:
            raise BackendUnavailable(f"upload of {key!r} failed: {exc}") from exc

    async def delete(self, token: str) -> None:
        deleted: list[str] = []
        for kind in (ObjectKind.METADATA, ObjectKind.DATA):
            resolved = None
            try:
                resolved = await self.resolver.resolve(token, kind)
                if resolved is None:
                    continue
                await self._delete_key(resolved.key)
            except BackendUnavailable as exc:
                if not deleted:
                    raise
                failed = resolved.key if resolved is not None else token_prefix(token)
                logger.warning("token %s left half deleted, %s failed: %s", token, failed, exc)
                raise PartialDeleteFailure(token, deleted, failed) from exc
            deleted.append(resolved.key)
        logger.info("deleted token %s (%d objects)", token, len(deleted))

    async def purge(self, retention: timedelta) -> PurgeReport:
        report = PurgeReport()
        if not self.active_purge or retention <= timedelta(0):
            # expiry is attached to every object at upload time
            return report
        cutoff = self.clock() - retention
        try:
            async for item in self._list_objects(""):
                key = item["Key"]
                if item["LastModified"] >= cutoff:
                    continue
                try:
                    await self._delete_key(key)
                except BackendUnavailable as exc:
                    logger.warning("failed to purge %s: %s", key, exc)
                    report.failed[key] = exc
                    continue
                report.deleted.append(key)
        except BackendUnavailable as exc:
            # only listing errors get here, deletes are handled above
            logger.warning("purge scan stopped, listing failed: %s", exc)
            report.error = exc
        logger.info("purged %d objects, %d failures", len(report.deleted), len(report.failed))
        return report
