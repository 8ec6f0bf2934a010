from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError
from botocore.response import StreamingBody

from transferstore.storage.s3 import S3Storage


@dataclass
class FakeObject:
    body: bytes
    content_type: str | None = None
    expires: datetime | None = None
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FailingBody:
    """A response body whose connection drops on the first read."""

    def __init__(self, raw: io.BytesIO, exc: Exception) -> None:
        self._raw_stream = raw
        self._exc = exc

    def read(self, amt: int | None = None) -> bytes:
        raise self._exc

    def close(self) -> None:
        self._raw_stream.close()


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeS3Client:
    """The subset of a boto3 S3 client that S3Storage uses, kept in memory."""

    def __init__(self, page_size: int = 1000) -> None:
        self.objects: dict[str, FakeObject] = {}
        self.page_size = page_size
        self.uploads: list[dict[str, Any]] = []
        self.bodies: list[StreamingBody] = []
        self.list_calls = 0
        self._failures: dict[tuple[str, str], Exception] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, key: str = "*", exc: Exception | None = None) -> None:
        self._failures[(operation, key)] = exc or client_error("InternalError", operation)

    def _check(self, operation: str, key: str) -> None:
        exc = self._failures.get((operation, key)) or self._failures.get((operation, "*"))
        if exc is not None:
            raise exc

    def list_objects_v2(
        self, Bucket: str, Prefix: str = "", ContinuationToken: str | None = None
    ) -> dict[str, Any]:
        self._check("ListObjectsV2", Prefix)
        if ContinuationToken is not None:
            self._check("ListObjectsV2Page", ContinuationToken)
        with self._lock:
            self.list_calls += 1
            # the token is the last key of the previous page
            keys = sorted(
                k
                for k in self.objects
                if k.startswith(Prefix) and (ContinuationToken is None or k > ContinuationToken)
            )
            page = keys[: self.page_size]
            response: dict[str, Any] = {
                "KeyCount": len(page),
                "IsTruncated": len(keys) > self.page_size,
            }
            if page:
                response["Contents"] = [
                    {
                        "Key": k,
                        "Size": len(self.objects[k].body),
                        "LastModified": self.objects[k].last_modified,
                    }
                    for k in page
                ]
            if response["IsTruncated"]:
                response["NextContinuationToken"] = page[-1]
            return response

    def _get(self, operation: str, key: str, code: str) -> FakeObject:
        self._check(operation, key)
        with self._lock:
            obj = self.objects.get(key)
        if obj is None:
            raise client_error(code, operation)
        return obj

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        obj = self._get("HeadObject", Key, "404")
        return {"ContentLength": len(obj.body), "ContentType": obj.content_type, "Expires": obj.expires}

    def get_object(self, Bucket: str, Key: str, Range: str | None = None) -> dict[str, Any]:
        obj = self._get("GetObject", Key, "NoSuchKey")
        data = obj.body
        response: dict[str, Any] = {"ContentType": obj.content_type}
        if Range is not None:
            start, _, end = Range[len("bytes=") :].partition("-")
            if not start:
                first = max(len(data) - int(end), 0)
                last = len(data) - 1
            else:
                first = int(start)
                last = min(int(end), len(data) - 1) if end else len(data) - 1
            if first >= len(data):
                raise client_error("InvalidRange", "GetObject", "The requested range is not satisfiable")
            response["ContentRange"] = f"bytes {first}-{last}/{len(data)}"
            data = data[first : last + 1]
        read_error = self._failures.get(("ReadBody", Key))
        if read_error is not None:
            body: Any = FailingBody(io.BytesIO(data), read_error)
        else:
            body = StreamingBody(io.BytesIO(data), len(data))
        self.bodies.append(body)
        response["Body"] = body
        response["ContentLength"] = len(data)
        return response

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._check("DeleteObject", Key)
        with self._lock:
            self.objects.pop(Key, None)
        return {}

    def upload_fileobj(
        self,
        Fileobj: Any,
        Bucket: str,
        Key: str,
        ExtraArgs: dict[str, Any] | None = None,
        Callback: Any = None,
        Config: Any = None,
    ) -> None:
        extra = ExtraArgs or {}
        self.uploads.append({"Key": Key, "ExtraArgs": extra, "Config": Config})
        exc = self._failures.get(("Upload", Key)) or self._failures.get(("Upload", "*"))
        if exc is not None:
            raise S3UploadFailedError(f"Failed to upload to {Bucket}/{Key}: {exc}")
        chunks = []
        while True:
            chunk = Fileobj.read(8192)
            if not chunk:
                break
            if Callback is not None:
                Callback(len(chunk))
            chunks.append(chunk)
        with self._lock:
            self.objects[Key] = FakeObject(
                body=b"".join(chunks),
                content_type=extra.get("ContentType"),
                expires=extra.get("Expires"),
            )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def fs(client: FakeS3Client) -> S3Storage:
    return S3Storage(client=client, bucket="transfers")
