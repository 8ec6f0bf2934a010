from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from transferstore.storage.upload import DEFAULT_CONCURRENCY, DEFAULT_PART_SIZE, UploadPolicy

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None


class CredentialsProvider(Protocol):
    def credentials(self) -> Credentials: ...


@dataclass(frozen=True)
class StaticCredentials:
    access_key_id: str
    secret_access_key: str

    def credentials(self) -> Credentials:
        return Credentials(self.access_key_id, self.secret_access_key)


@dataclass(frozen=True)
class S3Config:
    bucket: str
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = "eu-west-1"
    endpoint: str | None = None
    force_path_style: bool = False
    # 0 disables expiry
    purge_days: int = 0
    disable_multipart: bool = False
    part_size: int = DEFAULT_PART_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    active_purge: bool = False

    @property
    def retention(self) -> timedelta:
        return timedelta(days=max(self.purge_days, 0))

    @property
    def upload_policy(self) -> UploadPolicy:
        return UploadPolicy(
            disable_multipart=self.disable_multipart,
            concurrency=self.concurrency,
            part_size=self.part_size,
            retention=self.retention,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> S3Config:
        bucket = environ.get("BUCKET", "")
        if not bucket:
            raise ValueError("BUCKET is not set")
        return cls(
            bucket=bucket,
            access_key_id=environ.get("AWS_ACCESS_KEY", ""),
            secret_access_key=environ.get("AWS_SECRET_KEY", ""),
            region=environ.get("S3_REGION") or "eu-west-1",
            endpoint=environ.get("S3_ENDPOINT") or None,
            force_path_style=_flag(environ, "S3_PATH_STYLE"),
            purge_days=_int(environ, "PURGE_DAYS", 0),
            disable_multipart=_flag(environ, "S3_NO_MULTIPART"),
            part_size=_int(environ, "S3_PART_SIZE", DEFAULT_PART_SIZE),
            concurrency=_int(environ, "S3_CONCURRENCY", DEFAULT_CONCURRENCY),
            active_purge=_flag(environ, "S3_ACTIVE_PURGE"),
        )


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in _TRUE


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
