from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

# error codes S3 (and S3-compatible stores) use for a missing key
NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class StorageError(Exception):
    """Base class for everything raised by a storage backend."""


class BackendUnavailable(StorageError):
    """The object store could not be reached or rejected the request."""


class ObjectNotFound(StorageError):
    """The object store confirmed that a key does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f"object {key!r} does not exist")
        self.key = key


class PartialDeleteFailure(BackendUnavailable):
    """Only some of a token's objects were removed.

    The token is left half-deleted; callers may retry the delete.
    """

    def __init__(self, token: str, deleted: list[str], failed: str) -> None:
        super().__init__(
            f"token {token!r}: deleted {deleted} but failed to delete {failed!r}"
        )
        self.token = token
        self.deleted = deleted
        self.failed = failed


class InvalidToken(StorageError, ValueError):
    pass


class InvalidFilename(StorageError, ValueError):
    pass


class InvalidRange(StorageError, ValueError):
    pass


def error_code(exc: BaseException) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_not_exist(exc: BaseException | None) -> bool:
    if exc is None:
        return False
    if isinstance(exc, ObjectNotFound):
        return True
    return error_code(exc) in NOT_FOUND_CODES


def translate(exc: Exception, key: str | None = None) -> StorageError:
    """Map a botocore exception onto the storage error vocabulary."""
    if isinstance(exc, StorageError):
        return exc
    if key is not None and is_not_exist(exc):
        return ObjectNotFound(key)
    if error_code(exc) == "InvalidRange":
        # 416, the requested range lies outside the object
        return InvalidRange(str(exc))
    if isinstance(exc, (ClientError, BotoCoreError)):
        return BackendUnavailable(str(exc))
    return BackendUnavailable(repr(exc))
