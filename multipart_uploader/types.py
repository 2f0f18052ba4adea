from __future__ import annotations

import dataclasses
import datetime
import enum
import io
import math
import os
import sys
import typing as T
from pathlib import Path

import jsonschema

if sys.version_info >= (3, 11):
    from typing import Required
else:
    from typing_extensions import Required

from . import constants, exceptions


class SessionState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {SessionState.CANCELLED, SessionState.COMPLETED}


class UploadFile(T.Protocol):
    """
    The file being uploaded. It is owned by the caller, the engine only reads ranges of it.
    """

    @property
    def name(self) -> str: ...

    @property
    def size(self) -> int: ...

    def read_chunk(self, start: int, end: int) -> bytes: ...


class BytesFile:
    def __init__(self, name: str, data: bytes):
        self._name = name
        self._data = data

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return len(self._data)

    def read_chunk(self, start: int, end: int) -> bytes:
        return self._data[start:end]

    def __repr__(self) -> str:
        return f"BytesFile({self._name!r}, size={self.size})"


class PathFile:
    def __init__(self, path: Path | str, name: str | None = None):
        self.path = Path(path)
        self._name = name if name is not None else self.path.name

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return os.path.getsize(self.path)

    def read_chunk(self, start: int, end: int) -> bytes:
        with self.path.open("rb") as fp:
            fp.seek(start, io.SEEK_SET)
            return fp.read(end - start)

    def __repr__(self) -> str:
        return f"PathFile({str(self.path)!r})"


class PartJSON(T.TypedDict, total=True):
    PartNumber: int
    Size: int
    ETag: str


@dataclasses.dataclass(frozen=True)
class Part:
    part_number: int
    size: int
    # Opaque checksum token (ETag) returned by the store, kept verbatim
    etag: str

    def __post_init__(self):
        if self.part_number < 1:
            raise ValueError(f"Expect positive part_number but got {self.part_number}")
        if self.size < 0:
            raise ValueError(f"Expect non-negative size but got {self.size}")

    @classmethod
    def from_json(cls, data: T.Mapping[str, T.Any]) -> Part:
        """
        >>> Part.from_json({"PartNumber": 1, "Size": 5, "ETag": '"abc"'})
        Part(part_number=1, size=5, etag='"abc"')
        >>> Part.from_json({"partNumber": 2, "size": 3, "etag": "xyz"})
        Part(part_number=2, size=3, etag='xyz')
        """
        return cls(
            part_number=int(_get_either(data, "PartNumber", "partNumber")),
            size=int(_get_either(data, "Size", "size")),
            etag=str(_get_either(data, "ETag", "etag")),
        )

    def to_json(self) -> PartJSON:
        return {"PartNumber": self.part_number, "Size": self.size, "ETag": self.etag}


def _get_either(data: T.Mapping[str, T.Any], *keys: str) -> T.Any:
    for key in keys:
        if key in data:
            return data[key]
    raise KeyError(keys[0])


@dataclasses.dataclass(frozen=True)
class PartRange:
    part_number: int
    # [start, end)
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


def compute_chunk_size(
    file_size: int,
    chunk_size: int = constants.DEFAULT_CHUNK_SIZE,
    min_chunk_size: int = constants.MIN_CHUNK_SIZE,
    max_parts: int = constants.MAX_PARTS,
) -> int:
    """
    Grow the chunk size so that it is at least the minimum and the file fits in max_parts parts

    >>> compute_chunk_size(10, chunk_size=1, min_chunk_size=2)
    2
    >>> compute_chunk_size(100, chunk_size=1, min_chunk_size=1, max_parts=10)
    10
    >>> compute_chunk_size(101, chunk_size=1, min_chunk_size=1, max_parts=10)
    11
    """
    return max(chunk_size, min_chunk_size, math.ceil(file_size / max_parts))


def compute_part_ranges(file_size: int, chunk_size: int) -> list[PartRange]:
    """
    >>> compute_part_ranges(5, 2)
    [PartRange(part_number=1, start=0, end=2), PartRange(part_number=2, start=2, end=4), PartRange(part_number=3, start=4, end=5)]
    >>> compute_part_ranges(0, 2)
    [PartRange(part_number=1, start=0, end=0)]
    """
    if chunk_size <= 0:
        raise ValueError(f"Expect positive chunk_size but got {chunk_size}")

    total_parts = max(1, math.ceil(file_size / chunk_size))
    return [
        PartRange(
            part_number=idx + 1,
            start=idx * chunk_size,
            end=min((idx + 1) * chunk_size, file_size),
        )
        for idx in range(total_parts)
    ]


@dataclasses.dataclass(frozen=True)
class CreateResult:
    upload_id: str
    key: str

    @classmethod
    def from_json(cls, data: T.Mapping[str, T.Any]) -> CreateResult:
        """
        >>> CreateResult.from_json({"uploadId": "abc", "key": "a.txt"})
        CreateResult(upload_id='abc', key='a.txt')
        """
        return cls(
            upload_id=str(_get_either(data, "uploadId", "UploadId", "upload_id")),
            key=str(_get_either(data, "key", "Key")),
        )


@dataclasses.dataclass(frozen=True)
class CompleteResult:
    location: str | None = None
    etag: str | None = None
    key: str | None = None
    # Anything else the host returns from the completion call
    body: dict[str, T.Any] | None = None


@dataclasses.dataclass(frozen=True)
class CancelledResult:
    key: str | None = None
    upload_id: str | None = None


UploadOutcome = T.Union[CompleteResult, CancelledResult]


@dataclasses.dataclass(frozen=True)
class SignedRequest:
    url: str
    method: str = "PUT"
    headers: dict[str, str] = dataclasses.field(default_factory=dict)
    # In seconds
    expires: int | None = None


class CredentialsJSON(T.TypedDict, total=False):
    AccessKeyId: Required[str]
    SecretAccessKey: Required[str]
    SessionToken: Required[str]
    Expiration: Required[str]
    bucket: Required[str]
    region: Required[str]


CredentialsSchema = {
    "type": "object",
    "properties": {
        "AccessKeyId": {"type": "string", "minLength": 1},
        "SecretAccessKey": {"type": "string", "minLength": 1},
        "SessionToken": {"type": "string"},
        "Expiration": {"type": "string"},
        "bucket": {"type": "string", "minLength": 1},
        "region": {"type": "string", "minLength": 1},
    },
    "required": [
        "AccessKeyId",
        "SecretAccessKey",
        "SessionToken",
        "Expiration",
        "bucket",
        "region",
    ],
    "additionalProperties": True,
}


CredentialsSchemaValidator = jsonschema.Draft202012Validator(CredentialsSchema)


@dataclasses.dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    # Always timezone-aware
    expiration: datetime.datetime
    bucket: str
    region: str

    def __post_init__(self):
        if self.expiration.tzinfo is None:
            raise ValueError("Expect timezone-aware expiration")

    def __repr__(self) -> str:
        # Never leak the secrets into logs
        return f"TemporaryCredentials(bucket={self.bucket!r}, region={self.region!r}, expiration={self.expiration.isoformat()})"

    @classmethod
    def from_json(cls, data: T.Mapping[str, T.Any]) -> TemporaryCredentials:
        """
        Accept either the STS shape nested under "credentials" or a flat object

        >>> creds = TemporaryCredentials.from_json({
        ...     "credentials": {
        ...         "AccessKeyId": "AKIA",
        ...         "SecretAccessKey": "secret",
        ...         "SessionToken": "token",
        ...         "Expiration": "2026-01-01T00:00:00Z",
        ...     },
        ...     "bucket": "my-bucket",
        ...     "region": "eu-west-1",
        ... })
        >>> creds.expiration.isoformat()
        '2026-01-01T00:00:00+00:00'
        >>> creds.bucket, creds.region
        ('my-bucket', 'eu-west-1')
        """
        nested = data.get("credentials")
        flattened: dict[str, T.Any] = dict(nested) if isinstance(nested, dict) else {}
        if not flattened:
            flattened = dict(data)
        for key in ["bucket", "region"]:
            if key in data:
                flattened[key] = data[key]

        try:
            CredentialsSchemaValidator.validate(flattened)
        except jsonschema.ValidationError as ex:
            raise exceptions.AuthenticationError(
                f"Invalid temporary credentials: {ex.message}"
            ) from ex

        item = T.cast(CredentialsJSON, flattened)
        return cls(
            access_key_id=item["AccessKeyId"],
            secret_access_key=item["SecretAccessKey"],
            session_token=item["SessionToken"],
            expiration=parse_expiration(item["Expiration"]),
            bucket=item["bucket"],
            region=item["region"],
        )


def parse_expiration(value: str) -> datetime.datetime:
    """
    >>> parse_expiration("2013-05-24T00:00:00Z").isoformat()
    '2013-05-24T00:00:00+00:00'
    >>> parse_expiration("2013-05-24T02:00:00+02:00").isoformat()
    '2013-05-24T00:00:00+00:00'
    >>> parse_expiration("2013-05-24T00:00:00").isoformat()
    '2013-05-24T00:00:00+00:00'
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.datetime.fromisoformat(value)
    except ValueError as ex:
        raise exceptions.AuthenticationError(
            f"Invalid credentials expiration {value!r}"
        ) from ex
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def as_signed_request(value: T.Any) -> SignedRequest:
    """
    Hosts may return a bare URL, a mapping or a SignedRequest

    >>> as_signed_request("https://example.com/a?partNumber=1")
    SignedRequest(url='https://example.com/a?partNumber=1', method='PUT', headers={}, expires=None)
    >>> as_signed_request({"url": "https://example.com/a", "headers": {"Content-Type": "video/mp4"}, "expires": 60}).headers
    {'Content-Type': 'video/mp4'}
    """
    if isinstance(value, SignedRequest):
        return value

    if isinstance(value, str):
        return SignedRequest(url=value)

    if isinstance(value, T.Mapping):
        return SignedRequest(
            url=str(value["url"]),
            method=str(value.get("method", "PUT")).upper(),
            headers=dict(value.get("headers") or {}),
            expires=value.get("expires"),
        )

    raise TypeError(f"Unexpected signed request {value!r}")


def as_create_result(value: T.Any) -> CreateResult:
    if isinstance(value, CreateResult):
        return value
    if isinstance(value, T.Mapping):
        return CreateResult.from_json(value)
    raise TypeError(f"Unexpected create result {value!r}")
