"""
AWS Signature Version 4 signing for S3 requests.

Requests are signed locally from short-lived credentials, so uploading a part
does not need a round-trip to the backend for a presigned URL.
See https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import hashlib
import hmac
import logging
import typing as T
import urllib.parse

from . import constants, types, utils

LOG = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_PAYLOAD_SHA256 = hashlib.sha256(b"").hexdigest()
_TERMINATOR = "aws4_request"

Clock = T.Callable[[], datetime.datetime]
QueryParams = T.Union[T.Mapping[str, str], T.Sequence[T.Tuple[str, str]]]
CredentialsFetcher = T.Callable[
    [],
    T.Union[
        types.TemporaryCredentials,
        T.Mapping[str, T.Any],
        T.Awaitable[T.Union[types.TemporaryCredentials, T.Mapping[str, T.Any]]],
    ],
]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclasses.dataclass(frozen=True)
class CredentialScope:
    # YYYYMMDD
    date: str
    region: str
    service: str

    def __str__(self) -> str:
        return f"{self.date}/{self.region}/{self.service}/{_TERMINATOR}"


def format_amz_date(dt: datetime.datetime) -> str:
    """
    >>> format_amz_date(datetime.datetime(2013, 5, 24, tzinfo=datetime.timezone.utc))
    '20130524T000000Z'
    >>> tz = datetime.timezone(datetime.timedelta(hours=2))
    >>> format_amz_date(datetime.datetime(2013, 5, 24, 2, 30, 15, tzinfo=tz))
    '20130524T003015Z'
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def hash_payload(payload: bytes) -> str:
    """
    >>> hash_payload(b"") == EMPTY_PAYLOAD_SHA256
    True
    """
    return hashlib.sha256(payload).hexdigest()


def canonical_query_string(query: QueryParams | None) -> str:
    """
    Encode keys and values, then sort by the encoded pairs

    >>> canonical_query_string({"uploadId": "a b", "partNumber": "2"})
    'partNumber=2&uploadId=a%20b'
    >>> canonical_query_string([("acl", ""), ("X-Amz-Credential", "AKID/20130524/us-east-1/s3/aws4_request")])
    'X-Amz-Credential=AKID%2F20130524%2Fus-east-1%2Fs3%2Faws4_request&acl='
    >>> canonical_query_string(None)
    ''
    """
    if not query:
        return ""

    pairs = query.items() if isinstance(query, T.Mapping) else query
    encoded = sorted(
        (utils.uri_encode(str(key)), utils.uri_encode(str(value)))
        for key, value in pairs
    )
    return "&".join(f"{key}={value}" for key, value in encoded)


def _canonical_header_value(value: str) -> str:
    return " ".join(str(value).split())


def canonical_headers(headers: T.Mapping[str, str]) -> tuple[str, str]:
    """
    Return the canonical headers block and the signed headers list

    >>> block, signed = canonical_headers({"Host": "example.com", "X-Amz-Date": " 20130524T000000Z ", "Range": "bytes=0-9"})
    >>> print(block, end="")
    host:example.com
    range:bytes=0-9
    x-amz-date:20130524T000000Z
    >>> signed
    'host;range;x-amz-date'
    >>> canonical_headers({"X-Custom": "a   b", "x-custom": "c"})
    ('x-custom:a b,c\\n', 'x-custom')
    """
    grouped: dict[str, list[str]] = {}
    for name, value in headers.items():
        grouped.setdefault(name.strip().lower(), []).append(
            _canonical_header_value(value)
        )

    names = sorted(grouped)
    block = "".join(f"{name}:{','.join(grouped[name])}\n" for name in names)
    return block, ";".join(names)


def derive_signing_key(
    secret_access_key: str, date: str, region: str, service: str
) -> bytes:
    """
    >>> derive_signing_key("wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY", "20120215", "us-east-1", "iam").hex()
    'f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d'
    """
    key = _hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), date)
    key = _hmac_sha256(key, region)
    key = _hmac_sha256(key, service)
    return _hmac_sha256(key, _TERMINATOR)


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


class RequestSigner:
    """
    Sign S3 requests with AWS Signature Version 4.

    The signer has no hidden state: identical inputs always produce identical
    canonical requests and signatures.
    """

    def __init__(
        self,
        service: str = "s3",
        endpoint: str | None = None,
        clock: Clock | None = None,
    ):
        self.service = service
        # e.g. "http://localhost:9000/my-bucket" for S3-compatible stores (path style)
        self.endpoint = endpoint
        self._clock: Clock = clock if clock is not None else utcnow

    def canonical_request(
        self,
        method: str,
        path: str,
        query: QueryParams | None,
        headers: T.Mapping[str, str],
        payload_hash: str = UNSIGNED_PAYLOAD,
    ) -> str:
        """
        Build the canonical request. The path is the raw (not yet encoded) resource path.
        """
        block, signed_headers = canonical_headers(headers)
        return "\n".join(
            [
                method.upper(),
                utils.encode_uri_path(path or "/"),
                canonical_query_string(query),
                block,
                signed_headers,
                payload_hash,
            ]
        )

    @classmethod
    def string_to_sign(
        cls, amz_date: str, scope: CredentialScope, canonical_request: str
    ) -> str:
        return "\n".join(
            [
                ALGORITHM,
                amz_date,
                str(scope),
                hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
            ]
        )

    @classmethod
    def calculate_signature(
        cls, secret_access_key: str, scope: CredentialScope, string_to_sign: str
    ) -> str:
        signing_key = derive_signing_key(
            secret_access_key, scope.date, scope.region, scope.service
        )
        return hmac.new(
            signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def sign_request(
        self,
        method: str,
        host: str,
        path: str,
        *,
        access_key_id: str,
        secret_access_key: str,
        region: str,
        session_token: str | None = None,
        query: QueryParams | None = None,
        headers: T.Mapping[str, str] | None = None,
        payload_hash: str = UNSIGNED_PAYLOAD,
        signing_time: datetime.datetime | None = None,
        scheme: str = "https",
    ) -> types.SignedRequest:
        """
        Sign with the Authorization header. The host may carry a non-default port,
        which is then part of the signed host header.
        """
        if signing_time is None:
            signing_time = self._clock()
        amz_date = format_amz_date(signing_time)
        scope = CredentialScope(amz_date[:8], region, self.service)

        all_headers: dict[str, str] = {
            "Host": host,
            "X-Amz-Date": amz_date,
            "X-Amz-Content-SHA256": payload_hash,
        }
        if session_token:
            all_headers["X-Amz-Security-Token"] = session_token
        all_headers.update(headers or {})

        canonical_request = self.canonical_request(
            method, path, query, all_headers, payload_hash
        )
        _, signed_headers = canonical_headers(all_headers)
        signature = self.calculate_signature(
            secret_access_key,
            scope,
            self.string_to_sign(amz_date, scope, canonical_request),
        )

        all_headers["Authorization"] = (
            f"{ALGORITHM} Credential={access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        # The HTTP client sets Host itself
        del all_headers["Host"]

        return types.SignedRequest(
            url=_build_url(scheme, host, path, query),
            method=method.upper(),
            headers=all_headers,
        )

    def presign_url(
        self,
        method: str,
        host: str,
        path: str,
        *,
        access_key_id: str,
        secret_access_key: str,
        region: str,
        session_token: str | None = None,
        query: QueryParams | None = None,
        expires: int = constants.PRESIGNED_URL_EXPIRES,
        signing_time: datetime.datetime | None = None,
        scheme: str = "https",
    ) -> str:
        """
        Sign with query parameters. Only the host header is signed and the payload is unsigned,
        so the URL can be used by any HTTP client.
        """
        if signing_time is None:
            signing_time = self._clock()
        amz_date = format_amz_date(signing_time)
        scope = CredentialScope(amz_date[:8], region, self.service)

        params: list[tuple[str, str]] = []
        if query:
            params.extend(query.items() if isinstance(query, T.Mapping) else query)
        params.extend(
            [
                ("X-Amz-Algorithm", ALGORITHM),
                ("X-Amz-Credential", f"{access_key_id}/{scope}"),
                ("X-Amz-Date", amz_date),
                ("X-Amz-Expires", str(expires)),
                ("X-Amz-SignedHeaders", "host"),
            ]
        )
        if session_token:
            params.append(("X-Amz-Security-Token", session_token))

        canonical_request = self.canonical_request(
            method, path, params, {"host": host}, UNSIGNED_PAYLOAD
        )
        signature = self.calculate_signature(
            secret_access_key,
            scope,
            self.string_to_sign(amz_date, scope, canonical_request),
        )

        return (
            _build_url(scheme, host, path, params) + f"&X-Amz-Signature={signature}"
        )

    def presign_part_url(
        self,
        credentials: types.TemporaryCredentials,
        key: str,
        upload_id: str,
        part_number: int,
        expires: int = constants.PRESIGNED_URL_EXPIRES,
        signing_time: datetime.datetime | None = None,
    ) -> types.SignedRequest:
        scheme, host, path = self._locate_object(credentials, key)
        url = self.presign_url(
            "PUT",
            host,
            path,
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            session_token=credentials.session_token,
            region=credentials.region,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            expires=expires,
            signing_time=signing_time,
            scheme=scheme,
        )
        return types.SignedRequest(url=url, method="PUT", expires=expires)

    def presign_object_url(
        self,
        credentials: types.TemporaryCredentials,
        key: str,
        method: str = "PUT",
        expires: int = constants.PRESIGNED_URL_EXPIRES,
        signing_time: datetime.datetime | None = None,
    ) -> types.SignedRequest:
        scheme, host, path = self._locate_object(credentials, key)
        url = self.presign_url(
            method,
            host,
            path,
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            session_token=credentials.session_token,
            region=credentials.region,
            expires=expires,
            signing_time=signing_time,
            scheme=scheme,
        )
        return types.SignedRequest(url=url, method=method.upper(), expires=expires)

    def _locate_object(
        self, credentials: types.TemporaryCredentials, key: str
    ) -> tuple[str, str, str]:
        key = key.lstrip("/")

        if self.endpoint is None:
            host = f"{credentials.bucket}.s3.{credentials.region}.amazonaws.com"
            return "https", host, f"/{key}"

        parsed = urllib.parse.urlsplit(self.endpoint)
        # netloc keeps a non-default port
        return parsed.scheme, parsed.netloc, f"{parsed.path.rstrip('/')}/{key}"


def _build_url(scheme: str, host: str, path: str, query: QueryParams | None) -> str:
    url = f"{scheme}://{host}{utils.encode_uri_path(path or '/')}"
    query_string = canonical_query_string(query)
    if query_string:
        url += f"?{query_string}"
    return url


class CredentialCache:
    """
    Short-lived credentials shared by all sessions of one uploader.

    Cached credentials are reused until they are within the expiry buffer.
    Concurrent refreshes are serialized so the backend is asked once.
    """

    def __init__(
        self,
        fetch: CredentialsFetcher | None,
        expiry_buffer: float = constants.CREDENTIALS_EXPIRY_BUFFER,
        clock: Clock | None = None,
    ):
        self._fetch = fetch
        self.expiry_buffer = datetime.timedelta(seconds=expiry_buffer)
        self._clock: Clock = clock if clock is not None else utcnow
        self._cached: types.TemporaryCredentials | None = None
        self._lock: asyncio.Lock | None = None
        self.refresh_count = 0

    @property
    def has_credentials(self) -> bool:
        return self._fetch is not None

    @property
    def cached(self) -> types.TemporaryCredentials | None:
        return self._cached

    def is_valid(self, credentials: types.TemporaryCredentials) -> bool:
        return self._clock() < credentials.expiration - self.expiry_buffer

    def invalidate(self) -> None:
        self._cached = None

    async def get(self) -> types.TemporaryCredentials:
        if self._fetch is None:
            raise ValueError("No temporary credentials callback configured")

        cached = self._cached
        if cached is not None and self.is_valid(cached):
            return cached

        # Created lazily so the lock binds to the running event loop
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            # Another task may have refreshed while this one was waiting
            cached = self._cached
            if cached is not None and self.is_valid(cached):
                return cached

            LOG.debug("Fetching temporary credentials")
            result = await utils.maybe_await(self._fetch())
            if isinstance(result, types.TemporaryCredentials):
                credentials = result
            else:
                credentials = types.TemporaryCredentials.from_json(result)

            self.refresh_count += 1
            self._cached = credentials
            LOG.debug(f"Fetched {credentials}")
            return credentials
