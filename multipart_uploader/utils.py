from __future__ import annotations

import asyncio
import inspect
import typing as T
import urllib.parse

_R = T.TypeVar("_R")

# RFC 3986 unreserved characters, the only ones SigV4 leaves unescaped
_UNRESERVED = "-_.~"


def uri_encode(value: str) -> str:
    """
    Percent-encode everything except the RFC 3986 unreserved characters

    >>> uri_encode("file (1).jpg")
    'file%20%281%29.jpg'
    >>> uri_encode("a+b=c/d")
    'a%2Bb%3Dc%2Fd'
    >>> uri_encode("~user_name-1.0")
    '~user_name-1.0'
    """
    return urllib.parse.quote(value, safe=_UNRESERVED)


def encode_uri_path(path: str) -> str:
    """
    Encode each path segment separately so that "/" survives

    >>> encode_uri_path("/uploads/my folder/file (copy).jpg")
    '/uploads/my%20folder/file%20%28copy%29.jpg'
    >>> encode_uri_path("/")
    '/'
    """
    return "/".join(uri_encode(segment) for segment in path.split("/"))


def construct_url(
    bucket: str, region: str, key: str, endpoint: str | None = None
) -> str:
    """
    Construct the virtual-hosted style URL of an object

    >>> construct_url("my-bucket", "us-east-1", "file.jpg")
    'https://my-bucket.s3.us-east-1.amazonaws.com/file.jpg'
    >>> construct_url("my-bucket", "us-west-2", "uploads/my folder/file (copy).jpg")
    'https://my-bucket.s3.us-west-2.amazonaws.com/uploads/my%20folder/file%20%28copy%29.jpg'
    >>> construct_url("my-bucket", "us-east-1", "a b.txt", endpoint="http://localhost:9000/my-bucket")
    'http://localhost:9000/my-bucket/a%20b.txt'
    """
    encoded_key = encode_uri_path(key.lstrip("/"))
    if endpoint is None:
        return f"https://{bucket}.s3.{region}.amazonaws.com/{encoded_key}"
    return f"{endpoint.rstrip('/')}/{encoded_key}"


def decode_url_path(url: str) -> str:
    """
    Decode the path of a URL for display. Scheme, host and port are kept as they are,
    the query string is dropped. Anything that is not an absolute URL is returned unchanged.

    >>> decode_url_path("https://bucket.s3.us-east-1.amazonaws.com/uploads%2Fmy%20file.jpg")
    'https://bucket.s3.us-east-1.amazonaws.com/uploads/my file.jpg'
    >>> decode_url_path("http://localhost:9000/bucket/file%20%281%29.jpg")
    'http://localhost:9000/bucket/file (1).jpg'
    >>> decode_url_path("not a url")
    'not a url'
    >>> decode_url_path("http://[::1")
    'http://[::1'
    """
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return url

    if not parsed.scheme or not parsed.netloc:
        return url

    return f"{parsed.scheme}://{parsed.netloc}{urllib.parse.unquote(parsed.path)}"


def normalize_etag(etag: str) -> str:
    """
    >>> normalize_etag('"abc123"')
    '"abc123"'
    >>> normalize_etag("abc123")
    '"abc123"'
    """
    if len(etag) >= 2 and etag.startswith('"') and etag.endswith('"'):
        return etag
    return f'"{etag}"'


def strip_etag_quotes(etag: str) -> str:
    """
    >>> strip_etag_quotes('"abc123"')
    'abc123'
    >>> strip_etag_quotes("abc123")
    'abc123'
    """
    if len(etag) >= 2 and etag.startswith('"') and etag.endswith('"'):
        return etag[1:-1]
    return etag


async def maybe_await(value: T.Union[_R, T.Awaitable[_R]]) -> _R:
    """
    Host callbacks may be plain functions or coroutine functions

    >>> async def _double(x):
    ...     return x * 2
    >>> asyncio.run(maybe_await(_double(2)))
    4
    >>> asyncio.run(maybe_await(3))
    3
    """
    if inspect.isawaitable(value):
        return await T.cast(T.Awaitable[_R], value)
    return T.cast(_R, value)
