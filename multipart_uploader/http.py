from __future__ import annotations

import logging
import sys
import typing as T
import urllib.parse

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

import requests


LOG = logging.getLogger(__name__)

_REDACTED_KEYS = {
    "authorization",
    "cookie",
    "x-amz-security-token",
    "x-amz-signature",
    "x-amz-credential",
    "secretaccesskey",
    "sessiontoken",
}


class Session(requests.Session):
    # Instance variables
    disable_logging_request: bool = False
    disable_logging_response: bool = False

    @override
    def request(self, method: str | bytes, url: str | bytes, *args, **kwargs):
        self._log_debug_request(method, url, **kwargs)
        resp = super().request(method, url, *args, **kwargs)
        self._log_debug_response(resp)
        return resp

    def _log_debug_request(self, method: str | bytes, url: str | bytes, **kwargs):
        if self.disable_logging_request:
            return

        if not LOG.isEnabledFor(logging.DEBUG):
            return

        if isinstance(method, str) and isinstance(url, str):
            msg = f"HTTP {method} {sanitize_url(url)}"
        else:
            msg = f"HTTP {method!r} {url!r}"

        headers = kwargs.get("headers")
        if headers is not None:
            msg += f" HEADERS={_sanitize(headers)}"

        data = kwargs.get("data")
        if isinstance(data, (bytes, bytearray)):
            msg += f" DATA=({len(data)} bytes)"

        timeout = kwargs.get("timeout")
        if timeout is not None:
            msg += f" TIMEOUT={timeout}"

        msg = msg.replace("\n", "\\n")

        LOG.debug(msg)

    def _log_debug_response(self, resp: requests.Response):
        if self.disable_logging_response:
            return

        if not LOG.isEnabledFor(logging.DEBUG):
            return

        elapsed = resp.elapsed.total_seconds() * 1000  # Convert to milliseconds
        msg = f"HTTP {resp.status_code} {resp.reason} ({elapsed:.0f} ms): ETag={resp.headers.get('ETag')} {str(_truncate_response_content(resp))}"

        LOG.debug(msg)


def readable_http_response(resp: requests.Response) -> str:
    method = resp.request.method if resp.request is not None else None
    return f"{method} {sanitize_url(resp.url or '')} => {resp.status_code} {resp.reason}: {str(_truncate_response_content(resp))}"


def sanitize_url(url: str) -> str:
    """
    Redact the signing secrets of a presigned URL

    >>> sanitize_url("https://b.s3.amazonaws.com/a%20b?partNumber=1&X-Amz-Signature=abc&X-Amz-Security-Token=tok")
    'https://b.s3.amazonaws.com/a%20b?partNumber=1&X-Amz-Signature=[REDACTED]&X-Amz-Security-Token=[REDACTED]'
    >>> sanitize_url("https://b.s3.amazonaws.com/key")
    'https://b.s3.amazonaws.com/key'
    """
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return url

    if not parsed.query:
        return url

    pairs = []
    for pair in parsed.query.split("&"):
        key, sep, value = pair.partition("=")
        if key.lower() in _REDACTED_KEYS:
            value = "[REDACTED]"
        pairs.append(f"{key}{sep}{value}")

    return urllib.parse.urlunsplit(parsed._replace(query="&".join(pairs)))


@T.overload
def _truncate(s: bytes, limit: int = 256) -> bytes | str: ...


@T.overload
def _truncate(s: str, limit: int = 256) -> str: ...


def _truncate(s, limit=256):
    """
    >>> _truncate("foobar", limit=3)
    'foo...(3 chars truncated)'
    >>> _truncate(b"foo", limit=3)
    b'foo'
    """
    if limit < len(s):
        if isinstance(s, bytes):
            try:
                s = s.decode("utf-8")
            except UnicodeDecodeError:
                pass
        remaining = len(s) - limit
        if isinstance(s, bytes):
            return s[:limit] + f"...({remaining} bytes truncated)".encode("utf-8")
        else:
            return str(s[:limit]) + f"...({remaining} chars truncated)"
    else:
        return s


def _sanitize(headers: T.Mapping[T.Any, T.Any]) -> T.Mapping[T.Any, T.Any]:
    new_headers = {}

    for k, v in headers.items():
        if str(k).lower() in _REDACTED_KEYS:
            new_headers[k] = "[REDACTED]"
        else:
            if isinstance(v, (str, bytes)):
                new_headers[k] = T.cast(T.Any, _truncate(v))
            else:
                new_headers[k] = v

    return new_headers


def _truncate_response_content(resp: requests.Response) -> str | bytes:
    # S3 answers with XML, so there is no JSON to sanitize
    if resp.content is not None:
        data = _truncate(resp.content)
    else:
        data = ""

    if isinstance(data, bytes):
        return data.replace(b"\n", b"\\n")

    elif isinstance(data, str):
        return data.replace("\n", "\\n")

    return data
