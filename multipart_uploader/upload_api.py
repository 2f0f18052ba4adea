from __future__ import annotations

import asyncio
import collections
import hashlib
import io
import logging
import random
import sys
import typing as T
import urllib.parse
import uuid
from pathlib import Path

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

import requests

from . import constants, exceptions, http, types

LOG = logging.getLogger(__name__)

ProgressCallback = T.Callable[[int], None]

# Markers S3 puts in the 403 body when the presigned URL or its token expired
_EXPIRED_MARKERS = ["Request has expired", "ExpiredToken", "TokenExpired"]


def is_expired_response(status_code: int, body: str | None) -> bool:
    """
    >>> is_expired_response(403, "<Code>AccessDenied</Code><Message>Request has expired</Message>")
    True
    >>> is_expired_response(403, "<Code>SignatureDoesNotMatch</Code>")
    False
    >>> is_expired_response(400, "ExpiredToken")
    False
    """
    if status_code != 403 or not body:
        return False
    return any(marker in body for marker in _EXPIRED_MARKERS)


class PartTransport(T.Protocol):
    async def put_part(
        self,
        request: types.SignedRequest,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        PUT the bytes to the signed URL and return the ETag the store responded with
        """
        ...


class _ProgressReader(io.BytesIO):
    """
    Report the total bytes read so far whenever the HTTP client reads the body
    """

    def __init__(self, data: bytes, on_progress: ProgressCallback | None):
        super().__init__(data)
        self._on_progress = on_progress

    @override
    def read(self, size: int | None = -1) -> bytes:
        chunk = super().read(size)
        if chunk and self._on_progress is not None:
            self._on_progress(self.tell())
        return chunk


class RequestsTransport:
    """
    Upload part bytes with requests in a worker thread.

    A request that has been sent cannot be aborted. Callers that pause must
    discard late results instead.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        min_upload_speed: int | None = constants.MIN_UPLOAD_SPEED,
    ):
        self.session = session if session is not None else http.Session()
        self.min_upload_speed = min_upload_speed

    async def put_part(
        self,
        request: types.SignedRequest,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        if on_progress is None:
            return await asyncio.to_thread(self._put, request, data, None)

        loop = asyncio.get_running_loop()

        def _report_from_thread(sent: int) -> None:
            loop.call_soon_threadsafe(on_progress, sent)

        return await asyncio.to_thread(self._put, request, data, _report_from_thread)

    def _read_timeout(self, size: int) -> float | None:
        # Estimate the read timeout
        if not self.min_upload_speed:
            return None
        return max(constants.REQUESTS_TIMEOUT, size / self.min_upload_speed)

    def _put(
        self,
        request: types.SignedRequest,
        data: bytes,
        on_progress: ProgressCallback | None,
    ) -> str:
        try:
            resp = self.session.request(
                request.method,
                request.url,
                headers=request.headers,
                data=_ProgressReader(data, on_progress),
                timeout=(constants.REQUESTS_TIMEOUT, self._read_timeout(len(data))),  # type: ignore
            )
        except (requests.ConnectionError, requests.Timeout) as ex:
            raise exceptions.TransientTransportError(
                f"{ex.__class__.__name__}: {ex}"
            ) from ex

        return parse_part_response(resp)


def parse_part_response(resp: requests.Response) -> str:
    if resp.status_code == 401:
        raise exceptions.AuthenticationError(
            f"Unauthorized part upload: {http.readable_http_response(resp)}"
        )

    if is_expired_response(resp.status_code, resp.text):
        raise exceptions.ExpiredUrlError(
            f"Presigned URL expired: {http.readable_http_response(resp)}",
            status_code=resp.status_code,
            body=resp.text,
        )

    if not 200 <= resp.status_code < 300:
        raise exceptions.ServerRejectionError(
            f"Part upload rejected: {http.readable_http_response(resp)}",
            status_code=resp.status_code,
            body=resp.text,
        )

    etag = resp.headers.get("ETag")
    if not etag:
        raise exceptions.ServerRejectionError(
            "Missing ETag in the part upload response. If the bucket is accessed from a browser, "
            'add "ETag" to ExposeHeaders in its CORS configuration',
            status_code=resp.status_code,
        )

    return etag


# A mock class for testing only
class FakeObjectStore:
    """
    An in-memory S3 multipart store that implements the host control-plane
    callbacks as well as the part transport.

    Like the real store, it keeps every part it receives, including parts
    whose uploader has since lost interest in them.
    """

    def __init__(
        self,
        upload_path: Path | None = None,
        transient_error_ratio: float = 0.0,
        bucket: str = "fake-bucket",
        region: str = "us-east-1",
    ):
        self._upload_path = upload_path
        self._transient_error_ratio = transient_error_ratio
        self.bucket = bucket
        self.region = region

        # upload_id -> (key, part_number -> (part, data))
        self.uploads: dict[str, tuple[str, dict[int, tuple[types.Part, bytes]]]] = {}
        self.objects: dict[str, bytes] = {}
        self.aborted: list[str] = []
        self.completed_parts: dict[str, tuple[types.Part, ...]] = {}
        self.call_counts: T.Counter[str] = collections.Counter()
        # Part numbers in the order their PUTs arrived
        self.put_log: list[int] = []

        self.in_flight = 0
        self.max_in_flight = 0

        # part_number -> remaining transient failures to inject
        self._scripted_failures: dict[int, int] = {}
        # part_number -> event the next PUT of that part waits for
        self._gates: dict[int, asyncio.Event] = {}

    def fail_part(self, part_number: int, times: int = 1) -> None:
        self._scripted_failures[part_number] = times

    def hold_part(self, part_number: int) -> asyncio.Event:
        """
        Hold the next PUT of the part until the returned event is set.
        Must be called inside the running event loop.
        """
        event = asyncio.Event()
        self._gates[part_number] = event
        return event

    async def wait_for_in_flight(self, count: int, timeout: float = 5) -> None:
        async def _wait():
            while self.in_flight < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_wait(), timeout)

    async def create_multipart_upload(
        self, file: types.UploadFile
    ) -> types.CreateResult:
        self.call_counts["create_multipart_upload"] += 1
        self._randomly_raise_transient_error()
        upload_id = uuid.uuid4().hex
        key = f"uploads/{upload_id[:8]}/{file.name}"
        self.uploads[upload_id] = (key, {})
        return types.CreateResult(upload_id=upload_id, key=key)

    async def list_parts(self, key: str, upload_id: str) -> list[types.Part]:
        self.call_counts["list_parts"] += 1
        self._randomly_raise_transient_error()
        parts = self._get_upload(key, upload_id)
        listed = [part for part, _ in parts.values()]
        return sorted(listed, key=lambda p: p.part_number)

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: T.Sequence[types.Part]
    ) -> types.CompleteResult:
        self.call_counts["complete_multipart_upload"] += 1
        stored = self._get_upload(key, upload_id)

        numbers = [p.part_number for p in parts]
        if numbers != sorted(set(numbers)):
            raise exceptions.ServerRejectionError(
                f"InvalidPartOrder: {numbers}", status_code=400
            )

        chunks = []
        for part in parts:
            if part.part_number not in stored:
                raise exceptions.ServerRejectionError(
                    f"InvalidPart: {part.part_number}", status_code=400
                )
            stored_part, data = stored[part.part_number]
            if stored_part.etag != part.etag:
                raise exceptions.ServerRejectionError(
                    f"InvalidPart: ETag mismatch for part {part.part_number}",
                    status_code=400,
                )
            chunks.append(data)

        content = b"".join(chunks)
        self.objects[key] = content
        self.completed_parts[upload_id] = tuple(parts)
        del self.uploads[upload_id]

        if self._upload_path is not None:
            filename = self._upload_path.joinpath(key)
            filename.parent.mkdir(parents=True, exist_ok=True)
            filename.write_bytes(content)

        return types.CompleteResult(
            location=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{urllib.parse.quote(key)}",
            etag=f'"{hashlib.md5(content).hexdigest()}-{len(parts)}"',
            key=key,
        )

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self.call_counts["abort_multipart_upload"] += 1
        self._get_upload(key, upload_id)
        del self.uploads[upload_id]
        self.aborted.append(upload_id)

    async def sign_part(
        self, key: str, upload_id: str, part_number: int
    ) -> types.SignedRequest:
        self.call_counts["sign_part"] += 1
        query = urllib.parse.urlencode({"partNumber": part_number, "uploadId": upload_id})
        return types.SignedRequest(
            url=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{urllib.parse.quote(key)}?{query}",
            method="PUT",
        )

    async def get_upload_parameters(
        self, file: types.UploadFile
    ) -> types.SignedRequest:
        self.call_counts["get_upload_parameters"] += 1
        return types.SignedRequest(
            url=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{urllib.parse.quote(file.name)}",
            method="PUT",
        )

    async def put_part(
        self,
        request: types.SignedRequest,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        self.call_counts["put_part"] += 1
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(request.url).query)
        upload_id = query["uploadId"][0]
        part_number = int(query["partNumber"][0])
        self.put_log.append(part_number)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self._gates.pop(part_number, None)
            if gate is not None:
                await gate.wait()
            else:
                # Give other tasks a chance to interleave
                await asyncio.sleep(0)

            remaining = self._scripted_failures.get(part_number, 0)
            if remaining > 0:
                self._scripted_failures[part_number] = remaining - 1
                raise exceptions.TransientTransportError(
                    f"[TEST ONLY]: Scripted transient error for part {part_number}"
                )
            self._randomly_raise_transient_error()

            if upload_id not in self.uploads:
                raise exceptions.ServerRejectionError(
                    f"NoSuchUpload: {upload_id}", status_code=404
                )

            if on_progress is not None:
                on_progress(len(data))

            etag = f'"{hashlib.md5(data).hexdigest()}"'
            _, parts = self.uploads[upload_id]
            parts[part_number] = (
                types.Part(part_number=part_number, size=len(data), etag=etag),
                data,
            )
            return etag
        finally:
            self.in_flight -= 1

    def _get_upload(
        self, key: str, upload_id: str
    ) -> dict[int, tuple[types.Part, bytes]]:
        upload = self.uploads.get(upload_id)
        if upload is None or upload[0] != key:
            raise exceptions.ServerRejectionError(
                f"NoSuchUpload: {upload_id}", status_code=404
            )
        return upload[1]

    def _randomly_raise_transient_error(self):
        """
        Randomly raise a transient error based on the configured error ratio.
        This is for testing purposes only.
        """
        if random.random() < self._transient_error_ratio:
            raise requests.ConnectionError(
                f"[TEST ONLY]: Transient error with ratio {self._transient_error_ratio}"
            )
