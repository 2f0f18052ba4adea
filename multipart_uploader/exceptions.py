from __future__ import annotations


class MultipartUploadError(Exception):
    """
    Base exception for all errors raised by the upload engine
    """

    pass


class TransientTransportError(MultipartUploadError):
    """
    Connection failures and timeouts. These are the only errors the retry policy retries.
    """

    pass


class AuthenticationError(MultipartUploadError):
    """
    Signing or credential failures. Never retried.
    """

    pass


class ServerRejectionError(MultipartUploadError):
    """
    The object store rejected the request, e.g. a stale upload ID or out-of-order parts.
    Never retried.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ExpiredUrlError(ServerRejectionError):
    """
    The presigned URL or the credentials it was signed with expired before the store received it.
    """

    pass


class UploadCancelledError(MultipartUploadError):
    """
    Raised only to callers that explicitly ask a cancelled upload to raise
    """

    def __init__(self, message: str, file_id: str | None = None) -> None:
        super().__init__(message)
        self.file_id = file_id
