from __future__ import annotations

import dataclasses
import logging
import sys
import typing as T

if sys.version_info >= (3, 11):
    from typing import Required
else:
    from typing_extensions import Required

from . import constants, types, utils
from .controller import UploadSessionController
from .finalizer import CompleteFunc
from .reconciler import ListPartsFunc
from .retry import DEFAULT_RETRY_CONFIG, RetryConfig, RetryPolicy, SleepFunc
from .signer import CredentialCache, CredentialsFetcher, RequestSigner
from .types import SessionState
from .upload_api import PartTransport, RequestsTransport


LOG = logging.getLogger(__name__)


class Progress(T.TypedDict, total=False):
    """
    Progress data of one file. The same dict is passed to every event of the file.
    """

    # Set by the engine to tell files with the same name apart
    file_id: str

    file_name: Required[str]

    # Size in bytes of the file
    entity_size: Required[int]

    # How many bytes of the file have been uploaded so far, including bytes of parts in flight
    # Assert:
    #   - 0 <= offset <= entity_size
    #   - offset == entity_size when "upload_end" or "upload_finished"
    offset: Required[int]

    # The effective part size after applying the minimum and the part count limit
    chunk_size: Required[int]

    total_parts: Required[int]

    # The part that was uploaded or retried most recently
    part_number: int

    # An "upload_retrying" will increase it. Reset to 0 if a part is uploaded
    retries: Required[int]

    # Available after the upload has been created
    upload_id: str
    key: str

    # Available after "upload_finished"
    location: str | None


# BELOW demonstrates the pseudocode for a typical multipart upload
# and when upload events are emitted
#################################################################
# def pseudo_upload(file):
#     emit("upload_start")
#     if upload_id is None:
#         upload_id = create_multipart_upload(file)
#     else:
#         confirmed = list_parts(upload_id)
#         emit("upload_progress")
#     for part in pending_parts(confirmed):  # k parts at a time
#         while True:
#             try:
#                 put_part(sign_part(part))
#                 emit("upload_progress")
#             except TransientTransportError:
#                 emit("upload_retrying")
#                 continue
#             break
#         emit("upload_part_uploaded")
#     emit("upload_end")
#     complete_multipart_upload(sorted(confirmed))
#     emit("upload_finished")
#
# pause() emits "upload_paused", resume() emits "upload_resumed",
# cancel() emits "upload_cancelled" and a permanent error emits "upload_failed"
EventName = T.Literal[
    "upload_start",
    "upload_progress",
    "upload_part_uploaded",
    "upload_paused",
    "upload_resumed",
    "upload_retrying",
    "upload_end",
    "upload_failed",
    "upload_cancelled",
    "upload_finished",
]


class EventEmitter:
    """
    >>> emitter = EventEmitter()
    >>> @emitter.on("upload_start")
    ... def _print_name(progress):
    ...     print(progress["file_name"])
    >>> emitter.emit("upload_start", {"file_name": "hello.mp4"})
    hello.mp4
    >>> emitter.emit("upload_finished", {"file_name": "hello.mp4"})
    """

    events: dict[EventName, list]

    def __init__(self):
        self.events = {}

    def on(self, event: EventName):
        def _wrap(callback):
            self.events.setdefault(event, []).append(callback)
            return callback

        return _wrap

    def emit(self, event: EventName, *args, **kwargs):
        for callback in self.events.get(event, []):
            callback(*args, **kwargs)


CreateFunc = T.Callable[
    [types.UploadFile],
    T.Union[
        types.CreateResult,
        T.Mapping[str, T.Any],
        T.Awaitable[T.Union[types.CreateResult, T.Mapping[str, T.Any]]],
    ],
]
AbortFunc = T.Callable[[str, str], T.Union[None, T.Awaitable[None]]]
SignPartFunc = T.Callable[[str, str, int], T.Any]
GetUploadParametersFunc = T.Callable[[types.UploadFile], T.Any]


@dataclasses.dataclass(frozen=True)
class MultipartUploaderOptions:
    # Control-plane callbacks supplied by the host. Plain functions or coroutine functions
    create_multipart_upload: CreateFunc
    list_parts: ListPartsFunc
    complete_multipart_upload: CompleteFunc
    abort_multipart_upload: AbortFunc
    # Not called when get_temporary_credentials is set
    sign_part: SignPartFunc | None = None
    get_upload_parameters: GetUploadParametersFunc | None = None
    # When set, parts are signed locally with the short-lived credentials
    get_temporary_credentials: CredentialsFetcher | None = None

    chunk_size: int = constants.DEFAULT_CHUNK_SIZE
    min_chunk_size: int = constants.MIN_CHUNK_SIZE
    max_concurrent_parts: int = constants.MAX_CONCURRENT_PARTS
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG
    # S3-compatible endpoint for locally signed requests, e.g. "http://localhost:9000/my-bucket"
    endpoint: str | None = None

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"Expect positive chunk_size but got {self.chunk_size}")

        if self.min_chunk_size <= 0:
            raise ValueError(
                f"Expect positive min_chunk_size but got {self.min_chunk_size}"
            )

        if self.max_concurrent_parts <= 0:
            raise ValueError(
                f"Expect positive max_concurrent_parts but got {self.max_concurrent_parts}"
            )

        if self.sign_part is None and self.get_temporary_credentials is None:
            raise ValueError(
                "Expect either sign_part or get_temporary_credentials to be set"
            )


class Uploader(T.Protocol):
    """
    The capability set the engine drives. Every operation is keyed by the file.
    """

    async def upload(
        self, file: types.UploadFile, progress: dict[str, T.Any] | None = None
    ) -> types.UploadOutcome | None: ...

    def pause(self, file: types.UploadFile) -> bool: ...

    async def resume(self, file: types.UploadFile) -> types.UploadOutcome | None: ...

    async def cancel(self, file: types.UploadFile) -> bool: ...

    def reset_state(self, file: types.UploadFile) -> bool: ...

    def state(self, file: types.UploadFile) -> SessionState: ...

    def bytes_uploaded(self, file: types.UploadFile) -> int: ...

    def forget(self, file: types.UploadFile) -> None: ...


class MultipartUploader:
    """
    Upload files in parts to an S3-compatible store.

    One session controller is kept per file. The credential cache is shared
    by all of them, so one refresh serves every file of this uploader.

    upload() and resume() return the outcome once the file has completed or
    been cancelled, or None when the file was paused before that. Permanent
    errors are raised.
    """

    def __init__(
        self,
        options: MultipartUploaderOptions,
        transport: PartTransport | None = None,
        emitter: EventEmitter | None = None,
        signer: RequestSigner | None = None,
        credential_cache: CredentialCache | None = None,
        sleep: SleepFunc | None = None,
    ):
        self.options = options
        self.transport: PartTransport = (
            transport if transport is not None else RequestsTransport()
        )
        if emitter is None:
            # An empty event emitter that does nothing
            self.emitter = EventEmitter()
        else:
            self.emitter = emitter
        self.signer = (
            signer if signer is not None else RequestSigner(endpoint=options.endpoint)
        )
        self.credentials = (
            credential_cache
            if credential_cache is not None
            else CredentialCache(options.get_temporary_credentials)
        )
        self.retry_policy = RetryPolicy(options.retry_config, sleep=sleep)
        self._controllers: dict[types.UploadFile, UploadSessionController] = {}

    def controller(
        self,
        file: types.UploadFile,
        upload_id: str | None = None,
        key: str | None = None,
        progress: dict[str, T.Any] | None = None,
    ) -> UploadSessionController:
        """
        Get the controller of the file, or create one.
        Pass upload_id and key to attach to an upload created earlier.
        """
        controller = self._controllers.get(file)
        if controller is None:
            controller = self._create_controller(
                file, upload_id=upload_id, key=key, progress=progress
            )
            self._controllers[file] = controller
        elif upload_id is not None and controller.upload_id != upload_id:
            raise ValueError(
                f"{file.name} is already bound to upload {controller.upload_id}"
            )
        return controller

    def _create_controller(
        self,
        file: types.UploadFile,
        upload_id: str | None = None,
        key: str | None = None,
        progress: dict[str, T.Any] | None = None,
    ) -> UploadSessionController:
        return UploadSessionController(
            file,
            self.options,
            self.transport,
            self.signer,
            self.credentials,
            self.retry_policy,
            emit=self.emitter.emit,
            upload_id=upload_id,
            key=key,
            progress=progress,
        )

    async def upload(
        self, file: types.UploadFile, progress: dict[str, T.Any] | None = None
    ) -> types.UploadOutcome | None:
        controller = self.controller(file, progress=progress)
        controller.start()
        return await self._settle(controller)

    def pause(self, file: types.UploadFile) -> bool:
        controller = self._controllers.get(file)
        if controller is None:
            return False
        before = controller.state
        return controller.pause() is not before

    async def resume(self, file: types.UploadFile) -> types.UploadOutcome | None:
        controller = self._controllers.get(file)
        if controller is None:
            return None
        controller.resume()
        return await self._settle(controller)

    async def cancel(self, file: types.UploadFile) -> bool:
        controller = self.controller(file)
        before = controller.state
        return await controller.cancel() is not before

    def reset_state(self, file: types.UploadFile) -> bool:
        """
        Replace a failed or cancelled session with a fresh one, so that the
        file can be uploaded again as a new upload
        """
        controller = self._controllers.get(file)
        if controller is None:
            return False

        if controller.state not in [SessionState.FAILED, SessionState.CANCELLED]:
            LOG.debug(f"Ignored reset of {controller}")
            return False

        progress = {}
        if "file_id" in controller.progress:
            progress["file_id"] = controller.progress["file_id"]
        self._controllers[file] = self._create_controller(file, progress=progress)
        LOG.info(f"Reset {file.name} from {controller.state.value}")
        return True

    async def retry(self, file: types.UploadFile) -> types.UploadOutcome | None:
        if not self.reset_state(file):
            return None
        return await self.upload(file)

    def state(self, file: types.UploadFile) -> SessionState:
        controller = self._controllers.get(file)
        if controller is None:
            return SessionState.IDLE
        return controller.state

    def bytes_uploaded(self, file: types.UploadFile) -> int:
        controller = self._controllers.get(file)
        if controller is None:
            return 0
        return controller.progress["offset"]

    def forget(self, file: types.UploadFile) -> None:
        self._controllers.pop(file, None)

    async def get_upload_parameters(
        self, file: types.UploadFile, key: str | None = None
    ) -> types.SignedRequest:
        """
        Get the request for uploading the whole file in a single PUT
        """
        if self.credentials.has_credentials:
            credentials = await self.credentials.get()
            return self.signer.presign_object_url(
                credentials, key if key is not None else file.name
            )

        if self.options.get_upload_parameters is None:
            raise ValueError(
                "Neither get_upload_parameters nor get_temporary_credentials is configured"
            )

        result = await utils.maybe_await(self.options.get_upload_parameters(file))
        return types.as_signed_request(result)

    @classmethod
    async def _settle(
        cls, controller: UploadSessionController
    ) -> types.UploadOutcome | None:
        await controller.join()
        if controller.done:
            return await controller.wait()
        return None
