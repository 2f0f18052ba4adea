from __future__ import annotations

import asyncio
import functools
import logging
import typing as T

from . import constants, exceptions, types, utils
from .finalizer import CompletionFinalizer
from .reconciler import ResumeReconciler
from .retry import RetryPolicy
from .scheduler import PartScheduler
from .signer import CredentialCache, RequestSigner
from .upload_api import PartTransport
from .types import SessionState

if T.TYPE_CHECKING:
    from .uploader import EventName, MultipartUploaderOptions, Progress

LOG = logging.getLogger(__name__)

EmitFunc = T.Callable[["EventName", "Progress"], None]


class UploadSessionController:
    """
    Owns the multipart upload of one file.

    State transitions:
        IDLE -> RUNNING           start()
        RUNNING -> PAUSED         pause()
        PAUSED -> RUNNING         resume(), after reconciling parts with the store
        RUNNING -> COMPLETED      all parts confirmed and the upload completed
        RUNNING -> FAILED         a part or the completion failed for good
        * -> CANCELLED            cancel(), unless terminal or completing

    Every time the session enters or leaves RUNNING the generation is bumped.
    Work started under an older generation is stale: its results are discarded,
    never awaited, since a request already on the wire cannot be aborted.
    """

    def __init__(
        self,
        file: types.UploadFile,
        options: MultipartUploaderOptions,
        transport: PartTransport,
        signer: RequestSigner,
        credentials: CredentialCache,
        retry_policy: RetryPolicy,
        emit: EmitFunc | None = None,
        upload_id: str | None = None,
        key: str | None = None,
        progress: dict[str, T.Any] | None = None,
    ):
        self.file = file
        self.options = options
        self.transport = transport
        self.signer = signer
        self.credentials = credentials
        self.retry_policy = retry_policy
        self._emit_func = emit

        # An upload created earlier (e.g. before a restart) can be attached to
        self.upload_id = upload_id
        self.key = key

        self.chunk_size = types.compute_chunk_size(
            file.size,
            options.chunk_size,
            options.min_chunk_size,
            constants.MAX_PARTS,
        )
        self.part_ranges = types.compute_part_ranges(file.size, self.chunk_size)

        self.state = SessionState.IDLE
        self.generation = 0
        self.confirmed_parts: dict[int, types.Part] = {}

        self.scheduler = PartScheduler(options.max_concurrent_parts)
        self.reconciler = ResumeReconciler(options.list_parts, retry_policy)
        self.finalizer = CompletionFinalizer(
            options.complete_multipart_upload, retry_policy
        )

        self._result: asyncio.Future | None = None
        self._run_task: asyncio.Task | None = None
        # Shared by every run, so a pause during creation never creates a second upload
        self._create_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._finalizing = False
        self._abort_requested = False
        # Bytes sent per part, for progress reporting
        self._part_bytes: dict[int, int] = {}

        self.progress: dict[str, T.Any] = dict(progress or {})
        self.progress.update(
            {
                "file_name": file.name,
                "entity_size": file.size,
                "offset": 0,
                "chunk_size": self.chunk_size,
                "total_parts": self.total_parts,
                "retries": 0,
            }
        )
        if upload_id is not None:
            self.progress["upload_id"] = upload_id
        if key is not None:
            self.progress["key"] = key

    def __repr__(self) -> str:
        return f"UploadSessionController({self.file.name!r}, state={self.state.value}, generation={self.generation}, parts={len(self.confirmed_parts)}/{self.total_parts})"

    @property
    def total_parts(self) -> int:
        return len(self.part_ranges)

    @property
    def result(self) -> asyncio.Future:
        """
        Single-assignment slot for the outcome: a CompleteResult, a CancelledResult or an exception
        """
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
        return self._result

    @property
    def done(self) -> bool:
        return self._result is not None and self._result.done()

    def pending_part_numbers(self) -> list[int]:
        return [
            part_range.part_number
            for part_range in self.part_ranges
            if part_range.part_number not in self.confirmed_parts
        ]

    def is_current(self, generation: int) -> bool:
        return self.state is SessionState.RUNNING and generation == self.generation

    def start(self) -> SessionState:
        """
        Start uploading in the background. Must be called inside the running event loop.
        """
        if self.state is not SessionState.IDLE:
            LOG.debug(f"Ignored start of {self}")
            return self.state

        # Bind the result slot to the running loop
        _ = self.result
        self._enter_running()
        LOG.info(
            f"Uploading {self.file.name} ({self.file.size} bytes) in {self.total_parts} parts"
        )
        self._emit("upload_start")
        return self.state

    def pause(self) -> SessionState:
        if self.state is not SessionState.RUNNING:
            return self.state

        if self._finalizing:
            # The completion call is on the wire and the parts are final
            LOG.debug(f"Ignored pause of {self} while completing")
            return self.state

        self._leave_running(SessionState.PAUSED)
        LOG.info(
            f"Paused {self.file.name} with {len(self.confirmed_parts)}/{self.total_parts} parts confirmed"
        )
        self._emit("upload_paused")
        return self.state

    def resume(self) -> SessionState:
        """
        Resume uploading in the background. Must be called inside the running event loop.
        """
        if self.state is not SessionState.PAUSED:
            return self.state

        self._enter_running()
        LOG.info(f"Resuming {self.file.name}")
        self._emit("upload_resumed")
        return self.state

    async def cancel(self) -> SessionState:
        if self.state in types.TERMINAL_STATES:
            return self.state

        if self._finalizing:
            # Aborting now would race the completion call, which decides the outcome
            LOG.debug(f"Ignored cancel of {self} while completing")
            return self.state

        previous_state = self.state
        self._leave_running(SessionState.CANCELLED)
        self._set_result(types.CancelledResult(key=self.key, upload_id=self.upload_id))
        LOG.info(f"Cancelled {self.file.name} ({previous_state.value})")
        self._emit("upload_cancelled")

        await self._abort_once()

        return self.state

    async def join(self) -> None:
        """
        Wait until the current run stops or the outcome is settled
        """
        task = self._run_task
        if task is None or task.done():
            return
        await asyncio.wait({task, self.result}, return_when=asyncio.FIRST_COMPLETED)

    async def wait(self, raise_on_cancel: bool = False) -> types.UploadOutcome:
        """
        Wait for the outcome. Raise the error if the upload failed.
        """
        outcome = await asyncio.shield(self.result)
        if raise_on_cancel and isinstance(outcome, types.CancelledResult):
            raise exceptions.UploadCancelledError(
                f"Upload of {self.file.name} was cancelled"
            )
        return outcome

    def _enter_running(self) -> None:
        self.generation += 1
        self.state = SessionState.RUNNING
        self._stop_event = asyncio.Event()
        self._run_task = asyncio.create_task(
            self._run(self.generation, self._stop_event)
        )

    def _leave_running(self, state: SessionState) -> None:
        self.generation += 1
        self.state = state
        if self._stop_event is not None:
            self._stop_event.set()

    def _set_result(self, value: types.UploadOutcome) -> None:
        if not self.result.done():
            self.result.set_result(value)

    def _fail(self, ex: Exception) -> None:
        self._leave_running(SessionState.FAILED)
        if not self.result.done():
            self.result.set_exception(ex)
        LOG.info(f"Failed uploading {self.file.name}: {ex.__class__.__name__}: {ex}")
        self._emit("upload_failed")

    def _emit(self, event: EventName) -> None:
        if self._emit_func is not None:
            self._emit_func(event, T.cast("Progress", self.progress))

    async def _run(self, generation: int, stop_event: asyncio.Event) -> None:
        def is_stale() -> bool:
            return not self.is_current(generation)

        try:
            if self.upload_id is None:
                if self._create_task is None:
                    self._create_task = asyncio.create_task(self._create_once())
                    self._create_task.add_done_callback(self._on_create_done)
                create_task = self._create_task

                # A paused run stops waiting, the creation goes on for the next run
                stop_waiter = asyncio.ensure_future(stop_event.wait())
                try:
                    await asyncio.wait(
                        {create_task, stop_waiter},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    stop_waiter.cancel()

                if not create_task.done() or is_stale():
                    return
                # Raise the creation error, if any
                create_task.result()
                if self.upload_id is None:
                    return
            else:
                await self._reconcile(generation)
                if is_stale():
                    return

            pending = self.pending_part_numbers()
            if pending:
                LOG.debug(f"Scheduling parts {pending} of {self.file.name}")
                finished = await self.scheduler.run(
                    pending,
                    functools.partial(self._upload_part, generation),
                    lambda: self.is_current(generation),
                    stop_event,
                )
                if not finished or is_stale():
                    return

            self._emit("upload_end")
            await self._finalize(generation)
        except Exception as ex:
            if self.is_current(generation):
                self._fail(ex)
            else:
                LOG.debug(
                    f"Discarded error from a stale run of {self.file.name}: {ex.__class__.__name__}: {ex}"
                )

    async def _create_once(self) -> None:
        created = await self.retry_policy.run(
            self._create,
            is_cancelled=lambda: self.state is SessionState.CANCELLED,
            name=f"creating upload of {self.file.name}",
        )
        if created is None:
            return
        self.upload_id, self.key = created.upload_id, created.key
        self.progress["upload_id"] = created.upload_id
        self.progress["key"] = created.key

        if self.state is SessionState.CANCELLED:
            # Cancelled while the store was creating the upload
            await self._abort_once()

    def _on_create_done(self, task: asyncio.Task) -> None:
        # Paused or cancelled runs stop waiting for the creation, so its error is retrieved here
        if not task.cancelled() and task.exception() is not None:
            LOG.debug(
                f"Creating upload of {self.file.name} failed: {task.exception()!r}"
            )

    async def _create(self) -> types.CreateResult:
        result = await utils.maybe_await(
            self.options.create_multipart_upload(self.file)
        )
        return types.as_create_result(result)

    async def _reconcile(self, generation: int) -> None:
        assert self.upload_id is not None and self.key is not None

        confirmed = await self.reconciler.reconcile(
            self.key,
            self.upload_id,
            self.total_parts,
            is_cancelled=lambda: not self.is_current(generation),
        )
        if confirmed is None or not self.is_current(generation):
            return

        # Replace, never merge: the store is the source of truth
        self.confirmed_parts = confirmed
        self._part_bytes = {
            part_number: part.size for part_number, part in confirmed.items()
        }
        self._update_offset()
        LOG.info(
            f"Store has {len(confirmed)}/{self.total_parts} parts of {self.file.name}"
        )
        self._emit("upload_progress")

    async def _finalize(self, generation: int) -> None:
        assert self.upload_id is not None and self.key is not None

        self._finalizing = True
        try:
            result = await self.finalizer.finalize(
                self.key,
                self.upload_id,
                self.confirmed_parts,
                self.total_parts,
                is_cancelled=lambda: self.state is SessionState.CANCELLED,
            )
        finally:
            self._finalizing = False

        if result is None or not self.is_current(generation):
            return

        self.state = SessionState.COMPLETED
        self._set_result(result)
        self.progress["location"] = result.location
        LOG.info(f"Completed {self.file.name} at {result.location or self.key}")
        self._emit("upload_finished")

    async def _sign_part(self, part_number: int) -> types.SignedRequest:
        assert self.upload_id is not None and self.key is not None

        # With short-lived credentials every part is signed locally
        if self.credentials.has_credentials:
            credentials = await self.credentials.get()
            return self.signer.presign_part_url(
                credentials, self.key, self.upload_id, part_number
            )

        if self.options.sign_part is None:
            raise exceptions.AuthenticationError(
                "Neither sign_part nor get_temporary_credentials is configured"
            )

        result = await utils.maybe_await(
            self.options.sign_part(self.key, self.upload_id, part_number)
        )
        return types.as_signed_request(result)

    async def _upload_part(self, generation: int, part_number: int) -> None:
        part_range = self.part_ranges[part_number - 1]
        data = await asyncio.to_thread(
            self.file.read_chunk, part_range.start, part_range.end
        )
        if len(data) != part_range.size:
            raise ValueError(
                f"Expect {part_range.size} bytes for part {part_number} of {self.file.name} but read {len(data)}"
            )

        def _on_progress(sent: int) -> None:
            if self.is_current(generation):
                self._part_bytes[part_number] = sent
                self._update_offset()
                self._emit("upload_progress")

        def _on_retry(attempt: int, delay: float, ex: BaseException) -> None:
            if self.is_current(generation):
                self._part_bytes[part_number] = 0
                self._update_offset()
                self.progress["part_number"] = part_number
                self.progress["retries"] += 1
                self._emit("upload_retrying")

        async def _attempt() -> str:
            request = await self._sign_part(part_number)
            try:
                return await self.transport.put_part(request, data, _on_progress)
            except exceptions.ExpiredUrlError:
                # The cached credentials are no good, the next signing fetches new ones
                if self.credentials.has_credentials:
                    self.credentials.invalidate()
                raise

        etag = await self.retry_policy.run(
            _attempt,
            is_cancelled=lambda: not self.is_current(generation),
            on_retry=_on_retry,
            name=f"part {part_number}/{self.total_parts} of {self.file.name}",
        )
        if etag is None:
            return

        # The session may have been paused or cancelled while the part was in flight
        if not self.is_current(generation):
            LOG.debug(
                f"Discarded stale part {part_number} of {self.file.name} (generation {generation} != {self.generation})"
            )
            return

        part = types.Part(part_number=part_number, size=part_range.size, etag=etag)
        self.confirmed_parts[part_number] = part
        self._part_bytes[part_number] = part.size
        self._update_offset()
        self.progress["part_number"] = part_number
        self.progress["retries"] = 0
        LOG.debug(
            f"Uploaded part {part_number}/{self.total_parts} of {self.file.name}"
        )
        self._emit("upload_part_uploaded")
        self._emit("upload_progress")

    def _update_offset(self) -> None:
        self.progress["offset"] = sum(self._part_bytes.values())

    async def _abort_once(self) -> None:
        if self._abort_requested or self.upload_id is None or self.key is None:
            return
        self._abort_requested = True

        try:
            await utils.maybe_await(
                self.options.abort_multipart_upload(self.key, self.upload_id)
            )
        except Exception as ex:
            # Best-effort: the store expires abandoned uploads eventually
            LOG.warning(
                f"Failed to abort upload {self.upload_id} of {self.key}: {ex.__class__.__name__}: {ex}"
            )
        else:
            LOG.debug(f"Aborted upload {self.upload_id} of {self.key}")
