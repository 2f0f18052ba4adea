from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import sys
import time
import typing as T
import uuid

import humanize
import requests
from tqdm import tqdm

from . import constants, exceptions, http, types, uploader
from .types import SessionState

LOG = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class EngineOptions:
    # How many files upload at the same time
    max_concurrent_uploads: int = constants.MAX_CONCURRENT_UPLOADS

    def __post_init__(self):
        if self.max_concurrent_uploads <= 0:
            raise ValueError(
                f"Expect positive max_concurrent_uploads but got {self.max_concurrent_uploads}"
            )


class FileStatus(enum.Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


FINISHED_STATUSES = {FileStatus.COMPLETE, FileStatus.ERROR, FileStatus.CANCELLED}


@dataclasses.dataclass
class EngineFile:
    file_id: str
    file: types.UploadFile
    status: FileStatus = FileStatus.PENDING
    result: types.UploadOutcome | None = None
    error: Exception | None = None


class Engine:
    """
    A queue of files uploaded by one uploader, with at most
    max_concurrent_uploads files uploading at the same time.

    A file waiting for a slot stays PENDING (or PAUSED when resuming).
    A paused file gives its slot back, and takes a new one when resumed.
    """

    def __init__(
        self,
        uploader: uploader.Uploader,
        options: EngineOptions | None = None,
    ):
        self.uploader = uploader
        self.options = options if options is not None else EngineOptions()
        self.files: dict[str, EngineFile] = {}
        # Created lazily so it binds to the running event loop
        self._semaphore: asyncio.Semaphore | None = None

    def add_file(self, file: types.UploadFile) -> str:
        file_id = uuid.uuid4().hex
        self.files[file_id] = EngineFile(file_id=file_id, file=file)
        LOG.debug(f"Added {file.name} as {file_id}")
        return file_id

    def add_files(self, files: T.Iterable[types.UploadFile]) -> list[str]:
        return [self.add_file(file) for file in files]

    async def remove_file(self, file_id: str) -> bool:
        """
        Remove the file from the queue. An unfinished upload is cancelled first.
        """
        entry = self.files.get(file_id)
        if entry is None:
            return False

        if entry.status in [FileStatus.UPLOADING, FileStatus.PAUSED]:
            await self.cancel(file_id)

        del self.files[file_id]
        self.uploader.forget(entry.file)
        return True

    def get_file(self, file_id: str) -> EngineFile:
        entry = self.files.get(file_id)
        if entry is None:
            raise KeyError(f"File {file_id} not found")
        return entry

    def files_with_status(self, *statuses: FileStatus) -> list[EngineFile]:
        return [entry for entry in self.files.values() if entry.status in statuses]

    async def upload(self, file_id: str | None = None) -> None:
        """
        Upload the file, or every pending file. Return when they have all
        completed, failed, been cancelled or paused.
        """
        if file_id is not None:
            await self._upload_file(self.get_file(file_id))
            return

        pending = self.files_with_status(FileStatus.PENDING)
        if not pending:
            LOG.debug("Nothing to upload")
            return

        await asyncio.gather(*[self._upload_file(entry) for entry in pending])

    def pause(self, file_id: str) -> bool:
        entry = self.get_file(file_id)
        if entry.status is not FileStatus.UPLOADING:
            return False

        paused = self.uploader.pause(entry.file)
        if paused:
            entry.status = FileStatus.PAUSED
        return paused

    async def resume(self, file_id: str) -> None:
        entry = self.get_file(file_id)
        if entry.status is not FileStatus.PAUSED:
            return

        async with self._slot():
            # Could have been cancelled or resumed while waiting for the slot
            if entry.status is not FileStatus.PAUSED:
                return
            if self.uploader.state(entry.file) is not SessionState.PAUSED:
                return
            entry.status = FileStatus.UPLOADING
            await self._drive(entry, self.uploader.resume)

    async def cancel(self, file_id: str) -> bool:
        entry = self.get_file(file_id)
        if entry.status in [FileStatus.COMPLETE, FileStatus.CANCELLED]:
            return False

        cancelled = await self.uploader.cancel(entry.file)
        if cancelled or entry.status is FileStatus.PENDING:
            entry.status = FileStatus.CANCELLED
        return cancelled

    async def retry(self, file_id: str) -> None:
        """
        Upload a failed or cancelled file again, as a new upload
        """
        entry = self.get_file(file_id)
        if entry.status not in [FileStatus.ERROR, FileStatus.CANCELLED]:
            return

        self.uploader.reset_state(entry.file)
        entry.status = FileStatus.PENDING
        entry.result = None
        entry.error = None
        LOG.info(f"Retrying {entry.file.name}")
        await self._upload_file(entry)

    def pause_all(self) -> int:
        return sum(
            self.pause(entry.file_id)
            for entry in self.files_with_status(FileStatus.UPLOADING)
        )

    async def resume_all(self) -> None:
        paused = self.files_with_status(FileStatus.PAUSED)
        await asyncio.gather(*[self.resume(entry.file_id) for entry in paused])

    async def cancel_all(self) -> None:
        for entry in list(self.files.values()):
            await self.cancel(entry.file_id)

    async def retry_all(self) -> None:
        failed = self.files_with_status(FileStatus.ERROR, FileStatus.CANCELLED)
        await asyncio.gather(*[self.retry(entry.file_id) for entry in failed])

    def clear_completed(self) -> list[str]:
        removed = [
            entry.file_id for entry in self.files_with_status(*FINISHED_STATUSES)
        ]
        for file_id in removed:
            self.uploader.forget(self.files.pop(file_id).file)
        return removed

    def overall_progress(self) -> tuple[int, int]:
        """
        Return (bytes uploaded, bytes in total) over all files in the queue
        """
        uploaded = sum(
            self.uploader.bytes_uploaded(entry.file) for entry in self.files.values()
        )
        total = sum(entry.file.size for entry in self.files.values())
        return uploaded, total

    def _slot(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.options.max_concurrent_uploads)
        return self._semaphore

    async def _upload_file(self, entry: EngineFile) -> None:
        async with self._slot():
            # Could have been cancelled or removed while waiting for the slot
            if entry.status is not FileStatus.PENDING:
                return
            entry.status = FileStatus.UPLOADING

            async def _upload(file: types.UploadFile):
                return await self.uploader.upload(
                    file, progress={"file_id": entry.file_id}
                )

            await self._drive(entry, _upload)

    async def _drive(
        self,
        entry: EngineFile,
        func: T.Callable[
            [types.UploadFile], T.Awaitable[types.UploadOutcome | None]
        ],
    ) -> None:
        try:
            outcome = await func(entry.file)
        except Exception as ex:
            entry.status = FileStatus.ERROR
            entry.error = ex
            log_exception(ex)
            return

        if isinstance(outcome, types.CompleteResult):
            entry.status = FileStatus.COMPLETE
            entry.result = outcome
        elif isinstance(outcome, types.CancelledResult):
            entry.status = FileStatus.CANCELLED
            entry.result = outcome
        elif self.uploader.state(entry.file) is SessionState.PAUSED:
            entry.status = FileStatus.PAUSED


def log_exception(ex: Exception) -> None:
    if LOG.isEnabledFor(logging.DEBUG):
        exc_info = ex
    else:
        exc_info = None

    exc_name = ex.__class__.__name__

    if isinstance(ex, exceptions.UploadCancelledError):
        LOG.info(f"{exc_name}: {ex}")
    elif isinstance(ex, exceptions.ServerRejectionError) and ex.status_code:
        LOG.error(f"{exc_name} ({ex.status_code}): {ex}", exc_info=exc_info)
    elif isinstance(ex, requests.HTTPError) and isinstance(
        ex.response, requests.Response
    ):
        LOG.error(
            f"{exc_name}: {http.readable_http_response(ex.response)}",
            exc_info=exc_info,
        )
    else:
        LOG.error(f"{exc_name}: {ex}", exc_info=exc_info)


def _progress_key(payload: uploader.Progress) -> str:
    return payload.get("file_id") or payload["file_name"]


def setup_tqdm(emitter: uploader.EventEmitter) -> dict[str, tqdm]:
    """
    Show one progress bar per file
    """
    pbars: dict[str, tqdm] = {}

    def _open(payload: uploader.Progress) -> tqdm:
        key = _progress_key(payload)
        pbar = pbars.get(key)
        if pbar is None:
            pbar = tqdm(
                total=payload["entity_size"],
                desc=f"Uploading {payload['file_name']}",
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                initial=payload.get("offset", 0),
                disable=LOG.isEnabledFor(logging.DEBUG)
                or constants.PROGRESS_BAR_DISABLED,
            )
            pbars[key] = pbar
        return pbar

    def _close(payload: uploader.Progress) -> None:
        pbar = pbars.pop(_progress_key(payload), None)
        if pbar is not None:
            pbar.close()

    @emitter.on("upload_start")
    def upload_start(payload: uploader.Progress) -> None:
        _close(payload)
        _open(payload)

    @emitter.on("upload_resumed")
    def upload_resumed(payload: uploader.Progress) -> None:
        pbar = _open(payload)
        pbar.write(
            f"Resuming {payload['file_name']} at offset={payload['offset']}",
            file=sys.stderr,
        )

    @emitter.on("upload_progress")
    def upload_progress(payload: uploader.Progress) -> None:
        pbar = pbars.get(_progress_key(payload))
        if pbar is None:
            return
        # Parts finish out of order and retried parts start over, so set the position
        pbar.n = payload["offset"]
        pbar.refresh()

    @emitter.on("upload_finished")
    @emitter.on("upload_failed")
    @emitter.on("upload_cancelled")
    def upload_end(payload: uploader.Progress) -> None:
        _close(payload)

    return pbars


class _UploadStats(uploader.Progress, total=False):
    upload_start_time: float

    # Not set while the file is paused
    upload_last_restart_time: float

    upload_end_time: float

    # Time spent uploading, excluding paused time
    upload_total_time: float


def setup_upload_stats(emitter: uploader.EventEmitter) -> list[_UploadStats]:
    all_stats: list[_UploadStats] = []

    @emitter.on("upload_start")
    def collect_start_time(payload: _UploadStats) -> None:
        now = time.time()
        payload["upload_start_time"] = now
        payload["upload_total_time"] = 0
        payload["upload_last_restart_time"] = now

    @emitter.on("upload_resumed")
    def collect_restart_time(payload: _UploadStats) -> None:
        payload["upload_last_restart_time"] = time.time()

    @emitter.on("upload_paused")
    @emitter.on("upload_end")
    def collect_run_time(payload: _UploadStats) -> None:
        now = time.time()
        restart_time = payload.pop("upload_last_restart_time", None)
        if restart_time is not None:
            payload["upload_total_time"] += now - restart_time
        payload["upload_end_time"] = now

    @emitter.on("upload_finished")
    def append_stats(payload: _UploadStats) -> None:
        all_stats.append(payload)

    return all_stats


def summarize(stats: T.Sequence[_UploadStats]) -> dict:
    total_entity_size = sum(s["entity_size"] for s in stats)
    total_entity_size_mb = total_entity_size / (1024 * 1024)

    total_upload_time = sum(s.get("upload_total_time", 0) for s in stats)
    try:
        speed = total_entity_size_mb / total_upload_time
    except ZeroDivisionError:
        speed = 0

    return {
        "files": len(stats),
        "parts": sum(s["total_parts"] for s in stats),
        "size": round(total_entity_size_mb, 4),
        "speed": round(speed, 4),
        "time": round(total_upload_time, 4),
    }


def show_upload_summary(
    stats: T.Sequence[_UploadStats], errors: T.Sequence[Exception]
) -> None:
    LOG.info("==> Upload summary")

    errors_by_type: dict[type[Exception], list[Exception]] = {}
    for error in errors:
        errors_by_type.setdefault(type(error), []).append(error)

    for error_type, error_list in errors_by_type.items():
        LOG.info(f"{len(error_list)} uploads failed due to {error_type.__name__}")

    if stats:
        summary = summarize(stats)
        LOG.info(f"{summary['files']} files uploaded in {summary['parts']} parts")
        LOG.info(f"{humanize.naturalsize(summary['size'] * 1024 * 1024)} uploaded")
        LOG.info(f"{summary['time']:.3f} seconds upload time")
    else:
        LOG.info("Nothing uploaded. Bye.")


async def upload_files(
    files: T.Sequence[types.UploadFile],
    options: uploader.MultipartUploaderOptions,
    engine_options: EngineOptions | None = None,
    transport: T.Any = None,
) -> Engine:
    """
    Upload the files with progress bars and log a summary at the end
    """
    LOG.info("==> Uploading...")

    # Setup the emitter -- the order matters here
    emitter = uploader.EventEmitter()

    setup_tqdm(emitter)

    # Now stats is empty but it will collect during ALL uploads
    stats = setup_upload_stats(emitter)

    file_uploader = uploader.MultipartUploader(
        options, transport=transport, emitter=emitter
    )
    engine = Engine(file_uploader, engine_options)
    engine.add_files(files)

    try:
        await engine.upload()
    finally:
        errors = [
            entry.error
            for entry in engine.files.values()
            if entry.error is not None
        ]
        show_upload_summary(stats, errors)

    return engine
