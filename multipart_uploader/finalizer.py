from __future__ import annotations

import logging
import typing as T

from . import exceptions, retry, types, utils

LOG = logging.getLogger(__name__)

CompleteFunc = T.Callable[
    [str, str, T.Sequence[types.Part]],
    T.Union[
        types.CompleteResult,
        T.Mapping[str, T.Any],
        None,
        T.Awaitable[T.Union[types.CompleteResult, T.Mapping[str, T.Any], None]],
    ],
]


def snapshot_parts(
    confirmed_parts: T.Mapping[int, types.Part],
) -> tuple[types.Part, ...]:
    """
    Copy the confirmed parts into an immutable tuple sorted by part number

    >>> parts = {3: types.Part(3, 1, "c"), 1: types.Part(1, 1, "a"), 2: types.Part(2, 1, "b")}
    >>> [p.part_number for p in snapshot_parts(parts)]
    [1, 2, 3]
    """
    return tuple(sorted(confirmed_parts.values(), key=lambda p: p.part_number))


def validate_snapshot(parts: T.Sequence[types.Part], total_parts: int) -> None:
    """
    >>> validate_snapshot([types.Part(1, 1, "a"), types.Part(2, 1, "b")], 2)
    >>> validate_snapshot([types.Part(1, 1, "a"), types.Part(3, 1, "c")], 3)
    Traceback (most recent call last):
    multipart_uploader.exceptions.ServerRejectionError: Expect parts [1..3] but got [1, 3]
    """
    numbers = [p.part_number for p in parts]
    if numbers != list(range(1, total_parts + 1)):
        raise exceptions.ServerRejectionError(
            f"Expect parts [1..{total_parts}] but got {numbers}"
        )


def _as_complete_result(result: T.Any, key: str) -> types.CompleteResult:
    if isinstance(result, types.CompleteResult):
        return result

    if result is None:
        return types.CompleteResult(key=key)

    if isinstance(result, T.Mapping):
        body = dict(result)
        return types.CompleteResult(
            location=body.get("location") or body.get("Location"),
            etag=body.get("etag") or body.get("ETag"),
            key=body.get("key") or body.get("Key") or key,
            body=body,
        )

    raise TypeError(f"Unexpected completion result {result!r}")


class CompletionFinalizer:
    def __init__(self, complete: CompleteFunc, retry_policy: retry.RetryPolicy):
        self._complete = complete
        self.retry_policy = retry_policy

    async def finalize(
        self,
        key: str,
        upload_id: str,
        confirmed_parts: T.Mapping[int, types.Part],
        total_parts: int,
        is_cancelled: T.Callable[[], bool] | None = None,
    ) -> types.CompleteResult | None:
        """
        Complete the upload with a snapshot of the parts taken before the first
        suspension point. Late part completions can still mutate the live mapping
        afterwards, but never the list the store receives.
        """
        parts = snapshot_parts(confirmed_parts)
        validate_snapshot(parts, total_parts)

        async def _complete():
            return await utils.maybe_await(self._complete(key, upload_id, parts))

        LOG.debug(f"Completing {key} with {len(parts)} parts")
        result = await self.retry_policy.run(
            _complete, is_cancelled=is_cancelled, name=f"completing {key}"
        )
        if result is None and is_cancelled is not None and is_cancelled():
            return None

        return _as_complete_result(result, key)
