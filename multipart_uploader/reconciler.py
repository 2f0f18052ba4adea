from __future__ import annotations

import logging
import typing as T

from . import retry, types, utils

LOG = logging.getLogger(__name__)

ListPartsFunc = T.Callable[
    [str, str],
    T.Union[
        T.Sequence[T.Union[types.Part, T.Mapping[str, T.Any]]],
        T.Awaitable[T.Sequence[T.Union[types.Part, T.Mapping[str, T.Any]]]],
    ],
]


def build_confirmed_parts(
    listed: T.Iterable[types.Part | T.Mapping[str, T.Any]], total_parts: int
) -> dict[int, types.Part]:
    """
    Build the confirmed parts from what the store listed. Parts out of range are dropped.

    >>> parts = build_confirmed_parts([{"PartNumber": 5, "Size": 1, "ETag": "e5"}, types.Part(1, 2, "e1"), types.Part(9, 1, "e9")], 5)
    >>> sorted(parts)
    [1, 5]
    """
    confirmed: dict[int, types.Part] = {}

    for item in listed:
        part = item if isinstance(item, types.Part) else types.Part.from_json(item)
        if not 1 <= part.part_number <= total_parts:
            LOG.warning(
                f"Ignored listed part {part.part_number} outside of [1, {total_parts}]"
            )
            continue
        confirmed[part.part_number] = part

    return confirmed


class ResumeReconciler:
    """
    Rebuild the confirmed parts of an upload from the store.

    The listed parts replace the local ones wholesale. Local state may miss
    parts that landed while the session was paused, or may be gone entirely
    after a restart. The store is the only one that knows what it accepted.
    """

    def __init__(self, list_parts: ListPartsFunc, retry_policy: retry.RetryPolicy):
        self._list_parts = list_parts
        self.retry_policy = retry_policy

    async def reconcile(
        self,
        key: str,
        upload_id: str,
        total_parts: int,
        is_cancelled: T.Callable[[], bool] | None = None,
    ) -> dict[int, types.Part] | None:
        async def _list():
            return await utils.maybe_await(self._list_parts(key, upload_id))

        listed = await self.retry_policy.run(
            _list, is_cancelled=is_cancelled, name=f"listing parts of {key}"
        )
        if listed is None:
            return None

        confirmed = build_confirmed_parts(listed, total_parts)
        LOG.debug(f"Store confirmed {len(confirmed)}/{total_parts} parts of {key}")
        return confirmed
