from __future__ import annotations

import functools
import os

_ENV_PREFIX = "MULTIPART_UPLOADER_"


def _yes_or_no(val: str) -> bool:
    return val.strip().upper() in ["1", "TRUE", "YES"]


def _parse_scaled_integers(
    value: str, scale: dict[str, int] | None = None
) -> int | None:
    """
    >>> scale = {"": 1, "b": 1, "K": 1024, "M": 1024 * 1024, "G": 1024 * 1024 * 1024}
    >>> _parse_scaled_integers("0", scale=scale)
    0
    >>> _parse_scaled_integers("10", scale=scale)
    10
    >>> _parse_scaled_integers("100B", scale=scale)
    100
    >>> _parse_scaled_integers("5m", scale=scale)
    5242880
    >>> _parse_scaled_integers("inf", scale=scale) is None
    True
    >>> _parse_scaled_integers("100t", scale=scale)
    Traceback (most recent call last):
    ValueError: Expect valid integer ends with , b, K, M, G, but got 100T
    """

    if scale is None:
        scale = {"": 1}

    value = value.strip().upper()

    if value in ["INF", "INFINITY"]:
        return None

    try:
        for k, v in scale.items():
            k = k.upper()
            if k and value.endswith(k):
                return int(value[: -len(k)]) * v

        if "" in scale:
            return int(value) * scale[""]
    except ValueError:
        pass

    raise ValueError(
        f"Expect valid integer ends with {', '.join(scale.keys())}, but got {value}"
    )


_parse_filesize = functools.partial(
    _parse_scaled_integers,
    scale={"": 1, "B": 1, "K": 1024, "M": 1024 * 1024, "G": 1024 * 1024 * 1024},
)


def _parse_required_filesize(value: str) -> int:
    size = _parse_filesize(value)
    if size is None:
        raise ValueError(f"Expect a finite file size but got {value}")
    return size


###################
##### GENERAL #####
###################
PROGRESS_BAR_DISABLED: bool = _yes_or_no(
    os.getenv(_ENV_PREFIX + "PROGRESS_BAR_DISABLED", "NO")
)


###########################
##### MULTIPART PARTS #####
###########################
# S3 rejects any non-last part smaller than 5 MiB
DEFAULT_CHUNK_SIZE: int = _parse_required_filesize(
    os.getenv(_ENV_PREFIX + "CHUNK_SIZE", "5M")
)
MIN_CHUNK_SIZE: int = _parse_required_filesize(
    os.getenv(_ENV_PREFIX + "MIN_CHUNK_SIZE", "5M")
)
# S3 allows at most 10000 parts per upload
MAX_PARTS = int(os.getenv(_ENV_PREFIX + "MAX_PARTS", 10000))
MAX_CONCURRENT_PARTS = int(os.getenv(_ENV_PREFIX + "MAX_CONCURRENT_PARTS", 3))
# How many files upload at the same time in one engine
MAX_CONCURRENT_UPLOADS = int(os.getenv(_ENV_PREFIX + "MAX_CONCURRENT_UPLOADS", 6))


##################
##### RETRY ######
##################
MAX_UPLOAD_RETRIES = int(os.getenv(_ENV_PREFIX + "MAX_UPLOAD_RETRIES", 3))
# In seconds
RETRY_INITIAL_DELAY = float(os.getenv(_ENV_PREFIX + "RETRY_INITIAL_DELAY", 1))
RETRY_MAX_DELAY = float(os.getenv(_ENV_PREFIX + "RETRY_MAX_DELAY", 30))


###################
##### SIGNING #####
###################
# Cached credentials are refreshed this many seconds before they expire
CREDENTIALS_EXPIRY_BUFFER = int(
    os.getenv(_ENV_PREFIX + "CREDENTIALS_EXPIRY_BUFFER", 5 * 60)
)
# In seconds
PRESIGNED_URL_EXPIRES = int(os.getenv(_ENV_PREFIX + "PRESIGNED_URL_EXPIRES", 3600))


################
##### HTTP #####
################
REQUESTS_TIMEOUT = float(os.getenv(_ENV_PREFIX + "REQUESTS_TIMEOUT", 60))
# Bytes per second. Used to estimate the read timeout of a part PUT. 0 disables it
MIN_UPLOAD_SPEED: int | None = _parse_filesize(
    os.getenv(_ENV_PREFIX + "MIN_UPLOAD_SPEED", "50K")
)
