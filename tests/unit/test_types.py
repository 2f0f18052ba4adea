import datetime

import py.path
import pytest

from multipart_uploader import exceptions, types


MiB = 1024 * 1024


def test_part_json():
    part = types.Part.from_json({"PartNumber": 3, "Size": 10, "ETag": '"abc"'})
    assert part == types.Part(part_number=3, size=10, etag='"abc"')
    assert part.to_json() == {"PartNumber": 3, "Size": 10, "ETag": '"abc"'}

    assert types.Part.from_json({"partNumber": 3, "size": 10, "etag": '"abc"'}) == part

    with pytest.raises(KeyError):
        types.Part.from_json({"PartNumber": 3, "Size": 10})


@pytest.mark.parametrize("part_number, size", [(0, 1), (-1, 1), (1, -1)])
def test_invalid_part(part_number: int, size: int):
    with pytest.raises(ValueError):
        types.Part(part_number=part_number, size=size, etag="x")


def test_part_is_frozen():
    part = types.Part(1, 1, "x")
    with pytest.raises(Exception):
        part.etag = "y"  # type: ignore


@pytest.mark.parametrize(
    "file_size, chunk_size, min_chunk_size, max_parts, expected",
    [
        (10 * MiB, 2 * MiB, 2 * MiB, 10000, 2 * MiB),
        (10 * MiB, 1 * MiB, 5 * MiB, 10000, 5 * MiB),
        (10 * MiB, 8 * MiB, 5 * MiB, 10000, 8 * MiB),
        (100, 1, 1, 10, 10),
        (101, 1, 1, 10, 11),
        (0, 5, 5, 10000, 5),
    ],
)
def test_compute_chunk_size(file_size, chunk_size, min_chunk_size, max_parts, expected):
    assert (
        types.compute_chunk_size(file_size, chunk_size, min_chunk_size, max_parts)
        == expected
    )


def test_compute_part_ranges():
    ranges = types.compute_part_ranges(10 * MiB, 2 * MiB)
    assert [r.part_number for r in ranges] == [1, 2, 3, 4, 5]
    assert ranges[0].start == 0
    assert ranges[-1].end == 10 * MiB
    assert all(r.size == 2 * MiB for r in ranges)
    for prev, cur in zip(ranges, ranges[1:]):
        assert prev.end == cur.start

    ranges = types.compute_part_ranges(11, 4)
    assert [(r.start, r.end) for r in ranges] == [(0, 4), (4, 8), (8, 11)]

    # An empty file is still uploaded in one (empty) part
    assert types.compute_part_ranges(0, 4) == [types.PartRange(1, 0, 0)]

    with pytest.raises(ValueError):
        types.compute_part_ranges(10, 0)


def test_part_ranges_respect_max_parts():
    file_size = 10001
    chunk_size = types.compute_chunk_size(file_size, 1, 1, 10000)
    ranges = types.compute_part_ranges(file_size, chunk_size)
    assert len(ranges) <= 10000
    assert ranges[-1].end == file_size


def test_bytes_file():
    file = types.BytesFile("hello.txt", b"hello world")
    assert file.name == "hello.txt"
    assert file.size == 11
    assert file.read_chunk(6, 11) == b"world"
    assert file.read_chunk(6, 100) == b"world"


def test_path_file(tmpdir: py.path.local):
    path = tmpdir.join("video.mp4")
    path.write_binary(b"0123456789")

    file = types.PathFile(str(path))
    assert file.name == "video.mp4"
    assert file.size == 10
    assert file.read_chunk(0, 4) == b"0123"
    assert file.read_chunk(8, 10) == b"89"

    assert types.PathFile(str(path), name="renamed.mp4").name == "renamed.mp4"


def test_credentials_from_flat_json():
    credentials = types.TemporaryCredentials.from_json(
        {
            "AccessKeyId": "AKID",
            "SecretAccessKey": "SECRET",
            "SessionToken": "TOKEN",
            "Expiration": "2030-05-24T10:00:00+02:00",
            "bucket": "b",
            "region": "us-west-2",
        }
    )
    assert credentials.access_key_id == "AKID"
    assert credentials.expiration == datetime.datetime(
        2030, 5, 24, 8, tzinfo=datetime.timezone.utc
    )
    assert "SECRET" not in repr(credentials)
    assert "TOKEN" not in repr(credentials)


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"credentials": {"AccessKeyId": "A", "SecretAccessKey": "S"}},
        {
            "AccessKeyId": "",
            "SecretAccessKey": "S",
            "SessionToken": "T",
            "Expiration": "2030-01-01T00:00:00Z",
            "bucket": "b",
            "region": "r",
        },
        {
            "AccessKeyId": "A",
            "SecretAccessKey": "S",
            "SessionToken": "T",
            "Expiration": "tomorrow",
            "bucket": "b",
            "region": "r",
        },
    ],
)
def test_invalid_credentials(data):
    with pytest.raises(exceptions.AuthenticationError):
        types.TemporaryCredentials.from_json(data)


def test_naive_expiration_rejected():
    with pytest.raises(ValueError):
        types.TemporaryCredentials(
            access_key_id="A",
            secret_access_key="S",
            session_token="T",
            expiration=datetime.datetime(2030, 1, 1),
            bucket="b",
            region="r",
        )


def test_as_signed_request():
    request = types.SignedRequest(url="https://example.com/a")
    assert types.as_signed_request(request) is request
    assert types.as_signed_request("https://example.com/a") == request
    assert types.as_signed_request(
        {"url": "https://example.com/a", "method": "post"}
    ) == types.SignedRequest(url="https://example.com/a", method="POST")

    with pytest.raises(TypeError):
        types.as_signed_request(42)


def test_as_create_result():
    result = types.CreateResult(upload_id="u", key="k")
    assert types.as_create_result(result) is result
    assert types.as_create_result({"UploadId": "u", "Key": "k"}) == result

    with pytest.raises(TypeError):
        types.as_create_result("u")
