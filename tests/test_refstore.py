import base64

import pytest

from scannode.refstore import (
    LAST_BATCH_FILE_NAME,
    BatchRefStore,
    FileStringStore,
    InvalidRefError,
    parse_cid,
)

CID_V0 = "QmReurJ6XsKQNkWxw7DaSTTnZcmZia2P9J7ptUQo8DT3Mk"
CID_V1 = "bafybeibwzulzj5ua46w5gjwulivrvjbp24blio4tz4zlyzgu4pp6o7qpjy"


def _b32_cid(data: bytes) -> str:
    return "b" + base64.b32encode(data).decode().lower().rstrip("=")


def test_parse_v0_is_sha256_multihash():
    data = parse_cid(CID_V0)
    assert data[:2] == b"\x12\x20"
    assert len(data) == 2 + 32


def test_parse_v1_dag_pb():
    assert parse_cid(CID_V1)[:4] == b"\x01\x70\x12\x20"


def test_parse_constructed_round_trips():
    raw = b"\x01\x55\x12\x20" + bytes(range(32))
    assert parse_cid(_b32_cid(raw)) == raw
    assert parse_cid("f" + raw.hex()) == raw


@pytest.mark.parametrize(
    "ref",
    [
        "",
        "Q",
        "hello",
        CID_V0 + "\n",
        _b32_cid(b"\x02\x70\x12\x20" + bytes(32)),
        _b32_cid(b"\x01\x70\x12\x20" + bytes(31)),
    ],
)
def test_parse_rejects_invalid(ref):
    with pytest.raises(InvalidRefError):
        parse_cid(ref)


@pytest.mark.parametrize("ref", [CID_V0, CID_V1])
def test_batch_ref_round_trip(tmp_path, ref):
    store = BatchRefStore(tmp_path)
    store.put(ref)
    assert store.get_last() == ref
    assert (tmp_path / LAST_BATCH_FILE_NAME).read_text() == ref


def test_batch_ref_missing_file_is_empty(tmp_path):
    assert BatchRefStore(tmp_path / "nowhere").get_last() == ""


def test_batch_ref_put_invalid_writes_nothing(tmp_path):
    store = BatchRefStore(tmp_path)
    with pytest.raises(InvalidRefError):
        store.put("not-a-cid")
    assert not (tmp_path / LAST_BATCH_FILE_NAME).exists()


def test_batch_ref_invalid_file_content_raises(tmp_path):
    (tmp_path / LAST_BATCH_FILE_NAME).write_text(CID_V1 + "\n")
    with pytest.raises(InvalidRefError):
        BatchRefStore(tmp_path).get_last()


def test_string_store_round_trip_strips(tmp_path):
    store = FileStringStore(tmp_path / "value")
    store.put("  hello\n")
    assert store.get() == "hello"
    assert (tmp_path / "value").read_text() == "  hello\n"


def test_string_store_missing_file_is_empty(tmp_path):
    assert FileStringStore(tmp_path / "missing").get() == ""