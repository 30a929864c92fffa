from datetime import datetime, timezone

from scannode.content import (
    BUCKET_INTERVAL,
    DEFAULT_BASE_PATH,
    KIND_BATCH_RECEIPT,
    bloom_path,
    bucket_dir,
    content_dir,
    new_content_path,
    repo_dir,
)

INTERVAL_NS = int(BUCKET_INTERVAL.total_seconds()) * 10**9


def test_repo_dir_under_base():
    assert repo_dir("alice") == DEFAULT_BASE_PATH + "/alice"


def test_nested_dirs_compose():
    assert content_dir("alice", KIND_BATCH_RECEIPT) == repo_dir("alice") + "/" + KIND_BATCH_RECEIPT
    assert bucket_dir("alice", "k", "123") == content_dir("alice", "k") + "/123"
    assert bloom_path("alice") == repo_dir("alice") + "/bloom"


def test_paths_are_cleaned():
    assert repo_dir("/alice/") == repo_dir("alice")
    assert content_dir("alice", "a/../k") == content_dir("alice", "k")
    assert repo_dir("") == DEFAULT_BASE_PATH


def test_new_content_path_layout():
    now = 1_700_000_123_456_789_012
    content_path, bucket = new_content_path("bob", "kind", now)
    assert content_path == bucket + "/" + str(now)
    assert bucket.startswith(content_dir("bob", "kind") + "/")
    bucket_ts = int(bucket.rsplit("/", 1)[1])
    assert bucket_ts % INTERVAL_NS == 0
    assert 0 <= now - bucket_ts < INTERVAL_NS


def test_same_bucket_within_interval():
    start = 1_700_000_000 * 10**9
    start -= start % INTERVAL_NS
    _, first = new_content_path("bob", "kind", start)
    _, second = new_content_path("bob", "kind", start + INTERVAL_NS - 1)
    _, third = new_content_path("bob", "kind", start + INTERVAL_NS)
    assert first == second
    assert third != first


def test_datetime_matches_nanoseconds():
    moment = datetime(2023, 2, 15, 11, 44, 18, 123456, tzinfo=timezone.utc)
    nanos = int(moment.timestamp()) * 10**9 + moment.microsecond * 1000
    assert new_content_path("u", "k", moment) == new_content_path("u", "k", nanos)


def test_default_now_uses_current_time():
    content_path, bucket = new_content_path("u", "k")
    ts = int(content_path.rsplit("/", 1)[1])
    assert ts >= 1_600_000_000 * 10**9
    assert content_path.startswith(bucket + "/")