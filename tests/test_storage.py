import posixpath

import pytest

from scannode.content import (
    DEFAULT_BASE_PATH,
    MAX_BUCKETS,
    bucket_dir,
    content_dir,
    new_content_path,
)
from scannode.storage import (
    DEFAULT_LIST_LIMIT,
    MfsEntry,
    SortDirection,
    Storage,
    StatusCode,
    StorageError,
    UserInfo,
)

VALID_CID = "QmReurJ6XsKQNkWxw7DaSTTnZcmZia2P9J7ptUQo8DT3Mk"


class FakeIpfs:
    def __init__(self):
        self.dirs = {"/"}
        self.files = {}
        self.blobs = {}
        self.ls_calls = []
        self.stat_calls = []
        self.peer_id = "peer-1"
        self.fail_id = False
        self._counter = 0

    def files_mkdir(self, path, parents=False):
        while path not in ("", "/"):
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def add_to_files(self, data, path):
        self.files_mkdir(posixpath.dirname(path), parents=True)
        self.files[path] = data
        self._counter += 1
        cid = f"cid-{self._counter}"
        self.blobs[cid] = data
        return cid

    def add_file(self, path, data=b""):
        self.files_mkdir(posixpath.dirname(path), parents=True)
        self.files[path] = data

    def files_ls(self, path, stat=False):
        self.ls_calls.append(path)
        if path not in self.dirs:
            raise FileNotFoundError(path)
        names = sorted(
            posixpath.basename(p)
            for p in list(self.dirs) + list(self.files)
            if p != path and posixpath.dirname(p) == path
        )
        return [MfsEntry(name=n, hash=f"h-{n}") for n in names]

    def files_stat(self, path):
        self.stat_calls.append(path)
        if path in self.files or path in self.dirs:
            return {"path": path}
        if path.startswith("/ipfs/") and path[len("/ipfs/"):] in self.blobs:
            return {"path": path}
        raise FileNotFoundError(path)

    def files_read(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def cat(self, path):
        cid = path[len("/ipfs/"):]
        if cid not in self.blobs:
            raise FileNotFoundError(path)
        return self.blobs[cid]

    def id(self):
        if self.fail_id:
            raise ConnectionError("down")
        return self.peer_id


class FakeRouter:
    def provide(self, scanner, peer_id, bloom_filter):
        pass


@pytest.fixture
def now():
    return [1_700_000_000_000_000_000]


@pytest.fixture
def ipfs():
    return FakeIpfs()


@pytest.fixture
def storage(ipfs, now):
    return Storage(ipfs, FakeRouter(), clock=lambda: now[0])


def test_name(storage):
    assert storage.name() == "storage"


def test_start_creates_base_dir(storage, ipfs):
    storage.start()
    assert DEFAULT_BASE_PATH in ipfs.dirs
    assert storage.users() == []


def test_put_stores_under_new_content_path(storage, ipfs, now):
    info = storage.put("alice", "batchReceipt", b"payload")
    expected_path, expected_bucket = new_content_path("alice", "batchReceipt", now[0])
    assert info.content_path == expected_path
    assert expected_bucket in ipfs.dirs
    assert ipfs.files[expected_path] == b"payload"
    assert ipfs.blobs[info.content_id] == b"payload"


@pytest.mark.parametrize("user,kind", [("", "kind"), ("alice", "")])
def test_put_rejects_missing_fields(storage, user, kind):
    with pytest.raises(StorageError) as err:
        storage.put(user, kind, b"x")
    assert err.value.code is StatusCode.INVALID_ARGUMENT


def test_get_by_path_round_trip(storage):
    info = storage.put("alice", "batchReceipt", b"hello")
    assert storage.get(content_path=info.content_path) == b"hello"


def test_get_by_content_id(storage, ipfs):
    ipfs.blobs[VALID_CID] = b"blob"
    assert storage.get(content_id=VALID_CID) == b"blob"


def test_get_download_skips_stat(storage, ipfs):
    ipfs.blobs[VALID_CID] = b"blob"
    assert storage.get(content_id=VALID_CID, download=True) == b"blob"
    assert ipfs.stat_calls == []


def test_get_requires_a_reference(storage):
    with pytest.raises(StorageError) as err:
        storage.get()
    assert err.value.code is StatusCode.INVALID_ARGUMENT


def test_get_download_requires_content_id(storage):
    with pytest.raises(StorageError) as err:
        storage.get(content_path="/forta/a/b/c", download=True)
    assert err.value.code is StatusCode.INVALID_ARGUMENT


def test_get_rejects_invalid_cid(storage):
    with pytest.raises(StorageError) as err:
        storage.get(content_id="not-a-cid")
    assert err.value.code is StatusCode.INVALID_ARGUMENT


def test_get_missing_path_is_not_found(storage):
    with pytest.raises(StorageError) as err:
        storage.get(content_path="/forta/nobody/kind/1/2")
    assert err.value.code is StatusCode.NOT_FOUND


def test_get_download_missing_content_is_internal(storage):
    with pytest.raises(StorageError) as err:
        storage.get(content_id=VALID_CID, download=True)
    assert err.value.code is StatusCode.INTERNAL


def _fill_buckets(ipfs, user, kind, layout):
    for bucket, names in layout.items():
        for name in names:
            ipfs.add_file(posixpath.join(bucket_dir(user, kind, bucket), name))


def test_list_newest_bucket_first(storage, ipfs):
    _fill_buckets(ipfs, "alice", "k", {"100": ["1", "2"], "200": ["3", "4"]})
    result = storage.list("alice", "k")
    names = [posixpath.basename(info.content_path) for info in result]
    assert names == ["4", "3", "2", "1"]
    assert result[0].content_id == "h-4"
    assert result[0].content_path == posixpath.join(content_dir("alice", "k"), "4")


def test_list_desc_sorts_names_descending(storage, ipfs):
    _fill_buckets(ipfs, "alice", "k", {"100": ["1", "2"], "200": ["3", "4"]})
    result = storage.list("alice", "k", sort=SortDirection.DESC)
    names = [posixpath.basename(info.content_path) for info in result]
    assert names == sorted(names, reverse=True)
    assert len(names) == 4


def test_list_respects_small_limit(storage, ipfs):
    _fill_buckets(ipfs, "alice", "k", {"100": ["1", "2"], "200": ["3", "4"]})
    result = storage.list("alice", "k", limit=3)
    assert len(result) == 3


@pytest.mark.parametrize("limit", [0, -5, DEFAULT_LIST_LIMIT + 10])
def test_list_caps_limit(storage, ipfs, limit):
    names = [f"{i:03d}" for i in range(DEFAULT_LIST_LIMIT + 10)]
    _fill_buckets(ipfs, "alice", "k", {"100": names})
    assert len(storage.list("alice", "k", limit=limit)) == DEFAULT_LIST_LIMIT


def test_list_missing_kind_is_internal(storage):
    with pytest.raises(StorageError) as err:
        storage.list("nobody", "k")
    assert err.value.code is StatusCode.INTERNAL


def test_content_buckets_splits_old(storage, ipfs):
    buckets = {f"{i:04d}": ["x"] for i in range(MAX_BUCKETS + 2)}
    _fill_buckets(ipfs, "alice", "k", buckets)
    newest, old = storage.content_buckets("alice", "k", True)
    assert len(newest) == MAX_BUCKETS
    assert len(old) == 2
    assert [e.name for e in old] == sorted(buckets)[:2]
    assert max(e.name for e in old) < min(e.name for e in newest)


def test_content_buckets_no_old_when_under_limit(storage, ipfs):
    _fill_buckets(ipfs, "alice", "k", {"1": ["a"], "2": ["b"]})
    newest, old = storage.content_buckets("alice", "k", False)
    assert [e.name for e in newest] == ["2", "1"]
    assert old == []


def test_bucket_entries_cache(storage, ipfs, now):
    _fill_buckets(ipfs, "alice", "k", {"100": ["1", "2"]})
    directory = bucket_dir("alice", "k", "100")
    first = storage.bucket_entries("alice", "k", "100", True, True)
    second = storage.bucket_entries("alice", "k", "100", True, True)
    assert first == second
    assert ipfs.ls_calls.count(directory) == 1

    now[0] += 6 * 60 * 1_000_000_000
    storage.bucket_entries("alice", "k", "100", True, True)
    assert ipfs.ls_calls.count(directory) == 2


def test_bucket_entries_without_cache_always_lists(storage, ipfs):
    _fill_buckets(ipfs, "alice", "k", {"100": ["2", "1"]})
    directory = bucket_dir("alice", "k", "100")
    entries = storage.bucket_entries("alice", "k", "100", True, False)
    storage.bucket_entries("alice", "k", "100", True, False)
    assert [e.name for e in entries] == ["1", "2"]
    assert ipfs.ls_calls.count(directory) == 2


def test_users_skips_bloom(storage, ipfs):
    _fill_buckets(ipfs, "alice", "batchReceipt", {"100": ["1"]})
    ipfs.add_file("/forta/alice/bloom", b"bits")
    users = storage.users()
    assert users == [UserInfo(user="alice", content_kinds=["batchReceipt"])]


def test_users_missing_base_is_internal(storage):
    with pytest.raises(StorageError) as err:
        storage.users()
    assert err.value.code is StatusCode.INTERNAL


def test_user_info_has_content():
    user = UserInfo(user="alice", content_kinds=["batchReceipt"])
    assert user.has_content("batchReceipt")
    assert not user.has_content("other")


def test_provider_returns_peer_id(storage, ipfs):
    assert storage.provider() == ipfs.peer_id


def test_provider_failure_is_internal(storage, ipfs):
    ipfs.fail_id = True
    with pytest.raises(StorageError) as err:
        storage.provider()
    assert err.value.code is StatusCode.INTERNAL