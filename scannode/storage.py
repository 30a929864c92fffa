"""Node content storage on top of an IPFS node's mutable file system."""

from __future__ import annotations

import enum
import logging
import posixpath
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from .content import (
    DEFAULT_BASE_PATH,
    MAX_BUCKETS,
    bucket_dir,
    content_dir,
    new_content_path,
    repo_dir,
)
from .refstore import InvalidRefError, parse_cid

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50

_LS_CACHE_TTL_NS = 5 * 60 * 1_000_000_000


@dataclass(frozen=True)
class MfsEntry:
    """One entry of an MFS directory listing."""

    name: str
    hash: str = ""
    size: int = 0
    type: int = 0


class IPFSClient(Protocol):
    """The IPFS node operations the storage needs."""

    def add_to_files(self, data: bytes, path: str) -> str: ...

    def cat(self, path: str) -> bytes: ...

    def unpin(self, path: str) -> None: ...

    def files_read(self, path: str) -> bytes: ...

    def files_write(self, path: str, data: bytes, create: bool = False) -> None: ...

    def files_rm(self, path: str, force: bool = False) -> None: ...

    def files_cp(self, src: str, dest: str) -> None: ...

    def files_stat(self, path: str) -> Any: ...

    def files_mkdir(self, path: str, parents: bool = False) -> None: ...

    def files_ls(self, path: str, stat: bool = False) -> Sequence[MfsEntry]: ...

    def files_mv(self, src: str, dest: str) -> None: ...

    def repo_gc(self) -> None: ...

    def id(self) -> str: ...


class IPFSRouter(Protocol):
    """The router that learns which content a peer provides."""

    def provide(self, scanner: str, peer_id: str, bloom_filter: str) -> None: ...


class StatusCode(enum.Enum):
    """Error categories reported by the storage."""

    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


class StorageError(Exception):
    """A storage request failed with a status code."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class SortDirection(enum.Enum):
    """Ordering of listed content."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class ContentInfo:
    """Identifier and MFS path of a stored piece of content."""

    content_id: str
    content_path: str


@dataclass
class UserInfo:
    """A storage user and the kinds of content it has."""

    user: str
    content_kinds: list[str] = field(default_factory=list)

    def has_content(self, kind: str) -> bool:
        """Tell whether the user has content of the kind."""
        return kind in self.content_kinds


def _sorted_entries(entries: Sequence[MfsEntry], asc: bool) -> list[MfsEntry]:
    return sorted(entries, key=lambda entry: entry.name, reverse=not asc)


class Storage:
    """Persists node content in IPFS MFS, bucketed by time."""

    def __init__(
        self,
        ipfs: IPFSClient,
        router: IPFSRouter,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self.ipfs = ipfs
        self.router = router
        self.clock = clock
        self._ls_cache: dict[str, tuple[list[MfsEntry], int]] = {}
        self._cache_lock = threading.Lock()

    def name(self) -> str:
        """Return the service name."""
        return "storage"

    def start(self) -> None:
        """Prepare the base directory; failures are ignored."""
        try:
            self.ipfs.files_mkdir(DEFAULT_BASE_PATH, parents=True)
        except Exception as exc:
            logger.debug("could not create the base dir: %s", exc)

    def stop(self) -> None:
        """Stop the service."""
        logger.info("storage stopped")

    def put(self, user: str, kind: str, data: bytes) -> ContentInfo:
        """Store bytes under a new content path and return where they went."""
        if not user:
            raise StorageError(StatusCode.INVALID_ARGUMENT, "invalid user")
        if not kind:
            raise StorageError(StatusCode.INVALID_ARGUMENT, "kind not provided")

        content_path, bucket = new_content_path(user, kind, self.clock())
        try:
            self.ipfs.files_mkdir(bucket, parents=True)
        except Exception as exc:
            logger.debug("could not create bucket dir %s: %s", bucket, exc)
        content_id = self.ipfs.add_to_files(bytes(data), content_path)
        return ContentInfo(content_id=content_id, content_path=content_path)

    def get(
        self, content_id: str = "", content_path: str = "", download: bool = False
    ) -> bytes:
        """Return content bytes by content id or by MFS path."""
        if not content_id and not content_path:
            raise StorageError(
                StatusCode.INVALID_ARGUMENT,
                "please provide one of contentId or contentPath",
            )
        if download and not content_id:
            raise StorageError(
                StatusCode.INVALID_ARGUMENT, "need the contentId for download"
            )

        if content_id:
            try:
                parse_cid(content_id)
            except InvalidRefError:
                raise StorageError(
                    StatusCode.INVALID_ARGUMENT, f"invalid contentId: {content_id}"
                ) from None
            content_ref = posixpath.join("/ipfs", content_id)
        else:
            content_ref = content_path

        # Without download, check existence first so content resolution is skipped.
        if not download:
            try:
                self.ipfs.files_stat(content_ref)
            except Exception:
                raise StorageError(
                    StatusCode.NOT_FOUND, f"content not found: {content_ref}"
                ) from None

        try:
            if content_id:
                return bytes(self.ipfs.cat(content_ref))
            return bytes(self.ipfs.files_read(content_ref))
        except Exception as exc:
            raise StorageError(
                StatusCode.INTERNAL, f"failed to get file bytes: {exc}"
            ) from exc

    def list(
        self,
        user: str,
        kind: str,
        offset: int = 0,
        limit: int = 0,
        sort: SortDirection = SortDirection.ASC,
    ) -> list[ContentInfo]:
        """List stored content, newest buckets first."""
        if offset < 0:
            offset = 0
        if limit <= 0 or limit > DEFAULT_LIST_LIMIT:
            limit = DEFAULT_LIST_LIMIT

        directory = content_dir(user, kind)
        try:
            buckets, _ = self.content_buckets(user, kind, False)
        except StorageError as exc:
            raise StorageError(
                StatusCode.INTERNAL,
                f"failed to list the content directory '{directory}': {exc.message}",
            ) from exc

        skip_count = offset
        remaining = limit
        collected: list[MfsEntry] = []
        last_index = len(buckets) - 1
        for index, bucket in enumerate(buckets):
            if remaining == 0:
                break
            try:
                entries = self.bucket_entries(
                    user, kind, bucket.name, False, index < last_index
                )
            except StorageError as exc:
                raise StorageError(
                    StatusCode.INTERNAL,
                    f"failed to list the bucket directory '{bucket.name}' "
                    f"in '{directory}': {exc.message}",
                ) from exc

            added: list[MfsEntry] = []
            if skip_count >= len(entries):
                skip_count -= len(entries)
            else:
                added = entries[skip_count:]
                skip_count = 0

            if len(added) <= remaining:
                remaining -= len(added)
            else:
                added = added[:remaining]
                remaining = 0

            collected.extend(added)

        if len(collected) >= offset:
            collected = collected[offset:]
        collected = collected[:limit]

        if sort is SortDirection.DESC:
            collected = _sorted_entries(collected, asc=False)

        return [
            ContentInfo(
                content_id=entry.hash,
                content_path=posixpath.normpath(posixpath.join(directory, entry.name)),
            )
            for entry in collected
        ]

    def provider(self) -> str:
        """Return the peer id of the IPFS node."""
        try:
            return self.ipfs.id()
        except Exception as exc:
            raise StorageError(
                StatusCode.INTERNAL, f"failed to get the id: {exc}"
            ) from exc

    def users(self) -> list[UserInfo]:
        """Return every user under the base path with its content kinds."""
        try:
            listing = self.ipfs.files_ls(DEFAULT_BASE_PATH)
        except Exception as exc:
            raise StorageError(
                StatusCode.INTERNAL, f"failed to list the base storage path: {exc}"
            ) from exc

        users = []
        for stat in listing:
            user_name = stat.name.strip("/")
            try:
                kinds_listing = self.ipfs.files_ls(repo_dir(user_name))
            except Exception as exc:
                raise StorageError(
                    StatusCode.INTERNAL,
                    f"failed to get the content kinds for user '{user_name}': {exc}",
                ) from exc
            kinds = [
                kind
                for kind in (entry.name.strip("/") for entry in kinds_listing)
                if kind != "bloom"
            ]
            logger.debug("detected kinds for user %s: %s", user_name, ",".join(kinds))
            users.append(UserInfo(user=user_name, content_kinds=kinds))
        return users

    def content_buckets(
        self, user: str, kind: str, asc: bool
    ) -> tuple[list[MfsEntry], list[MfsEntry]]:
        """Return (newest buckets, old buckets) beyond the bucket limit."""
        directory = content_dir(user, kind)
        try:
            listing = self.ipfs.files_ls(directory, stat=True)
        except Exception as exc:
            raise StorageError(
                StatusCode.INTERNAL, f"error while listing '{directory}': {exc}"
            ) from exc
        ordered = _sorted_entries(listing, asc)
        old_count = len(ordered) - MAX_BUCKETS
        if old_count > 0:
            return ordered[old_count:], ordered[:old_count]
        return ordered, []

    def bucket_entries(
        self, user: str, kind: str, bucket: str, asc: bool, use_cache: bool
    ) -> list[MfsEntry]:
        """Return the entries of a bucket, optionally from the listing cache."""
        directory = bucket_dir(user, kind, bucket)
        now = self.clock()
        if use_cache:
            with self._cache_lock:
                cached = self._ls_cache.get(directory)
                if cached is not None and cached[1] > now:
                    self._ls_cache[directory] = (cached[0], now + _LS_CACHE_TTL_NS)
                    return list(cached[0])

        try:
            listing = self.ipfs.files_ls(directory, stat=True)
        except Exception as exc:
            raise StorageError(
                StatusCode.INTERNAL, f"error while listing '{directory}': {exc}"
            ) from exc
        ordered = _sorted_entries(listing, asc)

        if use_cache:
            with self._cache_lock:
                self._ls_cache[directory] = (ordered, now + _LS_CACHE_TTL_NS)
        return list(ordered)