"""Periodic storage maintenance: garbage collection and content providing."""

from __future__ import annotations

import base64
import hashlib
import logging
import math
import posixpath
import threading
import time

from .content import (
    BLOOM_FALSE_POSITIVE_RATE,
    BLOOM_LIMIT,
    BUCKET_INTERVAL,
    KIND_BATCH_RECEIPT,
    bloom_path,
    content_dir,
    repo_dir,
)
from .storage import StatusCode, Storage, StorageError, UserInfo

logger = logging.getLogger(__name__)

PROVIDE_CONTENT_INTERVAL = 60.0

# Content kinds in order of priority when filling the bloom filter.
_PROVIDED_KINDS = (KIND_BATCH_RECEIPT,)


class BloomFilter:
    """A fixed-size bloom filter sized for a capacity and false positive rate."""

    def __init__(
        self,
        capacity: int = BLOOM_LIMIT,
        false_positive_rate: float = BLOOM_FALSE_POSITIVE_RATE,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0 < false_positive_rate < 1:
            raise ValueError("false positive rate must be between 0 and 1")
        self.capacity = capacity
        self.false_positive_rate = false_positive_rate
        self.num_bits = math.ceil(
            -capacity * math.log(false_positive_rate) / (math.log(2) ** 2)
        )
        self.num_hashes = math.ceil(math.log2(1 / false_positive_rate))
        self.count = 0
        self._bits = bytearray((self.num_bits + 7) // 8)

    def _positions(self, item: bytes | str):
        data = item.encode("utf-8") if isinstance(item, str) else bytes(item)
        digest = hashlib.sha256(data).digest()
        first = int.from_bytes(digest[:8], "big")
        second = int.from_bytes(digest[8:16], "big") | 1
        for i in range(self.num_hashes):
            yield (first + i * second) % self.num_bits

    def add(self, item: bytes | str) -> None:
        """Add an item to the filter."""
        for pos in self._positions(item):
            self._bits[pos >> 3] |= 1 << (pos & 7)
        self.count += 1

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, (bytes, bytearray, str)):
            return False
        return all(
            self._bits[pos >> 3] & (1 << (pos & 7)) for pos in self._positions(item)
        )

    def to_bytes(self) -> bytes:
        """Serialize the filter: bit count, hash count, item count, then bits."""
        header = (
            self.num_bits.to_bytes(8, "big")
            + self.num_hashes.to_bytes(4, "big")
            + self.count.to_bytes(8, "big")
        )
        return header + bytes(self._bits)


def _gc_contents(storage: Storage, user: str, kind: str) -> None:
    directory = content_dir(user, kind)
    _, old_entries = storage.content_buckets(user, kind, True)
    if not old_entries:
        return
    logger.info(
        "detected %d old entries in %s - will remove", len(old_entries), directory
    )
    for entry in old_entries:
        path = posixpath.join(directory, entry.name)
        try:
            storage.ipfs.unpin(posixpath.join("/ipfs", entry.hash))
        except Exception as exc:
            logger.error("failed to unpin %s (%s): %s", path, entry.hash, exc)
        else:
            logger.info("successfully unpinned content %s (%s)", path, entry.hash)
        try:
            storage.ipfs.files_rm(path, force=True)
        except Exception as exc:
            logger.error("failed to remove content %s: %s", path, exc)
        else:
            logger.info("successfully removed content %s", path)


def collect_garbage(storage: Storage) -> None:
    """Remove content buckets older than the supported history, then run repo GC."""
    for user in storage.users():
        for kind in user.content_kinds:
            _gc_contents(storage, user.user, kind)
    try:
        storage.ipfs.repo_gc()
    except Exception as exc:
        raise StorageError(StatusCode.INTERNAL, f"repo gc failed: {exc}") from exc


def provide_content(storage: Storage) -> None:
    """Send each user's bloom filter to the router; per-user failures are logged."""
    for user in storage.users():
        try:
            prepare_and_send_bloom(storage, user)
        except Exception as exc:
            logger.error("failed to provide for user %s: %s", user.user, exc)


def _collect_hashes(storage: Storage, user: UserInfo) -> list[str]:
    hashes: list[str] = []
    for kind in _PROVIDED_KINDS:
        if not user.has_content(kind):
            continue
        buckets, _ = storage.content_buckets(user.user, kind, True)
        last_index = len(buckets) - 1
        for index, bucket in enumerate(buckets):
            try:
                entries = storage.bucket_entries(
                    user.user, kind, bucket.name, True, index < last_index
                )
            except StorageError as exc:
                raise StorageError(
                    StatusCode.INTERNAL,
                    f"failed to list bucket entries: {exc.message}",
                ) from exc
            hashes.extend(entry.hash for entry in entries)
            if len(hashes) > BLOOM_LIMIT:
                del hashes[BLOOM_LIMIT:]
                break
        if len(hashes) > BLOOM_LIMIT:
            del hashes[BLOOM_LIMIT:]
            break
    return hashes


def prepare_and_send_bloom(storage: Storage, user: UserInfo) -> bool:
    """Build the user's bloom filter and provide it if it changed.

    Returns True if the router was updated, False if there was nothing to do.
    """
    hashes = _collect_hashes(storage, user)
    if not hashes:
        logger.info("no entries found for %s - skipping provide call", user.user)
        return False

    bloom = BloomFilter(BLOOM_LIMIT, BLOOM_FALSE_POSITIVE_RATE)
    logger.debug("adding %d entries to bloom filter", len(hashes))
    for content_hash in hashes:
        bloom.add(content_hash)
    encoded = base64.b64encode(bloom.to_bytes()).decode("ascii")

    path = bloom_path(user.user)
    try:
        previous = storage.ipfs.files_read(path)
    except Exception:
        previous = None
    if previous is not None and bytes(previous).decode("utf-8", "replace") == encoded:
        logger.info("bloom filter remains the same - skipping provide call")
        return False

    try:
        storage.ipfs.files_mkdir(repo_dir(user.user), parents=True)
    except Exception as exc:
        logger.debug("could not create repo dir: %s", exc)
    try:
        storage.ipfs.files_rm(path, force=True)
    except Exception as exc:
        logger.debug("could not remove previous bloom: %s", exc)
    try:
        storage.ipfs.files_write(path, encoded.encode("ascii"), create=True)
    except Exception as exc:
        raise StorageError(StatusCode.INTERNAL, f"failed to write bloom: {exc}") from exc

    try:
        peer_id = storage.ipfs.id()
    except Exception as exc:
        raise StorageError(StatusCode.INTERNAL, f"failed to get peer id: {exc}") from exc

    try:
        storage.router.provide(user.user, peer_id, encoded)
    except Exception as exc:
        raise StorageError(
            StatusCode.INTERNAL, f"failed to update router: {exc}"
        ) from exc
    return True


class MaintenanceLoop:
    """Provides content every interval and collects garbage every bucket interval."""

    def __init__(self, storage: Storage, interval: float = PROVIDE_CONTENT_INTERVAL) -> None:
        self.storage = storage
        self.interval = interval
        self._last_gc: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, now: float) -> bool:
        """Run one tick at ``now`` (seconds); return whether garbage was collected."""
        try:
            provide_content(self.storage)
        except Exception as exc:
            logger.error("error while providing content: %s", exc)
        else:
            logger.info("finished providing content refs")

        due = (
            self._last_gc is None
            or now - self._last_gc >= BUCKET_INTERVAL.total_seconds()
        )
        if not due:
            return False
        try:
            collect_garbage(self.storage)
        except Exception as exc:
            logger.error("error while collecting garbage: %s", exc)
        else:
            logger.info("finished collecting garbage")
        self._last_gc = now
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once(time.monotonic())
        logger.info("exiting content provider")

    def start(self) -> None:
        """Run the loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background loop and wait for it to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None