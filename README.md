# scannode

Building blocks for the long-running services of a scan node, written in
plain Python with no third-party runtime dependencies. The network clients
the services talk to (an IPFS node, a router, a redis server, the on-chain
registry, a manifest store) are passed in by the caller as objects with the
methods described below.

## Modules

### `scannode.lifecycle`

- `Service` – an abstract base class with `start()`, `stop()` and `name()`.
- `init_main_context()` – creates a `MainContext` carrying a unique
  `exec_id` and, when called from the main thread, routes SIGHUP, SIGINT,
  SIGTERM and SIGQUIT to it. The first signal cancels the context.
- `MainContext.cancel()`, `MainContext.wait(timeout)` and
  `MainContext.interrupt(signum)`.
- `start_services(ctx, services)` – starts services one at a time (each in a
  thread, with a ten-minute start timeout), waits until the context is done,
  then stops every service. It raises `concurrent.futures.CancelledError` if
  the context ends while services are still starting, and `ExitTriggered`
  if `trigger_exit` was called.
- `trigger_exit(delay)` – waits `delay` seconds, then interrupts the current
  main context and marks the exit as triggered.
- `interrupt_main_context()` – simulates SIGINT on the current context.
- `is_graceful_shutdown()` – true when the shutdown came from SIGTERM.
- `container_main(name, get_services, log_level="info")` – sets up JSON
  logging, builds the services with `get_services(ctx)` and runs them; it
  exits the process with code `EXIT_CODE_TRIGGERED` (77) after an internal
  exit trigger.

### `scannode.refstore`

- `parse_cid(ref)` – validates a content identifier (CIDv0 or multibase
  CIDv1) and returns its binary form, raising `InvalidRefError` otherwise.
- `BatchRefStore(directory)` – keeps the last batch reference in
  `<directory>/.last-batch`. `put` rejects invalid references; `get_last`
  returns `""` when the file cannot be read and raises `InvalidRefError`
  when it holds an invalid reference.
- `FileStringStore(path)` – `put` writes a string, `get` returns it stripped
  (or `""` when it cannot be read).

### `scannode.content`

Path layout of stored content under `/forta`: `repo_dir(user)`,
`content_dir(user, kind)`, `bucket_dir(user, kind, bucket)`,
`bloom_path(user)`, and `new_content_path(user, kind, now=None)`, which
returns `(content_path, bucket_dir)` with the content placed in a
30-minute bucket. `now` may be a `datetime` or Unix time in nanoseconds.
Constants include `BLOOM_LIMIT`, `BUCKET_INTERVAL`, `MAX_BUCKETS` (96) and
`KIND_BATCH_RECEIPT`.

### `scannode.dedup`

`DeduplicationStore(settings, connect)` answers `is_first(key)` with a
redis-style `set(key, "1", ex=ttl, nx=True)`, retrying up to three times and
reconnecting after each error. `connect(options, cluster=...)` is called
with `DeduplicationSettings.redis` or `redis_cluster`, whichever is set.
`new_deduplication_store(settings, connect)` returns `None` when settings
are missing or disabled.

### `scannode.storage`

`Storage(ipfs, router, clock=time.time_ns)` keeps content in the IPFS
mutable file system:

- `put(user, kind, data)` returns a `ContentInfo` with the content id and path.
- `get(content_id="", content_path="", download=False)` returns bytes.
- `list(user, kind, offset=0, limit=0, sort=SortDirection.ASC)` returns up
  to 50 `ContentInfo` items, newest buckets first.
- `provider()` returns the IPFS peer id.
- `users()`, `content_buckets(...)` and `bucket_entries(...)` list users,
  buckets and bucket entries; bucket listings can be cached for five minutes.

Failures are raised as `StorageError` with a `StatusCode`
(`INVALID_ARGUMENT`, `NOT_FOUND`, `INTERNAL`). `IPFSClient` and
`IPFSRouter` are typing protocols describing the methods the storage calls;
listings are `MfsEntry` values.

### `scannode.storage_tasks`

- `collect_garbage(storage)` unpins and removes buckets older than the
  supported history, then runs the repository garbage collection.
- `prepare_and_send_bloom(storage, user)` builds a `BloomFilter` of the
  user's batch receipt hashes, stores it at `bloom_path(user)` and sends it
  to the router when it changed; it returns whether the router was updated.
- `provide_content(storage)` does that for every user, logging failures.
- `MaintenanceLoop(storage, interval=60.0)` runs providing on every tick and
  garbage collection once per bucket interval, in a background thread
  (`start`, `stop`) or one tick at a time with `run_once(now)`.

### `scannode.registry`

- `calculate_shard_id(target, idx)` – the shard of the scanner at `idx` when
  each shard has `target` scanners.
- `load_bot(manifest_client, agent_id, ref, validate_image=None)` – fetches
  a bot manifest (up to ten attempts) and returns an `AgentConfig`; raises
  `InvalidBotError` for a bad reference or image.
- `RegistryStore(registry_client, manifest_client, chain_id,
  validate_image=None)` – `get_agents_if_changed(scanner)` returns
  `(bots, True)` when the scanner's assignment changed (or an hour passed)
  and `(None, False)` otherwise, attaching a `ShardConfig` to each bot;
  `find_agent_globally` and `find_scanner_shard_id_for_bot` are also offered.
- `PrivateRegistryStore(registry_client, manifest_client, bot_images=(),
  bot_ids=(), validate_image=None)` – serves locally listed bots by image
  (ids `"1"`, `"2"`, …) or by registry id.

```python
from scannode.registry import calculate_shard_id

assert calculate_shard_id(3, 3) == 1   # 2 shards, 3 per shard
assert calculate_shard_id(1, 5) == 5   # 6 shards, 1 per shard
assert calculate_shard_id(6, 4) == 0   # a single shard
```

### `scannode.updater`

`UpdaterService(registry_client, release_client, port="8080",
development_mode=False, track_prereleases=False, update_delay_seconds=0,
update_check_interval_seconds=0, local_release_path="local-release.json")`
tracks the latest release reference from the registry (or, in development
mode, the `release.commit` of a local JSON file). `start()` loads the first
release, serves it on HTTP GET (404 until one is known) and polls every
check interval; `update_latest_release_with_delay(delay)` waits before
switching and gives up if a newer release appears meanwhile.
`latest_release_info()` and `health()` report the current state.

## Example

```python
import tempfile

from scannode.lifecycle import ExitTriggered, Service, init_main_context, start_services
from scannode.refstore import BatchRefStore, InvalidRefError

store = BatchRefStore(tempfile.mkdtemp())
try:
    store.put("not-a-cid")
except InvalidRefError:
    pass
print(store.get_last())  # "" when nothing has been stored yet


class Heartbeat(Service):
    def start(self):
        ...

    def stop(self):
        ...

    def name(self):
        return "heartbeat"


ctx = init_main_context()
try:
    start_services(ctx, [Heartbeat()])  # returns after a signal ends the context
except ExitTriggered:
    ...
```

## What it does not do

- There is no command-line program; services are started from Python code.
- `Storage` is a plain object: it does not listen on a network port.
- No IPFS, router, redis, registry or manifest clients are included; the
  caller supplies them.
- Nothing here starts or supervises containers.

## Tests

The test suite uses pytest and is installed with the `test` extra.