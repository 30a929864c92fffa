"""Services and stores for running a scan node: lifecycle, content storage, registry, deduplication and updates."""

__version__ = "0.1.0"

__all__ = [
    "content",
    "dedup",
    "lifecycle",
    "refstore",
    "registry",
    "storage",
    "storage_tasks",
    "updater",
]