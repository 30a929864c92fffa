"""Release updater: tracks the latest scan node release and serves it over HTTP."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_CHECK_INTERVAL_SECONDS = 60
DEFAULT_LOCAL_RELEASE_PATH = "local-release.json"


class ReleaseNotAvailable(Exception):
    """No release newer than the current one is available."""

    def __init__(self, ref: str = "") -> None:
        super().__init__("new release not available")
        self.ref = ref


class _RegistryClient(Protocol):
    def get_scanner_node_version(self) -> str: ...

    def get_scanner_node_prerelease_version(self) -> str: ...


class _ReleaseClient(Protocol):
    def get_release_manifest(self, ref: str) -> Mapping[str, Any]: ...


def _release_field(manifest: Mapping[str, Any], name: str) -> str:
    release = manifest.get("release") if isinstance(manifest, Mapping) else None
    if not isinstance(release, Mapping):
        return ""
    value = release.get(name)
    return "" if value is None else str(value)


def _now_text() -> str:
    return datetime.now(timezone.utc).isoformat()


class UpdaterService:
    """Polls the registry for the scan node release and serves the latest one."""

    def __init__(
        self,
        registry_client: _RegistryClient,
        release_client: _ReleaseClient,
        port: str | int = "8080",
        development_mode: bool = False,
        track_prereleases: bool = False,
        update_delay_seconds: float = 0,
        update_check_interval_seconds: float = 0,
        local_release_path: str | Path = DEFAULT_LOCAL_RELEASE_PATH,
    ) -> None:
        if not update_check_interval_seconds:
            update_check_interval_seconds = DEFAULT_UPDATE_CHECK_INTERVAL_SECONDS
        self._registry = registry_client
        self._release = release_client
        self.port = str(port)
        self.development_mode = development_mode
        self.track_prereleases = track_prereleases
        self.update_delay = float(update_delay_seconds)
        self.update_check_interval = float(update_check_interval_seconds)
        self.local_release_path = Path(local_release_path)

        self._lock = threading.RLock()
        self._latest_reference = ""
        self._latest_release: Optional[Mapping[str, Any]] = None

        self._stopped = threading.Event()
        self._server: Optional[ThreadingHTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._loop_thread: Optional[threading.Thread] = None

        self._last_checked = ""
        self._last_error = ""
        self._latest_version = ""
        self._latest_is_prerelease = ""

    @property
    def latest_reference(self) -> str:
        """Reference of the release currently served."""
        with self._lock:
            return self._latest_reference

    @property
    def address(self) -> Optional[tuple[str, int]]:
        """Address the HTTP server is bound to, once started."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def name(self) -> str:
        """Return the service name."""
        return "updater"

    def latest_release_info(self) -> Optional[dict[str, Any]]:
        """Return the latest release info, or None if none is known yet."""
        with self._lock:
            if self._latest_release is None:
                return None
            return {
                "fromBuild": False,
                "ipfs": self._latest_reference,
                "manifest": dict(self._latest_release),
            }

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        updater = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                info = updater.latest_release_info()
                if info is None:
                    self.send_response(HTTPStatus.NOT_FOUND)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    return
                logger.info("release response: %s", info["ipfs"])
                body = json.dumps(info).encode("utf-8")
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(format, *args)

        return _Handler

    def start(self) -> None:
        """Load the initial release, serve it over HTTP and keep polling."""
        try:
            self.update_latest_release()
        except Exception:
            logger.exception("error initializing release")
            raise

        self._stopped.clear()
        self._server = ThreadingHTTPServer(("", int(self.port)), self._make_handler())
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, daemon=True
        )
        self._server_thread.start()

        self._loop_thread = threading.Thread(target=self._loop, daemon=True)
        self._loop_thread.start()
        logger.info("updater initialization complete")

    def _loop(self) -> None:
        while not self._stopped.wait(self.update_check_interval):
            error: Optional[Exception] = None
            try:
                self.update_latest_release_with_delay(self.update_delay)
            except Exception as exc:
                error = exc
                logger.error("error getting release: %s", exc)
            self._last_error = "" if error is None else str(error)
            self._last_checked = _now_text()
        logger.info("updater loop is done")

    def _stop_server(self) -> None:
        server = self._server
        if server is None:
            return
        logger.info("stopping server")
        try:
            server.shutdown()
            server.server_close()
        except Exception as exc:
            logger.error("error stopping server (ignored): %s", exc)
        self._server = None
        if self._server_thread is not None:
            self._server_thread.join(timeout=30)
            self._server_thread = None

    def stop(self) -> None:
        """Stop polling and the HTTP server."""
        logger.info("stopping %s", self.name())
        self._stopped.set()
        self._stop_server()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=30)
            self._loop_thread = None

    def update_latest_release(self) -> None:
        """Check for a newer release and switch to it right away."""
        self.update_latest_release_with_delay(0)

    def update_latest_release_with_delay(self, delay: float) -> None:
        """Check for a newer release and switch to it after ``delay`` seconds.

        The switch is abandoned if an even newer release shows up meanwhile.
        """
        logger.info("updating latest release")
        latest_reference = self.latest_reference

        try:
            if self.development_mode:
                ref, manifest = self._read_local_release(latest_reference)
            else:
                ref, manifest = self._fetch_newer_release(latest_reference)
        except ReleaseNotAvailable as exc:
            logger.info("no change to release %s", exc.ref)
            return

        # Spread updates so that all scanners do not update at once.
        if delay > 0:
            logger.info("delaying update to release %s by %ss", ref, delay)
            if self._check_newer_release_and_wait(ref, delay):
                logger.info("detected newer release while delaying current update - aborting")
                return
            logger.info("successfully waited before version update")

        self._latest_version = _release_field(manifest, "version")
        self._latest_is_prerelease = str(self.track_prereleases).lower()

        with self._lock:
            self._latest_release = manifest
            self._latest_reference = ref
        logger.info("updating to release %s", ref)

    def _fetch_newer_release(self, previous_ref: str) -> tuple[str, Mapping[str, Any]]:
        ref = self._compare_scanner_node_version(previous_ref)
        try:
            manifest = self._release.get_release_manifest(ref)
        except Exception as exc:
            logger.error("error getting release manifest: %s", exc)
            raise RuntimeError(
                f"failed while downloading the release manifest: {exc}"
            ) from exc
        return ref, manifest

    def _compare_scanner_node_version(self, previous_ref: str) -> str:
        if self.development_mode:
            ref, _ = self._read_local_release(previous_ref)
            return ref
        try:
            if self.track_prereleases:
                ref = self._registry.get_scanner_node_prerelease_version()
            else:
                ref = self._registry.get_scanner_node_version()
        except Exception as exc:
            logger.error("error getting the latest release manifest ref: %s", exc)
            raise RuntimeError(
                f"failed to get the latest release manifest ref: {exc}"
            ) from exc
        if ref == previous_ref:
            raise ReleaseNotAvailable(ref)
        return ref

    def _current_ref(self, previous_ref: str) -> str:
        try:
            return self._compare_scanner_node_version(previous_ref)
        except ReleaseNotAvailable as exc:
            return exc.ref
        except Exception:
            return ""

    def _check_newer_release_and_wait(self, previous_ref: str, delay: float) -> bool:
        start = time.monotonic()
        deadline = start + delay
        next_tick = start + self.update_check_interval
        while True:
            now = time.monotonic()
            if now >= deadline:
                return False
            if self._stopped.wait(min(deadline, next_tick) - now):
                return True
            now = time.monotonic()
            if now >= deadline:
                return False
            if now >= next_tick:
                next_tick += self.update_check_interval
                if self._current_ref(previous_ref) != previous_ref:
                    return True

    def _read_local_release(self, previous_ref: str) -> tuple[str, Mapping[str, Any]]:
        try:
            manifest = json.loads(self.local_release_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.info("could not read the test release manifest: %s", exc)
            raise
        if not isinstance(manifest, Mapping):
            raise ValueError("the test release manifest is not an object")
        # The commit serves as the reference in development mode.
        current_ref = _release_field(manifest, "commit")
        if current_ref == previous_ref:
            raise ReleaseNotAvailable(current_ref)
        return current_ref, manifest

    def health(self) -> list[dict[str, str]]:
        """Return health reports of the updater."""
        return [
            {"name": "event.checked.time", "status": "info", "details": self._last_checked},
            {
                "name": "event.checked.error",
                "status": "failing" if self._last_error else "ok",
                "details": self._last_error,
            },
            {"name": "latest.version", "status": "info", "details": self._latest_version},
            {
                "name": "latest.is-prerelease",
                "status": "info",
                "details": self._latest_is_prerelease,
            },
        ]