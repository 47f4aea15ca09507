from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Generator, Iterable
from typing import Any, Protocol

from informer.src.events import (
    HTTP_STATUS_GONE,
    OBJECT_EVENT_TYPES,
    EventType,
    WatchConnectionError,
    WatchEvent,
    WatchItem,
    WatchStreamError,
    resource_version,
)
from informer.src.metrics import METRICS
from informer.src.resource import (
    DEFAULT_WATCH_TIMEOUT_SECONDS,
    MAX_WATCH_TIMEOUT_SECONDS,
    ListParams,
    Resource,
    WatchRequest,
    parse_resource,
)

INITIAL_RESOURCE_VERSION = "0"
DEFAULT_BACKOFF_SECONDS = 10.0


class WatchTransport(Protocol):
    """Opens a long-poll watch and returns its events in server order.

    Implementations raise :class:`WatchConnectionError` when the stream cannot
    be opened, and yield :class:`WatchStreamError` items for failures after it
    has been opened.
    """

    def open_watch(self, request: WatchRequest) -> Iterable[WatchItem]: ...


class Informer:
    """Resumable watch over one resource collection.

    Call :meth:`poll` in a loop forever, draining each returned stream until it
    ends, then calling :meth:`poll` again.  Only one stream may be drained at a
    time.  The informer handles recovery between calls:

    - a ``410 Gone`` error event (history compacted past our resourceVersion)
      makes the next call wait, then restart from ``"0"``
    - a failed open makes the next call wait, then retry with the same
      resourceVersion

    Everything else, including ``ERROR`` events, is passed through unchanged.

    Resetting to ``"0"`` makes the API server replay the current state, so
    consumers see ``ADDED`` events again for objects they already know.

    Key internal state:
        ``_version``
            Last resourceVersion observed on an ADDED/MODIFIED/DELETED event.
            Guarded by ``_version_lock`` and readable at any time via
            :meth:`version`.
        ``_needs_resync`` / ``_needs_retry``
            Recovery flags set by the previous stream, guarded by
            ``_flags_lock``.  That lock is held for the whole pre-flight
            check, including the backoff wait.
    """

    def __init__(
        self,
        transport: WatchTransport,
        resource: Resource,
        params: ListParams | None = None,
        *,
        version_of: Callable[[Any], str | None] = resource_version,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], Any] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

        self.transport = transport
        self.resource = resource
        self.params = params or ListParams()
        self.version_of = version_of
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

        self._version = INITIAL_RESOURCE_VERSION
        self._version_lock = threading.Lock()
        self._needs_resync = False
        self._needs_retry = False
        self._flags_lock = threading.Lock()

    def init_from(self, version: str) -> Informer:
        """Resume from a previously saved resourceVersion.

        Must be called before the first :meth:`poll`.
        """
        self.logger.info(
            "Recreating informer for %s at resourceVersion %s",
            self.resource.display_kind,
            version,
        )
        with self._version_lock:
            self._version = version
        return self

    def version(self) -> str:
        """Return the resourceVersion the next watch would resume from."""
        with self._version_lock:
            return self._version

    def reset(self) -> None:
        """Reset the resourceVersion to ``"0"``.

        The next watch starts from a fresh snapshot, which replays ``ADDED``
        events for every existing object.
        """
        with self._version_lock:
            previous = self._version
            self._version = INITIAL_RESOURCE_VERSION
        METRICS.resyncs_total.inc()
        self.logger.info(
            "Reset %s resourceVersion from %s to %s; expect duplicate ADDED events",
            self.resource.display_kind,
            previous,
            INITIAL_RESOURCE_VERSION,
        )

    def poll(self) -> Generator[WatchItem, None, None]:
        """Open a single watch stream and return its events.

        Raises :class:`WatchConnectionError` if the stream cannot be opened;
        the backoff for that failure happens on the *next* call.
        """
        self.logger.debug("Watching %s", self.resource.display_kind)
        self._recover_if_needed()

        request = self.resource.watch_request(self.params, self.version())
        METRICS.polls_total.inc()

        try:
            events = self.transport.open_watch(request)
        except WatchConnectionError as exc:
            METRICS.connection_errors_total.inc()
            self.logger.warning("Poll error for %s: %s", self.resource.display_kind, exc)
            with self._flags_lock:
                if exc.status == HTTP_STATUS_GONE:
                    self._needs_resync = True
                else:
                    self._needs_retry = True
            raise

        return self._observe(events)

    def _recover_if_needed(self) -> None:
        with self._flags_lock:
            if not (self._needs_resync or self._needs_retry):
                return
            self.logger.info(
                "Backing off %.1fs before rewatching %s (resync=%s, retry=%s)",
                self.backoff_seconds,
                self.resource.display_kind,
                self._needs_resync,
                self._needs_retry,
            )
            METRICS.backoffs_total.inc()
            self.sleep(self.backoff_seconds)
            if self._needs_resync:
                self.reset()
            self._needs_resync = False
            self._needs_retry = False

    def _observe(self, events: Iterable[WatchItem]) -> Generator[WatchItem, None, None]:
        try:
            for item in events:
                self._track(item)
                yield item
        finally:
            # Release the transport's response even when the consumer stops early.
            close = getattr(events, "close", None)
            if close is not None:
                close()

    def _track(self, item: WatchItem) -> None:
        if isinstance(item, WatchStreamError):
            METRICS.stream_errors_total.inc()
            self.logger.warning(
                "Unexpected watch error for %s: %s", self.resource.display_kind, item
            )
            return

        METRICS.events_total.labels(type=str(item.type)).inc()
        if item.type in OBJECT_EVENT_TYPES:
            new_version = self.version_of(item.object)
            if new_version is not None:
                with self._version_lock:
                    self._version = new_version
            return

        if item.type is EventType.ERROR:
            if item.is_gone:
                self.logger.warning(
                    "Stream desynced for %s: %s", self.resource.display_kind, _describe(item)
                )
                with self._flags_lock:
                    self._needs_resync = True
            else:
                self.logger.warning(
                    "Watch error event for %s: %s", self.resource.display_kind, _describe(item)
                )


def _describe(event: WatchEvent) -> str:
    status = event.object
    if isinstance(status, dict):
        return f"code={status.get('code')} reason={status.get('reason')} message={status.get('message')}"
    return repr(status)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_optional(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def build_informer_from_env(
    transport: WatchTransport,
    sleep: Callable[[float], Any] = time.sleep,
) -> Informer:
    """Construct an :class:`Informer` from environment variables.

    Environment variables (with defaults):
        ``WATCH_RESOURCE``: ``<apiVersion>/<plural>`` to watch (``v1/configmaps``).
        ``WATCH_NAMESPACE``: namespace to watch; unset watches cluster-wide.
        ``WATCH_KIND``: kind name used in log lines (the plural).
        ``LABEL_SELECTOR`` / ``FIELD_SELECTOR``: list filters (none).
        ``WATCH_TIMEOUT_SECONDS``: server-side watch timeout (``290``).
        ``INFORMER_BACKOFF_SECONDS``: recovery backoff (``10``).
        ``RESUME_VERSION``: resourceVersion to resume from (``0``).
    """
    resource = parse_resource(
        os.getenv("WATCH_RESOURCE", "v1/configmaps"),
        namespace=_env_optional("WATCH_NAMESPACE"),
        kind=_env_optional("WATCH_KIND") or "",
    )
    params = ListParams(
        label_selector=_env_optional("LABEL_SELECTOR"),
        field_selector=_env_optional("FIELD_SELECTOR"),
        timeout_seconds=env_int(
            "WATCH_TIMEOUT_SECONDS",
            DEFAULT_WATCH_TIMEOUT_SECONDS,
            minimum=1,
            maximum=MAX_WATCH_TIMEOUT_SECONDS - 1,
        ),
    )
    backoff_seconds = env_int("INFORMER_BACKOFF_SECONDS", int(DEFAULT_BACKOFF_SECONDS), minimum=0)

    informer = Informer(
        transport=transport,
        resource=resource,
        params=params,
        backoff_seconds=float(backoff_seconds),
        sleep=sleep,
    )

    resume_version = _env_optional("RESUME_VERSION")
    if resume_version is not None:
        informer.init_from(resume_version)
    return informer
