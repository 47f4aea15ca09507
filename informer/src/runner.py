from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from informer.src.events import WatchConnectionError, WatchItem
from informer.src.informer import Informer

LOGGER = logging.getLogger(__name__)

_FATAL_STATUSES = {401, 403}


def load_resume_version(path: Path) -> str | None:
    """Return the resourceVersion saved at *path*, or None if there is none."""
    try:
        value = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return value or None


def save_resume_version(path: Path, version: str) -> None:
    """Atomically write *version* to *path* so a crash never leaves a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(version + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class WatchRunner:
    """Drives an :class:`Informer` forever and hands every item to *handler*.

    ``ready`` is set once the first watch stream opens.  When ``state_file``
    is given, the informer's resourceVersion is saved there after every
    drained stream and on shutdown, so a restarted process can resume with
    :func:`load_resume_version` and :meth:`Informer.init_from`.
    """

    def __init__(
        self,
        informer: Informer,
        handler: Callable[[WatchItem], None],
        state_file: Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.informer = informer
        self.handler = handler
        self.state_file = state_file
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def request_stop(self) -> None:
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def persist_version(self) -> None:
        """Save the current resourceVersion to ``state_file``, if configured."""
        if self.state_file is None:
            return
        try:
            save_resume_version(self.state_file, self.informer.version())
        except OSError:
            self.logger.exception("Failed to persist resourceVersion to %s", self.state_file)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Poll, drain, repeat until *shutdown_event* is set.

        Open failures are left to the informer's backoff on the next poll.
        ``401`` / ``403`` responses are treated as configuration errors
        (RBAC/auth) and end the loop rather than retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        while not self._should_stop(stop):
            try:
                stream = self.informer.poll()
            except WatchConnectionError as exc:
                if exc.status in _FATAL_STATUSES:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    break
                continue
            except Exception:
                self.logger.exception("Unexpected error opening watch")
                stop.wait(timeout=self.informer.backoff_seconds)
                continue

            self.ready.set()
            drain_failed = False
            try:
                for item in stream:
                    self.handler(item)
                    if self._should_stop(stop):
                        break
            except Exception:
                self.logger.exception("Unexpected error while draining watch stream")
                drain_failed = True
            finally:
                stream.close()
                self.persist_version()

            # The informer sets no flag for this, so back off here before rewatching.
            if drain_failed:
                stop.wait(timeout=self.informer.backoff_seconds)

        self.persist_version()
        self.ready.clear()
