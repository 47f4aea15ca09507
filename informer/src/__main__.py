from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from informer.src.events import WatchEvent, WatchItem, resource_version
from informer.src.health import start_health_server
from informer.src.informer import build_informer_from_env, env_int
from informer.src.kube import KubeWatchTransport, build_api_client, load_kube_configuration
from informer.src.metrics import METRICS
from informer.src.runner import WatchRunner, load_resume_version

RUNTIME_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def _object_ref(obj: Any) -> str:
    """Return ``namespace/name`` (or just ``name``) for a watched object."""
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
    else:
        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None)
    name = name or "<unnamed>"
    return f"{namespace}/{name}" if namespace else name


def log_watch_item(item: WatchItem) -> None:
    """Default event handler: one log line per observed change."""
    if not isinstance(item, WatchEvent):
        # The informer already logged the stream error.
        return
    if item.code is not None:
        LOGGER.info("%s code=%s", item.type, item.code)
        return
    LOGGER.info(
        "%s %s resourceVersion=%s",
        item.type,
        _object_ref(item.object),
        resource_version(item.object),
    )


def main() -> None:
    """Informer entrypoint: configure logging, restore position, and watch forever."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    transport = KubeWatchTransport(
        api_client=build_api_client(),
        return_type=os.getenv("WATCH_RETURN_TYPE") or None,
    )

    shutdown_event = threading.Event()
    informer = build_informer_from_env(transport=transport, sleep=shutdown_event.wait)

    state_path = os.getenv("RESUME_STATE_FILE")
    state_file = Path(state_path) if state_path else None
    if state_file is not None:
        saved_version = load_resume_version(state_file)
        if saved_version is not None:
            informer.init_from(saved_version)

    runner = WatchRunner(informer=informer, handler=log_watch_item, state_file=state_file)
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=runner.ready, port=health_port)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run_informer() -> None:
        try:
            runner.run_forever(shutdown_event=shutdown_event)
        except Exception:
            LOGGER.exception("Informer thread crashed")
        finally:
            shutdown_event.set()

    # A watch blocks on the socket for up to WATCH_TIMEOUT_SECONDS, so the loop
    # runs off the main thread and shutdown does not wait for the server.
    informer_thread = threading.Thread(target=_run_informer, daemon=True)
    informer_thread.start()

    shutdown_event.wait()
    runner.request_stop()
    stop_timeout_seconds = env_int("SHUTDOWN_TIMEOUT_SECONDS", 5, minimum=0)
    informer_thread.join(timeout=stop_timeout_seconds)
    if informer_thread.is_alive():
        LOGGER.warning(
            "Watch stream still open after %ss; saving resourceVersion %s and exiting",
            stop_timeout_seconds,
            informer.version(),
        )
        runner.persist_version()

    health_server.shutdown()
    LOGGER.info("Informer stopped at resourceVersion %s", informer.version())


if __name__ == "__main__":
    main()
