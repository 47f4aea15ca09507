from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

HTTP_STATUS_GONE = 410


class EventType(StrEnum):
    """Watch event types, named as they appear on the wire."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"


OBJECT_EVENT_TYPES = frozenset({EventType.ADDED, EventType.MODIFIED, EventType.DELETED})


class WatchConnectionError(RuntimeError):
    """Raised when the transport cannot open a watch stream.

    ``status`` carries the HTTP status when the API server answered at all,
    so callers can tell an RBAC denial (401/403) from a network failure.
    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(reason if status is None else f"({status}) {reason}")
        self.reason = reason
        self.status = status


class WatchStreamError(Exception):
    """A single undecodable frame or a dropped connection inside an open stream.

    Instances are yielded through the event stream as data; they are not raised.
    """


@dataclass(frozen=True)
class WatchEvent:
    """One change notification from a watch stream.

    For ``ERROR`` events ``object`` is the server status (a mapping or a
    ``V1Status``-like object) rather than a watched resource.
    """

    type: EventType
    object: Any
    raw_object: Mapping[str, Any] | None = None

    @property
    def code(self) -> int | None:
        if self.type is not EventType.ERROR:
            return None
        if isinstance(self.object, Mapping):
            code = self.object.get("code")
        else:
            code = getattr(self.object, "code", None)
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        return code

    @property
    def is_gone(self) -> bool:
        return self.code == HTTP_STATUS_GONE


WatchItem = WatchEvent | WatchStreamError


def resource_version(obj: Any) -> str | None:
    """Return the ``resourceVersion`` of a Kubernetes object, if it has one.

    Accepts generated client models (``obj.metadata.resource_version``) as well
    as decoded JSON mappings (``obj["metadata"]["resourceVersion"]``).
    """
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        version = metadata.get("resourceVersion") if isinstance(metadata, Mapping) else None
    else:
        version = getattr(getattr(obj, "metadata", None), "resource_version", None)

    if not isinstance(version, str) or not version:
        return None
    return version
