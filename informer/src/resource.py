from __future__ import annotations

from dataclasses import dataclass

# The API server closes watches at 300s; asking for more than this is rejected.
MAX_WATCH_TIMEOUT_SECONDS = 295
DEFAULT_WATCH_TIMEOUT_SECONDS = 290


@dataclass(frozen=True)
class ListParams:
    """Filters and server-side timeout applied to every watch request."""

    label_selector: str | None = None
    field_selector: str | None = None
    timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not 1 <= self.timeout_seconds < MAX_WATCH_TIMEOUT_SECONDS:
            raise ValueError(
                f"timeout_seconds must be between 1 and {MAX_WATCH_TIMEOUT_SECONDS - 1}, "
                f"got: {self.timeout_seconds}"
            )


@dataclass(frozen=True)
class WatchRequest:
    """A fully resolved watch GET: URL path plus ordered query parameters."""

    path: str
    query_params: tuple[tuple[str, str], ...] = ()

    def param(self, name: str) -> str | None:
        for key, value in self.query_params:
            if key == name:
                return value
        return None

    @property
    def resource_version(self) -> str | None:
        return self.param("resourceVersion")


@dataclass(frozen=True)
class Resource:
    """Location of a resource collection on the API server.

    ``api_version`` is ``"v1"`` for the core group or ``"<group>/<version>"``
    otherwise, exactly as in an object's ``apiVersion`` field.
    """

    api_version: str
    plural: str
    namespace: str | None = None
    kind: str = ""

    @property
    def group(self) -> str:
        group, _, _ = self.api_version.rpartition("/")
        return group

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def display_kind(self) -> str:
        return self.kind or self.plural

    @property
    def path(self) -> str:
        prefix = f"/apis/{self.group}/{self.version}" if self.group else f"/api/{self.version}"
        if self.namespace:
            prefix = f"{prefix}/namespaces/{self.namespace}"
        return f"{prefix}/{self.plural}"

    def watch_request(self, params: ListParams, resource_version: str) -> WatchRequest:
        """Build the long-poll watch request resuming from *resource_version*."""
        query: list[tuple[str, str]] = [
            ("watch", "true"),
            ("resourceVersion", resource_version),
            ("timeoutSeconds", str(params.timeout_seconds)),
        ]
        if params.label_selector:
            query.append(("labelSelector", params.label_selector))
        if params.field_selector:
            query.append(("fieldSelector", params.field_selector))
        return WatchRequest(path=self.path, query_params=tuple(query))


def parse_resource(spec: str, namespace: str | None = None, kind: str = "") -> Resource:
    """Parse ``v1/configmaps`` or ``apps/v1/deployments`` into a :class:`Resource`."""
    parts = [part.strip() for part in spec.strip().strip("/").split("/")]
    if len(parts) not in (2, 3) or not all(parts):
        raise ValueError(
            f"resource must look like '<version>/<plural>' or '<group>/<version>/<plural>', "
            f"got: {spec!r}"
        )
    *api_parts, plural = parts
    return Resource(
        api_version="/".join(api_parts),
        plural=plural,
        namespace=namespace or None,
        kind=kind,
    )
