from __future__ import annotations

import json
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiClient, ApiException, Configuration, V1ConfigMap
from urllib3.exceptions import MaxRetryError, ProtocolError

from informer.src.events import (
    EventType,
    WatchConnectionError,
    WatchEvent,
    WatchStreamError,
    resource_version,
)
from informer.src.kube import KubeWatchTransport, build_api_client, load_kube_configuration
from informer.src.resource import ListParams, Resource


def _frame(event_type: str, obj: dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "object": obj})


def _config_map(name: str, resource_version: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "shipshape", "resourceVersion": resource_version},
        "data": {"MESSAGE": "hello"},
    }


def _request(version: str = "0") -> Any:
    resource = Resource(api_version="v1", plural="configmaps", namespace="shipshape")
    return resource.watch_request(ListParams(label_selector="app=helloworld"), version)


def _transport(return_type: str | None = None) -> tuple[KubeWatchTransport, MagicMock, MagicMock]:
    response = MagicMock()
    api_client = MagicMock()
    api_client.call_api.return_value = response
    return KubeWatchTransport(api_client, return_type=return_type), api_client, response


def _lines(*lines: str) -> Any:
    return patch("informer.src.kube.iter_resp_lines", return_value=iter(lines))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("informer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("informer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "informer.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("informer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_api_client_uses_active_configuration() -> None:
    with patch("informer.src.kube.client") as mock_client:
        mock_client.ApiClient.return_value = SimpleNamespace(name="api")
        api_client = build_api_client()

    assert api_client.name == "api"


# ---------------------------------------------------------------------------
# Opening the stream
# ---------------------------------------------------------------------------


def test_open_watch_sends_streaming_get() -> None:
    transport, api_client, _ = _transport()

    transport.open_watch(_request("512"))

    args = api_client.call_api.call_args
    assert args.args == ("/api/v1/namespaces/shipshape/configmaps", "GET")
    assert ("resourceVersion", "512") in args.kwargs["query_params"]
    assert ("labelSelector", "app=helloworld") in args.kwargs["query_params"]
    assert args.kwargs["_preload_content"] is False
    assert args.kwargs["auth_settings"] == ["BearerToken"]


def test_open_watch_maps_api_exception() -> None:
    transport, api_client, _ = _transport()
    api_client.call_api.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(WatchConnectionError) as excinfo:
        transport.open_watch(_request())

    assert excinfo.value.status == 403
    assert excinfo.value.reason == "Forbidden"
    assert isinstance(excinfo.value.__cause__, ApiException)


def test_open_watch_maps_network_errors() -> None:
    transport, api_client, _ = _transport()
    api_client.call_api.side_effect = MaxRetryError(pool=None, url="/api/v1/configmaps")

    with pytest.raises(WatchConnectionError) as excinfo:
        transport.open_watch(_request())

    assert excinfo.value.status is None


def test_open_watch_fails_eagerly_not_on_first_item() -> None:
    transport, api_client, _ = _transport()
    api_client.call_api.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(WatchConnectionError):
        transport.open_watch(_request())
    api_client.call_api.assert_called_once()


# ---------------------------------------------------------------------------
# Decoding frames
# ---------------------------------------------------------------------------


def test_stream_decodes_events_as_mappings_without_return_type() -> None:
    transport, _, response = _transport()
    added = _config_map("helloworld-config", "10")
    modified = _config_map("helloworld-config", "11")

    with _lines(_frame("ADDED", added), "", _frame("MODIFIED", modified)):
        events = list(transport.open_watch(_request()))

    assert events == [
        WatchEvent(type=EventType.ADDED, object=added, raw_object=added),
        WatchEvent(type=EventType.MODIFIED, object=modified, raw_object=modified),
    ]
    response.close.assert_called_once()
    response.release_conn.assert_called_once()


def test_stream_deserializes_into_return_type() -> None:
    transport, api_client, _ = _transport(return_type="V1ConfigMap")
    api_client.deserialize.return_value = SimpleNamespace(kind="model")
    added = _config_map("helloworld-config", "10")

    with _lines(_frame("ADDED", added)):
        (event,) = list(transport.open_watch(_request()))

    assert event.object.kind == "model"
    assert event.raw_object == added
    wrapped, return_type = api_client.deserialize.call_args.args
    assert json.loads(wrapped.data) == added
    assert return_type == "V1ConfigMap"


def test_error_frames_are_not_deserialized() -> None:
    transport, api_client, _ = _transport(return_type="V1ConfigMap")
    status = {"kind": "Status", "code": 410, "reason": "Expired", "message": "too old resource version"}

    with _lines(_frame("ERROR", status)):
        (event,) = list(transport.open_watch(_request()))

    api_client.deserialize.assert_not_called()
    assert event.is_gone is True
    assert event.object == status


@pytest.mark.parametrize(
    "error",
    [
        ValueError("Invalid value for `selector`, must not be `None`"),
        TypeError("__init__() got an unexpected keyword argument"),
        AttributeError("module 'kubernetes.client.models' has no attribute 'V1Nope'"),
    ],
)
def test_objects_the_model_rejects_become_stream_errors_and_stream_continues(
    error: Exception,
) -> None:
    transport, api_client, _ = _transport(return_type="V1Deployment")
    model = SimpleNamespace(kind="model")
    api_client.deserialize.side_effect = [error, model]

    with _lines(_frame("ADDED", {"metadata": {}}), _frame("ADDED", _config_map("ok", "14"))):
        items = list(transport.open_watch(_request()))

    assert isinstance(items[0], WatchStreamError)
    assert "undecodable watch object" in str(items[0])
    assert items[1].object is model


@pytest.mark.parametrize(
    "line",
    [
        "{not json",
        json.dumps({"type": "BOOKMARK", "object": {}}),
        json.dumps({"object": {}}),
        json.dumps(["ADDED"]),
    ],
)
def test_bad_frames_become_stream_errors_and_stream_continues(line: str) -> None:
    transport, _, _ = _transport()
    good = _config_map("helloworld-config", "12")

    with _lines(line, _frame("ADDED", good)):
        items = list(transport.open_watch(_request()))

    assert isinstance(items[0], WatchStreamError)
    assert items[1] == WatchEvent(type=EventType.ADDED, object=good, raw_object=good)


def test_connection_drop_mid_stream_yields_error_and_ends() -> None:
    transport, _, response = _transport()
    first = _config_map("helloworld-config", "13")

    def dropping_lines(_: Any) -> Iterator[str]:
        yield _frame("ADDED", first)
        raise ProtocolError("Connection broken: IncompleteRead")

    with patch("informer.src.kube.iter_resp_lines", side_effect=dropping_lines):
        items = list(transport.open_watch(_request()))

    assert len(items) == 2
    assert isinstance(items[1], WatchStreamError)
    assert "connection lost" in str(items[1])
    response.release_conn.assert_called_once()


def test_closing_stream_early_releases_connection() -> None:
    transport, _, response = _transport()

    with _lines(_frame("ADDED", _config_map("a", "1")), _frame("ADDED", _config_map("b", "2"))):
        stream = transport.open_watch(_request())
        next(stream)
        stream.close()

    response.close.assert_called_once()
    response.release_conn.assert_called_once()


# ---------------------------------------------------------------------------
# Against a real ApiClient (only the HTTP layer is replaced)
# ---------------------------------------------------------------------------


class _StreamingResponse:
    """urllib3-style response carrying newline-delimited watch frames."""

    def __init__(self, *lines: str) -> None:
        self.body = "".join(line + "\n" for line in lines).encode("utf-8")
        self.closed = False
        self.released = False

    def stream(self, amt: int | None = None, decode_content: bool | None = None) -> Iterator[bytes]:
        yield self.body

    def read_chunked(self, amt: int | None = None, decode_content: bool | None = None) -> Iterator[bytes]:
        yield self.body

    def close(self) -> None:
        self.closed = True

    def release_conn(self) -> None:
        self.released = True


_GONE = {"kind": "Status", "code": 410, "reason": "Expired", "message": "too old resource version"}


@pytest.fixture
def real_api_client() -> Iterator[ApiClient]:
    configuration = Configuration()
    configuration.host = "https://kube.test"
    configuration.api_key = {"authorization": "token-abc"}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    api_client = ApiClient(configuration=configuration)
    yield api_client
    api_client.close()


def test_real_api_client_opens_watch_and_deserializes(real_api_client: ApiClient) -> None:
    response = _StreamingResponse(
        _frame("ADDED", _config_map("helloworld-config", "10")), _frame("ERROR", _GONE)
    )
    transport = KubeWatchTransport(real_api_client, return_type="V1ConfigMap")

    with patch.object(real_api_client.rest_client, "request", return_value=response) as mock_request:
        items = list(transport.open_watch(_request("512")))

    method, url = mock_request.call_args.args[:2]
    kwargs = mock_request.call_args.kwargs
    assert method == "GET"
    assert url == "https://kube.test/api/v1/namespaces/shipshape/configmaps"
    assert ("resourceVersion", "512") in kwargs["query_params"]
    assert ("watch", "true") in kwargs["query_params"]
    assert kwargs["headers"]["authorization"] == "Bearer token-abc"
    assert kwargs["_preload_content"] is False

    assert isinstance(items[0].object, V1ConfigMap)
    assert resource_version(items[0].object) == "10"
    assert items[1].is_gone is True
    assert response.closed is True
    assert response.released is True


@pytest.mark.parametrize("return_type", ["V1NoSuchModel", "V1Container"])
def test_real_api_client_rejected_objects_flow_as_stream_errors(
    real_api_client: ApiClient, return_type: str
) -> None:
    # V1Container requires ``name``; client-side validation rejects this object.
    response = _StreamingResponse(
        _frame("ADDED", {"image": "nginx", "metadata": {"resourceVersion": "3"}}),
        _frame("ERROR", _GONE),
    )
    transport = KubeWatchTransport(real_api_client, return_type=return_type)

    with patch.object(real_api_client.rest_client, "request", return_value=response):
        items = list(transport.open_watch(_request()))

    assert isinstance(items[0], WatchStreamError)
    assert "undecodable watch object" in str(items[0])
    assert items[1].is_gone is True
