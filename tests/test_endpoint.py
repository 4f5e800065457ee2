import json
import socket
import threading
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from netopmonitor.endpoint import (
    NODENAME_ENV,
    STATUS_SVC_NAME_ENV,
    STATUS_SVC_NAMESPACE_ENV,
    ClusterClient,
    Endpoint,
    FRRClient,
    HTTPError,
    Request,
    get_status_service_config,
    prepare_bgp_command,
    validate_vni,
    with_nodename,
)

WORKER_LABELS = {
    "app.kubernetes.io/component": "worker",
    "app.kubernetes.io/name": "network-operator",
}


class FakeFRR(FRRClient):
    def __init__(self, output=b"{}"):
        self.output = output
        self.commands = []

    def execute_with_json(self, args):
        self.commands.append(list(args))
        return self.output


class FakeCluster(ClusterClient):
    def __init__(self):
        self.services = {
            ("test-namespace", "test-service"): {},
            ("test-namespace", "test-service-no-endpoints"): {
                "app.kubernetes.io/component": "bad-selector",
                "app.kubernetes.io/name": "bad-selector",
            },
        }
        self.pods = [
            ("test-namespace", WORKER_LABELS, "127.0.0.1"),
            ("test-namespace", WORKER_LABELS, "127.0.0.1"),
        ]

    def get_service_selector(self, name, namespace):
        try:
            return self.services[(namespace, name)]
        except KeyError:
            raise LookupError(f'services "{name}" not found') from None

    def list_pod_ips(self, namespace, selector):
        return [
            ip
            for ns, labels, ip in self.pods
            if ns == namespace and all(labels.get(k) == v for k, v in selector.items())
        ]


@pytest.fixture
def frr():
    return FakeFRR()


@pytest.fixture
def endpoint(frr):
    return Endpoint(FakeCluster(), frr, "test-service", "test-namespace", nodename="")


@pytest.fixture
def backend():
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.server.received.append(self.path)
            payload = self.server.payload
            self.send_response(200)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    server.payload = b"{}"
    server.received = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _status(endpoint, target):
    return endpoint.dispatch(Request(target)).status


# ShowRoute


def test_show_route_default(endpoint, frr):
    response = endpoint.dispatch(Request("/show/route"))
    assert response.status == 200
    assert response.body == b"{}"
    assert frr.commands == [["show", "ip", "route", "vrf", "default"]]


@pytest.mark.parametrize(
    "target",
    [
        "/show/route?protocol=ipv42",
        "/show/route?protocol=ipv6&input=192.168.1.1/42",
        "/show/route?protocol=ipv6&input=192.168.1.1/32&longer_prefixes=notABool",
        "/show/route?protocol=ipv6&input=192.168.1.1/32&longer_prefixes=true&vrf=invalid$vrf",
        "/show/route?vrf=all",
        "/show/route?protocol=ipv4",
    ],
)
def test_show_route_bad_requests(endpoint, frr, target):
    assert _status(endpoint, target) == 400
    assert frr.commands == []


def test_show_route_with_input_and_longer_prefixes(endpoint, frr):
    target = "/show/route?protocol=ipv6&input=192.168.1.1/32&longer_prefixes=true"
    assert _status(endpoint, target) == 200
    assert frr.commands == [
        ["show", "ipv6", "route", "vrf", "default", "192.168.1.1/32", "longer-prefixes"]
    ]


def test_show_route_error_message(endpoint):
    response = endpoint.dispatch(Request("/show/route?protocol=ipv42"))
    assert response.body == b"protocol 'ipv42' is not supported\n"


def test_show_route_raises_http_error(endpoint):
    with pytest.raises(HTTPError) as info:
        endpoint.show_route(Request("/show/route?vrf=all"))
    assert info.value.status == 400
    assert info.value.message == "VRF value cannot be 'all'"


def test_show_route_adds_nodename_from_environment(frr, monkeypatch):
    monkeypatch.setenv(NODENAME_ENV, "test-nodename")
    endpoint = Endpoint(FakeCluster(), frr, "test-service", "test-namespace")
    target = "/show/route?protocol=ipv6&input=192.168.1.1/32&longer_prefixes=true"
    response = endpoint.dispatch(Request(target))
    assert response.status == 200
    assert json.loads(response.body) == {"test-nodename": {}}


# ShowBGP


def test_show_bgp_default(endpoint, frr):
    assert _status(endpoint, "/show/bgp") == 200
    assert frr.commands == [["show", "bgp", "vrf", "default", "ipv4", "unicast"]]


def test_show_bgp_summary_type(endpoint, frr):
    assert _status(endpoint, "/show/bgp?type=summary") == 200
    assert frr.commands == [["show", "bgp", "vrf", "default", "summary"]]


@pytest.mark.parametrize(
    "target",
    [
        "/show/bgp?type=ivalidType",
        "/show/bgp?protocol=ipv42",
        "/show/bgp?protocol=ipv4&input=192.168.1.1/42",
        "/show/bgp?protocol=ipv4&input=192.168.1.1/32&longer_prefixes=notABool",
        "/show/bgp?vrf=invalid$VRF",
    ],
)
def test_show_bgp_bad_requests(endpoint, frr, target):
    assert _status(endpoint, target) == 400
    assert frr.commands == []


def test_show_bgp_error_message(endpoint):
    response = endpoint.dispatch(Request("/show/bgp?type=ivalidType"))
    assert response.body == (
        b"error preparing ShowBGP command: request of type 'ivalidType' is not supported\n"
    )


def test_prepare_bgp_command_full():
    query = {"protocol": "ipv6", "input": "2001:db8::/32", "longer_prefixes": "1"}
    assert prepare_bgp_command(query, "red") == [
        "show", "bgp", "vrf", "red", "ipv6", "unicast", "2001:db8::/32", "longer-prefixes",
    ]


def test_prepare_bgp_command_ip_means_ipv4_and_false_prefixes():
    query = {"protocol": "ip", "input": "10.0.0.1", "longer_prefixes": "false"}
    assert prepare_bgp_command(query, "v") == ["show", "bgp", "vrf", "v", "ipv4", "unicast", "10.0.0.1"]


def test_prepare_bgp_command_invalid_protocol():
    with pytest.raises(ValueError, match="protocol ipv42 is not supported"):
        prepare_bgp_command({"protocol": "ipv42"}, "default")


# ShowBGPSummary


def test_show_bgp_summary_defaults_to_all(endpoint, frr):
    assert _status(endpoint, "/show/bgp/summary") == 200
    assert frr.commands == [["show", "bgp", "vrf", "all", "summary"]]


def test_show_bgp_summary_invalid_vrf(endpoint):
    assert _status(endpoint, "/show/bgp/summary?vrf=bad$vrf") == 400


# ShowEVPN


def test_show_evpn_default(endpoint, frr):
    assert _status(endpoint, "/show/evpn") == 200
    assert frr.commands == [["show", "evpn", "vni"]]


@pytest.mark.parametrize("kind", ["rmac", "mac", "next-hops"])
def test_show_evpn_types(endpoint, frr, kind):
    assert _status(endpoint, f"/show/evpn?type={kind}") == 200
    assert frr.commands == [["show", "evpn", kind, "vni", "all"]]


@pytest.mark.parametrize(
    "target",
    [
        "/show/evpn?type=invalidType",
        "/show/evpn?type=rmac&vni=invalidVNI",
        "/show/evpn?type=rmac&vni=96777215",
    ],
)
def test_show_evpn_bad_requests(endpoint, frr, target):
    assert _status(endpoint, target) == 400
    assert frr.commands == []


def test_show_evpn_valid_vni(endpoint, frr):
    assert _status(endpoint, "/show/evpn?type=rmac&vni=42") == 200
    assert frr.commands == [["show", "evpn", "rmac", "vni", "42"]]


def test_validate_vni_limits():
    validate_vni("16777216")
    with pytest.raises(ValueError, match="24-bit"):
        validate_vni("16777217")
    with pytest.raises(ValueError, match="regular expression"):
        validate_vni("123456789")


# QueryAll


def test_query_all_no_instances(frr):
    endpoint = Endpoint(FakeCluster(), frr, "test-service-no-endpoints", "test-namespace", nodename="")
    response = endpoint.dispatch(Request("/all/show/route"))
    assert response.status == 500
    assert response.body == b"error listing addresses: no addresses found\n"


def test_query_all_missing_service(frr):
    endpoint = Endpoint(FakeCluster(), frr, "svcName", "svcNamespace", nodename="")
    with pytest.raises(HTTPError) as info:
        endpoint.query_all(Request("/all/show/route"))
    assert info.value.status == 500
    assert info.value.message.startswith("error getting service:")


def test_query_all_cannot_get_data(endpoint):
    request = Request("/all/show/route", host=f"example.com:{_closed_port()}")
    response = endpoint.dispatch(request)
    assert response.status == 500
    assert response.body.startswith(b"multiple errors occurred")


def test_query_all_malformed_response(endpoint, backend):
    backend.payload = b"invalidJson"
    port = backend.server_address[1]
    with pytest.raises(HTTPError) as info:
        endpoint.query_all(Request(f"http://127.0.0.1:{port}"))
    assert info.value.status == 500
    assert "error marshaling data" in info.value.message


def test_query_all_success(endpoint, backend):
    port = backend.server_address[1]
    request = Request(f"http://127.0.0.1:{port}?service=test-service&namespace=test-namespace")
    body = endpoint.query_all(request)
    assert body == b"[\n\t{},\n\t{}\n]"
    assert backend.received == ["/?service=test-service&namespace=test-namespace"] * 2


def test_query_all_strips_all_prefix(endpoint, backend):
    port = backend.server_address[1]
    response = endpoint.dispatch(Request("/all/show/bgp?type=summary", host=f"node:{port}"))
    assert response.status == 200
    assert json.loads(response.body) == [{}, {}]
    assert backend.received == ["/show/bgp?type=summary"] * 2


# Helpers and server


def test_with_nodename():
    assert with_nodename(b"not json", "") == b"not json"
    assert with_nodename(b"{}", "node") == b'{\n\t"node": {}\n}'
    with pytest.raises(ValueError):
        with_nodename(b"not json", "node")


def test_request_parsing():
    request = Request("https://host:8443/all/show/evpn?type=mac&type=rmac&vni=")
    assert request.host == "host:8443"
    assert request.tls is True
    assert request.path == "/all/show/evpn"
    assert request.params == {"type": "mac", "vni": ""}
    assert request.request_uri == "/all/show/evpn?type=mac&type=rmac&vni="


def test_dispatch_unknown_path(endpoint):
    response = endpoint.dispatch(Request("/show/unknown"))
    assert response.status == 404
    assert response.body == b"404 page not found\n"


def test_make_server(endpoint, frr):
    server = endpoint.make_server("127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    base = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        with opener.open(f"{base}/show/evpn?type=mac&vni=42") as resp:
            assert resp.status == 200
            assert resp.read() == b"{}"
        with pytest.raises(urllib.error.HTTPError) as info:
            opener.open(f"{base}/show/evpn?type=bad")
        assert info.value.code == 400
        info.value.close()
    finally:
        server.shutdown()
        server.server_close()
    assert frr.commands == [["show", "evpn", "mac", "vni", "42"]]


def test_get_status_service_config():
    environ = {STATUS_SVC_NAME_ENV: "svcName", STATUS_SVC_NAMESPACE_ENV: "svcNamespace"}
    assert get_status_service_config(environ) == ("svcName", "svcNamespace")


def test_get_status_service_config_missing():
    with pytest.raises(LookupError, match=STATUS_SVC_NAME_ENV):
        get_status_service_config({})
    with pytest.raises(LookupError, match=STATUS_SVC_NAMESPACE_ENV):
        get_status_service_config({STATUS_SVC_NAME_ENV: "svcName"})


def test_get_status_service_config_from_os_environ(monkeypatch):
    monkeypatch.setenv(STATUS_SVC_NAME_ENV, "svcName")
    monkeypatch.setenv(STATUS_SVC_NAMESPACE_ENV, "svcNamespace")
    assert get_status_service_config() == ("svcName", "svcNamespace")