"""HTTP endpoint that runs FRR show commands and fans queries out to every node."""

from __future__ import annotations

import abc
import http.client
import ipaddress
import json
import logging
import os
import re
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlsplit

ALL = "all"
DEFAULT_VRF = "default"
PROTOCOL_IP = "ip"
PROTOCOL_IPV4 = "ipv4"
PROTOCOL_IPV6 = "ipv6"

STATUS_SVC_NAME_ENV = "STATUS_SVC_NAME"
STATUS_SVC_NAMESPACE_ENV = "STATUS_SVC_NAMESPACE"
NODENAME_ENV = "NODE_NAME"

VNI_BIT_LENGTH = 24

_VALID_VRF = re.compile(r"[A-Za-z0-9_.-]+")
_VALID_VNI = re.compile(r"[0-9]{0,8}")
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_EVPN_TYPES = ("rmac", "mac", "next-hops")


class FRRClient(abc.ABC):
    """Runs FRR show commands and returns their JSON output."""

    @abc.abstractmethod
    def execute_with_json(self, args: Sequence[str]) -> bytes:
        """Run the command given by ``args`` with JSON output and return the raw bytes."""


class ClusterClient(abc.ABC):
    """Read access to the cluster objects the endpoint needs."""

    @abc.abstractmethod
    def get_service_selector(self, name: str, namespace: str) -> Mapping[str, str]:
        """Return the pod selector of a service; raise if the service cannot be read."""

    @abc.abstractmethod
    def list_pod_ips(self, namespace: str, selector: Mapping[str, str]) -> Sequence[str]:
        """Return the IPs of the pods in ``namespace`` matching ``selector``."""


class HTTPError(Exception):
    """A request failed with the given HTTP status and message."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = int(status)
        self.message = message


@dataclass(frozen=True)
class Request:
    """An incoming request: its target (path and query, or an absolute URL), host and TLS flag."""

    target: str
    host: str = ""
    tls: bool = False

    def __post_init__(self) -> None:
        parts = urlsplit(self.target)
        if parts.scheme and parts.netloc:
            if not self.host:
                object.__setattr__(self, "host", parts.netloc)
            if parts.scheme == "https":
                object.__setattr__(self, "tls", True)

    @property
    def path(self) -> str:
        return urlsplit(self.target).path

    @property
    def request_uri(self) -> str:
        """Path (``/`` when empty) followed by the query string, if there is one."""
        parts = urlsplit(self.target)
        uri = parts.path or "/"
        return f"{uri}?{parts.query}" if parts.query else uri

    @property
    def params(self) -> Dict[str, str]:
        """Query parameters, each mapped to its first value."""
        parsed = parse_qs(urlsplit(self.target).query, keep_blank_values=True)
        return {key: values[0] for key, values in parsed.items()}


@dataclass(frozen=True)
class Response:
    """Status code and body of a handled request."""

    status: int
    body: bytes


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON value {name}")


def _parse_json(data: bytes) -> Any:
    return json.loads(data, parse_constant=_reject_constant)


def _dump_json(value: Any) -> bytes:
    return json.dumps(value, indent="\t", ensure_ascii=False).encode("utf-8")


def _is_ip(text: str) -> bool:
    if "%" in text:
        return False
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def _is_cidr(text: str) -> bool:
    address, sep, prefix = text.partition("/")
    if not sep or not prefix.isascii() or not prefix.isdigit() or not _is_ip(address):
        return False
    return int(prefix) <= ipaddress.ip_address(address).max_prefixlen


def _input_args(query: Mapping[str, str]) -> List[str]:
    value = query.get("input", "")
    if not value:
        return []
    if not _is_ip(value) and not _is_cidr(value):
        raise ValueError(f"input value is not valid: invalid CIDR address: {value}")
    return [value]


def _longer_prefixes_args(query: Mapping[str, str]) -> List[str]:
    value = query.get("longer_prefixes", "")
    if not value:
        return []
    if value in _TRUE_WORDS:
        return ["longer-prefixes"]
    if value in _FALSE_WORDS:
        return []
    raise ValueError(f'longer_prefixes value is not valid: invalid boolean "{value}"')


def _checked_vrf(vrf: str, allow_all: bool) -> str:
    if not allow_all and vrf == ALL:
        raise HTTPError(HTTPStatus.BAD_REQUEST, "VRF value cannot be 'all'")
    if not _VALID_VRF.fullmatch(vrf):
        raise HTTPError(HTTPStatus.BAD_REQUEST, "invalid VRF value")
    return vrf


def validate_vni(vni: str) -> None:
    """Raise ValueError unless ``vni`` is a decimal number no larger than 2**24."""
    if not _VALID_VNI.fullmatch(vni):
        raise ValueError("VNI does not match regular expression")
    try:
        value = int(vni)
    except ValueError as err:
        raise ValueError(f"VNI cannot be parsed to int: {err}") from err
    if value > 1 << VNI_BIT_LENGTH:
        raise ValueError("VNI is not a valid 24-bit number")


def prepare_bgp_command(query: Mapping[str, str], vrf: str) -> List[str]:
    """Build the ``show bgp`` command for the request parameters; raise ValueError if invalid."""
    request_type = query.get("type", "")
    if request_type == "summary":
        return ["show", "bgp", "vrf", vrf, "summary"]
    if request_type:
        raise ValueError(f"request of type '{request_type}' is not supported")

    protocol = query.get("protocol", "")
    if protocol in ("", PROTOCOL_IP):
        protocol = PROTOCOL_IPV4
    elif protocol not in (PROTOCOL_IPV4, PROTOCOL_IPV6):
        raise ValueError(f"protocol {protocol} is not supported")
    command = ["show", "bgp", "vrf", vrf, protocol, "unicast"]
    try:
        command += _input_args(query)
    except ValueError as err:
        raise ValueError(f"unable to set input: {err}") from err
    try:
        command += _longer_prefixes_args(query)
    except ValueError as err:
        raise ValueError(f"unable to set longer prefixes: {err}") from err
    return command


def with_nodename(data: bytes, nodename: str) -> bytes:
    """Wrap ``data`` in an object keyed by ``nodename``; return it unchanged if the name is empty."""
    if not nodename:
        return data
    try:
        parsed = _parse_json(data)
    except ValueError as err:
        raise ValueError(f"error marshaling data: {err}") from err
    return _dump_json({nodename: parsed})


def get_status_service_config(environ: Optional[Mapping[str, str]] = None) -> Tuple[str, str]:
    """Read the status service name and namespace from the environment."""
    env = os.environ if environ is None else environ
    name = env.get(STATUS_SVC_NAME_ENV, "")
    if not name:
        raise LookupError(f"environment variable {STATUS_SVC_NAME_ENV} is not set")
    namespace = env.get(STATUS_SVC_NAMESPACE_ENV, "")
    if not namespace:
        raise LookupError(f"environment variable {STATUS_SVC_NAMESPACE_ENV} is not set")
    return name, namespace


class Endpoint:
    """Answers show requests from FRR and forwards ``/all/`` requests to every node."""

    def __init__(
        self,
        cluster: ClusterClient,
        frr: FRRClient,
        svc_name: str,
        svc_namespace: str,
        nodename: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.cluster = cluster
        self.frr = frr
        self.status_svc_name = svc_name
        self.status_svc_namespace = svc_namespace
        self.nodename = nodename
        self.timeout = timeout
        self.logger = logging.getLogger("monitoring")
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        self.routes: Dict[str, Callable[[Request], bytes]] = {
            "/show/route": self.show_route,
            "/show/bgp": self.show_bgp,
            "/show/bgp/summary": self.show_bgp_summary,
            "/show/evpn": self.show_evpn,
            "/all/show/route": self.query_all,
            "/all/show/bgp": self.query_all,
            "/all/show/bgp/summary": self.query_all,
            "/all/show/evpn": self.query_all,
        }
        self.logger.info("created request routes")

    def dispatch(self, request: Request) -> Response:
        """Route a request to its handler and turn the outcome into a response."""
        handler = self.routes.get(request.path)
        if handler is None:
            return Response(int(HTTPStatus.NOT_FOUND), b"404 page not found\n")
        try:
            body = handler(request)
        except HTTPError as err:
            self.logger.error("request failed: status=%d error=%s", err.status, err.message)
            return Response(err.status, f"{err.message}\n".encode("utf-8"))
        return Response(int(HTTPStatus.OK), body)

    def _current_nodename(self) -> str:
        if self.nodename is not None:
            return self.nodename
        return os.environ.get(NODENAME_ENV, "")

    def _run(self, command: List[str], request_type: str) -> bytes:
        self.logger.info("command to be executed: %s", command)
        data = self.frr.execute_with_json(command)
        try:
            result = with_nodename(data, self._current_nodename())
        except ValueError as err:
            raise HTTPError(HTTPStatus.BAD_REQUEST, f"error adding nodename: {err}") from err
        self.logger.info("response prepared: type=%s", request_type)
        return result

    def show_route(self, request: Request) -> bytes:
        """``show ip|ipv6 route vrf <vrf> [<input>] [longer-prefixes]``."""
        self.logger.info("got ShowRoute request")
        query = request.params
        vrf = _checked_vrf(query.get("vrf") or DEFAULT_VRF, allow_all=False)
        protocol = query.get("protocol") or PROTOCOL_IP
        if protocol not in (PROTOCOL_IP, PROTOCOL_IPV6):
            raise HTTPError(HTTPStatus.BAD_REQUEST, f"protocol '{protocol}' is not supported")
        command = ["show", protocol, "route", "vrf", vrf]
        try:
            command += _input_args(query)
            command += _longer_prefixes_args(query)
        except ValueError as err:
            raise HTTPError(HTTPStatus.BAD_REQUEST, str(err)) from err
        return self._run(command, "ShowRoute")

    def show_bgp(self, request: Request) -> bytes:
        """``show bgp vrf <vrf> ipv4|ipv6 unicast ...`` or ``show bgp vrf <vrf> summary``."""
        self.logger.info("got ShowBGP request")
        query = request.params
        vrf = _checked_vrf(query.get("vrf") or DEFAULT_VRF, allow_all=False)
        try:
            command = prepare_bgp_command(query, vrf)
        except ValueError as err:
            raise HTTPError(
                HTTPStatus.BAD_REQUEST, f"error preparing ShowBGP command: {err}"
            ) from err
        return self._run(command, "ShowBGP")

    def show_bgp_summary(self, request: Request) -> bytes:
        """``show bgp vrf <all|vrf> summary``."""
        self.logger.info("got ShowBGPSummary request")
        vrf = _checked_vrf(request.params.get("vrf") or ALL, allow_all=True)
        return self._run(["show", "bgp", "vrf", vrf, "summary"], "ShowBGPSummary")

    def show_evpn(self, request: Request) -> bytes:
        """``show evpn vni`` or ``show evpn rmac|mac|next-hops vni <all|vni>``."""
        self.logger.info("got ShowEVPN request")
        query = request.params
        request_type = query.get("type", "")
        if request_type == "":
            command = ["show", "evpn", "vni"]
        elif request_type in _EVPN_TYPES:
            vni = query.get("vni", "")
            if not vni:
                vni = ALL
            else:
                try:
                    validate_vni(vni)
                except ValueError as err:
                    raise HTTPError(HTTPStatus.BAD_REQUEST, "invalid VNI value") from err
            command = ["show", "evpn", request_type, "vni", vni]
        else:
            raise HTTPError(
                HTTPStatus.BAD_REQUEST, f"request of type '{request_type}' is not supported"
            )
        return self._run(command, "ShowEVPN")

    def query_all(self, request: Request) -> bytes:
        """Pass the request to every node of the status service and join their answers."""
        self.logger.info("got QueryAll request")
        try:
            selector = self.cluster.get_service_selector(
                self.status_svc_name, self.status_svc_namespace
            )
        except Exception as err:
            raise HTTPError(
                HTTPStatus.INTERNAL_SERVER_ERROR, f"error getting service: {err}"
            ) from err
        try:
            addresses = list(self.cluster.list_pod_ips(self.status_svc_namespace, selector))
        except Exception as err:
            raise HTTPError(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                f"error getting addresses: error getting pods: {err}",
            ) from err
        if not addresses:
            raise HTTPError(
                HTTPStatus.INTERNAL_SERVER_ERROR, "error listing addresses: no addresses found"
            )

        self.logger.info("will query endpoints: %s", addresses)
        body, errors = self._query_endpoints(request, addresses)
        if errors:
            for err in errors:
                self.logger.error("error querying endpoint: %s", err)
            if len(errors) == 1:
                raise HTTPError(
                    HTTPStatus.INTERNAL_SERVER_ERROR, f"error querying endpoints - {errors[0]}"
                )
            raise HTTPError(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                "multiple errors occurred while querying endpoints - "
                "please check logs for the details",
            )
        return body

    def _query_endpoints(
        self, request: Request, addresses: List[str]
    ) -> Tuple[bytes, List[Exception]]:
        query = request.request_uri.replace("all/", "")
        host_parts = request.host.split(":")
        port = host_parts[1] if len(host_parts) > 1 else ""
        scheme = "https" if request.tls else "http"

        def fetch(addr: str) -> Tuple[Optional[bytes], Optional[Exception]]:
            try:
                return self._fetch(f"{scheme}://{addr}:{port}{query}", addr), None
            except RuntimeError as err:
                return None, err

        with ThreadPoolExecutor(max_workers=len(addresses)) as pool:
            outcomes = list(pool.map(fetch, addresses))

        errors = [err for _, err in outcomes if err is not None]
        if errors:
            return b"", errors
        try:
            responses = [_parse_json(data) for data, _ in outcomes if data is not None]
        except ValueError as err:
            return b"", [RuntimeError(f"error marshaling data: {err}")]
        return _dump_json(responses), []

    def _fetch(self, url: str, addr: str) -> bytes:
        try:
            response = self._opener.open(url, timeout=self.timeout)
        except urllib.error.HTTPError as err:
            response = err
        except (OSError, ValueError, http.client.HTTPException) as err:
            raise RuntimeError(f"error getting data from {addr}: {err}") from err
        with response:
            try:
                return response.read()
            except (OSError, http.client.HTTPException) as err:
                raise RuntimeError(f"error reading response from {addr}: {err}") from err

    def make_server(self, host: str, port: int) -> ThreadingHTTPServer:
        """Create an HTTP server that answers requests through this endpoint."""
        endpoint = self

        class _Handler(BaseHTTPRequestHandler):
            def _serve(self, send_body: bool = True) -> None:
                request = Request(self.path, host=self.headers.get("Host", ""))
                response = endpoint.dispatch(request)
                self.send_response(response.status)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(response.body)))
                self.end_headers()
                if send_body:
                    self.wfile.write(response.body)

            def do_GET(self) -> None:  # noqa: N802
                self._serve()

            do_POST = do_PUT = do_DELETE = do_PATCH = do_GET

            def do_HEAD(self) -> None:  # noqa: N802
                self._serve(send_body=False)

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
                endpoint.logger.debug(format, *args)

        return ThreadingHTTPServer((host, port), _Handler)