# netopmonitor

Monitoring building blocks for a node-level network operator. The package
uses only the standard library.

- `netopmonitor.metrics` holds metric descriptors and a registry of named
  collectors. Each collector is enabled or disabled by default. An
  aggregating `OperatorCollector` runs every enabled collector.
- `netopmonitor.bpf` holds `BPFCollector`. It turns per-CPU packet and byte
  counters into counters for return reasons and FIB lookup results.
- `netopmonitor.endpoint` holds `Endpoint`. It answers `show route`,
  `show bgp`, `show bgp summary` and `show evpn` queries through an FRR
  client, and can send a query on to every pod behind a status service.

## Installation

```
pip install .
```

## Metrics and collectors

`build_fq_name(namespace, subsystem, name)` joins the non-empty parts with
underscores. The package's own metrics use the `nwop` namespace.

A `Desc` holds a full name, a help text and label names. A `TypedDesc` pairs
a `Desc` with a `ValueType` (`COUNTER`, `GAUGE` or `UNTYPED`).
`TypedDesc.new_metric(value, *label_values)` returns a frozen `Metric`. It
raises `ValueError` when the number of label values does not match the
number of label names. `Metric.labels` maps each label name to its value.

To add a collector, subclass `Collector`, implement `update(sink)` to pass
each `Metric` to `sink`, and register a factory:

```python
from netopmonitor.metrics import Collector, register_collector

class MyCollector(Collector):
    def update(self, sink):
        ...  # call sink(metric) for each metric

register_collector("mine", True, MyCollector)
```

`register_collector` adds the factory to the module's default registry. You
can also keep a separate `CollectorRegistry` and call its `register` method.
`CollectorRegistry.create(collector_config)` builds every collector that is
enabled. An entry in `collector_config` (a mapping of name to bool) overrides
the collector's default state. Each factory runs once per registry. Later
calls reuse the collector that was built first.

`new_operator_collector(collector_config, registry)` wraps those collectors
in an `OperatorCollector`. If no registry is given, it uses the default one.

- `describe()` returns the two scrape descriptors,
  `nwop_scrape_collector_duration_seconds` and `nwop_scrape_collector_success`.
- `collect()` runs all collectors in parallel threads and returns every
  metric they emitted. For each collector it adds a duration gauge and a
  success gauge (`1` or `0`), labelled by collector name.

`execute(name, collector, sink)` runs a single collector in the same way.

A collector with nothing to report raises `NoDataError`.
`is_no_data_error(err)` recognises that error, also when it is the cause of
another error. This case is logged differently from other failures. Both are
recorded as an unsuccessful scrape.

## BPF statistics

`BPFCollector(return_stats_map, fib_lookup_stats_map)` takes two map objects.
Each map has a `lookup(key)` method that returns the per-CPU `StatsRecord`
entries (`rx_packets`, `rx_bytes`) for an integer key.

`update` reads one key per return reason (`route`, `route_noneigh`,
`err_parse_headers`, …) and per FIB lookup result (`success`, `blackhole`,
…). For each, it emits these counters, labelled by `key`:

- `nwop_bpf_return_reasons_packets` and `nwop_bpf_return_reasons_bytes`
- `nwop_bpf_fib_lookup_packets` and `nwop_bpf_fib_lookup_bytes`

`aggregate_stats` sums the per-CPU records and wraps at 2⁶⁴. A missing map
raises `NoDataError`. A failing lookup raises `BPFLookupError`.

Importing `netopmonitor.bpf` registers a collector named `bpf`, enabled by
default. It is built by `new_bpf_collector()`, which attaches no maps, so
until maps are supplied the collector reports no data.

## Status endpoint

`Endpoint(cluster, frr, svc_name, svc_namespace, nodename=None, timeout=None)`
needs two clients that you implement for your environment:

- An `FRRClient` runs commands. Implement `execute_with_json(args)`, which
  returns raw JSON bytes.
- A `ClusterClient` looks up pods. Implement
  `get_service_selector(name, namespace)` and
  `list_pod_ips(namespace, selector)`.

`Endpoint.dispatch(Request(target, host, tls))` returns a `Response`
(`status`, `body`). Unknown paths get `404`.

| Path | Query parameters | Command |
|------|------------------|---------|
| `/show/route` | `vrf` (default `default`, not `all`), `protocol` (`ip`/`ipv6`), `input` (IP or CIDR), `longer_prefixes` (boolean) | `show <protocol> route vrf <vrf> [input] [longer-prefixes]` |
| `/show/bgp` | `vrf`, `type` (empty or `summary`), `protocol` (`ip`/`ipv4`/`ipv6`), `input`, `longer_prefixes` | `show bgp vrf <vrf> <protocol> unicast ...` or `show bgp vrf <vrf> summary` |
| `/show/bgp/summary` | `vrf` (default `all`) | `show bgp vrf <vrf> summary` |
| `/show/evpn` | `type` (empty, `rmac`, `mac`, `next-hops`), `vni` (default `all`) | `show evpn vni` or `show evpn <type> vni <vni>` |
| `/all/show/...` | as above | sent to every pod |

Invalid parameters give `400`, with the message as the body. The handlers
`show_route`, `show_bgp`, `show_bgp_summary`, `show_evpn` and `query_all`
return the body bytes directly and raise `HTTPError` (with `status` and
`message`) on failure.

### Node name

If a node name is set, each answer is wrapped in a JSON object keyed by that
name. The name is either the `nodename` argument or, when that is `None`, the
`NODE_NAME` environment variable. See `with_nodename(data, nodename)`.

### `/all/` queries

For an `/all/` path, the endpoint:

1. Reads the status service's selector.
2. Lists the pod IPs that match it.
3. Requests the same URI without `all/` from each pod, on the port of the
   incoming `Host` and over `https` when the request came over TLS.

The answers come back as a JSON array. These cases give `500`:

- No pods were found.
- A pod could not be reached.
- An answer was not JSON.

### Helpers

`Endpoint.make_server(host, port)` returns a `ThreadingHTTPServer` that
serves these routes. Call `serve_forever()` on it yourself.

`prepare_bgp_command(query, vrf)` builds the `show bgp` command.

`validate_vni(vni)` raises `ValueError` unless the VNI is a decimal number of
at most eight digits and no larger than 2²⁴.

`get_status_service_config(environ)` reads `STATUS_SVC_NAME` and
`STATUS_SVC_NAMESPACE`. It uses `os.environ` when `environ` is omitted and
raises `LookupError` if either is missing:

```python
from netopmonitor.endpoint import get_status_service_config

name, namespace = get_status_service_config(
    {"STATUS_SVC_NAME": "status", "STATUS_SVC_NAMESPACE": "kube-system"}
)
```

## What the package does not do

- It has no command-line program and does not start a server by itself.
- It does not serve metrics in a scrape format. `OperatorCollector.collect()`
  returns `Metric` objects, and exporting them is up to you.
- It ships only the BPF collector. There are no collectors for FRR routes,
  BGP sessions, or kernel routes and neighbours.
- It does not load BPF programs or open their maps.
- It includes no Kubernetes or FRR client implementations, only the
  `ClusterClient` and `FRRClient` interfaces.

## Tests

```
pip install .[test]
pytest
```