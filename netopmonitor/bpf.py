"""Collector exposing per-CPU statistics of the traffic-control router program."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

from netopmonitor.metrics import (
    DEFAULT_ENABLED,
    NAMESPACE,
    Collector,
    Desc,
    MetricSink,
    NoDataError,
    TypedDesc,
    ValueType,
    build_fq_name,
    register_collector,
)

_UINT64_MASK = (1 << 64) - 1

RETURN_REASONS: Sequence[str] = (
    "route",
    "route_noneigh",
    "err_parse_headers",
    "not_fwd",
    "err_store_mac",
    "err_buffer_size",
    "err_fallthrough",
)
FIB_LOOKUP_RESULTS: Sequence[str] = (
    "success",
    "blackhole",
    "unreacheable",
    "prohibit",
    "not_fwded",
    "fwd_disabled",
    "unsupp_lwt",
    "no_neigh",
    "frag_needed",
)


@dataclass(frozen=True)
class StatsRecord:
    """Packet and byte counters for one key."""

    rx_packets: int = 0
    rx_bytes: int = 0


class StatsMap(Protocol):
    """A per-CPU statistics map indexed by integer keys."""

    def lookup(self, key: int) -> Iterable[StatsRecord]:
        ...


class BPFLookupError(RuntimeError):
    """Reading a key from a statistics map failed."""


def aggregate_stats(per_cpu_stats: Iterable[StatsRecord]) -> StatsRecord:
    """Sum per-CPU records into one, wrapping like unsigned 64-bit counters."""
    packets = 0
    size = 0
    for stat in per_cpu_stats:
        packets = (packets + stat.rx_packets) & _UINT64_MASK
        size = (size + stat.rx_bytes) & _UINT64_MASK
    return StatsRecord(rx_packets=packets, rx_bytes=size)


def _counter(name: str, help_text: str) -> TypedDesc:
    return TypedDesc(Desc(build_fq_name(NAMESPACE, "bpf", name), help_text, ("key",)), ValueType.COUNTER)


class BPFCollector(Collector):
    """Reports return reasons and FIB lookup results from the statistics maps."""

    def __init__(
        self,
        return_stats_map: Optional[StatsMap] = None,
        fib_lookup_stats_map: Optional[StatsMap] = None,
    ) -> None:
        self.return_stats_map = return_stats_map
        self.fib_lookup_stats_map = fib_lookup_stats_map
        self.return_reasons_packets = _counter(
            "return_reasons_packets", "The BPF tc_router program return reasons"
        )
        self.return_reasons_bytes = _counter(
            "return_reasons_bytes", "The BPF tc_router program return reasons"
        )
        self.fib_lookup_packets = _counter(
            "fib_lookup_packets", "The BPF tc_router program lookup results"
        )
        self.fib_lookup_bytes = _counter(
            "fib_lookup_bytes", "The BPF tc_router program lookup results"
        )
        self.logger = logging.getLogger("bpf.collector")

    @staticmethod
    def _fetch(stats_map: StatsMap, key: int) -> StatsRecord:
        try:
            per_cpu = list(stats_map.lookup(key))
        except Exception as err:
            raise BPFLookupError(f"error looking up bpf key: {err}") from err
        return aggregate_stats(per_cpu)

    def _emit(
        self,
        sink: MetricSink,
        stats_map: Optional[StatsMap],
        names: Sequence[str],
        packets: TypedDesc,
        size: TypedDesc,
    ) -> None:
        if stats_map is None:
            raise NoDataError()
        for key, name in enumerate(names):
            stats = self._fetch(stats_map, key)
            sink(packets.new_metric(stats.rx_packets, name))
            sink(size.new_metric(stats.rx_bytes, name))

    def update(self, sink: MetricSink) -> None:
        """Emit return-reason metrics, then FIB lookup metrics."""
        self._emit(
            sink,
            self.return_stats_map,
            RETURN_REASONS,
            self.return_reasons_packets,
            self.return_reasons_bytes,
        )
        self._emit(
            sink,
            self.fib_lookup_stats_map,
            FIB_LOOKUP_RESULTS,
            self.fib_lookup_packets,
            self.fib_lookup_bytes,
        )


def new_bpf_collector() -> BPFCollector:
    """Create a BPF collector with no statistics maps attached."""
    return BPFCollector()


register_collector("bpf", DEFAULT_ENABLED, new_bpf_collector)