"""Metric descriptors, the collector registry and the top-level operator collector."""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Tuple

NAMESPACE = "nwop"
DEFAULT_ENABLED = True
DEFAULT_DISABLED = False

_logger = logging.getLogger("collector")

MetricSink = Callable[["Metric"], None]
CollectorFactory = Callable[[], "Collector"]


class ValueType(enum.Enum):
    """Kind of value a metric carries."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name gives an empty result."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Describes a metric: its full name, help text and variable label names."""

    fq_name: str
    help: str
    variable_labels: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "variable_labels", tuple(self.variable_labels))


@dataclass(frozen=True)
class Metric:
    """A constant metric sample bound to a descriptor."""

    desc: Desc
    value_type: ValueType
    value: float
    label_values: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", tuple(self.label_values))
        expected = len(self.desc.variable_labels)
        if len(self.label_values) != expected:
            raise ValueError(
                f"inconsistent label cardinality for {self.desc.fq_name!r}: "
                f"expected {expected} label values but got {len(self.label_values)}"
            )

    @property
    def labels(self) -> Dict[str, str]:
        """Label names mapped to their values."""
        return dict(zip(self.desc.variable_labels, self.label_values))


@dataclass(frozen=True)
class TypedDesc:
    """A descriptor paired with the value type of the metrics it produces."""

    desc: Desc
    value_type: ValueType

    def new_metric(self, value: float, *args: str) -> Metric:
        """Create a metric with the given value and label values."""
        return Metric(self.desc, self.value_type, float(value), args)


SCRAPE_DURATION_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_duration_seconds"),
    "das_schiff_network_operator: Duration of a collector scrape.",
    ("collector",),
)
SCRAPE_SUCCESS_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_success"),
    "das_schiff_network_operator: Whether a collector succeeded.",
    ("collector",),
)


class NoDataError(Exception):
    """The collector found no data to collect, but had no other error."""

    def __init__(self, message: str = "collector returned no data") -> None:
        super().__init__(message)


def is_no_data_error(err: Optional[BaseException]) -> bool:
    """Tell whether the error, or one it was raised from, is a NoDataError."""
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, NoDataError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


class Collector:
    """Base class for collectors that emit metrics into a sink."""

    def update(self, sink: MetricSink) -> None:
        """Fetch fresh metrics and pass each one to ``sink``."""
        raise NotImplementedError


@dataclass
class CollectorRegistry:
    """Known collector factories, their default state and the collectors already built."""

    _factories: Dict[str, CollectorFactory] = field(default_factory=dict)
    _states: Dict[str, bool] = field(default_factory=dict)
    _initiated: Dict[str, Collector] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, name: str, default_enabled: bool, factory: CollectorFactory) -> None:
        """Register a collector factory under ``name``."""
        self._states[name] = default_enabled
        self._factories[name] = factory

    def create(self, collector_config: Optional[Mapping[str, bool]] = None) -> Dict[str, Collector]:
        """Build (or reuse) every collector enabled by default or by the configuration."""
        config = collector_config or {}
        collectors: Dict[str, Collector] = {}
        with self._lock:
            for name, default_enabled in self._states.items():
                if not config.get(name, default_enabled):
                    continue
                collector = self._initiated.get(name)
                if collector is None:
                    collector = self._factories[name]()
                    self._initiated[name] = collector
                collectors[name] = collector
        return collectors


DEFAULT_REGISTRY = CollectorRegistry()


def register_collector(name: str, default_enabled: bool, factory: CollectorFactory) -> None:
    """Register a collector factory in the default registry."""
    DEFAULT_REGISTRY.register(name, default_enabled, factory)


def execute(name: str, collector: Collector, sink: MetricSink) -> None:
    """Run one collector and emit its scrape duration and success metrics."""
    begin = time.perf_counter()
    try:
        collector.update(sink)
    except Exception as err:  # noqa: BLE001 - every collector failure is reported as a metric
        duration = time.perf_counter() - begin
        reason = "collector returned no data" if is_no_data_error(err) else "collector failed"
        _logger.error("%s: name=%s duration_seconds=%f error=%s", reason, name, duration, err)
        success = 0.0
    else:
        duration = time.perf_counter() - begin
        _logger.info("collector succeeded: name=%s duration_seconds=%f", name, duration)
        success = 1.0
    sink(Metric(SCRAPE_DURATION_DESC, ValueType.GAUGE, duration, (name,)))
    sink(Metric(SCRAPE_SUCCESS_DESC, ValueType.GAUGE, success, (name,)))


@dataclass
class OperatorCollector:
    """Runs all enabled collectors and gathers their metrics."""

    collectors: Dict[str, Collector] = field(default_factory=dict)

    def describe(self) -> list[Desc]:
        """Descriptors of the metrics this collector always emits."""
        return [SCRAPE_DURATION_DESC, SCRAPE_SUCCESS_DESC]

    def collect(self) -> list[Metric]:
        """Run every collector concurrently and return all emitted metrics."""
        if not self.collectors:
            return []
        metrics: list[Metric] = []
        lock = threading.Lock()

        def sink(metric: Metric) -> None:
            with lock:
                metrics.append(metric)

        with ThreadPoolExecutor(max_workers=len(self.collectors)) as pool:
            futures = [
                pool.submit(execute, name, collector, sink)
                for name, collector in self.collectors.items()
            ]
            for future in futures:
                future.result()
        return metrics


def new_operator_collector(
    collector_config: Optional[Mapping[str, bool]] = None,
    registry: Optional[CollectorRegistry] = None,
) -> OperatorCollector:
    """Create an OperatorCollector from the registry and a per-collector enable map."""
    reg = DEFAULT_REGISTRY if registry is None else registry
    return OperatorCollector(reg.create(collector_config))