"""Metric collectors, a BPF statistics collector and an FRR status HTTP endpoint."""

__version__ = "0.1.0"
__all__ = ["bpf", "endpoint", "metrics"]