"""Cooperative, fuel-bounded scheduler for sandboxed guest partitions."""

__version__ = "0.1.0"
