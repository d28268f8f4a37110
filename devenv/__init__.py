"""Snapshot lifecycle for Kubernetes developer environments."""

__version__ = "0.1.0"
