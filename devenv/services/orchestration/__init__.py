"""Cluster orchestration for the developer environment."""
