"""Manage GreptimeDB clusters on Kubernetes or on bare metal: artifacts, options and cluster operations."""

__version__ = "0.1.0"

__all__ = ["artifacts", "baremetal", "cluster_types", "kubernetes"]