"""Cluster agent helpers for a snap-packaged Kubernetes."""

__version__ = "0.1.0"