"""Declarative reconciliation of Kubernetes clusters and their workloads."""

__version__ = "0.1.0"
