"""Multi-cluster inventory of Kubernetes-style objects and resource types in a relational store."""

__version__ = "0.1.0"