"""Dependency-ordered provisioning of a multi-tier cloud environment."""

__version__ = "0.1.0"
