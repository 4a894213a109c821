"""Tenant Vault.

Tenant-bound encrypted storage of third-party integration credentials.
"""
from .version import __version__

__all__ = ("__version__",)
