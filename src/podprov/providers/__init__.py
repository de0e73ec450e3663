"""Reconciliation providers for podprov."""

from podprov.providers.base import BaseProvider, ProviderContext, ProviderStatus
from podprov.providers.registry import ProviderRegistry

__all__ = [
    "BaseProvider",
    "ProviderContext",
    "ProviderStatus",
    "ProviderRegistry",
]
