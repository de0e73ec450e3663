"""
Podman Provision - multi-user container development environment provisioning.

Reconciles OS accounts, trust certificates, runtime configuration and
per-user container environments to a declarative configuration.
"""

__version__ = "1.0.0"

# Re-export key components for easier access
from podprov.models.config import ProvisionConfig
from podprov.models.results import ProvisionReport, UserResult

__all__ = [
    "ProvisionConfig",
    "ProvisionReport",
    "UserResult",
]
