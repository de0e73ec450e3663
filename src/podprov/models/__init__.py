"""Pydantic models for configuration and results."""

from podprov.models.config import ProvisionConfig, CertificateConfig, RetryConfig, DiagnosticsConfig
from podprov.models.container import ContainerGroup, expand_reference
from podprov.models.quota import ResourceKind, QuotaRecord, ResourceUsage, UsageReport
from podprov.models.results import (
    Outcome,
    UserState,
    StepResult,
    ImageResult,
    ContainerResult,
    UserResult,
    ProvisionReport,
)
from podprov.models.version import (
    SystemSnapshot,
    ImageSnapshot,
    VersionSnapshot,
    UpdateStatus,
    UpdateCheck,
    SecurityReport,
    SnapshotDiff,
)

__all__ = [
    "ProvisionConfig",
    "CertificateConfig",
    "RetryConfig",
    "DiagnosticsConfig",
    "ContainerGroup",
    "expand_reference",
    "ResourceKind",
    "QuotaRecord",
    "ResourceUsage",
    "UsageReport",
    "Outcome",
    "UserState",
    "StepResult",
    "ImageResult",
    "ContainerResult",
    "UserResult",
    "ProvisionReport",
    "SystemSnapshot",
    "ImageSnapshot",
    "VersionSnapshot",
    "UpdateStatus",
    "UpdateCheck",
    "SecurityReport",
    "SnapshotDiff",
]
