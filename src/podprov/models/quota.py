"""Quota and resource usage models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from podprov.errors import ConfigError
from podprov.utils.units import parse_percent, parse_size


class ResourceKind(str, Enum):
    """Resource kinds that can carry a quota."""
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"

    @classmethod
    def parse(cls, value: str) -> "ResourceKind":
        """Parse a resource kind, rejecting anything unknown."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ConfigError(f"Invalid resource type: {value} (expected one of {valid})") from None

    @property
    def field(self) -> str:
        """Key of this kind in a persisted quota record."""
        return f"{self.value}_limit"

    def to_number(self, limit: str) -> float:
        """Convert a limit to the unit usage is measured in.

        CPU limits are percentages (200 = two full CPUs); memory and disk
        limits are sizes converted to bytes.
        """
        try:
            if self is ResourceKind.CPU:
                return parse_percent(limit)
            return float(parse_size(limit))
        except ValueError as e:
            raise ConfigError(f"Invalid {self.value} limit {limit!r}: {e}") from None


class QuotaRecord(BaseModel):
    """Persisted per-user ceilings; a missing limit means no ceiling."""
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    disk_limit: Optional[str] = None

    def limit_for(self, kind: ResourceKind) -> Optional[str]:
        return getattr(self, kind.field)


class ResourceUsage(BaseModel):
    """Current usage of one resource kind."""
    kind: ResourceKind
    usage: float
    limit: Optional[float] = None
    limit_display: Optional[str] = None
    exceeded: bool = False


class UsageReport(BaseModel):
    """Usage of every resource kind for a user."""
    username: str
    resources: List[ResourceUsage] = Field(default_factory=list)

    def get(self, kind: ResourceKind) -> Optional[ResourceUsage]:
        for usage in self.resources:
            if usage.kind == kind:
                return usage
        return None

    @property
    def exceeded(self) -> List[ResourceKind]:
        return [u.kind for u in self.resources if u.exceeded]
