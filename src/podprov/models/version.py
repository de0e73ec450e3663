"""Version snapshot models."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


NOT_FOUND = "not-found"


class SystemSnapshot(BaseModel):
    """Runtime, kernel, distro and toolchain versions at a point in time."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    runtime_version: str
    kernel_version: str
    distro: str
    toolchains: Dict[str, str] = Field(default_factory=dict)


class ImageSnapshot(BaseModel):
    """Content id of every configured image reference."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    images: Dict[str, str] = Field(default_factory=dict)


class VersionSnapshot(BaseModel):
    """A complete snapshot as written by ``track``."""
    model_config = ConfigDict(frozen=True)

    system: SystemSnapshot
    images: ImageSnapshot


class UpdateStatus(str, Enum):
    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"
    NOT_FOUND = "not-found"


class UpdateCheck(BaseModel):
    """Result of comparing an image's current and freshly pulled ids."""
    ref: str
    current: Optional[str] = None
    latest: Optional[str] = None
    status: UpdateStatus


class SecurityReport(BaseModel):
    """Metadata scan of an image."""
    ref: str
    env: List[str] = Field(default_factory=list)
    ports: List[str] = Field(default_factory=list)
    user: str = ""
    privileged: bool = False
    warnings: List[str] = Field(default_factory=list)
    env_file: Optional[str] = None
    ports_file: Optional[str] = None


class SnapshotDiff(BaseModel):
    """Changes between two snapshots, keyed by dotted field name."""
    previous: Optional[datetime] = None
    current: Optional[datetime] = None
    changes: Dict[str, Tuple[Optional[str], Optional[str]]] = Field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.changes
