"""Configuration models."""

import re
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from podprov.errors import ConfigError
from podprov.models.container import ContainerGroup, expand_reference
from podprov.utils.units import parse_size


KNOWN_MCP_SERVICES = ("core-api", "code-intelligence", "ai-assistant")

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_USERNAME_RE = re.compile(r"^[a-z0-9_][a-z0-9_.-]{0,31}$")


def check_username(username: str) -> str:
    """Return ``username`` unchanged, or raise ConfigError when no account can have that name."""
    if not isinstance(username, str) or not _USERNAME_RE.fullmatch(username):
        raise ConfigError(f"Invalid username: {username!r}")
    return username


class CertificateConfig(BaseModel):
    """Trust certificate locations."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    local_path: str = Field(default="/root/certs/zscaler.crt", alias="localPath")
    name: str = Field(default="zscaler.crt", description="File name inside ~/certs")
    system_path: str = Field(
        default="/etc/pki/ca-trust/source/anchors/zscaler.crt",
        alias="systemPath",
        description="System trust anchor, also exported as the TLS bundle",
    )


class RetryConfig(BaseModel):
    """Retry settings for remote-mutating calls."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    max_attempts: int = Field(default=3, ge=1, alias="maxAttempts")
    delay: float = Field(default=5.0, ge=0)


class DiagnosticsConfig(BaseModel):
    """Health monitor settings."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    interval: int = Field(default=300, ge=1)
    max_age_days: int = Field(default=7, ge=0, alias="maxAgeDays")
    free_threshold: float = Field(default=20.0, ge=0, le=100, alias="freeThreshold")


class ProvisionConfig(BaseModel):
    """Declarative desired state for a provisioning run."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    users: List[str] = Field(default_factory=list)
    default_password: Optional[str] = Field(default=None, alias="defaultPassword")
    min_memory_gb: int = Field(default=8, ge=0, alias="minMemoryGB")
    min_runtime_version: str = Field(default="4.0.0", alias="minRuntimeVersion")
    max_memory: str = Field(default="8Gi", alias="maxMemory")
    max_cpu: str = Field(default="4", alias="maxCpu")
    container_groups: Dict[str, List[str]] = Field(default_factory=dict, alias="containerGroups")
    mcp_enabled_services: List[str] = Field(
        default_factory=lambda: ["code-intelligence", "ai-assistant"],
        alias="mcpEnabledServices",
    )
    registry_mirrors: List[str] = Field(
        default_factory=lambda: ["docker.io", "quay.io", "registry.fedoraproject.org", "mcr.microsoft.com"],
        alias="registryMirrors",
    )
    log_directory: str = Field(default="/var/log/podman-provision", alias="logDirectory")

    log_level: str = Field(default="INFO", alias="logLevel")
    state_dir: str = Field(default="/etc/podman-provision", alias="stateDir")
    home_root: str = Field(default="/home", alias="homeRoot")
    certificate: CertificateConfig = Field(default_factory=CertificateConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    namespaced_groups: List[str] = Field(default_factory=lambda: ["mcp"], alias="namespacedGroups")
    volume_templates: List[str] = Field(
        default_factory=lambda: ["mcp-data", "ai-models", "sourcegraph-data", "powershell-modules"],
        alias="volumeTemplates",
    )
    network_templates: List[str] = Field(
        default_factory=lambda: ["mcp-net", "ai-net"],
        alias="networkTemplates",
    )
    dependency_label: str = Field(default="io.podprov.depends-on", alias="dependencyLabel")
    dependency_depth: int = Field(default=1, ge=0, alias="dependencyDepth")
    user_groups: List[str] = Field(default_factory=lambda: ["wheel"], alias="userGroups")
    user_shell: str = Field(default="/bin/bash", alias="userShell")
    yarn_version: str = Field(default="1.22.19", alias="yarnVersion")
    nvm_version: str = Field(default="v0.39.7", alias="nvmVersion")
    version_history: int = Field(default=5, ge=1, alias="versionHistory")
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)

    @field_validator("users", "mcp_enabled_services", "registry_mirrors", mode="before")
    @classmethod
    def coerce_str_items(cls, v):
        """YAML reads names such as 639016 as integers."""
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v]
        return v

    @field_validator("max_memory", "max_cpu", "min_runtime_version", mode="before")
    @classmethod
    def coerce_str(cls, v):
        """Accept bare numbers for string settings."""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("container_groups", mode="before")
    @classmethod
    def coerce_groups(cls, v):
        """Accept a whitespace separated string per group."""
        if isinstance(v, dict):
            return {
                str(name): images.split() if isinstance(images, str) else [str(i) for i in images or []]
                for name, images in v.items()
            }
        return v

    @field_validator("users")
    @classmethod
    def validate_users(cls, v):
        """Usernames must be unique and valid account names."""
        seen = set()
        for name in v:
            if not _USERNAME_RE.fullmatch(name):
                raise ValueError(f"Invalid username: {name!r}")
            if name in seen:
                raise ValueError(f"Duplicate username: {name}")
            seen.add(name)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("mcp_enabled_services")
    @classmethod
    def validate_services(cls, v):
        """Only known services can be enabled."""
        unknown = [s for s in v if s not in KNOWN_MCP_SERVICES]
        if unknown:
            raise ValueError(f"Unknown MCP services: {', '.join(unknown)}")
        return v

    @field_validator("max_memory")
    @classmethod
    def validate_max_memory(cls, v):
        """Memory ceiling must be a size."""
        parse_size(v)
        return v

    @field_validator("max_cpu")
    @classmethod
    def validate_max_cpu(cls, v):
        """CPU ceiling must be a positive number of CPUs."""
        if float(v) <= 0:
            raise ValueError("max_cpu must be positive")
        return v

    @model_validator(mode="after")
    def validate_templates(self):
        """Volume and network templates must not collide."""
        for label, names in (("volume", self.volume_templates), ("network", self.network_templates)):
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate {label} template names")
        return self

    def groups(self) -> List[ContainerGroup]:
        """Container groups in declared order."""
        return [
            ContainerGroup(name=name, images=list(images), namespaced=name in self.namespaced_groups)
            for name, images in self.container_groups.items()
        ]

    def image_references(self) -> List[str]:
        """All expanded image references across groups, without duplicates."""
        seen = set()
        refs = []
        for name, images in self.container_groups.items():
            for ref in images:
                expanded = expand_reference(name, ref, name in self.namespaced_groups)
                if expanded not in seen:
                    seen.add(expanded)
                    refs.append(expanded)
        return refs

    def home_for(self, username: str) -> Path:
        """Home directory path for a user."""
        return Path(self.home_root) / check_username(username)

    @property
    def quota_dir(self) -> Path:
        return Path(self.state_dir) / "quotas"

    @property
    def reports_dir(self) -> Path:
        return Path(self.log_directory) / "reports"

    @property
    def diagnostics_dir(self) -> Path:
        return Path(self.log_directory) / "diagnostics"

    @property
    def max_memory_bytes(self) -> int:
        return parse_size(self.max_memory)
