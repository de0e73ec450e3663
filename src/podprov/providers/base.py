"""Base provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TYPE_CHECKING

from podprov.models.config import ProvisionConfig
from podprov.runtime.accounts import AccountGateway
from podprov.runtime.gateway import RuntimeGateway
from podprov.utils.retry import RetryExecutor

if TYPE_CHECKING:
    from podprov.providers.registry import ProviderRegistry


class ProviderStatus(Enum):
    """Provider resource status."""
    PRESENT = "present"
    PARTIAL = "partial"
    ABSENT = "absent"
    UNKNOWN = "unknown"
    ERROR = "error"


@dataclass
class ProviderContext:
    """Collaborators injected into every provider."""
    config: ProvisionConfig
    runtime: RuntimeGateway
    accounts: AccountGateway
    executor: RetryExecutor
    system_root: Path = Path("/")
    clock: Callable[[], datetime] = field(default=datetime.now)

    def system_path(self, path: str) -> Path:
        """Resolve an absolute system path below ``system_root``."""
        return self.system_root / str(path).lstrip("/")


class BaseProvider(ABC):
    """Base provider interface that all providers must implement."""

    @abstractmethod
    async def initialize(self, context: ProviderContext, registry: "ProviderRegistry") -> None:
        """Initialize the provider with its collaborators."""
        pass

    @abstractmethod
    async def status(self, target: str) -> ProviderStatus:
        """Check the current status of a target."""
        pass

    @abstractmethod
    async def present(self, target: str) -> Any:
        """Converge the target to its desired state."""
        pass

    @abstractmethod
    async def validate(self, target: str) -> bool:
        """Validate that the target can be reconciled."""
        pass
