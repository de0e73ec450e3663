"""Container runtime abstraction."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from podprov.errors import HealthCheckError


logger = logging.getLogger(__name__)

LabelledKind = Literal["container", "volume", "network"]

OWNER_LABEL = "user"


def owner_labels(username: str) -> Dict[str, str]:
    """Labels that mark a resource as owned by a user."""
    return {OWNER_LABEL: username}


@dataclass
class ContainerStats:
    """Point-in-time resource usage of one container."""
    name: str
    cpu_percent: float = 0.0
    memory_bytes: int = 0


class RuntimeGateway(ABC):
    """Operations the provisioning engine needs from a container runtime.

    Reads (``image_id``, ``inspect``, ``list_by_label``...) never mutate.
    ``create_volume`` and ``create_network`` are idempotent: an existing
    resource is a no-op success.
    """

    @abstractmethod
    async def version(self) -> str:
        """Runtime version string."""

    @abstractmethod
    async def info(self) -> Dict[str, Any]:
        """Runtime host information."""

    @abstractmethod
    async def pull_image(self, ref: str) -> None:
        """Pull an image; raises on failure."""

    @abstractmethod
    async def image_id(self, ref: str) -> Optional[str]:
        """Content id of a local image, or None when it does not resolve."""

    @abstractmethod
    async def inspect(self, ref: str) -> Dict[str, Any]:
        """Full metadata of an image or container; raises on failure."""

    @abstractmethod
    async def run_trivial(self, ref: str) -> None:
        """Run a throwaway container from the image; raises on failure."""

    @abstractmethod
    async def image_labels(self, ref: str) -> Dict[str, str]:
        """Labels declared by an image."""

    @abstractmethod
    async def volume_exists(self, name: str) -> bool:
        """Check whether a volume exists."""

    @abstractmethod
    async def add_volume(self, name: str, labels: Dict[str, str]) -> None:
        """Create a volume unconditionally."""

    @abstractmethod
    async def network_exists(self, name: str) -> bool:
        """Check whether a network exists."""

    @abstractmethod
    async def add_network(self, name: str, labels: Dict[str, str]) -> None:
        """Create a network unconditionally."""

    @abstractmethod
    async def list_by_label(self, kind: LabelledKind, key: str, value: str) -> List[str]:
        """Identifiers of resources carrying ``key=value``."""

    @abstractmethod
    async def stop_container(self, container_id: str) -> None:
        """Stop a container."""

    @abstractmethod
    async def remove_container(self, container_id: str) -> None:
        """Remove a container."""

    @abstractmethod
    async def remove_volume(self, name: str) -> None:
        """Remove a volume."""

    @abstractmethod
    async def remove_network(self, name: str) -> None:
        """Remove a network."""

    @abstractmethod
    async def container_stats(self, container_ids: List[str]) -> List[ContainerStats]:
        """Resource usage of the given containers."""

    @abstractmethod
    async def container_states(self) -> Dict[str, str]:
        """State of every container, keyed by name."""

    @abstractmethod
    async def prune_images(self) -> None:
        """Remove all unused images."""

    @abstractmethod
    async def prune_volumes(self) -> None:
        """Remove all unused volumes."""

    @abstractmethod
    async def listing(self, kind: str) -> str:
        """Human readable listing for reports (containers, volumes, networks, stats)."""

    def for_user(self, username: str) -> "RuntimeGateway":
        """Gateway on the rootless storage of ``username``.

        Every resource a user owns lives in that user's storage, so per-user
        operations go through this view. The default shares one storage.
        """
        return self

    async def image_exists(self, ref: str) -> bool:
        """Check whether an image resolves locally."""
        return await self.image_id(ref) is not None

    async def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create a volume if absent. Returns True when it was created."""
        if await self.volume_exists(name):
            logger.debug(f"Volume {name} already exists")
            return False
        await self.add_volume(name, labels or {})
        return True

    async def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create a network if absent. Returns True when it was created."""
        if await self.network_exists(name):
            logger.debug(f"Network {name} already exists")
            return False
        await self.add_network(name, labels or {})
        return True

    async def health_check(self, ref: str) -> None:
        """Verify an image resolves, inspects cleanly and runs.

        Raises ``HealthCheckError`` naming the first stage that failed.
        """
        if await self.image_id(ref) is None:
            logger.error(f"Failed health check: {ref} not found")
            raise HealthCheckError(ref, "resolve", "no content id")

        try:
            await self.inspect(ref)
        except Exception as e:
            logger.error(f"Image verification failed: {ref} may be corrupt")
            raise HealthCheckError(ref, "inspect", str(e)) from e

        try:
            await self.run_trivial(ref)
        except Exception as e:
            logger.error(f"Container runtime test failed: {ref}")
            raise HealthCheckError(ref, "run", str(e)) from e

        logger.info(f"Container health check passed: {ref}")
