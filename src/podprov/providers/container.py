"""Container provider: reconciles one user's container environment."""

import json
import logging
import re
from io import StringIO
from typing import Dict, List, Optional, TYPE_CHECKING

from ruamel.yaml import YAML

from podprov.errors import ExhaustedError
from podprov.models.results import ContainerResult, ImageResult, Outcome, StepResult
from podprov.providers.base import BaseProvider, ProviderContext, ProviderStatus
from podprov.providers.home import HomeFiles
from podprov.runtime.gateway import RuntimeGateway, owner_labels
from podprov.utils.files import OWNER_ONLY

if TYPE_CHECKING:
    from podprov.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

_DEPENDENCY_SPLIT = re.compile(r"[,\s]+")


def volume_name(username: str, template: str) -> str:
    """Per-user volume name."""
    return f"{username}-{template}"


def network_name(username: str, template: str) -> str:
    """Per-user network name."""
    return f"{username}-{template}"


def socket_url(uid: int) -> str:
    """Rootless runtime socket of a user."""
    return f"unix:///run/user/{uid}/podman/podman.sock"


class _PullWalk:
    """State of one pass over the configured image groups."""

    def __init__(self, runtime: RuntimeGateway):
        self.runtime = runtime
        self.results: Dict[str, ImageResult] = {}
        # Shallowest depth each image was expanded at.
        self.expanded: Dict[str, int] = {}

    def ordered(self) -> List[ImageResult]:
        return list(self.results.values())


class ContainerProvider(BaseProvider):
    """Provider for a user's volumes, networks, images and integrations."""

    def __init__(self):
        """Initialize container provider."""
        self.context: Optional[ProviderContext] = None
        self.yaml = YAML()
        self.yaml.default_flow_style = False

    async def initialize(self, context: ProviderContext, registry: "ProviderRegistry") -> None:
        """Initialize provider with its collaborators."""
        self.context = context

    @property
    def config(self):
        return self.context.config

    @property
    def runtime(self):
        return self.context.runtime

    @property
    def executor(self):
        return self.context.executor

    async def status(self, username: str) -> ProviderStatus:
        """Check whether the user's volumes and networks exist."""
        try:
            runtime = self.runtime.for_user(username)
            present = []
            for template in self.config.volume_templates:
                present.append(await runtime.volume_exists(volume_name(username, template)))
            for template in self.config.network_templates:
                present.append(await runtime.network_exists(network_name(username, template)))

            if present and all(present):
                return ProviderStatus.PRESENT
            if any(present):
                return ProviderStatus.PARTIAL
            return ProviderStatus.ABSENT

        except Exception as e:
            logger.error(f"Error checking container environment of {username}: {e}")
            return ProviderStatus.ERROR

    async def present(self, username: str) -> ContainerResult:
        """Ensure the user's container environment is provisioned."""
        return await self.reconcile(username)

    async def validate(self, username: str) -> bool:
        """Validate that the user account exists."""
        if not await self.context.accounts.exists(username):
            logger.error(f"Account {username} does not exist")
            return False
        return True

    async def reconcile(self, username: str) -> ContainerResult:
        """Provision volumes, networks, images and integration config for a user.

        Everything is created in the user's own runtime storage. Volume or
        network failures abort the run. Image failures are recorded per
        image. Integration config failures are warnings.
        """
        result = ContainerResult(username=username)
        logger.info(f"Reconciling container environment of {username}")
        runtime = self.runtime.for_user(username)

        for name, step in (("volumes", self._volumes), ("networks", self._networks)):
            try:
                result.steps.append(await step(username, runtime))
            except Exception as e:
                logger.error(f"Container provisioning of {username} aborted at {name}: {e}")
                result.steps.append(StepResult(name=name, outcome=Outcome.FAILED, message=str(e)))
                result.aborted = True
                return result

        result.images.extend(await self.pull_groups(runtime))

        for name, step in (("editor", self._editor), ("service-config", self._service_config)):
            try:
                result.steps.append(await step(username))
            except Exception as e:
                logger.warning(f"Could not write {name} config for {username}: {e}")
                result.steps.append(StepResult(name=name, outcome=Outcome.WARNING, message=str(e)))

        return result

    async def _volumes(self, username: str, runtime: RuntimeGateway) -> StepResult:
        labels = owner_labels(username)
        created = []
        for template in self.config.volume_templates:
            name = volume_name(username, template)
            if await self.executor.execute(
                lambda name=name: runtime.create_volume(name, labels), f"create volume {name}"
            ):
                logger.info(f"Created volume {name}")
                created.append(name)

        outcome = Outcome.CHANGED if created else Outcome.UNCHANGED
        return StepResult(name="volumes", outcome=outcome, message=", ".join(created))

    async def _networks(self, username: str, runtime: RuntimeGateway) -> StepResult:
        labels = owner_labels(username)
        created = []
        for template in self.config.network_templates:
            name = network_name(username, template)
            if await self.executor.execute(
                lambda name=name: runtime.create_network(name, labels), f"create network {name}"
            ):
                logger.info(f"Created network {name}")
                created.append(name)

        outcome = Outcome.CHANGED if created else Outcome.UNCHANGED
        return StepResult(name="networks", outcome=outcome, message=", ".join(created))

    async def pull_groups(self, runtime: Optional[RuntimeGateway] = None) -> List[ImageResult]:
        """Pull and verify every configured image, one at a time.

        Each image is pulled at most once. A configured image owns its
        result even when it was first reached as a dependency, and its own
        dependencies are resolved from the top of the depth budget.
        """
        walk = _PullWalk(runtime or self.runtime)
        for group in self.config.groups():
            logger.info(f"Processing {group.name} containers")
            for ref in group.references():
                await self._pull_tree(walk, ref, group.name, depth=0)
        return walk.ordered()

    async def _pull_tree(self, walk: "_PullWalk", ref: str, group: str, depth: int,
                         required_by: Optional[str] = None) -> None:
        image = walk.results.get(ref)
        if image is None:
            image = await self.pull_image(ref, group, required_by, runtime=walk.runtime)
            walk.results[ref] = image
        elif depth == 0 and image.required_by is not None:
            logger.debug(f"{ref} was pulled as a dependency of {image.required_by}, filing it under {group}")
            image = image.model_copy(update={"group": group, "required_by": None})
            walk.results[ref] = image

        if image.outcome == Outcome.FAILED or depth >= self.config.dependency_depth:
            return
        if walk.expanded.get(ref, depth + 1) <= depth:
            return
        walk.expanded[ref] = depth

        for dependency in await self.dependencies(ref, runtime=walk.runtime):
            await self._pull_tree(walk, dependency, group, depth + 1, required_by=ref)

    async def pull_image(self, ref: str, group: str, required_by: Optional[str] = None,
                         runtime: Optional[RuntimeGateway] = None) -> ImageResult:
        """Pull an image unless present, then health check it."""
        runtime = runtime or self.runtime

        async def pull() -> bool:
            if await runtime.image_exists(ref):
                return False
            await runtime.pull_image(ref)
            return True

        try:
            pulled = await self.executor.execute(pull, f"pull {ref}")
        except ExhaustedError as e:
            logger.error(f"Failed to pull {ref}: {e}")
            return ImageResult(ref=ref, group=group, outcome=Outcome.FAILED, message=str(e),
                               required_by=required_by)

        if pulled:
            logger.info(f"Pulled {ref}")

        try:
            await self.executor.execute(lambda: runtime.health_check(ref), f"health check {ref}")
        except ExhaustedError as e:
            logger.warning(f"Image {ref} failed its health check: {e}")
            return ImageResult(ref=ref, group=group, outcome=Outcome.WARNING, message=str(e),
                               required_by=required_by)

        outcome = Outcome.CHANGED if pulled else Outcome.UNCHANGED
        return ImageResult(ref=ref, group=group, outcome=outcome, required_by=required_by)

    async def dependencies(self, ref: str, runtime: Optional[RuntimeGateway] = None) -> List[str]:
        """Image references declared in the dependency label of an image."""
        try:
            labels = await (runtime or self.runtime).image_labels(ref)
        except Exception as e:
            logger.warning(f"Could not read dependencies of {ref}: {e}")
            return []

        raw = labels.get(self.config.dependency_label, "") or ""
        return [dep for dep in _DEPENDENCY_SPLIT.split(raw) if dep]

    async def _editor(self, username: str) -> StepResult:
        uid = await self.context.accounts.uid(username)
        settings = {
            "remote.containers.defaultExtensions": [
                "ms-vscode.cpptools",
                "ms-python.python",
                "golang.go",
                "ms-vscode.powershell",
            ],
            "dev.containers.dockerPath": "podman",
            "dev.containers.environment": {
                "DOCKER_HOST": socket_url(uid),
                "POWERSHELL_TELEMETRY_OPTOUT": "1",
                "POWERSHELL_UPDATECHECK": "Off",
            },
            "terminal.integrated.defaultProfile.linux": "bash",
            "terminal.integrated.profiles.linux": {
                "bash": {"path": self.config.user_shell},
                "pwsh": {"path": "/usr/bin/pwsh", "icon": "terminal-powershell"},
            },
        }
        path = self.config.home_for(username) / ".config" / "Code" / "User" / "settings.json"
        files = HomeFiles(self.context.accounts, username, self.config.home_for(username))
        changed = await files.write(path, json.dumps(settings, indent=2) + "\n", OWNER_ONLY)
        return StepResult(name="editor", outcome=Outcome.CHANGED if changed else Outcome.UNCHANGED)

    def service_config(self, username: str, uid: int) -> dict:
        """Service discovery document for a user."""
        return {
            "version": "1",
            "storage": {"type": "podman", "settings": {"socket": socket_url(uid)}},
            "volumes": {
                template: volume_name(username, template) for template in self.config.volume_templates
            },
            "networks": [network_name(username, t) for t in self.config.network_templates],
            "resource_limits": {"memory": self.config.max_memory, "cpu": self.config.max_cpu},
            "services": {"enabled": list(self.config.mcp_enabled_services)},
        }

    async def _service_config(self, username: str) -> StepResult:
        uid = await self.context.accounts.uid(username)
        stream = StringIO()
        self.yaml.dump(self.service_config(username, uid), stream)

        path = self.config.home_for(username) / ".config" / "mcp" / "config.yaml"
        files = HomeFiles(self.context.accounts, username, self.config.home_for(username))
        changed = await files.write(path, stream.getvalue(), OWNER_ONLY)
        return StepResult(name="service-config", outcome=Outcome.CHANGED if changed else Outcome.UNCHANGED)
