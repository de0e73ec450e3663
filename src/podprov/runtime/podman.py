"""Podman implementation of the runtime gateway."""

import asyncio
import json
import logging
import pwd
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from podprov.errors import ProvisionError, RuntimeCommandError
from podprov.runtime.gateway import ContainerStats, LabelledKind, RuntimeGateway
from podprov.utils.systemd import CommandResult, run_command, user_command
from podprov.utils.units import parse_percent, parse_size


logger = logging.getLogger(__name__)

_LIST_COMMANDS = {
    "container": (["ps", "-a"], "{{.ID}}"),
    "volume": (["volume", "ls"], "{{.Name}}"),
    "network": (["network", "ls"], "{{.Name}}"),
}

_LISTINGS = {
    "containers": ["ps", "-a"],
    "volumes": ["volume", "ls"],
    "networks": ["network", "ls"],
    "stats": ["stats", "--no-stream", "--all"],
}


class PodmanGateway(RuntimeGateway):
    """Drives the podman CLI.

    Without ``user`` podman runs as the calling process. A gateway from
    ``for_user`` runs podman as that account inside its systemd user
    session, on the same rootless storage its podman.socket serves.
    """

    def __init__(self, binary: str = "podman", pull_timeout: int = 600, command_timeout: int = 120,
                 user: Optional[str] = None):
        """Initialize podman gateway."""
        self.binary = binary
        self.pull_timeout = pull_timeout
        self.command_timeout = command_timeout
        self.user = user

    def for_user(self, username: str) -> "PodmanGateway":
        return PodmanGateway(self.binary, self.pull_timeout, self.command_timeout, user=username)

    async def _command(self, args: Sequence[str]) -> List[str]:
        cmd = [self.binary, *args]
        if self.user is None:
            return cmd
        try:
            entry = await asyncio.to_thread(pwd.getpwnam, self.user)
        except KeyError as e:
            raise ProvisionError(f"Account {self.user} does not exist") from e
        return user_command(self.user, entry.pw_uid, cmd)

    async def _podman(self, *args: str, check: bool = True, timeout: Optional[int] = None) -> CommandResult:
        """Run a podman subcommand, mapping failures to RuntimeCommandError."""
        cmd = await self._command(args)
        try:
            return await run_command(cmd, check=check, timeout=timeout or self.command_timeout)
        except subprocess.CalledProcessError as e:
            raise RuntimeCommandError(cmd, e.returncode, e.stderr or "") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeCommandError(cmd, -1, f"timed out after {e.timeout}s") from e
        except FileNotFoundError as e:
            raise RuntimeCommandError(cmd, 127, f"{self.binary} not found") from e

    async def _json(self, *args: str) -> Any:
        result = await self._podman(*args)
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise RuntimeCommandError([self.binary, *args], 0, f"invalid JSON output: {e}") from e

    async def version(self) -> str:
        data = await self._json("version", "--format", "json")
        client = data.get("Client") or data
        return str(client.get("Version", "")).strip()

    async def info(self) -> Dict[str, Any]:
        return await self._json("info", "--format", "json") or {}

    async def pull_image(self, ref: str) -> None:
        logger.info(f"Pulling: {ref}")
        await self._podman("pull", ref, timeout=self.pull_timeout)

    async def image_id(self, ref: str) -> Optional[str]:
        result = await self._podman("image", "inspect", "--format", "{{.Id}}", ref, check=False)
        image_id = result.stdout.strip()
        if result.returncode != 0 or not image_id:
            return None
        return image_id

    async def inspect(self, ref: str) -> Dict[str, Any]:
        data = await self._json("inspect", "--format", "json", ref)
        if not data:
            raise RuntimeCommandError([self.binary, "inspect", ref], 0, "empty inspect output")
        return data[0] if isinstance(data, list) else data

    async def run_trivial(self, ref: str) -> None:
        await self._podman("run", "--rm", "--pull=never", ref, "echo", "Container health check")

    async def image_labels(self, ref: str) -> Dict[str, str]:
        data = await self._json("image", "inspect", "--format", "json", ref)
        image = data[0] if isinstance(data, list) and data else (data or {})
        labels = image.get("Labels") or (image.get("Config") or {}).get("Labels") or {}
        return {str(k): str(v) for k, v in labels.items()}

    async def volume_exists(self, name: str) -> bool:
        result = await self._podman("volume", "exists", name, check=False)
        return result.returncode == 0

    async def add_volume(self, name: str, labels: Dict[str, str]) -> None:
        await self._podman("volume", "create", *self._label_args(labels), name)

    async def network_exists(self, name: str) -> bool:
        result = await self._podman("network", "exists", name, check=False)
        return result.returncode == 0

    async def add_network(self, name: str, labels: Dict[str, str]) -> None:
        await self._podman("network", "create", *self._label_args(labels), name)

    async def list_by_label(self, kind: LabelledKind, key: str, value: str) -> List[str]:
        args, fmt = _LIST_COMMANDS[kind]
        result = await self._podman(*args, "--filter", f"label={key}={value}", "--format", fmt)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def stop_container(self, container_id: str) -> None:
        await self._podman("stop", container_id)

    async def remove_container(self, container_id: str) -> None:
        await self._podman("rm", "--ignore", container_id)

    async def remove_volume(self, name: str) -> None:
        await self._podman("volume", "rm", "-f", name)

    async def remove_network(self, name: str) -> None:
        await self._podman("network", "rm", "-f", name)

    async def container_stats(self, container_ids: List[str]) -> List[ContainerStats]:
        if not container_ids:
            return []

        result = await self._podman(
            "stats", "--no-stream", "--format", "{{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}", *container_ids
        )
        stats = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            name, cpu, mem = parts[:3]
            try:
                memory = parse_size(mem.split("/")[0].strip())
            except ValueError:
                memory = 0
            try:
                cpu_percent = parse_percent(cpu)
            except ValueError:
                cpu_percent = 0.0
            stats.append(ContainerStats(name=name.strip(), cpu_percent=cpu_percent, memory_bytes=memory))
        return stats

    async def container_states(self) -> Dict[str, str]:
        result = await self._podman("ps", "-a", "--format", "{{.Names}}\t{{.State}}")
        states = {}
        for line in result.stdout.splitlines():
            if "\t" in line:
                name, state = line.split("\t", 1)
                states[name.strip()] = state.strip().lower()
        return states

    async def prune_images(self) -> None:
        await self._podman("system", "prune", "-af", timeout=self.pull_timeout)

    async def prune_volumes(self) -> None:
        await self._podman("volume", "prune", "-f")

    async def listing(self, kind: str) -> str:
        args = _LISTINGS.get(kind)
        if args is None:
            raise ValueError(f"Unknown listing kind: {kind}")
        result = await self._podman(*args, check=False)
        return result.stdout if result.returncode == 0 else result.stderr

    @staticmethod
    def _label_args(labels: Dict[str, str]) -> List[str]:
        args = []
        for key, value in labels.items():
            args.extend(["--label", f"{key}={value}"])
        return args
