"""Shared fixtures: in-memory runtime and account gateways."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import httpx
import pytest

from podprov.errors import RuntimeCommandError
from podprov.models.config import ProvisionConfig
from podprov.provision.main import ProvisionApp
from podprov.runtime.accounts import AccountGateway, PasswordState
from podprov.runtime.gateway import ContainerStats, RuntimeGateway
from podprov.utils.systemd import CommandResult


GIB = 1024 ** 3


class FakeRuntime(RuntimeGateway):
    """Container runtime kept in dictionaries; mutations are recorded in ``calls``."""

    def __init__(self):
        self.runtime_version = "4.9.3"
        self.host_info: Dict[str, Any] = {"host": {"memTotal": 16 * GIB}}
        self.images: Dict[str, str] = {}
        self.remote: Dict[str, str] = {}
        self.labels: Dict[str, Dict[str, str]] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.unhealthy: set = set()
        self.volumes: Dict[str, Dict[str, str]] = {}
        self.networks: Dict[str, Dict[str, str]] = {}
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.fail_volumes = False
        self.calls: List[tuple] = []
        self.scoped_users: List[str] = []

    def add_container(self, container_id: str, user: str, state: str = "running",
                      cpu: float = 0.0, memory: int = 0):
        self.containers[container_id] = {
            "labels": {"user": user}, "state": state, "cpu": cpu, "memory": memory,
        }

    def for_user(self, username: str) -> "FakeRuntime":
        self.scoped_users.append(username)
        return self

    async def version(self) -> str:
        return self.runtime_version

    async def info(self) -> Dict[str, Any]:
        return self.host_info

    async def pull_image(self, ref: str) -> None:
        self.calls.append(("pull", ref))
        if ref not in self.remote:
            raise RuntimeCommandError(["podman", "pull", ref], 125, "manifest unknown")
        self.images[ref] = self.remote[ref]

    async def image_id(self, ref: str) -> Optional[str]:
        return self.images.get(ref)

    async def inspect(self, ref: str) -> Dict[str, Any]:
        if ref not in self.images:
            raise RuntimeCommandError(["podman", "inspect", ref], 125, "no such object")
        return self.metadata.get(ref, {"Id": self.images[ref], "Config": {}})

    async def run_trivial(self, ref: str) -> None:
        self.calls.append(("run", ref))
        if ref in self.unhealthy:
            raise RuntimeCommandError(["podman", "run", "--rm", ref, "echo"], 127, "exec failed")

    async def image_labels(self, ref: str) -> Dict[str, str]:
        return self.labels.get(ref, {})

    async def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    async def add_volume(self, name: str, labels: Dict[str, str]) -> None:
        self.calls.append(("volume-create", name))
        if self.fail_volumes:
            raise RuntimeCommandError(["podman", "volume", "create", name], 125, "no space left")
        self.volumes[name] = dict(labels)

    async def network_exists(self, name: str) -> bool:
        return name in self.networks

    async def add_network(self, name: str, labels: Dict[str, str]) -> None:
        self.calls.append(("network-create", name))
        self.networks[name] = dict(labels)

    async def list_by_label(self, kind: str, key: str, value: str) -> List[str]:
        if kind == "container":
            return [cid for cid, c in self.containers.items() if c["labels"].get(key) == value]
        store = self.volumes if kind == "volume" else self.networks
        return [name for name, labels in store.items() if labels.get(key) == value]

    async def stop_container(self, container_id: str) -> None:
        self.calls.append(("stop", container_id))
        self.containers[container_id]["state"] = "exited"

    async def remove_container(self, container_id: str) -> None:
        self.calls.append(("rm", container_id))
        self.containers.pop(container_id, None)

    async def remove_volume(self, name: str) -> None:
        self.calls.append(("volume-rm", name))
        self.volumes.pop(name, None)

    async def remove_network(self, name: str) -> None:
        self.calls.append(("network-rm", name))
        self.networks.pop(name, None)

    async def container_stats(self, container_ids: List[str]) -> List[ContainerStats]:
        return [
            ContainerStats(name=cid, cpu_percent=self.containers[cid]["cpu"],
                           memory_bytes=self.containers[cid]["memory"])
            for cid in container_ids
        ]

    async def container_states(self) -> Dict[str, str]:
        return {cid: c["state"] for cid, c in self.containers.items()}

    async def prune_images(self) -> None:
        self.calls.append(("prune-images",))

    async def prune_volumes(self) -> None:
        self.calls.append(("prune-volumes",))

    async def listing(self, kind: str) -> str:
        return f"{kind} listing\n"


class FakeAccounts(AccountGateway):
    """OS accounts kept in memory; mutations are recorded in ``calls``."""

    def __init__(self, home_root: Path):
        self.home_root = Path(home_root)
        self.users: Dict[str, int] = {}
        self.passwords: Dict[str, str] = {}
        self.expired: set = set()
        self.preset_passwords: set = set()
        self.commands: set = set()
        self.failing: List[str] = []
        self.services: Dict[tuple, str] = {}
        self.lingering: set = set()
        self.socket_activates = True
        self.disk: Dict[str, int] = {}
        self.calls: List[tuple] = []

    def add_user(self, username: str, has_password: bool = True):
        self.users[username] = 1000 + len(self.users)
        if has_password:
            self.preset_passwords.add(username)
        (self.home_root / username).mkdir(parents=True, exist_ok=True)

    async def exists(self, username: str) -> bool:
        return username in self.users

    async def uid(self, username: str) -> int:
        return self.users[username]

    async def create(self, username: str, shell: str, groups: Sequence[str]) -> None:
        self.calls.append(("create", username))
        self.add_user(username, has_password=False)

    async def set_password(self, username: str, password: str) -> None:
        self.calls.append(("set-password", username))
        self.passwords[username] = password

    async def expire_password(self, username: str) -> None:
        self.calls.append(("expire-password", username))
        self.expired.add(username)

    async def password_state(self, username: str) -> PasswordState:
        if username in self.expired:
            return PasswordState.EXPIRED
        if username in self.passwords or username in self.preset_passwords:
            return PasswordState.SET
        return PasswordState.UNSET

    async def delete(self, username: str) -> None:
        self.calls.append(("delete", username))
        self.users.pop(username, None)
        self.passwords.pop(username, None)
        self.expired.discard(username)
        self.preset_passwords.discard(username)

    async def chown(self, path: Path, username: str, recursive: bool = False) -> None:
        pass

    async def run_as(self, username: str, cmd: List[str], check: bool = True,
                     timeout: Optional[int] = None) -> CommandResult:
        script = " ".join(cmd)
        if script.startswith("bash -lc command -v "):
            found = script.rsplit(" ", 1)[1] in self.commands
            return CommandResult(returncode=0 if found else 1)

        self.calls.append(("run_as", username, script))
        if any(pattern in script for pattern in self.failing):
            if check:
                raise RuntimeCommandError(cmd, 1, "command failed")
            return CommandResult(returncode=1, stderr="command failed")

        if "nvm install" in script:
            self.commands.update({"node", "yarn"})
        if "podman-compose" in script:
            self.commands.add("podman-compose")
        if "node --version" in script:
            return CommandResult(returncode=0, stdout="v20.11.0\n")
        return CommandResult(returncode=0)

    async def service_state(self, username: str, unit: str) -> str:
        return self.services.get((username, unit), "inactive")

    async def enable_service(self, username: str, unit: str) -> None:
        self.calls.append(("enable", username, unit))
        if self.socket_activates:
            self.services[(username, unit)] = "active"

    async def disable_service(self, username: str, unit: str) -> None:
        self.calls.append(("disable", username, unit))
        self.services[(username, unit)] = "inactive"

    async def set_linger(self, username: str, enable: bool = True) -> None:
        self.calls.append(("linger", username, enable))
        if enable:
            self.lingering.add(username)
        else:
            self.lingering.discard(username)

    async def linger_enabled(self, username: str) -> bool:
        return username in self.lingering

    async def install_packages(self, packages: Sequence[str]) -> None:
        self.calls.append(("install", tuple(packages)))
        self.commands.add("node")

    async def run_privileged(self, cmd: List[str], timeout: Optional[int] = None) -> CommandResult:
        script = " ".join(cmd)
        self.calls.append(("privileged", script))
        if "yarn" in script:
            self.commands.add("yarn")
        return CommandResult(returncode=0)

    async def disk_usage(self, path: Path) -> int:
        return self.disk.get(str(path), 0)


def make_config(tmp_path: Path, **overrides) -> ProvisionConfig:
    """Configuration rooted in a temporary directory."""
    certificate = tmp_path / "certs" / "zscaler.crt"
    if not certificate.exists():
        certificate.parent.mkdir(parents=True, exist_ok=True)
        certificate.write_text("-----BEGIN CERTIFICATE-----\nfake\n-----END CERTIFICATE-----\n")

    values = {
        "users": ["alice"],
        "default_password": "ChangeMe123!",
        "container_groups": {"base": ["python:3.9-slim"]},
        "home_root": str(tmp_path / "home"),
        "state_dir": str(tmp_path / "state"),
        "log_directory": str(tmp_path / "log"),
        "certificate": {"local_path": str(certificate)},
        "retry": {"max_attempts": 3, "delay": 0},
    }
    values.update(overrides)
    return ProvisionConfig.model_validate(values)


def nvm_transport(status_code: int = 200, tag: str = "v0.40.1") -> httpx.MockTransport:
    """Stand-in for the GitHub releases API."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"tag_name": tag})

    return httpx.MockTransport(handler)


@pytest.fixture
def config_factory(tmp_path):
    """Build configurations with overridden settings."""
    def factory(**overrides) -> ProvisionConfig:
        return make_config(tmp_path, **overrides)

    return factory


@pytest.fixture
def transport_factory():
    return nvm_transport


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def runtime():
    fake = FakeRuntime()
    fake.remote["python:3.9-slim"] = "sha256:python39"
    return fake


@pytest.fixture
def accounts(tmp_path):
    return FakeAccounts(tmp_path / "home")


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def system_root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def app(config, runtime, accounts, sleep, system_root):
    return ProvisionApp(
        config,
        runtime=runtime,
        accounts=accounts,
        sleep=sleep,
        system_root=system_root,
        transport=nvm_transport(),
    )
