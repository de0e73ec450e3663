"""Version snapshots, update checks and image security scans."""

import asyncio
import logging
import platform
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from podprov.models.config import ProvisionConfig, check_username
from podprov.models.version import (
    NOT_FOUND,
    ImageSnapshot,
    SecurityReport,
    SnapshotDiff,
    SystemSnapshot,
    UpdateCheck,
    UpdateStatus,
    VersionSnapshot,
)
from podprov.runtime.accounts import AccountGateway
from podprov.runtime.gateway import RuntimeGateway
from podprov.utils.files import write_if_changed
from podprov.utils.retry import RetryExecutor


logger = logging.getLogger(__name__)

NVM_RELEASES_URL = "https://api.github.com/repos/nvm-sh/nvm/releases/latest"
UNKNOWN = "unknown"

STATE_FILE_MODE = 0o644
ROOT_USERS = ("", "0", "root")


def scan_file_stem(ref: str) -> str:
    """File name stem for the scan reports of an image."""
    return ref.replace("/", "_")


def runs_as_root(user: str) -> bool:
    """An unset user, uid 0 or root (with any group) means root."""
    return user.split(":")[0].strip() in ROOT_USERS


def _flatten(snapshot: VersionSnapshot) -> Dict[str, str]:
    system = snapshot.system
    flat = {
        "runtime_version": system.runtime_version,
        "kernel_version": system.kernel_version,
        "distro": system.distro,
    }
    flat.update({f"toolchains.{name}": version for name, version in system.toolchains.items()})
    flat.update({f"images.{ref}": image_id for ref, image_id in snapshot.images.images.items()})
    return flat


class VersionTracker:
    """Records system and image versions and detects drift.

    ``track`` overwrites ``version.json`` and ``container-versions.json``
    and also appends the snapshot to a bounded history used by ``diff``.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        runtime: RuntimeGateway,
        accounts: AccountGateway,
        executor: Optional[RetryExecutor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        system_root: Path = Path("/"),
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize version tracker."""
        self.config = config
        self.runtime = runtime
        self.accounts = accounts
        self.executor = executor or RetryExecutor(config.retry.max_attempts, config.retry.delay)
        self.transport = transport
        self.system_root = Path(system_root)
        self.clock = clock

        state_dir = Path(config.state_dir)
        self.version_file = state_dir / "version.json"
        self.container_versions_file = state_dir / "container-versions.json"
        self.history_dir = state_dir / "history"
        self.scan_dir = state_dir / "security-scans"

    async def latest_nvm(self) -> str:
        """Latest nvm release tag, or ``unknown`` when it cannot be fetched."""
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=10.0) as client:
                response = await client.get(NVM_RELEASES_URL, headers={"Accept": "application/vnd.github+json"})
                response.raise_for_status()
                return str(response.json()["tag_name"])
        except httpx.HTTPError as e:
            logger.debug(f"Could not fetch latest nvm release: {e}")
        except (KeyError, ValueError) as e:
            logger.debug(f"Unexpected nvm release payload: {e}")
        return UNKNOWN

    def _distro(self) -> str:
        os_release = self.system_root / "etc" / "os-release"
        if not os_release.exists():
            return UNKNOWN
        for line in os_release.read_text().splitlines():
            if line.startswith("PRETTY_NAME="):
                return line.split("=", 1)[1].strip().strip('"')
        return UNKNOWN

    async def _user_tool_version(self, username: str, command: str) -> str:
        result = await self.accounts.run_as(username, ["bash", "-lc", f"{command} --version"], check=False)
        output = result.stdout.strip()
        return output.splitlines()[0] if result.returncode == 0 and output else UNKNOWN

    async def system_snapshot(self, username: Optional[str] = None) -> SystemSnapshot:
        """Capture runtime, kernel, distro and toolchain versions."""
        try:
            runtime_version = await self.runtime.version()
        except Exception as e:
            logger.warning(f"Could not read runtime version: {e}")
            runtime_version = UNKNOWN

        toolchains = {
            "nvm": await self.latest_nvm(),
            "yarn": self.config.yarn_version,
        }
        if username:
            toolchains["node"] = await self._user_tool_version(username, "node")

        return SystemSnapshot(
            timestamp=self.clock(),
            runtime_version=runtime_version,
            kernel_version=platform.release(),
            distro=await asyncio.to_thread(self._distro),
            toolchains=toolchains,
        )

    async def image_snapshot(self, username: Optional[str] = None) -> ImageSnapshot:
        """Capture the content id of every configured image.

        With a username the ids are read from that user's image storage.
        """
        runtime = self.runtime.for_user(username) if username else self.runtime
        images = {}
        for ref in self.config.image_references():
            images[ref] = await runtime.image_id(ref) or NOT_FOUND
        return ImageSnapshot(timestamp=self.clock(), images=images)

    async def track(self, username: Optional[str] = None) -> VersionSnapshot:
        """Capture and persist a new snapshot."""
        if username:
            check_username(username)
        snapshot = VersionSnapshot(
            system=await self.system_snapshot(username),
            images=await self.image_snapshot(username),
        )

        await asyncio.to_thread(
            write_if_changed, self.version_file, snapshot.system.model_dump_json(indent=2) + "\n", STATE_FILE_MODE
        )
        await asyncio.to_thread(
            write_if_changed, self.container_versions_file,
            snapshot.images.model_dump_json(indent=2) + "\n", STATE_FILE_MODE,
        )
        await asyncio.to_thread(self._append_history, snapshot)

        logger.info(f"Recorded versions of {len(snapshot.images.images)} image(s)")
        return snapshot

    def _append_history(self, snapshot: VersionSnapshot) -> None:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        entries = self.history()
        sequence = int(entries[-1].name.split("-")[1]) + 1 if entries else 1
        stamp = snapshot.system.timestamp.strftime("%Y%m%d-%H%M%S")
        path = self.history_dir / f"snapshot-{sequence:06d}-{stamp}.json"
        write_if_changed(path, snapshot.model_dump_json(indent=2) + "\n", STATE_FILE_MODE)

        entries = self.history()
        for old in entries[:-self.config.version_history]:
            old.unlink()
            logger.debug(f"Pruned snapshot {old.name}")

    def history(self) -> List[Path]:
        """History entries, oldest first."""
        if not self.history_dir.exists():
            return []
        return sorted(self.history_dir.glob("snapshot-*.json"))

    async def print_versions(self) -> Tuple[Optional[SystemSnapshot], Optional[ImageSnapshot]]:
        """Latest persisted system and image snapshots."""
        def _load():
            system = images = None
            if self.version_file.exists():
                system = SystemSnapshot.model_validate_json(self.version_file.read_text())
            if self.container_versions_file.exists():
                images = ImageSnapshot.model_validate_json(self.container_versions_file.read_text())
            return system, images

        return await asyncio.to_thread(_load)

    async def check_updates(self) -> List[UpdateCheck]:
        """Compare every configured image with a freshly pulled copy."""
        checks = []
        for ref in self.config.image_references():
            current = await self.runtime.image_id(ref)
            try:
                await self.executor.execute(lambda ref=ref: self.runtime.pull_image(ref), f"pull {ref}")
            except Exception as e:
                logger.warning(f"Could not pull {ref}: {e}")
            latest = await self.runtime.image_id(ref)

            if latest is None:
                status = UpdateStatus.NOT_FOUND
            elif current != latest:
                status = UpdateStatus.UPDATE_AVAILABLE
                logger.info(f"Update available for {ref}")
            else:
                status = UpdateStatus.UP_TO_DATE
            checks.append(UpdateCheck(ref=ref, current=current, latest=latest, status=status))

        if not any(c.status == UpdateStatus.UPDATE_AVAILABLE for c in checks):
            logger.info("All containers are up to date")
        return checks

    async def scan_security(self, ref: str) -> SecurityReport:
        """Extract environment and ports of an image and flag risky defaults."""
        logger.info(f"Scanning {ref} for security issues")
        data = await self.runtime.inspect(ref)
        image_config = data.get("Config") or {}
        host_config = data.get("HostConfig") or {}

        env = [str(item) for item in image_config.get("Env") or []]
        ports = sorted(str(port) for port in (image_config.get("ExposedPorts") or {}))
        user = str(image_config.get("User") or "")
        privileged = bool(host_config.get("Privileged", False))

        warnings = []
        if runs_as_root(user):
            warnings.append(f"Container {ref} runs as root")
        if privileged:
            warnings.append(f"Container {ref} runs in privileged mode")
        for warning in warnings:
            logger.warning(warning)

        stem = scan_file_stem(ref)
        env_file = self.scan_dir / f"{stem}_env.txt"
        ports_file = self.scan_dir / f"{stem}_ports.txt"
        await asyncio.to_thread(write_if_changed, env_file, "".join(f"{e}\n" for e in env), STATE_FILE_MODE)
        await asyncio.to_thread(write_if_changed, ports_file, "".join(f"{p}\n" for p in ports), STATE_FILE_MODE)

        return SecurityReport(
            ref=ref,
            env=env,
            ports=ports,
            user=user,
            privileged=privileged,
            warnings=warnings,
            env_file=str(env_file),
            ports_file=str(ports_file),
        )

    async def diff(self) -> SnapshotDiff:
        """Changes between the two most recent snapshots."""
        def _load(path: Path) -> VersionSnapshot:
            return VersionSnapshot.model_validate_json(path.read_text())

        entries = await asyncio.to_thread(self.history)
        if not entries:
            return SnapshotDiff()

        current = await asyncio.to_thread(_load, entries[-1])
        if len(entries) < 2:
            return SnapshotDiff(current=current.system.timestamp)

        previous = await asyncio.to_thread(_load, entries[-2])
        old, new = _flatten(previous), _flatten(current)
        changes = {
            key: (old.get(key), new.get(key))
            for key in sorted(set(old) | set(new))
            if old.get(key) != new.get(key)
        }
        return SnapshotDiff(previous=previous.system.timestamp, current=current.system.timestamp, changes=changes)
