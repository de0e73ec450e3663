"""OS account and per-user service management."""

import asyncio
import logging
import os
import pwd
import subprocess
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from podprov.errors import RuntimeCommandError
from podprov.utils.systemd import CommandResult, LoginDBus, run_command, user_command


logger = logging.getLogger(__name__)

LINGER_DIR = Path("/var/lib/systemd/linger")

# passwd -S status of an account that never had a usable password
_NO_PASSWORD_STATUSES = ("L", "LK", "NP")


class PasswordState(str, Enum):
    """Password lifecycle of an account."""
    UNSET = "unset"
    SET = "set"
    EXPIRED = "expired"


class AccountGateway(ABC):
    """OS user-management primitives used by the provisioners."""

    @abstractmethod
    async def exists(self, username: str) -> bool:
        """Check whether an account exists."""

    @abstractmethod
    async def uid(self, username: str) -> int:
        """Numeric user id."""

    @abstractmethod
    async def create(self, username: str, shell: str, groups: Sequence[str]) -> None:
        """Create an account with a home directory."""

    @abstractmethod
    async def set_password(self, username: str, password: str) -> None:
        """Set the account password."""

    @abstractmethod
    async def expire_password(self, username: str) -> None:
        """Force a password change at next login."""

    @abstractmethod
    async def password_state(self, username: str) -> PasswordState:
        """Whether the account has no password, a usable one, or one that must be changed."""

    @abstractmethod
    async def delete(self, username: str) -> None:
        """Remove the account (not its home directory)."""

    @abstractmethod
    async def chown(self, path: Path, username: str, recursive: bool = False) -> None:
        """Give ownership of a path to the user."""

    @abstractmethod
    async def run_as(self, username: str, cmd: List[str], check: bool = True,
                     timeout: Optional[int] = None) -> CommandResult:
        """Run a command as the user with their runtime directory set."""

    @abstractmethod
    async def service_state(self, username: str, unit: str) -> str:
        """Active state of a per-user systemd unit."""

    @abstractmethod
    async def enable_service(self, username: str, unit: str) -> None:
        """Enable and start a per-user systemd unit."""

    @abstractmethod
    async def disable_service(self, username: str, unit: str) -> None:
        """Stop and disable a per-user systemd unit."""

    @abstractmethod
    async def set_linger(self, username: str, enable: bool = True) -> None:
        """Keep the user's services running without a session."""

    @abstractmethod
    async def linger_enabled(self, username: str) -> bool:
        """Check whether lingering is enabled for a user."""

    @abstractmethod
    async def install_packages(self, packages: Sequence[str]) -> None:
        """Install OS packages."""

    @abstractmethod
    async def run_privileged(self, cmd: List[str], timeout: Optional[int] = None) -> CommandResult:
        """Run a command as root."""

    @abstractmethod
    async def disk_usage(self, path: Path) -> int:
        """Bytes used below a path; zero when it does not exist."""

    async def command_available(self, username: str, command: str) -> bool:
        """Check whether a command resolves in the user's login shell."""
        result = await self.run_as(username, ["bash", "-lc", f"command -v {command}"], check=False)
        return result.returncode == 0

    async def close(self) -> None:
        """Release connections held by the gateway."""


class SystemAccounts(AccountGateway):
    """Account management through the shadow-utils and systemd tools."""

    def __init__(self, login_dbus: Optional[LoginDBus] = None):
        """Initialize system accounts."""
        self.login_dbus = login_dbus or LoginDBus()
        self._connected = False

    async def _run(self, cmd: List[str], **kwargs) -> CommandResult:
        try:
            return await run_command(cmd, **kwargs)
        except subprocess.CalledProcessError as e:
            raise RuntimeCommandError(cmd, e.returncode, e.stderr or "") from e

    async def exists(self, username: str) -> bool:
        try:
            await asyncio.to_thread(pwd.getpwnam, username)
            return True
        except KeyError:
            return False

    async def uid(self, username: str) -> int:
        entry = await asyncio.to_thread(pwd.getpwnam, username)
        return entry.pw_uid

    async def create(self, username: str, shell: str, groups: Sequence[str]) -> None:
        cmd = ["useradd", "-m", "-s", shell]
        if groups:
            cmd.extend(["-G", ",".join(groups)])
        cmd.append(username)
        await self._run(cmd)

    async def set_password(self, username: str, password: str) -> None:
        await self._run(["chpasswd"], input=f"{username}:{password}\n")

    async def expire_password(self, username: str) -> None:
        await self._run(["passwd", "-e", username])

    async def password_state(self, username: str) -> PasswordState:
        status = await self._run(["passwd", "-S", username])
        fields = status.stdout.split()
        if len(fields) < 2 or fields[1] in _NO_PASSWORD_STATUSES:
            return PasswordState.UNSET

        aging = await self._run(["chage", "-l", username], env={**os.environ, "LC_ALL": "C"})
        for line in aging.stdout.splitlines():
            if line.startswith("Last password change") and "password must be changed" in line:
                return PasswordState.EXPIRED
        return PasswordState.SET

    async def delete(self, username: str) -> None:
        result = await run_command(["userdel", username], check=False)
        # 6: the account does not exist
        if result.returncode not in (0, 6):
            raise RuntimeCommandError(["userdel", username], result.returncode, result.stderr)

    async def chown(self, path: Path, username: str, recursive: bool = False) -> None:
        def _chown():
            entry = pwd.getpwnam(username)
            os.chown(path, entry.pw_uid, entry.pw_gid)
            if recursive and Path(path).is_dir():
                for root, dirs, files in os.walk(path):
                    for name in dirs + files:
                        os.chown(os.path.join(root, name), entry.pw_uid, entry.pw_gid, follow_symlinks=False)

        await asyncio.to_thread(_chown)

    async def run_as(self, username: str, cmd: List[str], check: bool = True,
                     timeout: Optional[int] = None) -> CommandResult:
        uid = await self.uid(username)
        return await self._run(user_command(username, uid, cmd), check=check, timeout=timeout)

    async def service_state(self, username: str, unit: str) -> str:
        result = await self.run_as(username, ["systemctl", "--user", "is-active", unit], check=False)
        return result.stdout.strip() or "unknown"

    async def enable_service(self, username: str, unit: str) -> None:
        await self.run_as(username, ["systemctl", "--user", "enable", "--now", unit])

    async def disable_service(self, username: str, unit: str) -> None:
        await self.run_as(username, ["systemctl", "--user", "disable", "--now", unit])

    async def set_linger(self, username: str, enable: bool = True) -> None:
        if not self._connected:
            await self.login_dbus.connect()
            self._connected = True
        uid = await self.uid(username)
        await self.login_dbus.set_linger(uid, username, enable)

    async def close(self) -> None:
        if self._connected:
            await self.login_dbus.disconnect()
            self._connected = False

    async def linger_enabled(self, username: str) -> bool:
        return await asyncio.to_thread((LINGER_DIR / username).exists)

    async def install_packages(self, packages: Sequence[str]) -> None:
        await self._run(["dnf", "install", "-y", *packages], timeout=900)

    async def run_privileged(self, cmd: List[str], timeout: Optional[int] = None) -> CommandResult:
        return await self._run(cmd, timeout=timeout)

    async def disk_usage(self, path: Path) -> int:
        if not await asyncio.to_thread(Path(path).exists):
            return 0
        result = await self._run(["du", "-sb", str(path)], check=False)
        try:
            return int(result.stdout.split()[0])
        except (IndexError, ValueError):
            logger.warning(f"Could not determine disk usage of {path}: {result.stderr.strip()}")
            return 0
