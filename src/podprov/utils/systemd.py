"""Command execution and systemd/logind DBus integration."""

import asyncio
import logging
import subprocess
from typing import Optional, List, Dict
from dataclasses import dataclass

from dbus_next.aio import MessageBus
from dbus_next import BusType


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result from running a command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""


async def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[int] = None,
    input: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """Run a command asynchronously."""
    logger.debug(f"Running command: {' '.join(cmd)}")

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input is not None else None,
        stdout=asyncio.subprocess.PIPE if capture_output else None,
        stderr=asyncio.subprocess.PIPE if capture_output else None,
        env=env,
    )

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input.encode() if input is not None else None),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise subprocess.TimeoutExpired(cmd, timeout)

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode() if stdout else "",
        stderr=stderr.decode() if stderr else "",
    )

    if check and process.returncode != 0:
        error = subprocess.CalledProcessError(
            process.returncode, cmd
        )
        error.stdout = result.stdout
        error.stderr = result.stderr
        raise error

    return result


def user_command(username: str, uid: int, cmd: List[str]) -> List[str]:
    """Command line running ``cmd`` as a user inside their systemd user session."""
    runtime_dir = f"/run/user/{uid}"
    return [
        "sudo", "-u", username, "-H", "env",
        f"XDG_RUNTIME_DIR={runtime_dir}",
        f"DBUS_SESSION_BUS_ADDRESS=unix:path={runtime_dir}/bus",
        *cmd,
    ]


class LoginDBus:
    """DBus interface to systemd-logind."""

    def __init__(self):
        """Initialize DBus state."""
        self.bus: Optional[MessageBus] = None
        self.login = None

    async def connect(self):
        """Connect to the system bus; failures leave the CLI fallback in place."""
        try:
            self.bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
            introspection = await self.bus.introspect(
                "org.freedesktop.login1",
                "/org/freedesktop/login1"
            )
            self.login = self.bus.get_proxy_object(
                "org.freedesktop.login1",
                "/org/freedesktop/login1",
                introspection
            ).get_interface("org.freedesktop.login1.Manager")
            logger.debug("Connected to logind DBus")
        except Exception as e:
            logger.warning(f"Failed to connect to logind DBus, using loginctl: {e}")
            self.login = None

    async def disconnect(self):
        """Disconnect from DBus."""
        if self.bus:
            self.bus.disconnect()
            self.bus = None
            self.login = None

    async def set_linger(self, uid: int, username: str, enable: bool = True):
        """Enable or disable lingering for a user."""
        if self.login:
            try:
                await self.login.call_set_user_linger(uid, enable, False)
                logger.debug(f"{'Enabled' if enable else 'Disabled'} linger for {username}")
                return
            except Exception as e:
                logger.error(f"Failed to set linger via DBus: {e}")

        # Fall back to command (executed if login is None or if DBus failed)
        action = "enable-linger" if enable else "disable-linger"
        await run_command(["loginctl", action, username])
