"""User provider: reconciles one OS account and its environment."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, TYPE_CHECKING

from podprov.errors import ConfigError, ExhaustedError, StepError
from podprov.models.results import Outcome, StepResult, UserResult, UserState
from podprov.providers.base import BaseProvider, ProviderContext, ProviderStatus
from podprov.providers.home import HomeFiles
from podprov.runtime.accounts import PasswordState
from podprov.utils.files import OWNER_ONLY, backup_file, read_block, replace_block
from podprov.utils.templates import render_template

if TYPE_CHECKING:
    from podprov.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

SHELL_BLOCK_BEGIN = "# >>> podprov shell trust >>>"
SHELL_BLOCK_END = "# <<< podprov shell trust <<<"

PODMAN_SOCKET = "podman.socket"

DEFAULT_CAPABILITIES = (
    "CHOWN", "DAC_OVERRIDE", "FOWNER", "FSETID", "KILL", "NET_BIND_SERVICE",
    "SETFCAP", "SETGID", "SETPCAP", "SETUID", "SYS_CHROOT",
)

HARDENING_PIDS_LIMIT = 1024
HARDENING_ULIMITS = ("nofile=1024:2048", "nproc=512:1024", "core=0:0")

SECCOMP_ALLOWED_SYSCALLS = (
    "accept", "accept4", "access", "arch_prctl", "bind", "brk", "capget", "capset",
    "chdir", "chmod", "chown", "clock_gettime", "clock_nanosleep", "clone", "clone3",
    "close", "close_range", "connect", "dup", "dup2", "dup3", "epoll_create1",
    "epoll_ctl", "epoll_pwait", "epoll_wait", "eventfd2", "execve", "exit",
    "exit_group", "faccessat", "faccessat2", "fadvise64", "fchdir", "fchmod",
    "fchmodat", "fchown", "fchownat", "fcntl", "fdatasync", "flock", "fstat",
    "fstatfs", "fsync", "ftruncate", "futex", "getcwd", "getdents64", "getegid",
    "geteuid", "getgid", "getgroups", "getpeername", "getpgrp", "getpid", "getppid",
    "getrandom", "getrlimit", "getsockname", "getsockopt", "gettid", "getuid",
    "ioctl", "kill", "lseek", "lstat", "madvise", "mkdir", "mkdirat", "mmap",
    "mprotect", "mremap", "munmap", "nanosleep", "newfstatat", "open", "openat",
    "openat2", "pipe", "pipe2", "poll", "ppoll", "prctl", "pread64", "prlimit64",
    "pselect6", "pwrite64", "read", "readlink", "readlinkat", "recvfrom", "recvmsg",
    "rename", "renameat", "renameat2", "rmdir", "rseq", "rt_sigaction",
    "rt_sigprocmask", "rt_sigreturn", "sched_getaffinity", "sched_yield", "select",
    "sendmsg", "sendto", "set_robust_list", "set_tid_address", "setgid", "setgroups",
    "setsockopt", "setuid", "shutdown", "sigaltstack", "socket", "socketpair",
    "stat", "statfs", "statx", "symlink", "symlinkat", "sysinfo", "tgkill", "umask",
    "uname", "unlink", "unlinkat", "utimensat", "wait4", "write", "writev",
)

StepFunc = Callable[[str], Awaitable[StepResult]]


def seccomp_profile() -> str:
    """Default-deny seccomp profile with the minimal allow-list."""
    profile = {
        "defaultAction": "SCMP_ACT_ERRNO",
        "architectures": ["SCMP_ARCH_X86_64", "SCMP_ARCH_AARCH64"],
        "syscalls": [
            {"names": list(SECCOMP_ALLOWED_SYSCALLS), "action": "SCMP_ACT_ALLOW"},
        ],
    }
    return json.dumps(profile, indent=2) + "\n"


def _read_text(path: Path) -> str:
    return path.read_text() if path.exists() else ""


def _result(name: str, changed: bool, message: str = "") -> StepResult:
    outcome = Outcome.CHANGED if changed else Outcome.UNCHANGED
    return StepResult(name=name, outcome=outcome, message=message)


class UserProvider(BaseProvider):
    """Provider reconciling OS accounts to their provisioned state.

    Steps run in a fixed order and each detects existing state before
    mutating, so reconciling an already provisioned user changes nothing.
    The first failing step marks the user failed and ends its run.
    """

    def __init__(self):
        """Initialize user provider."""
        self.context: Optional[ProviderContext] = None

    async def initialize(self, context: ProviderContext, registry: "ProviderRegistry") -> None:
        """Initialize provider with its collaborators."""
        self.context = context

    @property
    def config(self):
        return self.context.config

    @property
    def accounts(self):
        return self.context.accounts

    @property
    def executor(self):
        return self.context.executor

    def steps(self) -> List[Tuple[str, StepFunc]]:
        """Provisioning steps in execution order."""
        return [
            ("account", self._account),
            ("certificate", self._certificate),
            ("container-config", self._container_config),
            ("shell-trust", self._shell_trust),
            ("toolchain", self._toolchain),
            ("service-activation", self._service_activation),
            ("security-hardening", self._security_hardening),
        ]

    def home(self, username: str) -> Path:
        return self.config.home_for(username)

    def files(self, username: str) -> HomeFiles:
        return HomeFiles(self.accounts, username, self.home(username))

    def cert_path(self, username: str) -> Path:
        return self.home(username) / "certs" / self.config.certificate.name

    async def status(self, username: str) -> ProviderStatus:
        """Check how far a user has been provisioned."""
        try:
            if not await self.accounts.exists(username):
                return ProviderStatus.ABSENT

            home = self.home(username)
            bashrc = await asyncio.to_thread(_read_text, home / ".bashrc")
            checks = [
                await asyncio.to_thread(self.cert_path(username).exists),
                read_block(bashrc, SHELL_BLOCK_BEGIN, SHELL_BLOCK_END) is not None,
                await asyncio.to_thread((home / ".config/containers/seccomp.json").exists),
            ]
            return ProviderStatus.PRESENT if all(checks) else ProviderStatus.PARTIAL

        except Exception as e:
            logger.error(f"Error checking user {username}: {e}")
            return ProviderStatus.ERROR

    async def present(self, username: str) -> UserResult:
        """Ensure the user is provisioned."""
        return await self.reconcile(username)

    async def validate(self, username: str) -> bool:
        """Validate that a user is declared in the configuration."""
        if username not in self.config.users:
            logger.error(f"User {username} is not declared in the configuration")
            return False
        return True

    async def reconcile(self, username: str) -> UserResult:
        """Run every step for one user, stopping at the first failure."""
        result = UserResult(username=username)
        logger.info(f"Reconciling user {username}")

        for name, step in self.steps():
            try:
                step_result = await step(username)
            except Exception as e:
                error = StepError(name, str(e))
                logger.error(f"User {username} failed: {error}")
                result.steps.append(StepResult(name=name, outcome=Outcome.FAILED, message=str(e)))
                result.state = UserState.FAILED
                result.error = str(error)
                return result

            if step_result.outcome == Outcome.WARNING:
                logger.warning(f"User {username} step {name}: {step_result.message}")
            else:
                logger.debug(f"User {username} step {name}: {step_result.outcome.value}")
            result.steps.append(step_result)

        logger.info(f"User {username} provisioned")
        return result

    async def _initial_password(self, username: str) -> None:
        if not self.config.default_password:
            raise ConfigError("defaultPassword is required to create accounts")
        await self.accounts.set_password(username, self.config.default_password)
        await self.accounts.expire_password(username)

    async def _account(self, username: str) -> StepResult:
        if await self.accounts.exists(username):
            # An account never given a password was left behind by an interrupted run
            if await self.accounts.password_state(username) != PasswordState.UNSET:
                return _result("account", False, "account exists")
            logger.warning(f"Account {username} has no password, setting the initial one")
            await self._initial_password(username)
            return _result("account", True, "initial password set")

        if not self.config.default_password:
            raise ConfigError("defaultPassword is required to create accounts")

        async def create():
            # A failed attempt may still have created the account
            if await self.accounts.exists(username):
                return
            await self.accounts.create(username, self.config.user_shell, self.config.user_groups)

        await self.executor.execute(create, f"create account {username}")
        try:
            await self._initial_password(username)
        except Exception as e:
            logger.error(f"Could not set the initial password of {username}, removing the account: {e}")
            try:
                await self.accounts.delete(username)
            except Exception as delete_error:
                logger.error(f"Could not remove account {username}: {delete_error}")
            raise

        logger.info(f"Created account {username} with an expired password")
        return _result("account", True, "account created")

    async def _certificate(self, username: str) -> StepResult:
        source = Path(self.config.certificate.local_path)
        if not await asyncio.to_thread(source.exists):
            raise ConfigError(f"Certificate not found: {source}")

        changed = await self.files(username).copy(source, self.cert_path(username), OWNER_ONLY)
        return _result("certificate", changed)

    async def _container_config(self, username: str) -> StepResult:
        files = self.files(username)
        config_dir = self.home(username) / ".config" / "containers"

        containers_conf = render_template(
            "containers.conf.j2",
            cgroup_manager="systemd",
            network_backend="netavark",
            capabilities=DEFAULT_CAPABILITIES,
        )
        registries_conf = render_template("registries.conf.j2", registries=self.config.registry_mirrors)

        changed = await files.write(config_dir / "containers.conf", containers_conf, OWNER_ONLY)
        changed = await files.write(config_dir / "registries.conf", registries_conf, OWNER_ONLY) or changed
        return _result("container-config", changed)

    async def _shell_trust(self, username: str) -> StepResult:
        files = self.files(username)
        home = self.home(username)
        cert_path = self.config.certificate.system_path

        bashrc = home / ".bashrc"
        current = await asyncio.to_thread(_read_text, bashrc)
        body = render_template("shell-trust.sh.j2", cert_path=cert_path)
        desired = replace_block(current, SHELL_BLOCK_BEGIN, SHELL_BLOCK_END, body)

        changed = False
        if desired != current:
            backup = await asyncio.to_thread(backup_file, bashrc, self.context.clock())
            if backup:
                await self.accounts.chown(backup, username)
                logger.info(f"Backed up {bashrc} to {backup.name}")
            changed = await files.write(bashrc, desired, 0o644)

        uid = await self.accounts.uid(username)
        profile = home / ".config" / "powershell" / "Microsoft.PowerShell_profile.ps1"
        content = render_template("powershell-profile.ps1.j2", cert_path=cert_path, uid=uid)
        changed = await files.write(profile, content, 0o644) or changed
        return _result("shell-trust", changed)

    async def _install_node(self, username: str) -> None:
        script = (
            f"curl -fsSL https://raw.githubusercontent.com/nvm-sh/nvm/{self.config.nvm_version}/install.sh | bash"
            ' && export NVM_DIR="$HOME/.nvm" && . "$NVM_DIR/nvm.sh"'
            f" && nvm install --lts && npm install -g yarn@{self.config.yarn_version}"
        )
        await self.accounts.run_as(username, ["bash", "-lc", script], timeout=900)

    async def _install_node_packages(self) -> None:
        await self.accounts.install_packages(["nodejs", "npm"])
        await self.accounts.run_privileged(
            ["npm", "install", "-g", f"yarn@{self.config.yarn_version}"], timeout=600
        )

    async def _toolchain(self, username: str) -> StepResult:
        changed = False
        warnings = []

        if await self.accounts.command_available(username, "node") and \
                await self.accounts.command_available(username, "yarn"):
            logger.debug(f"Node toolchain already present for {username}")
        else:
            try:
                await self.executor.execute(
                    lambda: self._install_node(username), f"nvm toolchain for {username}"
                )
            except ExhaustedError as e:
                logger.warning(f"nvm install failed for {username}, using OS packages: {e}")
                await self._install_node_packages()
                warnings.append("node installed from OS packages")
            changed = True

        if not await self.accounts.command_available(username, "podman-compose"):
            try:
                await self.executor.execute(
                    lambda: self.accounts.run_as(
                        username, ["python3", "-m", "pip", "install", "--user", "podman-compose"], timeout=600
                    ),
                    f"podman-compose for {username}",
                )
                changed = True
            except ExhaustedError as e:
                logger.warning(f"podman-compose install failed for {username}: {e}")
                warnings.append("podman-compose not installed")

        if warnings:
            return StepResult(name="toolchain", outcome=Outcome.WARNING, message="; ".join(warnings))
        return _result("toolchain", changed)

    async def _service_activation(self, username: str) -> StepResult:
        changed = False

        if not await self.accounts.linger_enabled(username):
            await self.accounts.set_linger(username, True)
            changed = True

        override = self.home(username) / ".config/systemd/user" / f"{PODMAN_SOCKET}.d" / "override.conf"
        content = render_template("podman-socket-override.conf.j2", username=username)
        if await self.files(username).write(override, content, 0o644):
            await self.accounts.run_as(username, ["systemctl", "--user", "daemon-reload"], check=False)
            changed = True

        state = await self.accounts.service_state(username, PODMAN_SOCKET)
        if state != "active":
            try:
                await self.executor.execute(
                    lambda: self.accounts.enable_service(username, PODMAN_SOCKET),
                    f"enable {PODMAN_SOCKET} for {username}",
                )
                changed = True
            except ExhaustedError as e:
                logger.warning(f"Could not enable {PODMAN_SOCKET} for {username}: {e}")
            state = await self.accounts.service_state(username, PODMAN_SOCKET)

        if state != "active":
            return StepResult(
                name="service-activation",
                outcome=Outcome.WARNING,
                message=f"{PODMAN_SOCKET} is {state}",
            )
        return _result("service-activation", changed)

    async def _security_hardening(self, username: str) -> StepResult:
        files = self.files(username)
        config_dir = self.home(username) / ".config" / "containers"
        seccomp_path = config_dir / "seccomp.json"

        changed = await files.write(seccomp_path, seccomp_profile(), OWNER_ONLY)
        drop_in = render_template(
            "hardening.conf.j2",
            pids_limit=HARDENING_PIDS_LIMIT,
            seccomp_profile=str(seccomp_path),
            ulimits=HARDENING_ULIMITS,
        )
        changed = await files.write(
            config_dir / "containers.conf.d" / "90-hardening.conf", drop_in, OWNER_ONLY
        ) or changed
        return _result("security-hardening", changed)
