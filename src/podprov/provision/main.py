"""Wiring of the provisioning application."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from podprov.errors import ProvisionError
from podprov.models.config import ProvisionConfig, check_username
from podprov.models.results import ContainerResult, ProvisionReport
from podprov.ops.cleanup import CleanupReconciler
from podprov.ops.diagnostics import DiagnosticsCollector
from podprov.ops.quota import QuotaManager
from podprov.ops.versions import VersionTracker
from podprov.providers import ProviderContext, ProviderRegistry
from podprov.provision.config import ConfigManager, DEFAULT_CONFIG_PATH
from podprov.provision.engine import Orchestrator
from podprov.runtime.accounts import AccountGateway, SystemAccounts
from podprov.runtime.gateway import OWNER_LABEL, RuntimeGateway
from podprov.runtime.podman import PodmanGateway
from podprov.utils.logging import setup_logging
from podprov.utils.retry import RetryExecutor


logger = logging.getLogger(__name__)


class ProvisionApp:
    """Builds every component from one configuration value."""

    def __init__(
        self,
        config: ProvisionConfig,
        runtime: Optional[RuntimeGateway] = None,
        accounts: Optional[AccountGateway] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        system_root: Path = Path("/"),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the application."""
        self.config = config
        self.runtime = runtime or PodmanGateway()
        self.accounts = accounts or SystemAccounts()
        self.executor = RetryExecutor(config.retry.max_attempts, config.retry.delay, sleep=sleep)
        self.context = ProviderContext(
            config=config,
            runtime=self.runtime,
            accounts=self.accounts,
            executor=self.executor,
            system_root=Path(system_root),
        )
        self.registry = ProviderRegistry()
        self.versions = VersionTracker(config, self.runtime, self.accounts, executor=self.executor,
                                       transport=transport, system_root=system_root)
        self.quotas = QuotaManager(config, self.runtime, self.accounts)
        self.diagnostics = DiagnosticsCollector(config, self.runtime, system_root=system_root)
        self.orchestrator: Optional[Orchestrator] = None
        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> Orchestrator:
        """Initialize providers and the orchestrator once."""
        if self.orchestrator is None:
            await self.registry.initialize(self.context)
            self.orchestrator = Orchestrator(self.context, self.registry, version_tracker=self.versions)
            logger.debug("Application initialized")
        return self.orchestrator

    async def provision(self, users: Optional[Sequence[str]] = None) -> ProvisionReport:
        """Run a full provisioning pass."""
        for username in users or ():
            check_username(username)
        orchestrator = await self.initialize()
        return await orchestrator.provision_all(users)

    async def create_user(self, username: str) -> ProvisionReport:
        """Provision a single account that does not exist yet."""
        check_username(username)
        if await self.accounts.exists(username):
            raise ProvisionError(f"User {username} already exists")
        return await self.provision([username])

    async def reset_user(self, username: str) -> ContainerResult:
        """Remove a user's containers and volumes, then provision them again."""
        check_username(username)
        await self.initialize()
        await self.cleanup(dry_run=False).reset_user(username)
        return await self.registry.get_provider("container").reconcile(username)

    async def user_status(self, username: str) -> dict:
        """Account, provisioning and resource state of a user."""
        check_username(username)
        await self.initialize()
        exists = await self.accounts.exists(username)
        containers, volumes = [], []
        if exists:
            runtime = self.runtime.for_user(username)
            containers = await runtime.list_by_label("container", OWNER_LABEL, username)
            volumes = await runtime.list_by_label("volume", OWNER_LABEL, username)
        status = {
            "username": username,
            "exists": exists,
            "user": (await self.registry.get_provider("user").status(username)).value,
            "containers": containers,
            "volumes": volumes,
        }
        status["usage"] = await self.quotas.check_usage(username) if exists else None
        return status

    def cleanup(self, dry_run: bool = False) -> CleanupReconciler:
        return CleanupReconciler(self.config, self.runtime, self.accounts, dry_run=dry_run)

    async def run_monitor(self, interval: Optional[int] = None) -> int:
        """Run the health monitor until SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)
        try:
            return await self.diagnostics.monitor(interval, self.shutdown_event)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def close(self):
        """Release connections held by the gateways."""
        await self.accounts.close()


async def load_app(config_path: Path = DEFAULT_CONFIG_PATH, log_name: Optional[str] = None) -> ProvisionApp:
    """Load configuration, set up logging and build the application.

    With ``log_name`` set, the run also logs to a timestamped file in the
    configured log directory.
    """
    config = await ConfigManager(config_path).load()
    log_dir = Path(config.log_directory) if log_name else None
    log_file = setup_logging(config.log_level, log_dir, log_name or "podprov")
    if log_file:
        logger.info(f"Logging to {log_file}")
    return ProvisionApp(config)

