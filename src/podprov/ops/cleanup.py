"""Idempotent teardown of users and shared state."""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List

from podprov.errors import DestructiveConfirmationRequired
from podprov.models.config import ProvisionConfig, check_username
from podprov.providers.user import PODMAN_SOCKET
from podprov.runtime.accounts import AccountGateway
from podprov.runtime.gateway import OWNER_LABEL, RuntimeGateway


logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """Actions taken, or that would be taken in dry-run mode."""
    dry_run: bool
    actions: List[str] = field(default_factory=list)
    failed_users: List[str] = field(default_factory=list)


class CleanupReconciler:
    """Tears down what the provisioners created.

    Every decision is made from read-only queries; mutations pass through
    ``_apply``, which only logs them in dry-run mode. A dry run therefore
    lists exactly the actions a real run would perform from the same state.
    Targets that are already gone are never an error.
    """

    def __init__(self, config: ProvisionConfig, runtime: RuntimeGateway, accounts: AccountGateway,
                 dry_run: bool = False):
        """Initialize cleanup reconciler."""
        self.config = config
        self.runtime = runtime
        self.accounts = accounts
        self.dry_run = dry_run
        if dry_run:
            logger.info("DRY RUN - No changes will be made")

    async def _apply(self, report: CleanupReport, description: str,
                     operation: Callable[[], Awaitable[object]]) -> None:
        report.actions.append(description)
        if self.dry_run:
            logger.info(f"Would {description}")
            return
        logger.info(description[:1].upper() + description[1:])
        await operation()

    def _report(self) -> CleanupReport:
        return CleanupReport(dry_run=self.dry_run)

    async def remove_user_resources(self, username: str, report: CleanupReport) -> None:
        """Stop and remove the containers, volumes and networks labelled for a user.

        They live in the account's own runtime storage, so nothing is left
        to remove once the account is gone.
        """
        if not await self.accounts.exists(username):
            logger.debug(f"Account {username} does not exist, no runtime resources to remove")
            return

        runtime = self.runtime.for_user(username)
        containers = await runtime.list_by_label("container", OWNER_LABEL, username)
        for container_id in containers:
            await self._apply(report, f"stop container {container_id}",
                              lambda cid=container_id: runtime.stop_container(cid))
            await self._apply(report, f"remove container {container_id}",
                              lambda cid=container_id: runtime.remove_container(cid))

        for volume in await runtime.list_by_label("volume", OWNER_LABEL, username):
            await self._apply(report, f"remove volume {volume}",
                              lambda name=volume: runtime.remove_volume(name))

        for network in await runtime.list_by_label("network", OWNER_LABEL, username):
            await self._apply(report, f"remove network {network}",
                              lambda name=network: runtime.remove_network(name))

    async def reset_user(self, username: str) -> CleanupReport:
        """Remove a user's runtime resources but keep the account."""
        check_username(username)
        logger.info(f"Resetting user: {username}")
        report = self._report()
        await self.remove_user_resources(username, report)
        return report

    async def cleanup_user(self, username: str, remove_home: bool = False) -> CleanupReport:
        """Remove everything provisioned for one user, including the account."""
        check_username(username)
        logger.info(f"Cleaning up user: {username}")
        report = self._report()
        await self.remove_user_resources(username, report)

        account_exists = await self.accounts.exists(username)
        if account_exists:
            if await self.accounts.service_state(username, PODMAN_SOCKET) == "active":
                await self._apply(report, f"disable {PODMAN_SOCKET} for {username}",
                                  lambda: self.accounts.disable_service(username, PODMAN_SOCKET))
            if await self.accounts.linger_enabled(username):
                await self._apply(report, f"disable lingering for {username}",
                                  lambda: self.accounts.set_linger(username, False))

        home = self.config.home_for(username)
        if remove_home and await asyncio.to_thread(self._removable_home, home):
            await self._apply(report, f"remove home directory {home}",
                              lambda: asyncio.to_thread(shutil.rmtree, home))

        if account_exists:
            await self._apply(report, f"remove account {username}",
                              lambda: self.accounts.delete(username))

        logger.info(f"Cleanup of {username} finished with {len(report.actions)} action(s)")
        return report

    def _removable_home(self, home: Path) -> bool:
        """Only an existing directory strictly inside the home root may be removed."""
        if not home.exists():
            return False
        root = Path(self.config.home_root).resolve()
        resolved = home.resolve()
        if root not in resolved.parents:
            logger.error(f"Refusing to remove {home}: it resolves to {resolved}, outside {root}")
            return False
        return True

    def _require_confirmation(self, confirmed: bool) -> None:
        if not self.dry_run and not confirmed:
            raise DestructiveConfirmationRequired(
                "System cleanup prunes all unused images and volumes and deletes shared "
                "configuration and logs; confirmation is required"
            )

    async def cleanup_system(self, confirmed: bool = False) -> CleanupReport:
        """Prune the runtime and remove shared configuration and logs."""
        self._require_confirmation(confirmed)
        logger.info("Performing system cleanup")
        report = self._report()

        await self._apply(report, "prune unused images", self.runtime.prune_images)
        await self._apply(report, "prune unused volumes", self.runtime.prune_volumes)
        for directory in (Path(self.config.state_dir), Path(self.config.log_directory)):
            if await asyncio.to_thread(directory.exists):
                await self._apply(report, f"remove directory {directory}",
                                  lambda d=directory: asyncio.to_thread(shutil.rmtree, d))
        return report

    async def cleanup_all(self, remove_home: bool = False, confirmed: bool = False) -> CleanupReport:
        """Clean up every configured user, then the shared system state."""
        self._require_confirmation(confirmed)
        report = self._report()

        for username in self.config.users:
            try:
                user_report = await self.cleanup_user(username, remove_home)
                report.actions.extend(user_report.actions)
            except Exception as e:
                logger.error(f"Failed to clean up {username}: {e}")
                report.failed_users.append(username)

        system_report = await self.cleanup_system(confirmed=True)
        report.actions.extend(system_report.actions)
        return report
