"""Provisioning orchestration across users."""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence, TYPE_CHECKING

from podprov.models.results import Outcome, ProvisionReport, StepResult, UserResult, UserState
from podprov.providers import ProviderContext, ProviderRegistry
from podprov.provision.preflight import run_preflight

if TYPE_CHECKING:
    from podprov.ops.versions import VersionTracker


logger = logging.getLogger(__name__)


class Orchestrator:
    """Sequences user and container reconciliation for every configured user.

    Users are processed strictly one after another in declared order. A
    user's failure is recorded in its result and never stops the run.
    """

    def __init__(self, context: ProviderContext, registry: ProviderRegistry,
                 version_tracker: Optional["VersionTracker"] = None):
        """Initialize orchestrator."""
        self.context = context
        self.registry = registry
        self.version_tracker = version_tracker
        self.last_run: Optional[datetime] = None
        self._lock = asyncio.Lock()

    async def prepare(self) -> List[str]:
        """Run preflight checks and machine-wide configuration.

        Raises on failure; nothing user-level is attempted after that.
        """
        warnings = await run_preflight(self.context.config, self.context.runtime)
        machine = self.registry.get_provider("machine")
        await machine.present()
        return warnings

    async def provision_user(self, username: str) -> UserResult:
        """Reconcile one user, then their container environment."""
        user_provider = self.registry.get_provider("user")
        container_provider = self.registry.get_provider("container")

        result = await user_provider.reconcile(username)
        if result.failed:
            return result

        if self.version_tracker:
            try:
                await self.version_tracker.track(username)
            except Exception as e:
                logger.warning(f"Version tracking failed for {username}: {e}")
                result.steps.append(StepResult(name="version-tracking", outcome=Outcome.WARNING, message=str(e)))

        container = await container_provider.reconcile(username)
        result.container = container
        if container.aborted:
            failed = next(s for s in container.steps if s.outcome == Outcome.FAILED)
            result.state = UserState.FAILED
            result.error = f"{failed.name}: {failed.message}"

        return result

    async def provision_all(self, users: Optional[Sequence[str]] = None, prepare: bool = True) -> ProvisionReport:
        """Provision every user, or the given subset, and aggregate results."""
        async with self._lock:
            start_time = datetime.now()
            targets = list(users) if users else list(self.context.config.users)
            logger.info(f"Starting provisioning of {len(targets)} user(s)")

            if prepare:
                await self.prepare()

            report = ProvisionReport()
            for username in targets:
                try:
                    result = await self.provision_user(username)
                except Exception as e:
                    logger.error(f"Failed to provision {username}: {e}", exc_info=True)
                    result = UserResult(username=username, state=UserState.FAILED, error=str(e))
                report.users.append(result)

            self.last_run = datetime.now()
            duration = (self.last_run - start_time).total_seconds()
            logger.info(f"Provisioning completed in {duration:.2f}s: {report.summary()}")
            for username in report.failed_users:
                logger.error(f"User {username} failed: {report.user(username).error}")
            return report
