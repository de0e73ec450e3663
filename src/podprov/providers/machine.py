"""Machine provider: process-wide runtime configuration and trust store."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from podprov.errors import ConfigError, StepError
from podprov.models.results import Outcome, StepResult
from podprov.providers.base import BaseProvider, ProviderContext, ProviderStatus
from podprov.utils.files import copy_if_changed, write_if_changed
from podprov.utils.templates import render_template

if TYPE_CHECKING:
    from podprov.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

REGISTRIES_CONF = "/etc/containers/registries.conf"
CONTAINERS_DROP_IN = "/etc/containers/containers.conf.d/50-podprov.conf"
USER_SLICE_DROP_IN = "/etc/systemd/system/user-.slice.d/50-podprov.conf"

PARALLEL_PULLS = 4
SYSTEM_FILE_MODE = 0o644


class MachineProvider(BaseProvider):
    """Provider for configuration shared by every user on the machine.

    Must run before any user is reconciled so that registries and pull
    parallelism apply to every pull.
    """

    def __init__(self):
        """Initialize machine provider."""
        self.context: Optional[ProviderContext] = None

    async def initialize(self, context: ProviderContext, registry: "ProviderRegistry") -> None:
        """Initialize provider with its collaborators."""
        self.context = context

    @property
    def config(self):
        return self.context.config

    def _desired(self) -> List[tuple]:
        config = self.config
        cpu_percent = f"{float(config.max_cpu) * 100:g}"
        return [
            (REGISTRIES_CONF, render_template("machine-registries.conf.j2", registries=config.registry_mirrors)),
            (CONTAINERS_DROP_IN, render_template("machine-containers.conf.j2", parallel_pulls=PARALLEL_PULLS)),
            (USER_SLICE_DROP_IN, render_template(
                "user-slice.conf.j2", memory_bytes=config.max_memory_bytes, cpu_percent=cpu_percent
            )),
        ]

    async def status(self, target: str = "machine") -> ProviderStatus:
        """Check whether shared configuration matches the desired content."""
        try:
            matches = []
            for path, content in self._desired():
                file = self.context.system_path(path)
                current = await asyncio.to_thread(lambda: file.read_text() if file.exists() else None)
                matches.append(current == content)
            anchor = self.context.system_path(self.config.certificate.system_path)
            matches.append(await asyncio.to_thread(anchor.exists))

            if all(matches):
                return ProviderStatus.PRESENT
            return ProviderStatus.PARTIAL if any(matches) else ProviderStatus.ABSENT

        except Exception as e:
            logger.error(f"Error checking machine configuration: {e}")
            return ProviderStatus.ERROR

    async def validate(self, target: str = "machine") -> bool:
        """Validate that the trust certificate is available."""
        source = Path(self.config.certificate.local_path)
        if not await asyncio.to_thread(source.exists):
            logger.error(f"Certificate not found: {source}")
            return False
        return True

    async def present(self, target: str = "machine") -> List[StepResult]:
        """Write shared configuration and install the trust anchor.

        Raises ``StepError`` on any failure; no user work is meaningful
        without this configuration.
        """
        results = []
        accounts = self.context.accounts

        for path, content in self._desired():
            file = self.context.system_path(path)
            try:
                changed = await asyncio.to_thread(write_if_changed, file, content, SYSTEM_FILE_MODE)
            except OSError as e:
                raise StepError("machine-config", f"could not write {file}: {e}") from e
            if changed:
                logger.info(f"Updated {file}")
            results.append(StepResult(
                name=path, outcome=Outcome.CHANGED if changed else Outcome.UNCHANGED
            ))
            if changed and path == USER_SLICE_DROP_IN:
                await accounts.run_privileged(["systemctl", "daemon-reload"])

        source = Path(self.config.certificate.local_path)
        if not await asyncio.to_thread(source.exists):
            raise ConfigError(f"Certificate not found: {source}")

        anchor = self.context.system_path(self.config.certificate.system_path)
        try:
            changed = await asyncio.to_thread(copy_if_changed, source, anchor, SYSTEM_FILE_MODE)
        except OSError as e:
            raise StepError("trust-anchor", f"could not install {anchor}: {e}") from e
        if changed:
            logger.info("Trust anchor changed, updating system trust store")
            await accounts.run_privileged(["update-ca-trust"], timeout=300)
        results.append(StepResult(
            name="trust-anchor", outcome=Outcome.CHANGED if changed else Outcome.UNCHANGED
        ))

        return results
