"""Per-user resource quotas."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from podprov.errors import ConfigError
from podprov.models.config import ProvisionConfig, check_username
from podprov.models.quota import QuotaRecord, ResourceKind, ResourceUsage, UsageReport
from podprov.runtime.accounts import AccountGateway
from podprov.runtime.gateway import OWNER_LABEL, RuntimeGateway
from podprov.utils.files import write_if_changed


logger = logging.getLogger(__name__)

QUOTA_FILE_MODE = 0o644


class QuotaManager:
    """Stores per-user ceilings and compares them with current usage.

    A user without a quota file, or a kind without a limit, is unbounded:
    usage is reported but never flagged.
    """

    def __init__(self, config: ProvisionConfig, runtime: RuntimeGateway, accounts: AccountGateway):
        """Initialize quota manager."""
        self.config = config
        self.runtime = runtime
        self.accounts = accounts
        self.quota_dir = config.quota_dir

    def quota_path(self, username: str) -> Path:
        return self.quota_dir / f"{check_username(username)}.json"

    async def _read(self, username: str) -> Dict[str, Any]:
        path = self.quota_path(username)

        def _read_sync():
            if not path.exists():
                return {}
            return json.loads(path.read_text() or "{}")

        try:
            data = await asyncio.to_thread(_read_sync)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Corrupt quota file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Corrupt quota file {path}: expected an object")
        return data

    async def get_quota(self, username: str) -> QuotaRecord:
        """Persisted quota of a user; empty when none was ever set."""
        return QuotaRecord.model_validate(await self._read(username))

    async def set_quota(self, username: str, kind: Union[ResourceKind, str], limit: str) -> QuotaRecord:
        """Set one resource limit, keeping every other stored limit."""
        if not isinstance(kind, ResourceKind):
            kind = ResourceKind.parse(kind)
        limit = str(limit).strip()
        kind.to_number(limit)

        data = await self._read(username)
        data[kind.field] = limit
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"
        await asyncio.to_thread(write_if_changed, self.quota_path(username), content, QUOTA_FILE_MODE)

        logger.info(f"Set {kind.value} quota for {username} to {limit}")
        return QuotaRecord.model_validate(data)

    async def check_usage(self, username: str) -> UsageReport:
        """Current usage of every resource kind, flagged against the quota."""
        quota = await self.get_quota(username)

        stats = []
        if await self.accounts.exists(username):
            runtime = self.runtime.for_user(username)
            container_ids = await runtime.list_by_label("container", OWNER_LABEL, username)
            stats = await runtime.container_stats(container_ids)
        usage = {
            ResourceKind.CPU: sum(s.cpu_percent for s in stats),
            ResourceKind.MEMORY: float(sum(s.memory_bytes for s in stats)),
            ResourceKind.DISK: float(await self.accounts.disk_usage(self.config.home_for(username))),
        }

        report = UsageReport(username=username)
        for kind in ResourceKind:
            limit_display = quota.limit_for(kind)
            limit = kind.to_number(limit_display) if limit_display else None
            exceeded = limit is not None and usage[kind] > limit
            if exceeded:
                logger.warning(f"{kind.value} quota exceeded for {username}: {usage[kind]:g} > {limit_display}")
            report.resources.append(ResourceUsage(
                kind=kind,
                usage=usage[kind],
                limit=limit,
                limit_display=limit_display,
                exceeded=exceeded,
            ))
        return report
