"""Owner-aware file placement inside user home directories."""

import asyncio
import logging
from pathlib import Path

from podprov.runtime.accounts import AccountGateway
from podprov.utils.files import OWNER_ONLY, OWNER_ONLY_DIR, copy_if_changed, write_if_changed


logger = logging.getLogger(__name__)


class HomeFiles:
    """Writes files below a user's home and hands ownership to that user."""

    def __init__(self, accounts: AccountGateway, username: str, home: Path):
        self.accounts = accounts
        self.username = username
        self.home = Path(home)

    async def ensure_dir(self, path: Path, mode: int = OWNER_ONLY_DIR) -> Path:
        """Create ``path`` and any missing parents below home, owned by the user."""
        path = Path(path)
        relative = path.relative_to(self.home)
        current = self.home
        if not await asyncio.to_thread(current.exists):
            await asyncio.to_thread(lambda: current.mkdir(parents=True, exist_ok=True))
            await self.accounts.chown(current, self.username)

        for part in relative.parts:
            current = current / part
            if not await asyncio.to_thread(current.exists):
                await asyncio.to_thread(current.mkdir, mode)
                await self.accounts.chown(current, self.username)
        return path

    async def write(self, path: Path, content: str, mode: int = OWNER_ONLY) -> bool:
        """Write a user-owned file; returns True when content changed."""
        path = Path(path)
        await self.ensure_dir(path.parent)
        changed = await asyncio.to_thread(write_if_changed, path, content, mode)
        if changed:
            await self.accounts.chown(path, self.username)
        return changed

    async def copy(self, source: Path, path: Path, mode: int = OWNER_ONLY) -> bool:
        """Copy a file into home, owned by the user."""
        path = Path(path)
        await self.ensure_dir(path.parent)
        changed = await asyncio.to_thread(copy_if_changed, source, path, mode)
        if changed:
            await self.accounts.chown(path, self.username)
        return changed
