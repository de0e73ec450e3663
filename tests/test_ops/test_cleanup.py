"""Tests for cleanup reconciliation."""

import shutil
from pathlib import Path

import pytest

from podprov.errors import ConfigError, DestructiveConfirmationRequired
from podprov.ops.cleanup import CleanupReconciler


@pytest.fixture
def provisioned(app, runtime):
    """Application whose user alice has been provisioned, plus one container."""
    async def _provision():
        await app.provision()
        runtime.add_container("c1", "alice")
        runtime.add_container("other", "bob")
        runtime.calls.clear()
        return app

    return _provision


def _reconciler(app, dry_run):
    return CleanupReconciler(app.config, app.runtime, app.accounts, dry_run=dry_run)


@pytest.mark.asyncio
class TestCleanupUser:
    """Test per-user cleanup."""

    async def test_dry_run_matches_real_run(self, provisioned, runtime, accounts):
        """Test a dry run lists exactly what a real run does, without mutating."""
        app = await provisioned()
        accounts.calls.clear()

        planned = await _reconciler(app, True).cleanup_user("alice", remove_home=True)

        assert runtime.calls == []
        assert accounts.calls == []
        assert "alice" in accounts.users

        performed = await _reconciler(app, False).cleanup_user("alice", remove_home=True)

        assert planned.dry_run is True
        assert performed.actions == planned.actions
        assert planned.actions[:2] == ["stop container c1", "remove container c1"]
        assert "remove volume alice-mcp-data" in planned.actions
        assert "remove network alice-ai-net" in planned.actions
        assert "disable podman.socket for alice" in planned.actions
        assert "disable lingering for alice" in planned.actions
        assert planned.actions[-1] == "remove account alice"

    async def test_real_run_removes_everything(self, provisioned, runtime, accounts, config):
        """Test a real run removes resources, home and account but not other users' resources."""
        app = await provisioned()

        await _reconciler(app, False).cleanup_user("alice", remove_home=True)

        assert "c1" not in runtime.containers
        assert "other" in runtime.containers
        assert not [v for v in runtime.volumes if v.startswith("alice-")]
        assert not [n for n in runtime.networks if n.startswith("alice-")]
        assert "alice" not in accounts.users
        assert "alice" not in accounts.lingering
        assert not (Path(config.home_root) / "alice").exists()

    async def test_home_kept_by_default(self, provisioned, config):
        """Test the home directory survives without remove_home."""
        app = await provisioned()

        report = await _reconciler(app, False).cleanup_user("alice")

        assert (Path(config.home_root) / "alice").exists()
        assert not [a for a in report.actions if a.startswith("remove home")]

    async def test_second_run_is_noop(self, provisioned, runtime, accounts):
        """Test cleaning up an already removed user does nothing."""
        app = await provisioned()
        await _reconciler(app, False).cleanup_user("alice", remove_home=True)
        runtime.calls.clear()
        accounts.calls.clear()

        report = await _reconciler(app, False).cleanup_user("alice", remove_home=True)

        assert report.actions == []
        assert runtime.calls == []
        assert accounts.calls == []

    async def test_reset_keeps_account(self, provisioned, accounts):
        """Test reset removes runtime resources only."""
        app = await provisioned()

        report = await _reconciler(app, False).reset_user("alice")

        assert "remove container c1" in report.actions
        assert "alice" in accounts.users
        assert not [a for a in report.actions if "account" in a]

    async def test_resources_removed_from_user_storage(self, provisioned, runtime):
        """Test runtime resources are listed and removed in the user's own storage."""
        app = await provisioned()
        runtime.scoped_users.clear()

        await _reconciler(app, False).reset_user("alice")

        assert runtime.scoped_users == ["alice"]

    @pytest.mark.parametrize("dry_run", [True, False])
    @pytest.mark.parametrize("username", [".", "..", "../etc", "alice/../bob"])
    async def test_invalid_username_rejected(self, provisioned, runtime, accounts, config, username, dry_run):
        """Test names that would resolve to the home root or beyond are refused."""
        app = await provisioned()
        accounts.calls.clear()
        reconciler = _reconciler(app, dry_run)

        with pytest.raises(ConfigError, match="Invalid username"):
            await reconciler.cleanup_user(username, remove_home=True)
        with pytest.raises(ConfigError, match="Invalid username"):
            await reconciler.reset_user(username)

        assert runtime.calls == []
        assert accounts.calls == []
        assert (Path(config.home_root) / "alice").exists()

    async def test_home_outside_root_not_removed(self, provisioned, accounts, config, tmp_path):
        """Test a home that is a symlink out of the home root is left in place."""
        app = await provisioned()
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        (outside / "keep.txt").write_text("data")
        home = Path(config.home_root) / "alice"
        shutil.rmtree(home)
        home.symlink_to(outside, target_is_directory=True)

        report = await _reconciler(app, False).cleanup_user("alice", remove_home=True)

        assert not [a for a in report.actions if a.startswith("remove home")]
        assert (outside / "keep.txt").read_text() == "data"
        assert "alice" not in accounts.users


@pytest.mark.asyncio
class TestCleanupSystem:
    """Test system-wide cleanup."""

    async def test_confirmation_required(self, provisioned, runtime):
        """Test destructive system cleanup needs confirmation."""
        app = await provisioned()

        with pytest.raises(DestructiveConfirmationRequired):
            await _reconciler(app, False).cleanup_system()
        with pytest.raises(DestructiveConfirmationRequired):
            await _reconciler(app, False).cleanup_all()

        assert runtime.calls == []

    async def test_dry_run_needs_no_confirmation(self, provisioned, runtime, config):
        """Test a dry run of everything is allowed and changes nothing."""
        app = await provisioned()

        report = await _reconciler(app, True).cleanup_all(remove_home=True)

        assert runtime.calls == []
        assert "prune unused images" in report.actions
        assert f"remove directory {config.state_dir}" in report.actions
        assert Path(config.state_dir).exists()

    async def test_cleanup_all(self, provisioned, runtime, accounts, config):
        """Test confirmed cleanup of every user and the shared state."""
        app = await provisioned()

        report = await _reconciler(app, False).cleanup_all(remove_home=True, confirmed=True)

        assert report.failed_users == []
        assert "alice" not in accounts.users
        assert ("prune-images",) in runtime.calls
        assert ("prune-volumes",) in runtime.calls
        assert not Path(config.state_dir).exists()
        assert not Path(config.log_directory).exists()

    async def test_failed_user_continues(self, provisioned, accounts, runtime):
        """Test one failing user does not stop the others or the system cleanup."""
        app = await provisioned()

        async def broken_delete(username):
            raise OSError("userdel: user alice is currently used by process 1")

        accounts.delete = broken_delete

        report = await _reconciler(app, False).cleanup_all(confirmed=True)

        assert report.failed_users == ["alice"]
        assert ("prune-images",) in runtime.calls
