"""Tests for provisioning orchestration."""

from pathlib import Path

import pytest
from unittest.mock import AsyncMock

from podprov.errors import ConfigError, PreflightError, ProvisionError
from podprov.models.quota import ResourceKind
from podprov.models.results import Outcome, UserState
from podprov.providers.user import SHELL_BLOCK_BEGIN
from podprov.provision.main import ProvisionApp


@pytest.mark.asyncio
class TestProvisionRun:
    """Test full provisioning runs against in-memory gateways."""

    async def test_alice_provisioned_twice(self, app, runtime, accounts, config, system_root):
        """Test a fresh user is fully provisioned and a rerun succeeds without changes."""
        first = await app.provision()

        assert first.ok
        alice = first.user("alice")
        assert alice.state == UserState.PROVISIONED
        assert alice.container.image("python:3.9-slim").outcome == Outcome.CHANGED
        for template in config.volume_templates:
            assert runtime.volumes[f"alice-{template}"] == {"user": "alice"}
        assert "alice" in accounts.expired
        assert (system_root / "etc/containers/registries.conf").exists()

        second = await app.provision()

        assert second.ok
        assert second.failed == 0
        alice = second.user("alice")
        assert alice.container.image("python:3.9-slim").outcome == Outcome.UNCHANGED
        assert all(s.outcome == Outcome.UNCHANGED for s in alice.steps)
        assert runtime.calls.count(("pull", "python:3.9-slim")) == 1
        assert accounts.calls.count(("create", "alice")) == 1
        bashrc = (Path(config.home_root) / "alice" / ".bashrc").read_text()
        assert bashrc.count(SHELL_BLOCK_BEGIN) == 1

    async def test_unhealthy_image_counted_as_warned(self, app, runtime):
        """Test an image failing its health check is a warning, not a failure, in the report."""
        runtime.unhealthy.add("python:3.9-slim")

        report = await app.provision()

        assert report.ok
        assert report.user("alice").container.image("python:3.9-slim").outcome == Outcome.WARNING
        assert report.failed == 0
        assert report.warned == 1

    async def test_version_tracked_after_user(self, app, config):
        """Test a snapshot is recorded for each provisioned user."""
        report = await app.provision()

        assert report.user("alice").step("version-tracking") is None
        assert (Path(config.state_dir) / "version.json").exists()
        assert len(app.versions.history()) == 1

    async def test_version_tracking_failure_is_warning(self, app):
        """Test a tracking failure only adds a warning step."""
        await app.initialize()
        app.orchestrator.version_tracker = AsyncMock()
        app.orchestrator.version_tracker.track.side_effect = OSError("read-only state dir")

        report = await app.provision()

        step = report.user("alice").step("version-tracking")
        assert step.outcome == Outcome.WARNING
        assert report.ok

    async def test_image_failure_does_not_fail_user(self, app, runtime):
        """Test an unpullable image is recorded without failing the user."""
        runtime.remote.clear()

        report = await app.provision()

        alice = report.user("alice")
        assert alice.state == UserState.PROVISIONED
        assert alice.container.image("python:3.9-slim").outcome == Outcome.FAILED
        assert report.ok
        assert report.failed == 1

    async def test_volume_failure_fails_user(self, app, runtime):
        """Test an aborted container environment fails the user."""
        runtime.fail_volumes = True

        report = await app.provision()

        alice = report.user("alice")
        assert alice.state == UserState.FAILED
        assert alice.error.startswith("volumes: ")
        assert not report.ok

    async def test_users_are_isolated(self, config_factory, runtime, accounts, sleep, system_root,
                                      transport_factory):
        """Test one user's failure does not stop the next user."""
        config = config_factory(users=["alice", "bob"])
        app = ProvisionApp(config, runtime=runtime, accounts=accounts, sleep=sleep,
                           system_root=system_root, transport=transport_factory())
        original_create = accounts.create

        async def create(username, shell, groups):
            if username == "alice":
                raise ProvisionError("useradd: group 'wheel' does not exist")
            await original_create(username, shell, groups)

        accounts.create = create

        report = await app.provision()

        assert [u.username for u in report.users] == ["alice", "bob"]
        assert report.user("alice").failed
        assert report.user("alice").error.startswith("account: ")
        assert report.user("alice").container is None
        assert report.user("bob").state == UserState.PROVISIONED
        assert report.failed_users == ["alice"]

    async def test_subset_of_users(self, app, accounts):
        """Test provisioning only the named users."""
        report = await app.provision(["carol"])

        assert [u.username for u in report.users] == ["carol"]
        assert "alice" not in accounts.users

    async def test_preflight_failure_aborts(self, app, runtime, accounts):
        """Test a preflight failure stops the run before any mutation."""
        runtime.runtime_version = "3.4.4"

        with pytest.raises(PreflightError):
            await app.provision()

        assert accounts.calls == []
        assert runtime.calls == []


@pytest.mark.asyncio
class TestUserOperations:
    """Test single-user operations of the application."""

    async def test_create_user(self, app, accounts):
        """Test creating a new user provisions only that user."""
        report = await app.create_user("carol")

        assert report.ok
        assert "carol" in accounts.users

    async def test_create_existing_user(self, app, accounts):
        """Test creating an existing user is refused."""
        accounts.add_user("alice")

        with pytest.raises(ProvisionError, match="already exists"):
            await app.create_user("alice")

    async def test_reset_user(self, app, runtime):
        """Test reset removes the user's resources and recreates them."""
        await app.provision()
        runtime.add_container("c1", "alice")
        runtime.calls.clear()

        result = await app.reset_user("alice")

        assert not result.aborted
        assert "c1" not in runtime.containers
        assert ("volume-rm", "alice-mcp-data") in runtime.calls
        assert ("volume-create", "alice-mcp-data") in runtime.calls
        assert "alice-mcp-data" in runtime.volumes

    async def test_user_status(self, app, runtime):
        """Test status reports account, resources and usage."""
        await app.provision()
        runtime.add_container("c1", "alice", memory=1024)

        status = await app.user_status("alice")

        assert status["exists"] is True
        assert status["user"] == "present"
        assert status["containers"] == ["c1"]
        assert "alice-mcp-data" in status["volumes"]
        assert status["usage"].get(ResourceKind.MEMORY).usage == 1024

    async def test_user_status_missing(self, app):
        """Test status of an unknown user."""
        status = await app.user_status("ghost")

        assert status["exists"] is False
        assert status["user"] == "absent"
        assert status["usage"] is None
        assert status["containers"] == []

    async def test_invalid_usernames_rejected(self, app, accounts, runtime):
        """Test every single-user operation refuses names that are not plain account names."""
        for operation in (app.create_user, app.reset_user, app.user_status):
            with pytest.raises(ConfigError, match="Invalid username"):
                await operation("../etc")
        with pytest.raises(ConfigError, match="Invalid username"):
            await app.provision(["alice", "."])

        assert accounts.calls == []
        assert runtime.calls == []

    async def test_close_releases_accounts(self, app, accounts):
        """Test closing the application closes the account gateway."""
        accounts.close = AsyncMock()

        await app.close()

        accounts.close.assert_awaited_once()
