"""Tests for container provider."""

import json
from pathlib import Path

import pytest
from ruamel.yaml import YAML

from podprov.models.results import Outcome
from podprov.providers.base import ProviderStatus
from podprov.providers.container import ContainerProvider, network_name, socket_url, volume_name
from podprov.provision.main import ProvisionApp


DEPENDS = "io.podprov.depends-on"


@pytest.fixture
def make_app(runtime, accounts, sleep, system_root, transport_factory):
    """Build an application around a custom configuration."""
    def factory(config):
        return ProvisionApp(config, runtime=runtime, accounts=accounts, sleep=sleep,
                            system_root=system_root, transport=transport_factory())

    return factory


async def _container_provider(app) -> ContainerProvider:
    await app.initialize()
    return app.registry.get_provider("container")


def test_resource_names():
    """Test per-user resource naming."""
    assert volume_name("alice", "mcp-data") == "alice-mcp-data"
    assert network_name("alice", "ai-net") == "alice-ai-net"
    assert socket_url(1001) == "unix:///run/user/1001/podman/podman.sock"


@pytest.mark.asyncio
class TestContainerEnvironment:
    """Test volumes, networks and integration files."""

    async def test_volumes_and_networks(self, app, runtime, accounts, config):
        """Test every template is created with the owner label."""
        accounts.add_user("alice")
        provider = await _container_provider(app)

        result = await provider.reconcile("alice")

        assert not result.aborted
        for template in config.volume_templates:
            assert runtime.volumes[f"alice-{template}"] == {"user": "alice"}
        for template in config.network_templates:
            assert runtime.networks[f"alice-{template}"] == {"user": "alice"}
        assert result.steps[0].name == "volumes"
        assert result.steps[0].outcome == Outcome.CHANGED

    async def test_second_run_unchanged(self, app, runtime, accounts):
        """Test a second run creates and pulls nothing."""
        accounts.add_user("alice")
        provider = await _container_provider(app)
        await provider.reconcile("alice")
        runtime.calls.clear()

        result = await provider.reconcile("alice")

        assert all(s.outcome == Outcome.UNCHANGED for s in result.steps)
        assert all(i.outcome == Outcome.UNCHANGED for i in result.images)
        assert not [c for c in runtime.calls if c[0] in ("volume-create", "network-create", "pull")]

    async def test_volume_failure_aborts(self, app, runtime, accounts, sleep):
        """Test a volume failure aborts before any image is pulled."""
        accounts.add_user("alice")
        runtime.fail_volumes = True
        provider = await _container_provider(app)

        result = await provider.reconcile("alice")

        assert result.aborted
        assert result.steps[-1].name == "volumes"
        assert result.steps[-1].outcome == Outcome.FAILED
        assert result.images == []
        assert not [c for c in runtime.calls if c[0] == "pull"]
        assert sleep.await_count == 2

    async def test_editor_settings(self, app, accounts, config):
        """Test the editor is pointed at the user's runtime socket."""
        accounts.add_user("alice")
        provider = await _container_provider(app)

        await provider.reconcile("alice")

        path = Path(config.home_root) / "alice/.config/Code/User/settings.json"
        settings = json.loads(path.read_text())
        assert settings["dev.containers.dockerPath"] == "podman"
        assert settings["dev.containers.environment"]["DOCKER_HOST"] == socket_url(1000)

    async def test_service_config(self, app, accounts, config):
        """Test the service discovery document lists the user's resources."""
        accounts.add_user("alice")
        provider = await _container_provider(app)

        await provider.reconcile("alice")

        path = Path(config.home_root) / "alice/.config/mcp/config.yaml"
        document = YAML(typ="safe").load(path.read_text())
        assert document["volumes"]["mcp-data"] == "alice-mcp-data"
        assert document["networks"] == ["alice-mcp-net", "alice-ai-net"]
        assert document["services"]["enabled"] == ["code-intelligence", "ai-assistant"]
        assert document["storage"]["settings"]["socket"] == socket_url(1000)

    async def test_integration_failure_is_warning(self, app):
        """Test integration files that cannot be written only warn."""
        provider = await _container_provider(app)

        result = await provider.reconcile("ghost")

        assert not result.aborted
        editor = [s for s in result.steps if s.name == "editor"][0]
        assert editor.outcome == Outcome.WARNING

    async def test_status(self, app, accounts):
        """Test status follows the user's volumes and networks."""
        accounts.add_user("alice")
        provider = await _container_provider(app)

        assert await provider.status("alice") == ProviderStatus.ABSENT
        await provider.reconcile("alice")
        assert await provider.status("alice") == ProviderStatus.PRESENT

    async def test_validate(self, app, accounts):
        """Test validation requires the account."""
        provider = await _container_provider(app)

        assert await provider.validate("alice") is False
        accounts.add_user("alice")
        assert await provider.validate("alice") is True


@pytest.mark.asyncio
class TestImagePulls:
    """Test image pulls, health checks and dependency resolution."""

    async def test_failures_are_isolated(self, config_factory, make_app, runtime):
        """Test one bad image does not stop the rest of the group."""
        runtime.remote.update({"ubuntu:22.04": "sha256:ubuntu", "node:20": "sha256:node"})
        runtime.unhealthy.add("python:3.9-slim")
        config = config_factory(container_groups={
            "base": ["ubuntu:22.04", "missing:1", "python:3.9-slim", "node:20"],
        })
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [(r.ref, r.outcome) for r in results] == [
            ("ubuntu:22.04", Outcome.CHANGED),
            ("missing:1", Outcome.FAILED),
            ("python:3.9-slim", Outcome.WARNING),
            ("node:20", Outcome.CHANGED),
        ]
        assert runtime.calls.count(("pull", "missing:1")) == 3
        assert "health check" in results[2].message

    async def test_present_image_still_checked(self, app, runtime):
        """Test a present image is not pulled but is health checked."""
        runtime.images["python:3.9-slim"] = "sha256:python39"
        provider = await _container_provider(app)

        results = await provider.pull_groups()

        assert results[0].outcome == Outcome.UNCHANGED
        assert ("pull", "python:3.9-slim") not in runtime.calls
        assert ("run", "python:3.9-slim") in runtime.calls

    async def test_namespaced_group(self, config_factory, make_app, runtime):
        """Test bare names in namespaced groups are expanded."""
        runtime.remote["mcp/core-api:latest"] = "sha256:core"
        config = config_factory(container_groups={"mcp": ["core-api:latest"]})
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert results[0].ref == "mcp/core-api:latest"
        assert results[0].group == "mcp"
        assert results[0].outcome == Outcome.CHANGED

    async def test_dependencies_one_level(self, config_factory, make_app, runtime):
        """Test declared dependencies are pulled one level deep by default."""
        for ref in ("app:1", "lib:1", "tool:1", "deep:1"):
            runtime.remote[ref] = f"sha256:{ref}"
        runtime.labels["app:1"] = {DEPENDS: "lib:1, tool:1"}
        runtime.labels["lib:1"] = {DEPENDS: "deep:1"}
        config = config_factory(container_groups={"base": ["app:1"]})
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [r.ref for r in results] == ["app:1", "lib:1", "tool:1"]
        assert results[1].required_by == "app:1"
        assert results[0].required_by is None

    async def test_dependencies_deeper(self, config_factory, make_app, runtime):
        """Test the dependency depth is configurable."""
        for ref in ("app:1", "lib:1", "deep:1"):
            runtime.remote[ref] = f"sha256:{ref}"
        runtime.labels["app:1"] = {DEPENDS: "lib:1"}
        runtime.labels["lib:1"] = {DEPENDS: "deep:1"}
        config = config_factory(container_groups={"base": ["app:1"]}, dependency_depth=2)
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [r.ref for r in results] == ["app:1", "lib:1", "deep:1"]
        assert results[2].required_by == "lib:1"

    async def test_dependency_cycle(self, config_factory, make_app, runtime):
        """Test cyclic dependencies terminate with each image pulled once."""
        runtime.remote.update({"a:1": "sha256:a", "b:1": "sha256:b"})
        runtime.labels["a:1"] = {DEPENDS: "b:1"}
        runtime.labels["b:1"] = {DEPENDS: "a:1"}
        config = config_factory(container_groups={"base": ["a:1"]}, dependency_depth=10)
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [r.ref for r in results] == ["a:1", "b:1"]
        assert runtime.calls.count(("pull", "a:1")) == 1

    async def test_failed_image_dependencies_skipped(self, config_factory, make_app, runtime):
        """Test dependencies of an image that failed to pull are not followed."""
        runtime.labels["gone:1"] = {DEPENDS: "lib:1"}
        runtime.remote["lib:1"] = "sha256:lib"
        config = config_factory(container_groups={"base": ["gone:1"]})
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [r.ref for r in results] == ["gone:1"]
        assert results[0].outcome == Outcome.FAILED

    async def test_shared_image_pulled_once(self, config_factory, make_app, runtime):
        """Test an image listed in two groups is processed once."""
        runtime.remote["ubuntu:22.04"] = "sha256:ubuntu"
        config = config_factory(container_groups={"base": ["ubuntu:22.04"], "dev": ["ubuntu:22.04"]})
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert len(results) == 1
        assert runtime.calls.count(("pull", "ubuntu:22.04")) == 1

    async def test_configured_image_reached_as_dependency_first(self, config_factory, make_app, runtime):
        """Test an image pulled as a dependency keeps its own group and dependencies when configured later."""
        for ref in ("app:1", "lib:1", "base:1"):
            runtime.remote[ref] = f"sha256:{ref}"
        runtime.labels["app:1"] = {DEPENDS: "lib:1"}
        runtime.labels["lib:1"] = {DEPENDS: "base:1"}
        config = config_factory(container_groups={"apps": ["app:1"], "libs": ["lib:1"]})
        provider = await _container_provider(make_app(config))

        results = await provider.pull_groups()

        assert [(r.ref, r.group, r.required_by) for r in results] == [
            ("app:1", "apps", None),
            ("lib:1", "libs", None),
            ("base:1", "libs", "lib:1"),
        ]
        assert ("pull", "base:1") in runtime.calls
        assert runtime.calls.count(("pull", "lib:1")) == 1

    async def test_reconcile_uses_user_storage(self, app, runtime, accounts):
        """Test resources and images are managed in the user's own runtime storage."""
        accounts.add_user("alice")
        provider = await _container_provider(app)

        await provider.reconcile("alice")
        await provider.status("alice")

        assert runtime.scoped_users == ["alice", "alice"]
