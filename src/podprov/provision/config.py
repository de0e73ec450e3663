"""Configuration loading."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from podprov.errors import ConfigError
from podprov.models.config import ProvisionConfig


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/podman-provision/config.yaml")


class ConfigManager:
    """Loads the declarative provisioning configuration from one YAML file."""

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        """Initialize configuration manager."""
        self.config_path = Path(config_path)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.config: Optional[ProvisionConfig] = None

    async def load(self) -> ProvisionConfig:
        """Load and validate the configuration file.

        Raises ``ConfigError`` when the file is missing, unparsable or
        invalid.
        """
        logger.info(f"Loading configuration from {self.config_path}")

        if not await asyncio.to_thread(self.config_path.exists):
            raise ConfigError(f"Configuration not found: {self.config_path}")

        try:
            data = await self._read_yaml(self.config_path)
        except YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration must be a mapping: {self.config_path}")

        try:
            self.config = ProvisionConfig.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise ConfigError(f"Invalid configuration in {self.config_path}: {e}") from e

        logger.debug(f"Configuration loaded: {len(self.config.users)} user(s)")
        return self.config

    async def validate(self) -> Dict[str, Any]:
        """Validate the configuration without raising."""
        try:
            config = await self.load()
        except ConfigError as e:
            return {"valid": False, "path": str(self.config_path), "error": str(e)}

        return {
            "valid": True,
            "path": str(self.config_path),
            "users": list(config.users),
            "groups": {group.name: len(group.images) for group in config.groups()},
            "images": len(config.image_references()),
            "services": list(config.mcp_enabled_services),
            "registries": list(config.registry_mirrors),
        }

    async def _read_yaml(self, file_path: Path) -> Any:
        """Read YAML file asynchronously."""
        def _read_sync():
            with open(file_path, 'r') as f:
                return self.yaml.load(f)

        return await asyncio.to_thread(_read_sync)
