"""Environment checks that gate a provisioning run."""

import asyncio
import logging
from pathlib import Path
from typing import List

from podprov.errors import PreflightError
from podprov.models.config import ProvisionConfig
from podprov.runtime.gateway import RuntimeGateway
from podprov.utils.units import format_size, version_tuple


logger = logging.getLogger(__name__)

GIB = 1024 ** 3


def version_at_least(version: str, minimum: str) -> bool:
    """Compare dotted versions, padding the shorter one with zeros."""
    current, required = version_tuple(version), version_tuple(minimum)
    width = max(len(current), len(required))
    current += (0,) * (width - len(current))
    required += (0,) * (width - len(required))
    return current >= required


async def run_preflight(config: ProvisionConfig, runtime: RuntimeGateway) -> List[str]:
    """Check the runtime, memory and certificate before any mutation.

    Raises ``PreflightError`` for unmet hard requirements. Returns the
    warnings for soft ones.
    """
    warnings = []

    try:
        version = await runtime.version()
    except Exception as e:
        raise PreflightError(f"Container runtime is not available: {e}") from e

    if not version_at_least(version, config.min_runtime_version):
        raise PreflightError(
            f"Runtime version {version} is older than required {config.min_runtime_version}"
        )
    logger.info(f"Runtime version {version}")

    try:
        info = await runtime.info()
        mem_total = int((info.get("host") or {}).get("memTotal", 0))
    except Exception as e:
        logger.warning(f"Could not read runtime host memory: {e}")
        mem_total = 0

    if mem_total and mem_total < config.min_memory_gb * GIB:
        message = f"Host memory {format_size(mem_total)} is below the recommended {config.min_memory_gb}GB"
        logger.warning(message)
        warnings.append(message)

    certificate = Path(config.certificate.local_path)
    if not await asyncio.to_thread(certificate.exists):
        raise PreflightError(f"Trust certificate not found: {certificate}")

    logger.info("Preflight checks passed")
    return warnings
