"""Exception hierarchy for provisioning runs."""

from typing import Optional, Sequence


class ProvisionError(Exception):
    """Base class for all provisioning errors."""
    pass


class PreflightError(ProvisionError):
    """Environment requirement unmet; aborts before any mutation."""
    pass


class ConfigError(ProvisionError):
    """Missing or malformed declarative input."""
    pass


class TransientError(ProvisionError):
    """Network or tool-call failure that is worth retrying."""
    pass


class RuntimeCommandError(TransientError):
    """A runtime or OS tool exited with a non-zero status."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"'{' '.join(self.cmd)}' exited with {returncode}{detail}")


class ExhaustedError(ProvisionError):
    """All retry attempts of an operation failed."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {attempts} attempts failed for {description}"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class PerItemFailure(ProvisionError):
    """One image, user or step failed independently of the others."""
    pass


class HealthCheckError(PerItemFailure):
    """An image did not pass one of the health check stages."""

    def __init__(self, ref: str, stage: str, reason: str = ""):
        self.ref = ref
        self.stage = stage
        self.reason = reason
        message = f"Health check '{stage}' failed for {ref}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StepError(ProvisionError):
    """A provisioning step failed in a way that aborts its unit."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")


class DestructiveConfirmationRequired(ProvisionError):
    """A destructive teardown was requested without confirmation."""
    pass
