"""Result records produced by reconciliation runs."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    """Outcome of a single step or item."""
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.CHANGED, Outcome.UNCHANGED)


class UserState(str, Enum):
    """Terminal states of a user reconciliation."""
    PROVISIONED = "provisioned"
    FAILED = "failed"


class StepResult(BaseModel):
    """Result of one provisioning step."""
    name: str
    outcome: Outcome
    message: str = ""


class ImageResult(BaseModel):
    """Result of pulling and verifying one image."""
    ref: str
    group: str
    outcome: Outcome
    message: str = ""
    required_by: Optional[str] = Field(None, description="Image that declared this one as a dependency")


class ContainerResult(BaseModel):
    """Result of a user's container environment reconciliation."""
    username: str
    aborted: bool = False
    steps: List[StepResult] = Field(default_factory=list)
    images: List[ImageResult] = Field(default_factory=list)

    def image(self, ref: str) -> Optional[ImageResult]:
        """Find the result for an image reference."""
        for result in self.images:
            if result.ref == ref:
                return result
        return None


class UserResult(BaseModel):
    """Aggregate result for one configured user."""
    username: str
    state: UserState = UserState.PROVISIONED
    steps: List[StepResult] = Field(default_factory=list)
    container: Optional[ContainerResult] = None
    error: Optional[str] = None

    def _outcomes(self) -> List[Outcome]:
        outcomes = [s.outcome for s in self.steps]
        if self.container:
            outcomes.extend(s.outcome for s in self.container.steps)
            outcomes.extend(i.outcome for i in self.container.images)
        return outcomes

    @property
    def failed(self) -> bool:
        return self.state == UserState.FAILED

    def step(self, name: str) -> Optional[StepResult]:
        """Find a user-level step result by name."""
        for result in self.steps:
            if result.name == name:
                return result
        return None

    def count(self, *outcomes: Outcome) -> int:
        """Count items with any of the given outcomes."""
        return sum(1 for o in self._outcomes() if o in outcomes)


class ProvisionReport(BaseModel):
    """Aggregate report of a provisioning run."""
    users: List[UserResult] = Field(default_factory=list)

    @property
    def failed_users(self) -> List[str]:
        return [u.username for u in self.users if u.failed]

    @property
    def ok(self) -> bool:
        """True when no user failed; warnings do not count."""
        return not self.failed_users

    @property
    def succeeded(self) -> int:
        return sum(u.count(Outcome.CHANGED, Outcome.UNCHANGED) for u in self.users)

    @property
    def warned(self) -> int:
        return sum(u.count(Outcome.WARNING) for u in self.users)

    @property
    def failed(self) -> int:
        return sum(u.count(Outcome.FAILED) for u in self.users)

    def user(self, username: str) -> Optional[UserResult]:
        for result in self.users:
            if result.username == username:
                return result
        return None

    def summary(self) -> str:
        """One-line summary of the run."""
        return (
            f"{len(self.users)} user(s), {len(self.failed_users)} failed; "
            f"items: {self.succeeded} succeeded, {self.warned} warned, {self.failed} failed"
        )
