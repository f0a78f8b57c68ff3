"""Action records and pass reports."""

from datetime import datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, Field


class Tier(IntEnum):
    """Execution tiers. A tier completes before the next one starts."""

    PROVISION = 0
    MEMBERSHIP = 1
    TOPOLOGY = 2
    IMAGE = 3
    PLACEMENT = 4
    EXPOSURE = 5


class ActionKind(str, Enum):
    BOOTSTRAP = "bootstrap"
    JOIN = "join"
    LABEL = "label"
    TAINT = "taint"
    BUILD = "build"
    PUSH = "push"
    APPLY = "apply"
    PATCH = "patch"
    EXPOSE = "expose"


ACTION_TIERS = {
    ActionKind.BOOTSTRAP: Tier.PROVISION,
    ActionKind.JOIN: Tier.MEMBERSHIP,
    ActionKind.LABEL: Tier.TOPOLOGY,
    ActionKind.TAINT: Tier.TOPOLOGY,
    ActionKind.BUILD: Tier.IMAGE,
    ActionKind.PUSH: Tier.IMAGE,
    ActionKind.APPLY: Tier.PLACEMENT,
    ActionKind.PATCH: Tier.PLACEMENT,
    ActionKind.EXPOSE: Tier.EXPOSURE,
}


class ActionOutcome(str, Enum):
    PLANNED = "planned"
    APPLIED = "applied"
    NOOP = "noop"
    REDUNDANT = "redundant"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def succeeded(self) -> bool:
        return self in (ActionOutcome.APPLIED, ActionOutcome.NOOP, ActionOutcome.REDUNDANT)


class ActionRecord(BaseModel):
    """One planned or executed convergence step."""

    kind: ActionKind
    subject: str  # node name, image reference or namespace/name of a workload
    detail: str = ""
    outcome: ActionOutcome = ActionOutcome.PLANNED
    attempts: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def tier(self) -> Tier:
        return ACTION_TIERS[self.kind]

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def describe(self) -> str:
        text = f"{self.kind.value} {self.subject}"
        return f"{text} ({self.detail})" if self.detail else text


class HealthState(str, Enum):
    CONVERGED = "Converged"
    TIMED_OUT = "TimedOut"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class WorkloadHealth(BaseModel):
    """Verification result for one workload."""

    workload: str
    state: HealthState
    ready: int = 0
    desired: int = 0
    message: str = ""


class PassStatus(str, Enum):
    CONVERGED = "converged"
    PLANNED = "planned"
    INVALID = "invalid"
    TIMED_OUT = "timed-out"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


EXIT_CODES = {
    PassStatus.CONVERGED: 0,
    PassStatus.PLANNED: 0,
    PassStatus.INVALID: 1,
    PassStatus.TIMED_OUT: 2,
    PassStatus.DEGRADED: 3,
    PassStatus.FAILED: 4,
    PassStatus.CANCELLED: 130,
}


class PassReport(BaseModel):
    """Outcome of one reconciliation pass."""

    topology: str
    status: PassStatus
    actions: list[ActionRecord] = Field(default_factory=list)
    health: list[WorkloadHealth] = Field(default_factory=list)
    error: str | None = None
    dry_run: bool = False

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @property
    def executed(self) -> list[ActionRecord]:
        idle = (ActionOutcome.PLANNED, ActionOutcome.SKIPPED)
        return [a for a in self.actions if a.outcome not in idle]

    def count(self, outcome: ActionOutcome) -> int:
        return sum(1 for a in self.actions if a.outcome == outcome)
