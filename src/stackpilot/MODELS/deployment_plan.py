"""
Models for deployment plans and the results of applying them.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class ResourceKind(str, Enum):
    """
    Kind of resource a plan step creates on the container host.
    """
    NETWORK = "network"
    VOLUME = "volume"
    SERVICE = "service"


class PlanStep(BaseModel):
    """
    One atomic resource operation within a deployment plan.
    """
    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str
    source_name: str
    spec: Dict[str, Any] = {}

    @property
    def key(self) -> Tuple[ResourceKind, str]:
        return (self.kind, self.name)


class DeploymentPlan(BaseModel):
    """
    Ordered resource operations for one stack: networks, then volumes, then
    services in dependency order.
    """
    stack_name: str
    steps: List[PlanStep] = []
    variables: Dict[str, str] = {}

    @property
    def networks(self) -> List[PlanStep]:
        return [s for s in self.steps if s.kind == ResourceKind.NETWORK]

    @property
    def volumes(self) -> List[PlanStep]:
        return [s for s in self.steps if s.kind == ResourceKind.VOLUME]

    @property
    def services(self) -> List[PlanStep]:
        return [s for s in self.steps if s.kind == ResourceKind.SERVICE]

    @property
    def service_count(self) -> int:
        return len(self.services)

    def index_of(self, kind: ResourceKind, source_name: str) -> int:
        """
        Position of the step for a manifest resource, or -1 if absent.
        """
        for index, step in enumerate(self.steps):
            if step.kind == kind and step.source_name == source_name:
                return index
        return -1


class StepOutcome(str, Enum):
    """
    What happened to a plan step when the plan was applied.
    """
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    """
    Classification of a failed adapter call.
    """
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class StepResult(BaseModel):
    """
    Result of one plan step.
    """
    step: PlanStep
    outcome: StepOutcome
    attempts: int = 0
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (StepOutcome.APPLIED, StepOutcome.UNCHANGED)


class PlanResult(BaseModel):
    """
    Per-step results of applying a deployment plan.
    """
    stack_name: str
    results: List[StepResult] = []

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results)

    @property
    def cancelled(self) -> bool:
        return any(r.outcome == StepOutcome.CANCELLED for r in self.results)

    @property
    def failed_steps(self) -> List[StepResult]:
        return [r for r in self.results if r.outcome == StepOutcome.FAILED]

    @property
    def failed_step(self) -> Optional[StepResult]:
        failed = self.failed_steps
        return failed[0] if failed else None

    @property
    def applied_resources(self) -> List[Tuple[ResourceKind, str]]:
        """
        Resources that exist on the host after the run, in plan order.
        """
        return [r.step.key for r in self.results if r.succeeded]

    @property
    def error_message(self) -> Optional[str]:
        failed = self.failed_step
        if failed is not None:
            return f"{failed.step.kind.value} '{failed.step.name}': {failed.error}"
        if self.cancelled:
            return "Deployment cancelled"
        return None
