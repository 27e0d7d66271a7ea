# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The product deployment aggregate and the stack deployments it owns.

The overall status of a product deployment is never stored. It is derived
from the stack statuses and the pass currently running, every time it is read.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, computed_field

from ..errors import InvalidStateTransition
from .deployment_plan import ResourceKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StackDeploymentStatus(str, Enum):
    """Status of one stack within a product deployment."""

    PENDING = "Pending"
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    FAILED = "Failed"
    REMOVING = "Removing"
    REMOVED = "Removed"


class ProductDeploymentStatus(str, Enum):
    """Overall status of a product deployment."""

    PENDING = "Pending"
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    PARTIALLY_FAILED = "PartiallyFailed"
    FAILED = "Failed"
    REMOVING = "Removing"
    REMOVED = "Removed"


class PassKind(str, Enum):
    """Kind of pass currently executing against a product deployment."""

    DEPLOY = "deploy"
    REMOVE = "remove"


class PhaseRecord(BaseModel):
    """A message in the lifecycle history of a product deployment."""

    message: str
    timestamp: datetime = Field(default_factory=utcnow)


_KIND_ORDER = {ResourceKind.NETWORK: 0, ResourceKind.VOLUME: 1, ResourceKind.SERVICE: 2}


def merge_resources(*groups: Sequence[Tuple[ResourceKind, str]]) -> List[Tuple[ResourceKind, str]]:
    """
    Combines resource lists without duplicates. Networks and volumes come
    before services, so removing the result in reverse takes services down first.
    """
    merged: List[Tuple[ResourceKind, str]] = []
    for group in groups:
        for kind, name in group:
            if (kind, name) not in merged:
                merged.append((kind, name))
    return sorted(merged, key=lambda r: _KIND_ORDER[r[0]])


class StackDeployment(BaseModel):
    """
    A single stack inside a product deployment.
    Exists only as part of its ProductDeployment.
    """

    stack_name: str
    display_name: str
    stack_id: str
    deployment_id: Optional[str] = None
    status: StackDeploymentStatus = StackDeploymentStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    order: int = Field(ge=0)
    service_count: int = Field(default=0, ge=0)
    is_new_in_upgrade: bool = False
    # No longer part of the deployed version; tracked so removal still tears it down
    is_retired: bool = False
    variables: Dict[str, str] = {}
    resources: List[Tuple[ResourceKind, str]] = []
    status_before_removal: Optional[StackDeploymentStatus] = None

    def start(self, deployment_id: str):
        if self.status != StackDeploymentStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot start stack '{self.stack_name}': current status is {self.status.value}, expected Pending."
            )
        self.deployment_id = deployment_id
        self.status = StackDeploymentStatus.DEPLOYING
        self.started_at = utcnow()
        self.completed_at = None
        self.error_message = None

    def complete(self, resources: Sequence[Tuple[ResourceKind, str]]):
        if self.status != StackDeploymentStatus.DEPLOYING:
            raise InvalidStateTransition(
                f"Cannot complete stack '{self.stack_name}': current status is {self.status.value}, expected Deploying."
            )
        self.status = StackDeploymentStatus.RUNNING
        self.resources = list(resources)
        self.completed_at = utcnow()

    def fail(self, error_message: str, resources: Sequence[Tuple[ResourceKind, str]] = ()):
        if self.status not in (StackDeploymentStatus.PENDING, StackDeploymentStatus.DEPLOYING):
            raise InvalidStateTransition(
                f"Cannot fail stack '{self.stack_name}': current status is {self.status.value}, "
                "expected Pending or Deploying."
            )
        self.status = StackDeploymentStatus.FAILED
        self.error_message = error_message or "Unknown error"
        # Steps applied before the failure stay on the host next to what the stack already tracked
        self.resources = merge_resources(self.resources, resources)
        self.completed_at = utcnow()

    def begin_removal(self):
        self.status_before_removal = self.status
        self.status = StackDeploymentStatus.REMOVING
        self.error_message = None

    def mark_removed(self):
        self.status = StackDeploymentStatus.REMOVED
        self.status_before_removal = None
        self.resources = []
        self.completed_at = utcnow()

    def fail_removal(self, error_message: str):
        self.status = self.status_before_removal or StackDeploymentStatus.FAILED
        self.status_before_removal = None
        self.error_message = error_message


def derive_status(
    stacks: Sequence[StackDeployment], active_pass: Optional[PassKind]
) -> ProductDeploymentStatus:
    """
    Computes the overall status of a product from its stacks.

    :param stacks: The stack deployments of the product.
    :param active_pass: The pass currently running, if any.
    :return: The product deployment status.
    """
    if active_pass == PassKind.DEPLOY:
        return ProductDeploymentStatus.DEPLOYING
    if active_pass == PassKind.REMOVE:
        return ProductDeploymentStatus.REMOVING
    if not stacks:
        return ProductDeploymentStatus.PENDING

    left = [s for s in stacks if s.status != StackDeploymentStatus.REMOVED]
    if not left:
        return ProductDeploymentStatus.REMOVED
    # Retired stacks only decide the status once nothing else is left
    remaining = [s.status for s in left if not s.is_retired] or [s.status for s in left]
    if all(s == StackDeploymentStatus.PENDING for s in remaining):
        return ProductDeploymentStatus.PENDING

    running = remaining.count(StackDeploymentStatus.RUNNING)
    if running == len(remaining):
        return ProductDeploymentStatus.RUNNING
    if StackDeploymentStatus.PENDING in remaining:
        # The pass was aborted before it reached every stack
        return ProductDeploymentStatus.FAILED
    if running:
        return ProductDeploymentStatus.PARTIALLY_FAILED
    return ProductDeploymentStatus.FAILED


class ProductDeployment(BaseModel):
    """
    Aggregate root for the deployment of one product (a group of stacks)
    into one environment.

    Lifecycle:
        Pending  -> Deploying -> Running | PartiallyFailed | Failed
        Running  -> Deploying (upgrade) -> Running | PartiallyFailed | Failed
        any state but Removed -> Removing -> Removed (or back to its prior state
        when a stack could not be removed)

    A deployment that was rolled back or redeployed is superseded: its
    successor took over the resources it tracked, and it is kept as history only.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    environment_id: str
    product_group_id: str
    product_id: Optional[str] = None
    product_name: str
    product_version: str
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    continue_on_error: bool = False
    stacks: List[StackDeployment] = []
    shared_variables: Dict[str, str] = {}
    error_message: Optional[str] = None
    superseded_by: Optional[str] = None

    # Upgrade tracking
    previous_version: Optional[str] = None
    previous_stacks: List[StackDeployment] = []
    previous_shared_variables: Dict[str, str] = {}
    upgrade_count: int = 0
    last_upgraded_at: Optional[datetime] = None
    upgrading: bool = False

    active_pass: Optional[PassKind] = None
    phase_history: List[PhaseRecord] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ProductDeploymentStatus:
        return derive_status(self.stacks, self.active_pass)

    # Counters, over the stacks of the deployed version

    @property
    def current_stacks(self) -> List[StackDeployment]:
        return [s for s in self.stacks if not s.is_retired]

    @property
    def total_stacks(self) -> int:
        return len(self.current_stacks)

    @property
    def completed_stacks(self) -> int:
        return sum(1 for s in self.current_stacks if s.status == StackDeploymentStatus.RUNNING)

    @property
    def failed_stacks(self) -> int:
        return sum(1 for s in self.current_stacks if s.status == StackDeploymentStatus.FAILED)

    # Queries

    @property
    def is_in_progress(self) -> bool:
        return self.active_pass is not None

    @property
    def is_operational(self) -> bool:
        return self.status in (ProductDeploymentStatus.RUNNING, ProductDeploymentStatus.PARTIALLY_FAILED)

    @property
    def is_removed(self) -> bool:
        return self.status == ProductDeploymentStatus.REMOVED

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    @property
    def can_upgrade(self) -> bool:
        return not self.is_superseded and self.status == ProductDeploymentStatus.RUNNING

    @property
    def can_remove(self) -> bool:
        return not self.is_superseded and self.status not in (
            ProductDeploymentStatus.REMOVED,
            ProductDeploymentStatus.REMOVING,
            ProductDeploymentStatus.DEPLOYING,
        )

    @property
    def can_rollback(self) -> bool:
        return (
            not self.is_superseded
            and self.status in (ProductDeploymentStatus.FAILED, ProductDeploymentStatus.PARTIALLY_FAILED)
            and self.previous_version is not None
            and bool(self.previous_stacks)
        )

    def stacks_in_deploy_order(self) -> List[StackDeployment]:
        return sorted(self.stacks, key=lambda s: s.order)

    def stacks_in_remove_order(self) -> List[StackDeployment]:
        return sorted(self.stacks, key=lambda s: s.order, reverse=True)

    def find_stack(self, stack_name: str) -> StackDeployment:
        for stack in self.stacks:
            if stack.stack_name.lower() == stack_name.lower():
                return stack
        raise InvalidStateTransition(f"Stack '{stack_name}' not found in this product deployment.")

    # Deploy pass

    def begin_deploy_pass(self):
        """
        Enters Deploying for a first deployment or an upgrade.
        """
        status = self.status
        if status == ProductDeploymentStatus.RUNNING and not self.upgrading:
            raise InvalidStateTransition("Product is already running; upgrade it instead.")
        if status not in (ProductDeploymentStatus.PENDING, ProductDeploymentStatus.RUNNING):
            raise InvalidStateTransition(f"Invalid state transition from {status.value} to Deploying.")
        self.active_pass = PassKind.DEPLOY
        self.completed_at = None
        self.error_message = None
        self._record("Upgrade pass started" if self.upgrading else "Deployment pass started")

    def begin_upgrade(
        self,
        target_version: str,
        stacks: List[StackDeployment],
        shared_variables: Dict[str, str],
        continue_on_error: bool,
        product_id: Optional[str] = None,
    ):
        """
        Replaces the stack set with the target version's and re-enters Deploying.
        The current stacks are kept as the rollback snapshot.
        """
        if not self.can_upgrade:
            raise InvalidStateTransition(
                f"Cannot upgrade a product deployment in status {self.status.value}."
            )
        if not stacks:
            raise ValueError("At least one stack is required.")

        existing = {s.display_name.lower() for s in self.stacks}
        for stack in stacks:
            stack.is_new_in_upgrade = stack.display_name.lower() not in existing

        self.previous_version = self.product_version
        self.previous_stacks = [s.model_copy(deep=True) for s in self.stacks]
        self.previous_shared_variables = dict(self.shared_variables)
        self.product_version = target_version
        if product_id:
            self.product_id = product_id
        self.stacks = stacks
        self.shared_variables = dict(shared_variables)
        self.continue_on_error = continue_on_error
        self.upgrade_count += 1
        self.upgrading = True
        self._record(f"Upgrade initiated from {self.previous_version} to {target_version}")
        self.begin_deploy_pass()

    def start_stack(self, stack_name: str, deployment_id: str) -> StackDeployment:
        self._require_pass(PassKind.DEPLOY)
        stack = self.find_stack(stack_name)
        stack.start(deployment_id)
        self._record(f"Stack '{stack_name}' started")
        return stack

    def complete_stack(self, stack_name: str, resources: Sequence[Tuple[ResourceKind, str]]):
        self._require_pass(PassKind.DEPLOY)
        self.find_stack(stack_name).complete(resources)
        self._record(f"Stack '{stack_name}' completed")

    def fail_stack(self, stack_name: str, error_message: str,
                   resources: Sequence[Tuple[ResourceKind, str]] = ()):
        self._require_pass(PassKind.DEPLOY)
        self.find_stack(stack_name).fail(error_message, resources)
        self._record(f"Stack '{stack_name}' failed: {error_message}")

    # Removal pass

    def begin_removal(self):
        if self.is_superseded:
            raise InvalidStateTransition(
                f"Deployment was superseded by {self.superseded_by}; remove that deployment instead."
            )
        if not self.can_remove:
            raise InvalidStateTransition(
                f"Invalid state transition from {self.status.value} to Removing."
            )
        for stack in self.stacks:
            if stack.status != StackDeploymentStatus.REMOVED:
                stack.begin_removal()
        self.active_pass = PassKind.REMOVE
        self.completed_at = None
        self.error_message = None
        self._record("Removal initiated")

    def mark_stack_removed(self, stack_name: str):
        self._require_pass(PassKind.REMOVE)
        self.find_stack(stack_name).mark_removed()
        self._record(f"Stack '{stack_name}' removed")

    def record_removal_error(self, stack_name: str, error_message: str):
        self._require_pass(PassKind.REMOVE)
        self.find_stack(stack_name).fail_removal(error_message)
        self._record(f"Stack '{stack_name}' removal failed: {error_message}")

    # Both passes

    def end_pass(self, error_message: Optional[str] = None) -> ProductDeploymentStatus:
        """
        Leaves the active pass; the status is recomputed from the stacks.

        :param error_message: Pass-level error (for example a cancellation).
        :return: The resulting status.
        """
        if self.active_pass is None:
            raise InvalidStateTransition("No pass is active.")
        finished = self.active_pass
        for stack in self.stacks:
            if stack.status == StackDeploymentStatus.DEPLOYING:
                stack.fail(error_message or "Deployment pass ended before the stack completed")
            elif stack.status == StackDeploymentStatus.REMOVING:
                stack.fail_removal(error_message or "Removal pass ended before the stack was removed")
        self.active_pass = None
        self.completed_at = utcnow()

        status = self.status
        self.error_message = error_message or self._summarize(status, finished)
        if finished == PassKind.DEPLOY and self.upgrading:
            self.upgrading = False
            if status == ProductDeploymentStatus.RUNNING:
                self.last_upgraded_at = self.completed_at
        self._record(f"{finished.value.capitalize()} pass finished: {status.value}")
        return status

    def _summarize(self, status: ProductDeploymentStatus, finished: PassKind) -> Optional[str]:
        if finished == PassKind.REMOVE:
            if status == ProductDeploymentStatus.REMOVED:
                return None
            errors = sum(1 for s in self.stacks if s.status != StackDeploymentStatus.REMOVED)
            return f"{errors} of {len(self.stacks)} stacks could not be removed."
        total = self.total_stacks
        if status == ProductDeploymentStatus.RUNNING:
            return None
        if status == ProductDeploymentStatus.PARTIALLY_FAILED:
            return f"{self.failed_stacks} of {total} stacks failed."
        if any(s.status == StackDeploymentStatus.PENDING for s in self.current_stacks):
            return (
                f"Deployment aborted after failure. "
                f"{self.completed_stacks} of {total} stacks running."
            )
        return f"All {self.failed_stacks} stacks failed."

    def note(self, message: str):
        """
        Adds a message to the lifecycle history.
        """
        self._record(message)

    def supersede(self, deployment_id: str, message: str):
        """
        Hands this deployment over to its successor, which now tracks its resources.
        """
        if self.is_in_progress:
            raise InvalidStateTransition("Cannot supersede a deployment while a pass is active.")
        self.superseded_by = deployment_id
        self._record(message)

    def _require_pass(self, kind: PassKind):
        if self.active_pass != kind:
            raise InvalidStateTransition(
                f"Operation requires an active {kind.value} pass; product status is {self.status.value}."
            )

    def _record(self, message: str):
        self.phase_history.append(PhaseRecord(message=message))

    def __str__(self):
        return (
            f"ProductDeployment [id={self.id}, product={self.product_name}, "
            f"version={self.product_version}, status={self.status.value}]"
        )
