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
Deployment, upgrade, rollback and removal of multi-stack products.
"""
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..config import OrchestratorSettings
from ..errors import (
    ProductAlreadyDeployed,
    RollbackNotAvailable,
    StackNotFound,
    UpgradeNotEligible,
    VariableValidationFailed,
)
from ..MODELS.deployment_plan import DeploymentPlan, ResourceKind
from ..MODELS.product_deployment import (
    ProductDeployment,
    StackDeployment,
    StackDeploymentStatus,
    merge_resources,
)
from ..MODELS.upgrade_info import CatalogProduct, UpgradeInfo
from ..PARSERS.manifest_parser import ManifestParser
from ..RUNNERS.plan_builder import PlanBuilder
from ..RUNNERS.plan_executor import DeploymentOrchestrator
from ..UTILS.version_compare import compare_versions
from .catalog import ManifestSource, StackCatalog
from .exclusion_registry import ExclusionRegistry
from .repository import InMemoryProductDeploymentRepository, ProductDeploymentRepository
from .runtime_adapter import ContainerRuntimeAdapter
from .upgrade_engine import UpgradeEngine

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Deployment cancelled"


class StackRequest(BaseModel):
    """
    One stack to deploy as part of a product.
    """
    stack_id: str
    stack_name: Optional[str] = None
    display_name: Optional[str] = None
    variables: Dict[str, str] = {}


class DeployProductRequest(BaseModel):
    """
    Request to deploy a product into an environment.
    Without explicit stacks, every stack of the product version is deployed.
    """
    environment_id: str
    product_group_id: str
    product_version: Optional[str] = None
    stacks: List[StackRequest] = []
    shared_variables: Dict[str, str] = {}
    continue_on_error: Optional[bool] = None


@dataclass
class _CompiledStack:
    """A stack deployment together with the plan that deploys it."""

    stack: StackDeployment
    plan: DeploymentPlan


class ProductDeploymentOrchestrator:
    """
    Drives ProductDeployment aggregates through their lifecycle.

    Everything that can be checked without touching the container runtime
    (catalog lookup, manifest parsing, variable validation, plan building)
    happens before a pass starts and is raised to the caller. Failures during
    a pass are recorded on the aggregate, which is always returned.
    """

    def __init__(
        self,
        adapter: ContainerRuntimeAdapter,
        catalog: StackCatalog,
        source: ManifestSource,
        repository: Optional[ProductDeploymentRepository] = None,
        settings: Optional[OrchestratorSettings] = None,
        registry: Optional[ExclusionRegistry] = None,
        parser: Optional[ManifestParser] = None,
        builder: Optional[PlanBuilder] = None,
    ):
        """
        Initializes the orchestrator.

        :param adapter: The container runtime adapter.
        :param catalog: Catalog of published product versions.
        :param source: Supplies manifest text for catalog stacks.
        :param repository: Storage for product deployments.
        :param settings: Orchestrator settings.
        :param registry: Exclusion scopes per (environment, product group).
        :param parser: Manifest parser.
        :param builder: Plan builder.
        """
        self.settings = settings or OrchestratorSettings()
        self.catalog = catalog
        self.source = source
        self.repository = repository or InMemoryProductDeploymentRepository()
        self.registry = registry or ExclusionRegistry()
        self.parser = parser or ManifestParser()
        self.builder = builder or PlanBuilder()
        self.executor = DeploymentOrchestrator(adapter, self.settings)
        self.upgrade_engine = UpgradeEngine()

    # Queries

    def get(self, deployment_id: str) -> ProductDeployment:
        return self.repository.get(deployment_id)

    def list(self, environment_id: Optional[str] = None) -> List[ProductDeployment]:
        return self.repository.list(environment_id)

    def check_upgrade(self, deployment_id: str) -> UpgradeInfo:
        return self.upgrade_engine.check_upgrade(self.repository.get(deployment_id), self.catalog)

    # Operations

    def deploy(self, request: DeployProductRequest,
               cancel_event: Optional[threading.Event] = None) -> ProductDeployment:
        """
        Deploys a product version into an environment.

        :param request: The deployment request.
        :param cancel_event: Checked between plan steps.
        :return: The product deployment after the pass.
        :raises DeploymentInProgress: If a pass is running for the same product and environment.
        :raises ProductAlreadyDeployed: If the product is already operational there.
        """
        continue_on_error = self._continue_on_error(request.continue_on_error)

        with self.registry.acquire(request.environment_id, request.product_group_id):
            product = self._find_product(request.product_group_id, request.product_version)

            active = self.repository.get_active(request.environment_id, request.product_group_id)
            if active is not None and (active.is_operational or active.is_in_progress):
                raise ProductAlreadyDeployed(
                    f"Product '{request.product_group_id}' is already deployed in environment "
                    f"'{request.environment_id}' (deployment {active.id}, status {active.status.value})"
                )

            stack_requests = request.stacks or [StackRequest(stack_id=s) for s in product.stack_ids]
            compiled = self._compile(product, stack_requests, request.shared_variables)

            stacks = [c.stack for c in compiled]
            retired = self._take_over(active.stacks, stacks) if active is not None else []
            deployment = ProductDeployment(
                environment_id=request.environment_id,
                product_group_id=product.product_group_id,
                product_id=product.product_id,
                product_name=product.product_name or product.product_group_id,
                product_version=product.version,
                continue_on_error=continue_on_error,
                stacks=stacks + retired,
                shared_variables=dict(request.shared_variables),
            )
            self.repository.add(deployment)
            if active is not None:
                deployment.note(f"Supersedes deployment {active.id} ({active.status.value})")
                active.supersede(deployment.id, f"Superseded by deployment {deployment.id}")
                self.repository.update(active)

            logger.info(
                "Deploying %s %s to %s with %d stacks",
                deployment.product_name, deployment.product_version, deployment.environment_id, len(compiled),
            )
            deployment.begin_deploy_pass()
            self._run_deploy_pass(deployment, compiled, cancel_event)
            return deployment

    def upgrade(self, deployment_id: str, variables: Optional[Dict[str, str]] = None,
                target_version: Optional[str] = None, continue_on_error: Optional[bool] = None,
                cancel_event: Optional[threading.Event] = None) -> ProductDeployment:
        """
        Upgrades a running product deployment to a newer catalog version.

        :param deployment_id: The deployment to upgrade.
        :param variables: Values for variables, typically those new in the target version.
        :param target_version: Version to upgrade to; defaults to the latest.
        :param continue_on_error: Keep going after a failed stack.
        :param cancel_event: Checked between plan steps.
        :return: The product deployment after the pass.
        :raises UpgradeNotEligible: If the deployment is not running or the target is not newer.
        """
        deployment = self.repository.get(deployment_id)
        with self.registry.acquire(deployment.environment_id, deployment.product_group_id):
            deployment = self.repository.get(deployment_id)
            if not deployment.can_upgrade:
                raise UpgradeNotEligible(f"deployment is not running (status: {deployment.status.value})")

            target = self._find_product(deployment.product_group_id, target_version)
            comparison = compare_versions(target.version, deployment.product_version)
            if comparison == 0:
                raise UpgradeNotEligible(f"version {target.version} is already deployed")
            if comparison < 0:
                raise UpgradeNotEligible(
                    f"cannot downgrade from {deployment.product_version} to {target.version}"
                )

            declared = self.upgrade_engine.target_variable_names(target, self.catalog)
            shared = UpgradeEngine.merge_variables(deployment.shared_variables, variables, declared)

            existing = {s.display_name.lower(): s for s in deployment.stacks}
            stack_requests = []
            for stack_id in target.stack_ids:
                display_name = self.catalog.get_stack_name(stack_id)
                current = existing.pop(display_name.lower(), None)
                stack_variables: Dict[str, str] = {}
                if current is not None:
                    stack_declared = [v.name for v in self.catalog.get_variables(stack_id)]
                    stack_variables = UpgradeEngine.merge_variables(current.variables, None, stack_declared)
                stack_requests.append(StackRequest(
                    stack_id=stack_id,
                    stack_name=current.stack_name if current is not None else None,
                    display_name=display_name,
                    variables=stack_variables,
                ))
            compiled = self._compile(target, stack_requests, shared)
            stacks = [c.stack for c in compiled]
            retired = self._take_over(deployment.stacks, stacks)

            deployment.begin_upgrade(
                target.version,
                stacks + retired,
                shared,
                self._continue_on_error(continue_on_error),
                product_id=target.product_id,
            )
            for vanished in existing.values():
                if vanished.is_retired:
                    continue
                logger.warning(
                    "Stack %s is not part of %s %s and was left in place",
                    vanished.display_name, deployment.product_name, target.version,
                )
                deployment.note(
                    f"Stack '{vanished.display_name}' is not part of version {target.version}; "
                    "it stays in place until the product is removed"
                )
            self.repository.update(deployment)

            logger.info(
                "Upgrading %s from %s to %s", deployment.product_name, deployment.previous_version, target.version
            )
            self._run_deploy_pass(deployment, compiled, cancel_event)
            return deployment

    def rollback(self, deployment_id: str, cancel_event: Optional[threading.Event] = None) -> ProductDeployment:
        """
        Re-deploys the version that was running before a failed upgrade.
        A new deployment is created and takes over the resources of the failed
        one, which is kept as history.

        :param deployment_id: The failed deployment.
        :param cancel_event: Checked between plan steps.
        :return: The new product deployment after the pass.
        :raises RollbackNotAvailable: If the deployment did not fail or has no previous version.
        """
        deployment = self.repository.get(deployment_id)
        with self.registry.acquire(deployment.environment_id, deployment.product_group_id):
            deployment = self.repository.get(deployment_id)
            if not deployment.can_rollback:
                if deployment.previous_version is None:
                    raise RollbackNotAvailable("deployment has no previous version")
                raise RollbackNotAvailable(
                    f"deployment is not failed (status: {deployment.status.value})"
                )

            product = self._find_product(deployment.product_group_id, deployment.previous_version)
            stack_requests = [
                StackRequest(
                    stack_id=s.stack_id,
                    stack_name=s.stack_name,
                    display_name=s.display_name,
                    variables=s.variables,
                )
                for s in sorted(deployment.previous_stacks, key=lambda s: s.order)
                if not s.is_retired
            ]
            compiled = self._compile(product, stack_requests, deployment.previous_shared_variables)
            stacks = [c.stack for c in compiled]
            retired = self._take_over(deployment.stacks, stacks)

            restored = ProductDeployment(
                environment_id=deployment.environment_id,
                product_group_id=deployment.product_group_id,
                product_id=product.product_id,
                product_name=deployment.product_name,
                product_version=product.version,
                continue_on_error=deployment.continue_on_error,
                stacks=stacks + retired,
                shared_variables=dict(deployment.previous_shared_variables),
            )
            restored.note(f"Rollback of deployment {deployment.id} from version {deployment.product_version}")
            self.repository.add(restored)
            deployment.supersede(
                restored.id, f"Rolled back to version {product.version} by deployment {restored.id}"
            )
            self.repository.update(deployment)

            logger.info(
                "Rolling back %s from %s to %s", deployment.product_name, deployment.product_version, product.version
            )
            restored.begin_deploy_pass()
            self._run_deploy_pass(restored, compiled, cancel_event)
            return restored

    def remove(self, deployment_id: str, remove_volumes: Optional[bool] = None,
               cancel_event: Optional[threading.Event] = None) -> ProductDeployment:
        """
        Removes every stack of a product deployment, last deployed first.

        :param deployment_id: The deployment to remove.
        :param remove_volumes: Also remove named volumes; defaults from settings.
        :param cancel_event: Checked between removals.
        :return: The product deployment after the pass.
        :raises InvalidStateTransition: If the deployment cannot be removed in its current state.
        """
        if remove_volumes is None:
            remove_volumes = self.settings.remove_volumes

        deployment = self.repository.get(deployment_id)
        with self.registry.acquire(deployment.environment_id, deployment.product_group_id):
            deployment = self.repository.get(deployment_id)
            deployment.begin_removal()
            self.repository.update(deployment)
            logger.info("Removing %s from %s", deployment.product_name, deployment.environment_id)

            pass_error = None
            for stack in deployment.stacks_in_remove_order():
                if stack.status != StackDeploymentStatus.REMOVING:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    pass_error = "Removal cancelled"
                    logger.warning("Removal of %s cancelled before stack %s", deployment.product_name,
                                   stack.stack_name)
                    break

                resources = [
                    (kind, name) for kind, name in stack.resources
                    if remove_volumes or kind != ResourceKind.VOLUME
                ]
                result = self.executor.remove(stack.stack_name, resources, cancel_event)
                if result.succeeded:
                    deployment.mark_stack_removed(stack.stack_name)
                    logger.info("Stack %s removed", stack.stack_name)
                else:
                    deployment.record_removal_error(stack.stack_name, result.error_message or "Removal failed")
                    logger.error("Stack %s could not be removed: %s", stack.stack_name, result.error_message)
                    if result.cancelled:
                        pass_error = "Removal cancelled"
                        break
                self.repository.update(deployment)

            status = deployment.end_pass(pass_error)
            self.repository.update(deployment)
            logger.info("Removal of %s finished: %s", deployment.product_name, status.value)
            return deployment

    # Internals

    def _continue_on_error(self, value: Optional[bool]) -> bool:
        return self.settings.continue_on_error if value is None else value

    def _find_product(self, product_group_id: str, version: Optional[str]) -> CatalogProduct:
        if version:
            return self.catalog.get_version(product_group_id, version)
        return self.catalog.get_latest_version(product_group_id)

    def _compile(self, product: CatalogProduct, requests: List[StackRequest],
                 shared_variables: Dict[str, str]) -> List[_CompiledStack]:
        """
        Fetches, parses, validates and plans every requested stack.
        No adapter call happens here.

        :raises StackNotFound: If a stack is not part of the product version.
        :raises VariableValidationFailed: If a variable value violates its definition.
        """
        if not requests:
            raise ValueError("At least one stack is required.")

        compiled: List[_CompiledStack] = []
        errors: List[str] = []
        stack_names = set()
        for order, request in enumerate(requests):
            if request.stack_id not in product.stack_ids:
                raise StackNotFound(
                    f"Stack '{request.stack_id}' is not part of {product.product_group_id} {product.version}"
                )
            display_name = request.display_name or self.catalog.get_stack_name(request.stack_id)
            stack_name = request.stack_name or self._stack_name(product.product_group_id, display_name)
            if stack_name.lower() in stack_names:
                raise ValueError(f"Duplicate stack name: '{stack_name}'")
            stack_names.add(stack_name.lower())

            definition = self.parser.parse(self.source.fetch(request.stack_id))
            values = {**shared_variables, **request.variables}
            plan = self.builder.build(definition, values, stack_name)

            for variable in definition.variables:
                result = variable.validate_value(plan.variables.get(variable.name))
                errors.extend(f"{display_name}: {error}" for error in result.errors)

            compiled.append(_CompiledStack(
                stack=StackDeployment(
                    stack_name=stack_name,
                    display_name=display_name,
                    stack_id=request.stack_id,
                    order=order,
                    service_count=plan.service_count,
                    variables=dict(request.variables),
                ),
                plan=plan,
            ))

        if errors:
            raise VariableValidationFailed(errors)
        return compiled

    @staticmethod
    def _take_over(previous: List[StackDeployment], stacks: List[StackDeployment]) -> List[StackDeployment]:
        """
        Moves the resources tracked by `previous` onto the stacks of the same
        name. Previous stacks with no successor that still hold resources come
        back as retired stacks, ordered after `stacks` so they are removed first.
        """
        by_name = {s.stack_name.lower(): s for s in stacks}
        retired: List[StackDeployment] = []
        for earlier in sorted(previous, key=lambda s: s.order):
            successor = by_name.get(earlier.stack_name.lower())
            if successor is not None:
                successor.resources = list(earlier.resources)
            elif earlier.status != StackDeploymentStatus.REMOVED and earlier.resources:
                retired.append(earlier.model_copy(deep=True, update={
                    "is_retired": True,
                    "is_new_in_upgrade": False,
                    "order": len(stacks) + len(retired),
                }))
        return retired

    def _prune(self, deployment: ProductDeployment, stack_name: str,
               carried: List[Tuple[ResourceKind, str]], applied: List[Tuple[ResourceKind, str]],
               cancel_event: Optional[threading.Event]) -> List[Tuple[ResourceKind, str]]:
        """
        Removes resources an earlier version of a stack created that its new
        plan no longer declares. Volumes stay unless settings say otherwise.

        :return: The stale resources still on the host.
        """
        stale = [r for r in carried if r not in applied]
        kept = [r for r in stale if r[0] == ResourceKind.VOLUME and not self.settings.remove_volumes]
        doomed = [r for r in stale if r not in kept]
        if not doomed:
            return kept

        result = self.executor.remove(stack_name, doomed, cancel_event)
        removed = set(result.applied_resources)
        left = [r for r in doomed if r not in removed]
        if left:
            logger.warning("Stack %s: %d stale resources could not be removed", stack_name, len(left))
            deployment.note(
                f"Stack '{stack_name}' kept {len(left)} resources of the previous version: "
                f"{result.error_message or 'removal cancelled'}"
            )
        else:
            logger.info("Stack %s: removed %d resources of the previous version", stack_name, len(doomed))
        return kept + left

    def _run_deploy_pass(self, deployment: ProductDeployment, compiled: List[_CompiledStack],
                         cancel_event: Optional[threading.Event]):
        """
        Applies the stacks of an active deploy pass in ascending order and ends the pass.
        """
        self.repository.update(deployment)
        pass_error = None
        try:
            for item in sorted(compiled, key=lambda c: c.stack.order):
                name = item.stack.stack_name
                if cancel_event is not None and cancel_event.is_set():
                    pass_error = CANCELLED_MESSAGE
                    logger.warning("Deployment of %s cancelled before stack %s", deployment.product_name, name)
                    break

                carried = list(deployment.find_stack(name).resources)
                deployment.start_stack(name, str(uuid.uuid4()))
                self.repository.update(deployment)
                result = self.executor.apply(item.plan, cancel_event=cancel_event)

                if result.succeeded:
                    kept = self._prune(deployment, name, carried, result.applied_resources, cancel_event)
                    deployment.complete_stack(name, merge_resources(result.applied_resources, kept))
                    logger.info("Stack %s deployed", name)
                else:
                    deployment.fail_stack(name, result.error_message or "Unknown error", result.applied_resources)
                    logger.error("Stack %s failed: %s", name, result.error_message)
                self.repository.update(deployment)

                if result.cancelled:
                    pass_error = CANCELLED_MESSAGE
                    break
                if not result.succeeded and not deployment.continue_on_error:
                    logger.warning("Aborting deployment of %s after failure of stack %s",
                                   deployment.product_name, name)
                    break
        except Exception as e:
            logger.exception("Deployment pass of %s ended unexpectedly", deployment.product_name)
            pass_error = f"Deployment pass failed: {e}"

        status = deployment.end_pass(pass_error)
        self.repository.update(deployment)
        logger.info("Deployment of %s %s finished: %s", deployment.product_name, deployment.product_version,
                    status.value)

    def _stack_name(self, product_group_id: str, display_name: str) -> str:
        name = re.sub(r'[^A-Za-z0-9_.-]+', '-', f"{product_group_id}-{display_name}").strip('-._')
        return name.lower() or "stack"
