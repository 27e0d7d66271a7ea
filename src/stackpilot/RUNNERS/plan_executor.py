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
Execution of a single stack's deployment plan against the container runtime.
"""
import logging
import threading
from typing import Callable, List, Optional, Sequence, Tuple

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..config import OrchestratorSettings
from ..errors import AdapterPermanent, AdapterTransient
from ..MANAGERS.runtime_adapter import ContainerRuntimeAdapter
from ..MODELS.deployment_plan import (
    DeploymentPlan,
    FailureKind,
    PlanResult,
    PlanStep,
    ResourceKind,
    StepOutcome,
    StepResult,
)

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Applies the steps of a deployment plan in order.

    Already-applied steps are never undone here; whether a partially applied
    stack is acceptable is decided by the caller.
    """

    def __init__(self, adapter: ContainerRuntimeAdapter, settings: Optional[OrchestratorSettings] = None):
        """
        Initializes the orchestrator.

        :param adapter: The container runtime adapter.
        :param settings: Retry settings.
        """
        self.adapter = adapter
        self.settings = settings or OrchestratorSettings()

    def apply(self, plan: DeploymentPlan, best_effort: bool = False,
              cancel_event: Optional[threading.Event] = None) -> PlanResult:
        """
        Applies every step of the plan in order.

        :param plan: The plan to apply.
        :param best_effort: Keep going after a failed step instead of stopping.
        :param cancel_event: Checked between steps; once set, no further step starts.
        :return: One result per plan step.
        """
        logger.info("Applying plan for stack %s (%d steps)", plan.stack_name, len(plan.steps))
        results = self._run(
            plan.steps,
            lambda step: self.adapter.create_or_update(step.kind, step.name, step.spec).changed,
            best_effort,
            cancel_event,
        )
        result = PlanResult(stack_name=plan.stack_name, results=results)
        if result.succeeded:
            logger.info("Plan for stack %s applied", plan.stack_name)
        else:
            logger.warning("Plan for stack %s did not complete: %s", plan.stack_name, result.error_message)
        return result

    def remove(self, stack_name: str, resources: Sequence[Tuple[ResourceKind, str]],
               cancel_event: Optional[threading.Event] = None) -> PlanResult:
        """
        Removes resources in reverse of the order they were applied.
        Every removal is attempted even when an earlier one fails.

        :param stack_name: Name of the stack the resources belong to.
        :param resources: (kind, name) pairs in apply order.
        :param cancel_event: Checked between removals.
        :return: One result per resource, in removal order.
        """
        steps = [PlanStep(kind=kind, name=name, source_name=name) for kind, name in reversed(list(resources))]
        logger.info("Removing %d resources of stack %s", len(steps), stack_name)

        def remove_step(step: PlanStep) -> bool:
            self.adapter.remove(step.kind, step.name)
            return True

        results = self._run(steps, remove_step, True, cancel_event)
        return PlanResult(stack_name=stack_name, results=results)

    def _run(self, steps: Sequence[PlanStep], operation: Callable[[PlanStep], bool], best_effort: bool,
             cancel_event: Optional[threading.Event]) -> List[StepResult]:
        results: List[StepResult] = []
        stopped: Optional[StepOutcome] = None

        for step in steps:
            if stopped is None and cancel_event is not None and cancel_event.is_set():
                logger.warning("Cancellation requested; %s %s not started", step.kind.value, step.name)
                stopped = StepOutcome.CANCELLED
            if stopped is not None:
                results.append(StepResult(step=step, outcome=stopped))
                continue

            result = self._execute(step, operation)
            results.append(result)
            if result.outcome == StepOutcome.FAILED and not best_effort:
                stopped = StepOutcome.SKIPPED
        return results

    def _execute(self, step: PlanStep, operation: Callable[[PlanStep], bool]) -> StepResult:
        """
        Runs one adapter call; transient failures are retried with a fixed backoff.
        """
        attempts = 0

        def call() -> bool:
            nonlocal attempts
            attempts += 1
            return operation(step)

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_fixed(self.settings.retry_backoff_seconds),
            retry=retry_if_exception_type(AdapterTransient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        try:
            changed = retrying(call)
        except AdapterTransient as e:
            logger.error("Transient failure on %s %s after %d attempts: %s", step.kind.value, step.name, attempts, e)
            return StepResult(step=step, outcome=StepOutcome.FAILED, attempts=attempts,
                              failure_kind=FailureKind.TRANSIENT, error=str(e))
        except AdapterPermanent as e:
            logger.error("Permanent failure on %s %s: %s", step.kind.value, step.name, e)
            return StepResult(step=step, outcome=StepOutcome.FAILED, attempts=attempts,
                              failure_kind=FailureKind.PERMANENT, error=str(e))
        except Exception as e:
            # An adapter that breaks its contract is treated as a permanent failure
            logger.exception("Unexpected adapter error on %s %s", step.kind.value, step.name)
            return StepResult(step=step, outcome=StepOutcome.FAILED, attempts=attempts,
                              failure_kind=FailureKind.PERMANENT, error=f"{type(e).__name__}: {e}")

        outcome = StepOutcome.APPLIED if changed else StepOutcome.UNCHANGED
        logger.debug("%s %s: %s", step.kind.value, step.name, outcome.value)
        return StepResult(step=step, outcome=outcome, attempts=attempts)
