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
Exception hierarchy for manifest compilation and deployment orchestration.
"""
from typing import Iterable, List, Optional, Tuple


class StackPilotError(Exception):
    """Base class for every error raised by StackPilot."""


class MalformedManifest(StackPilotError):
    """The manifest is not a valid document or misses a required section."""


class UnresolvedVariable(StackPilotError):
    """
    One or more required variables have neither a supplied value nor a default.
    """

    def __init__(self, names: Iterable[str]):
        self.names: List[str] = list(dict.fromkeys(names))
        super().__init__(
            f"Unresolved required variable(s): {', '.join(self.names)}"
        )


class DependencyCycle(StackPilotError):
    """The service dependency graph of a stack is not acyclic."""

    def __init__(self, edges: Iterable[Tuple[str, str]]):
        self.edges: List[Tuple[str, str]] = list(edges)
        rendered = ", ".join(f"{src} -> {dst}" for src, dst in self.edges)
        super().__init__(f"Circular service dependency detected: {rendered}")

    @property
    def services(self) -> List[str]:
        names: List[str] = []
        for src, dst in self.edges:
            for name in (src, dst):
                if name not in names:
                    names.append(name)
        return names


class VariableValidationFailed(StackPilotError):
    """Supplied variable values violate their declared constraints."""

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class AdapterError(StackPilotError):
    """A container runtime adapter call failed."""

    transient = False

    def __init__(self, message: str, kind: Optional[str] = None, name: Optional[str] = None):
        self.kind = kind
        self.name = name
        super().__init__(message)


class AdapterTransient(AdapterError):
    """Network or timeout failure, eligible for a single retry."""

    transient = True


class AdapterPermanent(AdapterError):
    """Invalid spec or resource conflict, surfaced without retry."""


class DeploymentInProgress(StackPilotError):
    """Another pass already holds the (environment, product group) scope."""

    def __init__(self, environment_id: str, product_group_id: str):
        self.environment_id = environment_id
        self.product_group_id = product_group_id
        super().__init__(
            f"A deployment is already in progress for product '{product_group_id}' "
            f"in environment '{environment_id}'"
        )


class UpgradeNotEligible(StackPilotError):
    """The deployment cannot be upgraded in its current state."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class RollbackNotAvailable(StackPilotError):
    """The deployment has no previous version it can be rolled back to."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class StackNotFound(StackPilotError):
    """The catalog or manifest source does not know the stack."""


class ProductNotFound(StackPilotError):
    """The catalog or repository does not know the product or deployment."""


class ProductAlreadyDeployed(StackPilotError):
    """The product is already operational in the environment; upgrade instead."""


class InvalidStateTransition(StackPilotError):
    """A lifecycle operation was requested from a state that does not allow it."""
