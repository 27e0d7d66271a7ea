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
Container runtime adapter contract and an in-memory implementation.

Real adapters (Docker, Podman, ...) live outside this package. They must be
idempotent: applying an identical spec to an existing resource is a no-op
success, and removing an absent resource is a success.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import AdapterError, AdapterPermanent
from ..MODELS.deployment_plan import ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class ResourceHandle:
    """Handle to a resource that exists on the container host."""

    kind: ResourceKind
    name: str
    changed: bool = True


class ContainerRuntimeAdapter(ABC):
    """
    Operations the orchestrators need from a container runtime.
    Failures are raised as AdapterTransient or AdapterPermanent.
    """

    @abstractmethod
    def create_or_update(self, kind: ResourceKind, name: str, spec: Dict[str, Any]) -> ResourceHandle:
        """
        Creates the resource, or updates it when its spec differs.

        :return: Handle whose 'changed' flag is False when nothing had to be done.
        """

    @abstractmethod
    def remove(self, kind: ResourceKind, name: str) -> None:
        """
        Removes the resource. Absence is success.
        """

    @abstractmethod
    def exists(self, kind: ResourceKind, name: str) -> bool:
        """
        Checks whether the resource exists.
        """


@dataclass
class _Fault:
    """An injected failure for the in-memory adapter."""

    error: AdapterError
    name: str
    operation: Optional[str] = None
    times: Optional[int] = None


class InMemoryRuntimeAdapter(ContainerRuntimeAdapter):
    """
    Keeps resources in memory. Used for dry runs, simulations and tests.
    Behaves like a strict runtime: services need their networks and volumes
    to exist, and a host port can only be published once.
    """

    def __init__(self, before_call: Optional[Callable[[str, ResourceKind, str], None]] = None):
        """
        Initializes the adapter.

        :param before_call: Hook invoked with (operation, kind, name) before each call.
        """
        self.resources: Dict[Tuple[ResourceKind, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, ResourceKind, str]] = []
        self.before_call = before_call
        self._faults: List[_Fault] = []
        self._lock = threading.RLock()

    def fail_on(self, name: str, error: AdapterError, operation: Optional[str] = None,
                times: Optional[int] = None):
        """
        Makes calls on a resource fail.

        :param name: Resource name to fail on.
        :param error: Exception to raise.
        :param operation: 'create_or_update' or 'remove'; None for both.
        :param times: Number of failures before calls succeed again; None for always.
        """
        with self._lock:
            self._faults.append(_Fault(error=error, name=name, operation=operation, times=times))

    def clear_faults(self):
        with self._lock:
            self._faults.clear()

    def create_or_update(self, kind: ResourceKind, name: str, spec: Dict[str, Any]) -> ResourceHandle:
        self._enter('create_or_update', kind, name)
        with self._lock:
            current = self.resources.get((kind, name))
            if current == spec:
                return ResourceHandle(kind=kind, name=name, changed=False)

            if kind == ResourceKind.SERVICE:
                self._check_references(name, spec)
                self._check_ports(name, spec)

            self.resources[(kind, name)] = copy.deepcopy(spec)
            logger.debug("%s %s %s", "Updated" if current is not None else "Created", kind.value, name)
            return ResourceHandle(kind=kind, name=name, changed=True)

    def remove(self, kind: ResourceKind, name: str) -> None:
        self._enter('remove', kind, name)
        with self._lock:
            if self.resources.pop((kind, name), None) is not None:
                logger.debug("Removed %s %s", kind.value, name)

    def exists(self, kind: ResourceKind, name: str) -> bool:
        with self._lock:
            return (kind, name) in self.resources

    def names(self, kind: ResourceKind) -> List[str]:
        with self._lock:
            return [n for (k, n) in self.resources if k == kind]

    def snapshot(self) -> Dict[Tuple[ResourceKind, str], Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.resources)

    def calls_for(self, operation: str) -> List[Tuple[ResourceKind, str]]:
        with self._lock:
            return [(k, n) for (op, k, n) in self.calls if op == operation]

    def _enter(self, operation: str, kind: ResourceKind, name: str):
        with self._lock:
            self.calls.append((operation, kind, name))
        if self.before_call:
            self.before_call(operation, kind, name)
        with self._lock:
            for fault in self._faults:
                if fault.name != name or (fault.operation and fault.operation != operation):
                    continue
                if fault.times is not None:
                    if fault.times <= 0:
                        continue
                    fault.times -= 1
                raise fault.error

    def _check_references(self, name: str, spec: Dict[str, Any]):
        for network in spec.get('networks', []):
            if (ResourceKind.NETWORK, network) not in self.resources:
                raise AdapterPermanent(
                    f"network {network} not found", kind=ResourceKind.SERVICE.value, name=name
                )
        for mount in spec.get('volumes', []):
            if mount.get('type') == 'volume' and (ResourceKind.VOLUME, mount['source']) not in self.resources:
                raise AdapterPermanent(
                    f"volume {mount['source']} not found", kind=ResourceKind.SERVICE.value, name=name
                )

    def _check_ports(self, name: str, spec: Dict[str, Any]):
        wanted = {(p.get('host_ip'), p['host'], p.get('protocol', 'tcp'))
                  for p in spec.get('ports', []) if p.get('host')}
        if not wanted:
            return
        for (kind, other), other_spec in self.resources.items():
            if kind != ResourceKind.SERVICE or other == name:
                continue
            for p in other_spec.get('ports', []):
                if p.get('host') and (p.get('host_ip'), p['host'], p.get('protocol', 'tcp')) in wanted:
                    raise AdapterPermanent(
                        f"port {p['host']} is already allocated to {other}",
                        kind=ResourceKind.SERVICE.value, name=name,
                    )
