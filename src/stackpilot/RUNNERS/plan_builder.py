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
Conversion of a stack definition plus variable values into a deployment plan.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from ..errors import MalformedManifest, UnresolvedVariable
from ..MODELS.deployment_plan import DeploymentPlan, PlanStep, ResourceKind
from ..MODELS.service_definition import PortMapping, ServiceSpec, VolumeMount
from ..MODELS.stack_definition import StackDefinition
from ..UTILS.string_interpolation import VariableResolver
from .dependency_resolver import DependencyResolver

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "default"
STACK_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
STACK_LABEL = "stackpilot.stack"
SERVICE_LABEL = "stackpilot.service"


class PlanBuilder:
    """
    Builds the ordered resource operations that deploy one stack.
    """

    def __init__(self, resolver: Optional[DependencyResolver] = None):
        """
        Initializes the plan builder.

        :param resolver: Dependency resolver used to order services.
        """
        self.resolver = resolver or DependencyResolver()

    def build(self, definition: StackDefinition, resolved_variables: Mapping[str, str],
              stack_name: str) -> DeploymentPlan:
        """
        Builds a deployment plan: network steps, then volume steps, then
        service steps in dependency order.

        :param definition: The parsed stack definition.
        :param resolved_variables: Variable values; manifest defaults fill the gaps.
        :param stack_name: Name of the deployed stack, used to namespace resources.
        :return: The deployment plan.
        :raises UnresolvedVariable: If a required variable has no value.
        :raises DependencyCycle: If the services depend on each other in a cycle.
        :raises MalformedManifest: If resolved values are structurally invalid.
        """
        if not stack_name or not STACK_NAME_PATTERN.match(stack_name):
            raise ValueError(f"Invalid stack name: '{stack_name}'")

        values: Dict[str, str] = dict(definition.default_values())
        values.update({k: v for k, v in resolved_variables.items() if v is not None})
        substitution = _Substitution(values)

        network_names: Dict[str, str] = {}
        network_steps: List[PlanStep] = []
        for network in definition.networks:
            name = substitution.apply(network.name)
            runtime_name = name if network.external else self._resource_name(stack_name, name)
            network_names[name] = runtime_name
            if not network.external:
                network_steps.append(PlanStep(
                    kind=ResourceKind.NETWORK,
                    name=runtime_name,
                    source_name=name,
                    spec={
                        'driver': substitution.apply(network.driver) if network.driver else 'bridge',
                        'labels': {**network.labels, STACK_LABEL: stack_name},
                    },
                ))

        volume_names: Dict[str, str] = {}
        volume_steps: List[PlanStep] = []
        for volume in definition.volumes:
            name = substitution.apply(volume.name)
            runtime_name = name if volume.external else self._resource_name(stack_name, name)
            volume_names[name] = runtime_name
            if not volume.external:
                volume_steps.append(PlanStep(
                    kind=ResourceKind.VOLUME,
                    name=runtime_name,
                    source_name=name,
                    spec={
                        'driver': substitution.apply(volume.driver) if volume.driver else 'local',
                        'labels': {**volume.labels, STACK_LABEL: stack_name},
                    },
                ))

        resolved_services = {
            service.name: self._resolve_service(service, substitution)
            for service in definition.services
        }
        # All placeholders are substituted before any structural check
        substitution.raise_if_missing()

        if (any(not s.networks for s in resolved_services.values())
                and DEFAULT_NETWORK not in network_names):
            runtime_name = self._resource_name(stack_name, DEFAULT_NETWORK)
            network_names[DEFAULT_NETWORK] = runtime_name
            network_steps.append(PlanStep(
                kind=ResourceKind.NETWORK,
                name=runtime_name,
                source_name=DEFAULT_NETWORK,
                spec={'driver': 'bridge', 'labels': {STACK_LABEL: stack_name}},
            ))

        order = self.resolver.resolve_order(definition)
        service_steps = []
        for service_name in order:
            service = resolved_services[service_name]
            service_steps.append(PlanStep(
                kind=ResourceKind.SERVICE,
                name=self._resource_name(stack_name, service.name),
                source_name=service.name,
                spec=self._service_spec(service, stack_name, network_names, volume_names),
            ))

        plan = DeploymentPlan(
            stack_name=stack_name,
            steps=network_steps + volume_steps + service_steps,
            variables=values,
        )
        logger.info(
            "Built plan for stack %s: %d networks, %d volumes, %d services",
            stack_name, len(network_steps), len(volume_steps), len(service_steps),
        )
        return plan

    def _resolve_service(self, service: ServiceSpec, substitution: "_Substitution") -> ServiceSpec:
        """
        Substitutes variables in every textual field of a service.
        """
        apply = substitution.apply
        return ServiceSpec(
            name=service.name,
            image=apply(service.image),
            build=apply(service.build) if service.build else None,
            command=[apply(c) for c in service.command],
            entrypoint=[apply(e) for e in service.entrypoint],
            working_dir=apply(service.working_dir) if service.working_dir else None,
            user=apply(service.user) if service.user else None,
            environment={k: apply(v) for k, v in service.environment.items()},
            ports=[
                PortMapping(
                    container=apply(p.container),
                    host=apply(p.host) if p.host else None,
                    host_ip=apply(p.host_ip) if p.host_ip else None,
                    protocol=p.protocol,
                )
                for p in service.ports
            ],
            networks=[apply(n) for n in service.networks],
            hostname=apply(service.hostname) if service.hostname else None,
            volumes=[
                VolumeMount(source=apply(v.source), target=apply(v.target), read_only=v.read_only)
                for v in service.volumes
            ],
            restart=apply(service.restart),
            depends_on=list(service.depends_on),
            labels={k: apply(v) for k, v in service.labels.items()},
        )

    def _service_spec(self, service: ServiceSpec, stack_name: str,
                      network_names: Dict[str, str], volume_names: Dict[str, str]) -> Dict[str, Any]:
        """
        Builds the resolved, runtime-facing specification of a service step.
        """
        networks = []
        for network in service.networks or [DEFAULT_NETWORK]:
            if network not in network_names:
                raise MalformedManifest(f"Service '{service.name}' refers to undefined network '{network}'")
            networks.append(network_names[network])

        mounts = []
        for mount in service.volumes:
            if mount.source and mount.is_named_volume:
                if mount.source not in volume_names:
                    raise MalformedManifest(
                        f"Service '{service.name}' refers to undefined volume '{mount.source}'"
                    )
                mounts.append({'type': 'volume', 'source': volume_names[mount.source],
                               'target': mount.target, 'read_only': mount.read_only})
            else:
                mounts.append({'type': 'bind' if mount.source else 'anonymous', 'source': mount.source,
                               'target': mount.target, 'read_only': mount.read_only})

        if not service.image:
            raise MalformedManifest(f"Service '{service.name}' must have an 'image' defined")

        return {
            'image': service.image,
            'command': service.command,
            'entrypoint': service.entrypoint,
            'working_dir': service.working_dir,
            'user': service.user,
            'hostname': service.hostname or service.name,
            'environment': dict(service.environment),
            'ports': [self._port_spec(service.name, p) for p in service.ports],
            'networks': networks,
            'volumes': mounts,
            'restart': service.restart,
            'depends_on': [self._resource_name(stack_name, d) for d in service.depends_on],
            'labels': {**service.labels, STACK_LABEL: stack_name, SERVICE_LABEL: service.name},
        }

    def _port_spec(self, service: str, port: PortMapping) -> Dict[str, Any]:
        return {
            'container': self._port_number(service, port.container),
            'host': self._port_number(service, port.host) if port.host else None,
            'host_ip': port.host_ip,
            'protocol': port.protocol,
        }

    def _port_number(self, service: str, value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise MalformedManifest(f"Service '{service}' has a non-numeric port: '{value}'") from None
        if not 1 <= number <= 65535:
            raise MalformedManifest(f"Service '{service}' has a port out of range: {number}")
        return number

    def _resource_name(self, stack_name: str, name: str) -> str:
        return f"{stack_name}_{name}"


class _Substitution:
    """
    Applies variable values and collects every unresolved variable of a build.
    """

    def __init__(self, values: Mapping[str, str]):
        self.values = values
        self.missing: List[str] = []

    def apply(self, template: str) -> str:
        try:
            return VariableResolver.resolve(template, self.values)
        except UnresolvedVariable as e:
            for name in e.names:
                if name not in self.missing:
                    self.missing.append(name)
            return template

    def raise_if_missing(self):
        if self.missing:
            raise UnresolvedVariable(self.missing)
