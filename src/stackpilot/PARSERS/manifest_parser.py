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
Parser for compose-style stack manifests.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ValidationError

from ..errors import DependencyCycle, MalformedManifest
from ..MODELS.service_definition import PortMapping, ServiceSpec, VolumeMount
from ..MODELS.stack_definition import NetworkSpec, StackDefinition, StackMetadata, VolumeSpec
from ..MODELS.variable_definition import SelectOption, VariableDefinition
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.string_interpolation import VariableResolver, split_outside_placeholders

logger = logging.getLogger(__name__)

PORT_PATTERN = re.compile(
    r'^(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}:)?(\d+|\$\{[^}]+\})(:(\d+|\$\{[^}]+\}))?(/tcp|/udp)?$'
)

# Manifest keys of the explicit variables block -> VariableDefinition fields
VARIABLE_KEYS = {
    'type': 'type',
    'default': 'default',
    'required': 'required',
    'label': 'label',
    'description': 'description',
    'pattern': 'pattern',
    'patternError': 'pattern_error',
    'pattern_error': 'pattern_error',
    'options': 'options',
    'min': 'min',
    'max': 'max',
    'placeholder': 'placeholder',
    'group': 'group',
    'order': 'order',
}


class ManifestValidationResult(BaseModel):
    """
    Outcome of validating a manifest without deploying it.
    """
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class ManifestParser:
    """
    Parser for stack manifests (docker-compose.yml plus optional metadata and
    variables blocks).
    """

    def parse_file(self, manifest_path: str) -> StackDefinition:
        """
        Parses a manifest from a path.

        :param manifest_path: Path to the manifest file.
        :return: Parsed stack definition.
        """
        with open(manifest_path, 'r') as f:
            content = f.read()
        return self.parse(content)

    def parse(self, text: str) -> StackDefinition:
        """
        Parses a manifest from a string. Placeholders are left unresolved.

        :param text: YAML content of the manifest.
        :return: Parsed stack definition.
        :raises MalformedManifest: If the document is not valid YAML or lacks services.
        """
        definition, _ = self._build(text)
        return definition

    def detect_variables(self, text: str) -> List[VariableDefinition]:
        """
        Detects the variables a manifest uses, merged with its explicit
        variables block. Explicit declarations win for type and validation
        metadata; a default found in a placeholder fills in a missing one.

        :param text: YAML content of the manifest.
        :return: Variable definitions in first-seen order.
        """
        return list(self.parse(text).variables)

    def validate(self, text: str, values: Optional[Mapping[str, str]] = None) -> ManifestValidationResult:
        """
        Validates a manifest.

        :param text: YAML content of the manifest.
        :param values: Variable values the caller intends to supply.
        :return: Errors (the manifest cannot be deployed) and warnings.
        """
        errors: List[str] = []
        warnings: List[str] = []
        values = values or {}

        try:
            definition, explicit_names = self._build(text)
        except MalformedManifest as e:
            return ManifestValidationResult(is_valid=False, errors=[str(e)])

        for name in self._duplicate_service_names(text):
            warnings.append(f"Duplicate service name '{name}'; the last definition wins")

        known = set(definition.service_names)
        for service in definition.services:
            if not service.image and not service.build:
                errors.append(f"Service '{service.name}' must have an 'image' defined")
            if service.build:
                warnings.append(
                    f"Service '{service.name}' uses 'build' which is not supported for remote deployment. "
                    "Please use pre-built images."
                )
            for port in service.ports:
                rendered = ':'.join(port.texts())
                if port.protocol != 'tcp':
                    rendered = f"{rendered}/{port.protocol}"
                if not PORT_PATTERN.match(rendered) and '${' not in rendered:
                    warnings.append(f"Service '{service.name}' has potentially invalid port mapping: {rendered}")
            for dep in service.depends_on:
                if dep not in known:
                    errors.append(f"Service '{service.name}' depends on non-existent service '{dep}'")

        try:
            DependencyResolver().resolve_order(definition)
        except DependencyCycle as e:
            errors.append(str(e))
        except MalformedManifest:
            # Unknown dependencies are already reported above
            pass

        for variable in definition.variables:
            if variable.required and variable.default is None and not values.get(variable.name):
                errors.append(f"Required variable '{variable.name}' has no default value")
            elif variable.name in values:
                result = variable.validate_value(values[variable.name])
                errors.extend(result.errors)

        referenced = self._referenced_names(definition)
        for name in explicit_names:
            if name not in referenced:
                warnings.append(f"Variable '{name}' is declared but not used by any service")

        if not definition.metadata.product_version:
            warnings.append("Manifest has no productVersion; it cannot be published as a product version")

        return ManifestValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _build(self, text: str) -> Tuple[StackDefinition, List[str]]:
        """
        Builds the stack definition and returns the explicitly declared variable names too.
        """
        data = self._load(text)

        services = []
        for name, spec in data['services'].items():
            services.append(self._parse_service(str(name), spec))

        networks = [NetworkSpec(**kw) for kw in self._parse_top_level(data.get('networks'), 'networks')]
        volumes = [VolumeSpec(**kw) for kw in self._parse_top_level(data.get('volumes'), 'volumes')]

        explicit = self._parse_variables_block(data.get('variables'))
        detected = self._detect(services, networks, volumes)
        variables = self._merge_variables(detected, explicit)

        definition = StackDefinition(
            metadata=self._parse_metadata(data.get('metadata')),
            services=services,
            variables=variables,
            networks=networks,
            volumes=volumes,
            text=text,
        )
        logger.debug(
            "Parsed manifest with %d services, %d variables",
            len(services), len(variables),
        )
        return definition, list(explicit.keys())

    def _load(self, text: str) -> Dict[str, Any]:
        """
        Loads the YAML document and checks its required top-level structure.
        """
        if text is None or not str(text).strip():
            raise MalformedManifest("Manifest is empty")
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MalformedManifest(f"Invalid YAML syntax: {e}") from e

        if not isinstance(data, dict):
            raise MalformedManifest("Manifest must be a mapping at the top level")
        services = data.get('services')
        if not services:
            raise MalformedManifest("No services defined in manifest")
        if not isinstance(services, dict):
            raise MalformedManifest("'services' must be a mapping of service name to definition")
        return data

    def _parse_metadata(self, spec: Any) -> StackMetadata:
        """
        Parses the optional metadata block.
        """
        if spec is None:
            return StackMetadata()
        if not isinstance(spec, dict):
            raise MalformedManifest("'metadata' must be a mapping")

        def text(*keys):
            for key in keys:
                if spec.get(key) is not None:
                    return str(spec[key])
            return None

        return StackMetadata(
            name=text('name'),
            description=text('description'),
            product_name=text('productName', 'product_name', 'name'),
            product_version=text('productVersion', 'product_version', 'version'),
            category=text('category'),
        )

    def _parse_service(self, name: str, spec: Any) -> ServiceSpec:
        """
        Parses a single service definition from a manifest.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceSpec instance.
        """
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise MalformedManifest(f"Service '{name}' must be a mapping")

        build = spec.get('build')
        if isinstance(build, dict):
            build = build.get('context')

        try:
            return ServiceSpec(
                name=name,
                image=self._text(spec.get('image')) or '',
                build=self._text(build),
                command=self._to_list(spec.get('command')),
                entrypoint=self._to_list(spec.get('entrypoint')),
                working_dir=self._text(spec.get('working_dir')),
                user=self._text(spec.get('user')),
                environment=self._to_mapping(spec.get('environment'), f"service '{name}' environment"),
                ports=[self._parse_port(name, p) for p in self._to_items(spec.get('ports'))],
                networks=self._names(spec.get('networks')),
                hostname=self._text(spec.get('hostname')),
                volumes=[self._parse_mount(name, v) for v in self._to_items(spec.get('volumes'))],
                restart=self._text(spec.get('restart')) or 'no',
                depends_on=self._names(spec.get('depends_on')),
                labels=self._to_mapping(spec.get('labels'), f"service '{name}' labels"),
            )
        except ValidationError as e:
            raise MalformedManifest(f"Invalid definition for service '{name}': {e}") from e

    def _parse_port(self, service: str, port: Any) -> PortMapping:
        """
        Parses the short ("[ip:]host:container[/proto]") or long port syntax.
        """
        if isinstance(port, dict):
            if 'target' not in port:
                raise MalformedManifest(f"Service '{service}' has a port without 'target'")
            return PortMapping(
                container=str(port['target']),
                host=self._text(port.get('published')),
                host_ip=self._text(port.get('host_ip')),
                protocol=str(port.get('protocol', 'tcp')),
            )

        value = str(port)
        protocol = 'tcp'
        if '/' in value and not value.endswith('}'):
            value, protocol = value.rsplit('/', 1)
        parts = split_outside_placeholders(value, ':')
        if len(parts) == 1:
            return PortMapping(container=parts[0], protocol=protocol)
        if len(parts) == 2:
            return PortMapping(host=parts[0] or None, container=parts[1], protocol=protocol)
        if len(parts) == 3:
            return PortMapping(host_ip=parts[0], host=parts[1] or None, container=parts[2], protocol=protocol)
        raise MalformedManifest(f"Service '{service}' has an invalid port mapping: {port}")

    def _parse_mount(self, service: str, volume: Any) -> VolumeMount:
        """
        Parses the short ("source:target[:ro]") or long volume syntax.
        """
        if isinstance(volume, dict):
            if 'target' not in volume:
                raise MalformedManifest(f"Service '{service}' has a volume without 'target'")
            return VolumeMount(
                source=str(volume.get('source', '')),
                target=str(volume['target']),
                read_only=bool(volume.get('read_only', False)),
            )

        parts = split_outside_placeholders(str(volume), ':')
        if len(parts) == 1:
            # Anonymous volume
            return VolumeMount(source='', target=parts[0])
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise MalformedManifest(f"Service '{service}' has an invalid volume mount: {volume}")

    def _parse_top_level(self, spec: Any, section: str) -> List[Dict[str, Any]]:
        """
        Parses the top-level networks or volumes section.
        """
        if not spec:
            return []
        if isinstance(spec, list):
            return [{'name': str(name)} for name in spec]
        if not isinstance(spec, dict):
            raise MalformedManifest(f"'{section}' must be a mapping")

        result = []
        for name, options in spec.items():
            options = options or {}
            if not isinstance(options, dict):
                raise MalformedManifest(f"{section} entry '{name}' must be a mapping")
            external = options.get('external', False)
            result.append({
                'name': str(options.get('name', name)) if external else str(name),
                'driver': self._text(options.get('driver')),
                'external': bool(external),
                'labels': self._to_mapping(options.get('labels'), f"{section} '{name}' labels"),
            })
        return result

    def _parse_variables_block(self, spec: Any) -> Dict[str, Dict[str, Any]]:
        """
        Reads the explicit variables block into VariableDefinition keyword arguments.
        """
        if not spec:
            return {}
        if not isinstance(spec, dict):
            raise MalformedManifest("'variables' must be a mapping of variable name to definition")

        block: Dict[str, Dict[str, Any]] = {}
        for name, options in spec.items():
            if options is None:
                options = {}
            elif not isinstance(options, dict):
                # Shorthand: "NAME: default"
                options = {'default': options}

            kwargs: Dict[str, Any] = {'name': str(name)}
            for key, value in options.items():
                field = VARIABLE_KEYS.get(key)
                if field is None:
                    logger.debug("Ignoring unknown key '%s' on variable '%s'", key, name)
                    continue
                kwargs[field] = value
            if 'options' in kwargs:
                kwargs['options'] = [self._parse_option(name, o) for o in kwargs['options'] or []]
            block[str(name)] = kwargs
        return block

    def _parse_option(self, variable: str, option: Any) -> SelectOption:
        if isinstance(option, dict):
            if 'value' not in option:
                raise MalformedManifest(f"Variable '{variable}' has an option without 'value'")
            return SelectOption(
                value=str(option['value']),
                label=self._text(option.get('label')),
                description=self._text(option.get('description')),
            )
        return SelectOption(value=self._text(option) or '')

    def _detect(self, services: List[ServiceSpec], networks: List[NetworkSpec],
                volumes: List[VolumeSpec]) -> List[Tuple[str, Optional[str]]]:
        """
        Runs variable detection over every textual field, in declaration order.
        """
        texts: List[str] = []
        for service in services:
            texts.extend(service.text_fields())
        for resource in list(networks) + list(volumes):
            texts.append(resource.name)
            if resource.driver:
                texts.append(resource.driver)

        found: Dict[str, Optional[str]] = {}
        for text in texts:
            for name, default in VariableResolver.detect(text):
                if name not in found or found[name] is None:
                    found[name] = default
        return list(found.items())

    def _merge_variables(self, detected: List[Tuple[str, Optional[str]]],
                         explicit: Dict[str, Dict[str, Any]]) -> List[VariableDefinition]:
        """
        Merges detected placeholders with explicit declarations.
        """
        variables = []
        for name, default in detected:
            kwargs = dict(explicit.get(name, {'name': name}))
            if kwargs.get('default') is None and default is not None:
                kwargs['default'] = default
            variables.append(self._make_variable(kwargs))

        seen = {name for name, _ in detected}
        for name, kwargs in explicit.items():
            if name not in seen:
                variables.append(self._make_variable(kwargs))
        return variables

    def _make_variable(self, kwargs: Dict[str, Any]) -> VariableDefinition:
        try:
            return VariableDefinition(**kwargs)
        except ValidationError as e:
            raise MalformedManifest(f"Invalid declaration for variable '{kwargs.get('name')}': {e}") from e

    def _referenced_names(self, definition: StackDefinition) -> set:
        names = set()
        for service in definition.services:
            names.update(service.variable_references)
        for resource in list(definition.networks) + list(definition.volumes):
            names.update(VariableResolver.references(resource.name))
        return names

    def _duplicate_service_names(self, text: str) -> List[str]:
        """
        Finds service keys declared more than once (plain YAML loading keeps the last one).
        """
        try:
            root = yaml.compose(text)
        except yaml.YAMLError:
            return []
        if not isinstance(root, yaml.MappingNode):
            return []

        duplicates: List[str] = []
        for key_node, value_node in root.value:
            if getattr(key_node, 'value', None) != 'services' or not isinstance(value_node, yaml.MappingNode):
                continue
            seen = set()
            for service_key, _ in value_node.value:
                name = str(service_key.value)
                if name in seen and name not in duplicates:
                    duplicates.append(name)
                seen.add(name)
        return duplicates

    def _names(self, val: Any) -> List[str]:
        """
        Names from a list, or from the keys of a mapping (long syntax).
        """
        if not val:
            return []
        if isinstance(val, dict):
            return [str(k) for k in val.keys()]
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    def _to_items(self, val: Any) -> List[Any]:
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)

    def _to_mapping(self, val: Any, where: str) -> Dict[str, str]:
        """
        Normalizes "KEY=VALUE" lists and mappings into a dict of strings.
        """
        if not val:
            return {}
        result: Dict[str, str] = {}
        if isinstance(val, dict):
            for k, v in val.items():
                result[str(k)] = self._text(v) or ''
            return result
        if isinstance(val, list):
            for item in val:
                item = str(item)
                if '=' in item:
                    k, v = item.split('=', 1)
                    result[k] = v
                else:
                    # Pass-through of a variable with the same name
                    result[item] = '${' + item + '}'
            return result
        raise MalformedManifest(f"Invalid {where}: expected a list or a mapping")

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    def _text(self, val: Any) -> Optional[str]:
        if val is None:
            return None
        if isinstance(val, bool):
            return 'true' if val else 'false'
        return str(val)
