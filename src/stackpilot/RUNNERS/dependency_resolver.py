"""
Dependency resolution for services to determine deployment and removal order.
"""
import heapq
from typing import Dict, List, Optional, Tuple

from ..errors import DependencyCycle, MalformedManifest
from ..MODELS.stack_definition import StackDefinition


class DependencyResolver:
    """
    Resolves the order in which the services of a stack are applied.
    """

    def resolve_order(self, definition: StackDefinition) -> List[str]:
        """
        Determines the order to apply services using a topological sort.
        Services that are ready at the same time keep their declaration order,
        so the same manifest always yields the same order.

        :param definition: The stack definition.
        :return: Service names in the order they should be applied.
        :raises DependencyCycle: If the dependency graph has a cycle.
        :raises MalformedManifest: If a service depends on an undeclared service.
        """
        names = definition.service_names
        position = {name: index for index, name in enumerate(names)}
        dependencies: Dict[str, List[str]] = {}
        dependents: Dict[str, List[str]] = {name: [] for name in names}

        for service in definition.services:
            deps = []
            for dep in service.depends_on:
                if dep not in position:
                    raise MalformedManifest(
                        f"Service '{service.name}' depends on non-existent service '{dep}'"
                    )
                if dep not in deps:
                    deps.append(dep)
                    dependents[dep].append(service.name)
            dependencies[service.name] = deps

        remaining = {name: len(deps) for name, deps in dependencies.items()}
        ready = [position[name] for name in names if remaining[name] == 0]
        heapq.heapify(ready)

        ordered: List[str] = []
        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, position[dependent])

        if len(ordered) != len(names):
            blocked = [name for name in names if remaining[name] > 0]
            raise DependencyCycle(self._find_cycle(blocked, dependencies))

        return ordered

    def removal_order(self, definition: StackDefinition) -> List[str]:
        """
        Services in the order they should be removed (reverse of apply order).
        """
        return list(reversed(self.resolve_order(definition)))

    def _find_cycle(self, blocked: List[str], dependencies: Dict[str, List[str]]) -> List[Tuple[str, str]]:
        """
        Finds one cycle among the services left over by the sort.

        :return: The edges (service -> dependency) forming the cycle.
        """
        blocked_set = set(blocked)
        visiting: List[str] = []
        done = set()

        def visit(name: str) -> Optional[List[Tuple[str, str]]]:
            """
            Depth-first search that returns the cycle once a back edge is found.
            """
            visiting.append(name)
            for dep in dependencies.get(name, []):
                if dep not in blocked_set or dep in done:
                    continue
                if dep in visiting:
                    path = visiting[visiting.index(dep):] + [dep]
                    return list(zip(path, path[1:]))
                cycle = visit(dep)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(name)
            return None

        for name in blocked:
            if name not in done:
                cycle = visit(name)
                if cycle:
                    return cycle
        # Every blocked service sits on or behind a cycle, so this is not reached
        return [(blocked[0], dep) for dep in dependencies.get(blocked[0], [])[:1]]
