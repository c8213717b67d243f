"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, List, Set

from ..errors import DependencyCycle, UnknownDependency
from ..MODELS.orchestration_config import ServiceTopology


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.

    The graph is held as two explicit mappings: ``requires`` (service ->
    the services it depends on) and ``dependents`` (service -> services
    that depend on it). Ordering is Kahn's algorithm with ties broken by
    declaration order, so a cycle is found in the same single pass.
    """
    def __init__(self, topology: ServiceTopology):
        """
        :param topology: The topology to resolve.
        :raises UnknownDependency: If a service depends on an undefined name.
        """
        self.names = topology.service_names()
        self.requires: Dict[str, List[str]] = {}
        self.dependents: Dict[str, List[str]] = {name: [] for name in self.names}

        for name, svc in topology.services.items():
            deps = list(dict.fromkeys(svc.depends_on))
            for dep in deps:
                if dep not in topology.services:
                    raise UnknownDependency(name, dep)
                self.dependents[dep].append(name)
            self.requires[name] = deps

    def levels(self) -> List[List[str]]:
        """
        Groups services into waves; every service in a wave depends only on
        services from earlier waves, so a wave may start concurrently.

        :raises DependencyCycle: If the dependency graph has a cycle.
        """
        indegree = {name: len(self.requires[name]) for name in self.names}
        wave = [name for name in self.names if indegree[name] == 0]
        levels = []
        placed = 0

        while wave:
            levels.append(wave)
            placed += len(wave)
            next_wave = []
            for name in wave:
                for dependent in self.dependents[name]:
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        next_wave.append(dependent)
            wave = sorted(next_wave, key=self.names.index)

        if placed != len(self.names):
            remaining = {name for name in self.names if indegree[name] > 0}
            raise DependencyCycle(self._find_cycle(remaining))
        return levels

    def resolve_order(self) -> List[str]:
        """
        Determines the order to start services: each service comes after all
        of its dependencies.

        :return: Service names in the order they should be started.
        :raises DependencyCycle: If the dependency graph has a cycle.
        """
        return [name for level in self.levels() for name in level]

    def _find_cycle(self, remaining: Set[str]) -> List[str]:
        """
        Every service left over by Kahn's algorithm still has an unplaced
        dependency, so following those edges must revisit a service.
        """
        start = next(name for name in self.names if name in remaining)
        path: List[str] = []
        position: Dict[str, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = next(dep for dep in self.requires[current] if dep in remaining)
        return path[position[current]:] + [current]

    def transitive_dependents(self, name: str) -> Set[str]:
        """
        All services that directly or indirectly depend on ``name``.
        """
        found: Set[str] = set()
        stack = list(self.dependents.get(name, []))
        while stack:
            current = stack.pop()
            if current not in found:
                found.add(current)
                stack.extend(self.dependents[current])
        return found
