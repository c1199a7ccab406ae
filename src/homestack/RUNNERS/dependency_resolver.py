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
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, Iterable, List, Optional, Set

from ..exceptions import CircularDependencyError, ConfigError, MissingDependencyError
from ..MODELS.orchestration_config import OrchestrationConfig


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    Orders are stable: independent services keep their declaration order.
    """
    def dependency_graph(self, config: OrchestrationConfig) -> Dict[str, List[str]]:
        """
        Maps every service to the services it must wait for.

        :raises MissingDependencyError: If a required dependency is not defined.
        """
        graph = {}
        for name, svc in config.services.items():
            deps = []
            for dep in svc.depends_on:
                if dep.service not in config.services:
                    if dep.required:
                        raise MissingDependencyError(name, dep.service)
                    continue
                deps.append(dep.service)
            graph[name] = deps
        return graph

    def resolve_order(self,
                      config: OrchestrationConfig,
                      services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the correct order to start services using topological sort.

        :param config: The orchestration configuration.
        :param services: Restrict the order to these services and everything they depend on.
        :return: Service names in the order they should be started.
        :raises CircularDependencyError: If a circular dependency is detected.
        """
        graph = self.dependency_graph(config)
        roots = self._roots(config, services)

        ordered: List[str] = []
        visited: Set[str] = set()
        path: List[str] = []

        def visit(name):
            """
            Recursive function for topological sort.
            """
            if name in path:
                raise CircularDependencyError(path[path.index(name):] + [name])
            if name in visited:
                return
            path.append(name)
            for dep in graph[name]:
                visit(dep)
            path.pop()
            visited.add(name)
            ordered.append(name)

        for name in roots:
            visit(name)

        return ordered

    def resolve_levels(self,
                       config: OrchestrationConfig,
                       services: Optional[Iterable[str]] = None) -> List[List[str]]:
        """
        Groups services into startup waves. Every service only depends on
        services from earlier waves, so each wave can start concurrently.
        """
        graph = self.dependency_graph(config)
        level: Dict[str, int] = {}
        for name in self.resolve_order(config, services):
            level[name] = 1 + max((level[d] for d in graph[name]), default=-1)

        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name, idx in level.items():
            waves[idx].append(name)
        return waves

    def shutdown_order(self,
                       config: OrchestrationConfig,
                       services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Dependents stop before the services they depend on.
        """
        return list(reversed(self.resolve_order(config, services)))

    def dependents_of(self, config: OrchestrationConfig, name: str) -> List[str]:
        """
        Returns every service that transitively depends on ``name``, in startup order.
        """
        graph = self.dependency_graph(config)
        affected = {name}
        changed = True
        while changed:
            changed = False
            for svc, deps in graph.items():
                if svc not in affected and affected.intersection(deps):
                    affected.add(svc)
                    changed = True
        return [svc for svc in self.resolve_order(config) if svc in affected and svc != name]

    def _roots(self, config: OrchestrationConfig, services: Optional[Iterable[str]]) -> List[str]:
        if services is None:
            return list(config.services)
        roots = list(services)
        for name in roots:
            if name not in config.services:
                raise ConfigError(f"No such service: {name}")
        return roots
