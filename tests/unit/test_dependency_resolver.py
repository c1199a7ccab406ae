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
Unit tests for the dependency resolver.
"""
import pytest
from homestack.exceptions import CircularDependencyError, ConfigError, MissingDependencyError
from homestack.MODELS.orchestration_config import OrchestrationConfig
from homestack.MODELS.service_definition import ServiceDefinition, ServiceDependency
from homestack.RUNNERS.dependency_resolver import DependencyResolver


def make_config(graph, optional=()):
    services = {}
    for name, deps in graph.items():
        services[name] = ServiceDefinition(
            name=name,
            cmd=["true"],
            depends_on=[ServiceDependency(service=d, required=d not in optional) for d in deps],
        )
    return OrchestrationConfig(services=services)


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_dependencies_come_first(self):
        config = make_config({"web": ["api"], "api": ["db", "cache"], "db": [], "cache": []})
        order = DependencyResolver().resolve_order(config)
        assert order.index("db") < order.index("api")
        assert order.index("cache") < order.index("api")
        assert order.index("api") < order.index("web")

    def test_order_is_stable(self):
        """Independent services keep their declaration order."""
        config = make_config({"c": [], "a": [], "b": []})
        assert DependencyResolver().resolve_order(config) == ["c", "a", "b"]

    def test_subset_includes_dependencies(self):
        config = make_config({"web": ["db"], "db": [], "worker": ["db"], "docs": []})
        assert DependencyResolver().resolve_order(config, ["web"]) == ["db", "web"]

    def test_unknown_service(self):
        config = make_config({"web": []})
        with pytest.raises(ConfigError, match="No such service: nope"):
            DependencyResolver().resolve_order(config, ["nope"])

    def test_circular_dependency(self):
        config = make_config({"a": ["b"], "b": ["c"], "c": ["a"]})
        with pytest.raises(CircularDependencyError) as exc_info:
            DependencyResolver().resolve_order(config)
        assert exc_info.value.cycle == ["a", "b", "c", "a"]
        assert "a -> b -> c -> a" in str(exc_info.value)

    def test_self_dependency(self):
        config = make_config({"a": ["a"]})
        with pytest.raises(CircularDependencyError):
            DependencyResolver().resolve_order(config)

    def test_missing_dependency(self):
        config = make_config({"web": ["db"]})
        with pytest.raises(MissingDependencyError) as exc_info:
            DependencyResolver().resolve_order(config)
        assert exc_info.value.service == "web"
        assert exc_info.value.dependency == "db"

    def test_missing_optional_dependency_is_skipped(self):
        config = make_config({"web": ["metrics"]}, optional={"metrics"})
        assert DependencyResolver().resolve_order(config) == ["web"]

    def test_levels(self):
        config = make_config({"web": ["api"], "api": ["db"], "db": [], "cache": [], "worker": ["db", "cache"]})
        assert DependencyResolver().resolve_levels(config) == [["db", "cache"], ["api", "worker"], ["web"]]

    def test_shutdown_order_is_reversed(self):
        config = make_config({"web": ["db"], "db": []})
        assert DependencyResolver().shutdown_order(config) == ["web", "db"]

    def test_dependents_of(self):
        config = make_config({"web": ["api"], "api": ["db"], "db": [], "docs": []})
        assert DependencyResolver().dependents_of(config, "db") == ["api", "web"]
        assert DependencyResolver().dependents_of(config, "docs") == []
