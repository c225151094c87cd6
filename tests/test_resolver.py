import logging
from concurrent.futures import CancelledError, ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from bundles import IndexedResolveContext, export_package, import_package, version_is
from capwire.domain import Resource, Wire, Wiring
from capwire.errors import (
    MissingRequirementError,
    ResolutionCancelled,
    ResolutionError,
    UsesConstraintViolation,
)
from capwire.executor import InlineExecutor
from capwire.namespaces import EXECUTION_ENVIRONMENT_NAMESPACE as EE
from capwire.registry import RegistryResolveContext
from capwire.resolver import Resolver, resolve


@pytest.fixture
def java(registry):
    system = registry.register(Resource("system"))
    caps = [system.provide(EE, {EE: "JavaSE", "version": v}) for v in (1.5, 1.6, 1.7)]
    return SimpleNamespace(system=system, java5=caps[0], java6=caps[1], java7=caps[2])


@pytest.fixture
def app(registry):
    app = registry.register(Resource("app"))
    app.require(EE, lambda c: c.attributes["version"] >= 1.6)
    return app


@pytest.fixture
def uses_graph(registry):
    """``root`` sees package c through a, b and its own import.

    A prefers C1 for c, but B can only use C2, so a consistent wiring needs
    A to be backtracked onto C2.
    """
    root = registry.register(Resource("root"))
    a = registry.register(Resource("A"))
    b = registry.register(Resource("B"))
    c1 = registry.register(Resource("C1"))
    c2 = registry.register(Resource("C2"))

    export_package(a, "a", uses="c")
    a_imports_c = import_package(a, "c")
    export_package(b, "b", uses="c")
    import_package(b, "c", version_is(2))
    export_package(c1, "c", version=1)
    c2_exports_c = export_package(c2, "c", version=2)

    import_package(root, "a")
    import_package(root, "b")
    import_package(root, "c")
    return SimpleNamespace(
        root=root, a=a, b=b, c1=c1, c2=c2, a_imports_c=a_imports_c, c2_exports_c=c2_exports_c
    )


def by_version(capability):
    return -capability.attributes["version"]


def by_version_or_zero(capability):
    return -capability.attributes.get("version", 0)


def test_prefers_first_candidate_in_context_order(registry, resolver, java, app):
    context = RegistryResolveContext(registry, mandatory=[app], sort_key=by_version)

    wires = resolver.resolve(context)

    assert wires[app] == [Wire(app, app.requirements[0], java.system, java.java7)]
    assert wires[java.system] == []


def test_backtracks_out_of_uses_conflict(registry, resolver, uses_graph):
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])

    wires = resolver.resolve(context)

    assert wires[uses_graph.a] == [
        Wire(uses_graph.a, uses_graph.a_imports_c, uses_graph.c2, uses_graph.c2_exports_c)
    ]
    assert [w.provider for w in wires[uses_graph.root]] == [uses_graph.a, uses_graph.b, uses_graph.c2]
    assert uses_graph.c1 not in wires


def test_every_package_seen_by_root_has_one_provider(registry, resolver, uses_graph):
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])

    wires = resolver.resolve(context)

    providers_of_c = {
        w.provider for ws in wires.values() for w in ws if w.capability.attributes.get("osgi.wiring.package") == "c"
    }
    assert providers_of_c == {uses_graph.c2}


def test_optional_resource_without_candidates_is_left_out(registry, resolver, java, app):
    broken = registry.register(Resource("broken"))
    broken.require("com.example.missing")
    context = RegistryResolveContext(registry, mandatory=[app], optional=[broken])

    wires = resolver.resolve(context)

    assert broken not in wires
    assert app in wires


def test_optional_resources_do_not_change_mandatory_outcome(registry, resolver, java, app):
    broken = registry.register(Resource("broken"))
    broken.require("com.example.missing")

    with_optional = resolver.resolve(RegistryResolveContext(registry, mandatory=[app], optional=[broken]))
    without_optional = resolver.resolve(RegistryResolveContext(registry, mandatory=[app]))

    assert with_optional == without_optional


def test_missing_mandatory_requirement_fails(registry, resolver):
    app = registry.register(Resource("app"))
    needs_x = app.require("x")
    middle = registry.register(Resource("middle"))
    middle.provide("x")
    middle.require("y")

    with pytest.raises(MissingRequirementError, match="caused by: Unable to resolve middle") as e:
        resolver.resolve(RegistryResolveContext(registry, mandatory=[app]))
    assert e.value.unresolved_requirements == (needs_x,)


def test_unresolvable_uses_conflict_is_reported(registry, resolver):
    root = registry.register(Resource("root"))
    a = registry.register(Resource("A"))
    c1 = registry.register(Resource("C1"))
    c2 = registry.register(Resource("C2"))
    export_package(a, "a", uses="c")
    import_package(a, "c", version_is(1))
    c1_exports_c = export_package(c1, "c", version=1)
    c2_exports_c = export_package(c2, "c", version=2)
    root_imports_a = import_package(root, "a")
    import_package(root, "c", version_is(2))

    with pytest.raises(UsesConstraintViolation, match="exposed to package 'c' from resources C2 and C1") as e:
        resolver.resolve(RegistryResolveContext(registry, mandatory=[root]))
    assert e.value.resource is root
    assert e.value.package == "c"
    assert e.value.capabilities == (c2_exports_c, c1_exports_c)
    assert e.value.unresolved_requirements == (root_imports_a,)


def test_optional_resource_with_uses_conflict_is_dropped(registry, resolver, java, app, caplog):
    optional = registry.register(Resource("O"))
    a = registry.register(Resource("A"))
    c1 = registry.register(Resource("C1"))
    c2 = registry.register(Resource("C2"))
    export_package(a, "a", uses="c")
    import_package(a, "c", version_is(1))
    export_package(c1, "c", version=1)
    export_package(c2, "c", version=2)
    import_package(optional, "a")
    import_package(optional, "c", version_is(2))
    context = RegistryResolveContext(registry, mandatory=[app], optional=[optional], sort_key=by_version_or_zero)

    with caplog.at_level(logging.INFO, logger="capwire"):
        wires = resolver.resolve(context)

    assert set(wires) == {app, java.system}
    assert "Dropping O" in caplog.text


def test_resolves_against_existing_wirings_without_duplicates(registry, resolver, java, app):
    first = resolver.resolve(RegistryResolveContext(registry, mandatory=[app]))
    wirings = {resource: Wiring.of(resource, wires) for resource, wires in first.items()}

    other = registry.register(Resource("other"))
    other_needs_java = other.require(EE)
    second = resolver.resolve(RegistryResolveContext(registry, mandatory=[app, other], wirings=wirings))

    assert second == {other: [Wire(other, other_needs_java, java.system, java.java5)]}


def test_nothing_to_do_when_everything_is_resolved(registry, resolver, java, app):
    first = resolver.resolve(RegistryResolveContext(registry, mandatory=[app]))
    wirings = {resource: Wiring.of(resource, wires) for resource, wires in first.items()}

    assert resolver.resolve(RegistryResolveContext(registry, mandatory=[app], wirings=wirings)) == {}


def test_resolution_is_deterministic(registry, uses_graph):
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])

    assert resolve(context) == resolve(context)


def test_parallel_resolution_matches_inline(registry, resolver, uses_graph):
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])
    expected = resolver.resolve(context)

    assert Resolver(parallelism=2).resolve(context) == expected
    with ThreadPoolExecutor(max_workers=3) as executor:
        assert Resolver(executor=executor).resolve(context) == expected


def test_parallelism_must_be_positive():
    with pytest.raises(ValueError, match="parallelism"):
        Resolver(parallelism=0)


class CancellingContext(RegistryResolveContext):
    """Cancels the resolve from inside a provider lookup."""

    def __init__(self, *args, cancel_on_lookup=1, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookups = 0
        self._cancel_on_lookup = cancel_on_lookup

    def find_providers(self, requirement):
        self.lookups += 1
        if self.lookups == self._cancel_on_lookup:
            self.cancel()
        return super().find_providers(requirement)


def test_cancellation_stops_resolution(registry, uses_graph):
    context = CancellingContext(registry, mandatory=[uses_graph.root])

    with pytest.raises(ResolutionCancelled) as e:
        Resolver().resolve(context)
    assert isinstance(e.value.__cause__, CancelledError)
    assert isinstance(e.value, ResolutionError)
    assert context.lookups == 1


def test_cancellation_wins_over_resolution_failure(registry):
    app = registry.register(Resource("app"))
    app.require("x")
    middle = registry.register(Resource("middle"))
    middle.provide("x")
    middle.require("y")
    context = CancellingContext(registry, mandatory=[app], cancel_on_lookup=2)

    with pytest.raises(ResolutionCancelled):
        Resolver().resolve(context)


class CountingExecutor(InlineExecutor):
    """Runs tasks inline, calling ``on_task`` with the running count before each one."""

    def __init__(self, on_task=None):
        self.tasks = 0
        self._on_task = on_task

    def submit(self, fn, /, *args, **kwargs):
        self.tasks += 1
        if self._on_task is not None:
            self._on_task(self.tasks)
        return super().submit(fn, *args, **kwargs)


def test_cancellation_while_trying_another_permutation(registry, uses_graph):
    counting = CountingExecutor()
    Resolver(executor=counting).resolve(RegistryResolveContext(registry, mandatory=[uses_graph.root]))
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])

    def cancel_near_the_end(tasks):
        if tasks == counting.tasks - 1:
            context.cancel()

    with pytest.raises(ResolutionCancelled):
        Resolver(executor=CountingExecutor(cancel_near_the_end)).resolve(context)


def test_cancellation_while_computing_package_spaces(registry, uses_graph):
    context = RegistryResolveContext(registry, mandatory=[uses_graph.root])
    executor = CountingExecutor(lambda tasks: context.cancel())

    with pytest.raises(ResolutionCancelled):
        Resolver(executor=executor).resolve(context)
    assert executor.tasks == 1


class RecordingContext(RegistryResolveContext):
    """Tracks the cancel callbacks currently registered."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = []

    def on_cancel(self, callback):
        super().on_cancel(callback)
        self.active.append(callback)

    def remove_cancel_callback(self, callback):
        super().remove_cancel_callback(callback)
        self.active.remove(callback)


def test_finished_resolves_release_their_cancel_callback(registry, resolver, java, app):
    context = RecordingContext(registry, mandatory=[app])

    resolver.resolve(context)
    resolver.resolve(context)

    assert context.active == []


def test_failed_resolve_releases_its_cancel_callback(registry, resolver):
    app = registry.register(Resource("app"))
    app.require("com.example.missing")
    context = RecordingContext(registry, mandatory=[app])

    with pytest.raises(MissingRequirementError):
        resolver.resolve(context)
    assert context.active == []


def test_multiple_cardinality_drops_only_conflicting_candidates(registry, resolver):
    root = registry.register(Resource("root"))
    l1 = registry.register(Resource("L1"))
    l2 = registry.register(Resource("L2"))
    c1 = registry.register(Resource("C1"))
    c2 = registry.register(Resource("C2"))
    l1.provide("listener", {"listener": "L1"}, {"uses": "c"})
    import_package(l1, "c", version_is(1))
    l2_listener = l2.provide("listener", {"listener": "L2"}, {"uses": "c"})
    import_package(l2, "c", version_is(2))
    export_package(c1, "c", version=1)
    c2_exports_c = export_package(c2, "c", version=2)
    root_imports_c = import_package(root, "c", version_is(2))
    listeners = root.require("listener", directives={"cardinality": "multiple"})

    wires = resolver.resolve(RegistryResolveContext(registry, mandatory=[root]))

    assert wires[root] == [
        Wire(root, root_imports_c, c2, c2_exports_c),
        Wire(root, listeners, l2, l2_listener),
    ]
    assert l1 not in wires
    assert c1 not in wires


def package_chain(length, uses=False):
    """Resources r0..rN where each ri exports p{i} and imports p{i+1}."""
    resources = [Resource(f"r{i}") for i in range(length)]
    exports = []
    imports = []
    for i, resource in enumerate(resources):
        used = f"p{i + 1}" if uses and i + 1 < length else None
        exports.append(export_package(resource, f"p{i}", used))
        if i + 1 < length:
            imports.append(import_package(resource, f"p{i + 1}"))
    return resources, exports, imports


@pytest.mark.parametrize("parallelism", [1, 2])
def test_resolves_long_import_chain(registry, parallelism):
    resources, exports, imports = package_chain(2000)
    context = IndexedResolveContext(registry, resources, mandatory=[resources[0]])

    wires = Resolver(parallelism=parallelism).resolve(context)

    assert len(wires) == 2000
    assert wires[resources[0]] == [Wire(resources[0], imports[0], resources[1], exports[1])]
    assert wires[resources[1998]] == [Wire(resources[1998], imports[1998], resources[1999], exports[1999])]
    assert wires[resources[1999]] == []


def test_follows_long_uses_chain_through_resolved_resources(registry, resolver):
    resources, exports, imports = package_chain(1500, uses=True)
    wirings = {}
    for i, resource in enumerate(resources):
        required = []
        if i < len(imports):
            required.append(Wire(resource, imports[i], resources[i + 1], exports[i + 1]))
        wirings[resource] = Wiring.of(resource, required)
    app = Resource("app")
    app_imports = import_package(app, "p0")
    context = IndexedResolveContext(registry, resources, mandatory=[app], wirings=wirings)

    assert resolver.resolve(context) == {app: [Wire(app, app_imports, resources[0], exports[0])]}
