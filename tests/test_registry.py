import pytest

from bundles import export_package, import_package
from capwire.domain import HostedCapability, Resource
from capwire.namespaces import PACKAGE_NAMESPACE
from capwire.registry import CapabilityRegistry, RegistryResolveContext, default_matcher


@pytest.fixture
def exporter(registry):
    return registry.register(Resource("exporter"))


@pytest.fixture
def importer(registry):
    return registry.register(Resource("importer"))


def test_resources_are_registered_once(registry: CapabilityRegistry, exporter):
    assert registry.register(exporter) is exporter
    assert registry.registered_resources() == [exporter]


def test_matches_on_namespace_and_attributes(exporter, importer):
    p = export_package(exporter, "p")
    widget = exporter.provide("com.example.widget", {PACKAGE_NAMESPACE: "p"})

    assert default_matcher(import_package(importer, "p"), p)
    assert not default_matcher(import_package(importer, "q"), p)
    assert not default_matcher(import_package(importer, "p"), widget)


def test_predicate_must_accept_capability(exporter, importer):
    p = export_package(exporter, "p", version=2)

    assert default_matcher(import_package(importer, "p", lambda c: c.attributes["version"] >= 2), p)
    assert not default_matcher(import_package(importer, "p", lambda c: c.attributes["version"] > 2), p)


def test_mandatory_attributes_must_be_named(exporter, importer):
    p = exporter.provide(
        PACKAGE_NAMESPACE, {PACKAGE_NAMESPACE: "p", "vendor": "acme"}, {"mandatory": "vendor"}
    )
    plain = import_package(importer, "p")
    named = importer.require(PACKAGE_NAMESPACE, attributes={PACKAGE_NAMESPACE: "p", "vendor": "acme"})

    assert not default_matcher(plain, p)
    assert default_matcher(named, p)


def test_providers_are_returned_in_registration_order(registry, exporter, importer):
    second = registry.register(Resource("second"))
    p2 = export_package(second, "p")
    p1 = export_package(exporter, "p")

    assert registry.providers(import_package(importer, "p")) == [p1, p2]


def test_context_sorts_candidates(registry, exporter, importer):
    old = export_package(exporter, "p", version=1)
    new = export_package(exporter, "p", version=2)
    context = RegistryResolveContext(registry, sort_key=lambda c: -c.attributes["version"])

    assert context.find_providers(import_package(importer, "p")) == [new, old]


def test_hosted_capability_is_inserted_in_sort_order(registry, exporter):
    capabilities = [export_package(exporter, "p", version=v) for v in (3, 1)]
    fragment = Resource("fragment")
    hosted = HostedCapability(exporter, export_package(fragment, "p", version=2))
    context = RegistryResolveContext(registry, sort_key=lambda c: -c.attributes["version"])

    assert context.insert_hosted_capability(capabilities, hosted) == 1
    assert capabilities[1] is hosted


def test_hosted_capability_is_appended_without_sort_key(registry, exporter):
    capabilities = [export_package(exporter, "p")]
    hosted = HostedCapability(exporter, export_package(Resource("fragment"), "p"))

    assert RegistryResolveContext(registry).insert_hosted_capability(capabilities, hosted) == 1


def test_effective_directive(registry, importer):
    context = RegistryResolveContext(registry)

    assert context.is_effective(importer.require("x"))
    assert context.is_effective(importer.require("x", directives={"effective": "resolve"}))
    assert not context.is_effective(importer.require("x", directives={"effective": "active"}))


def test_effective_predicate_overrides_directive(registry, importer):
    context = RegistryResolveContext(registry, effective=lambda r: r.namespace != "x")

    assert not context.is_effective(importer.require("x"))
    assert context.is_effective(importer.require("y", directives={"effective": "active"}))


def test_unresolved_requirement_is_ignored_when_not_effective(registry, resolver, importer):
    importer.require("x", directives={"effective": "active"})

    assert resolver.resolve(RegistryResolveContext(registry, mandatory=[importer])) == {importer: []}


def test_cancel_invokes_registered_callbacks(registry):
    context = RegistryResolveContext(registry)
    calls = []
    context.on_cancel(lambda: calls.append("first"))
    context.on_cancel(lambda: calls.append("second"))

    context.cancel()

    assert calls == ["first", "second"]


def test_removed_cancel_callback_is_not_invoked(registry):
    context = RegistryResolveContext(registry)
    calls = []

    def first():
        calls.append("first")

    context.on_cancel(first)
    context.on_cancel(lambda: calls.append("second"))

    context.remove_cancel_callback(first)
    context.remove_cancel_callback(first)
    context.cancel()

    assert calls == ["second"]
