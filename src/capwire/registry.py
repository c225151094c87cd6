"""An in-memory resolve context backed by a registry of resources.

:class:`CapabilityRegistry` holds every resource known to the caller and
matches requirements against their capabilities. :class:`RegistryResolveContext`
exposes a registry to the resolver, together with the resources to resolve
and the wirings of resources resolved earlier.
"""

import threading
from typing import Any, Callable, Iterable, Mapping, Optional

from capwire.context import ResolveContext
from capwire.domain import Capability, HostedCapability, Requirement, Resource, Wiring

__all__ = [
    "Matcher",
    "CapabilityRegistry",
    "default_matcher",
    "RegistryResolveContext",
]

Matcher = Callable[[Requirement, Capability], bool]


def default_matcher(requirement: Requirement, capability: Capability) -> bool:
    """Decide whether ``capability`` satisfies ``requirement``.

    A capability matches when it is in the requirement's namespace, carries
    every attribute value the requirement names, has each of its
    ``mandatory`` attributes named by the requirement, and passes the
    requirement's predicate.

    Example:
        >>> exporter = Resource("exporter")
        >>> p = exporter.provide("osgi.wiring.package", {"osgi.wiring.package": "p"})
        >>> importer = Resource("importer")
        >>> needs_p = importer.require("osgi.wiring.package", attributes={"osgi.wiring.package": "p"})
        >>> default_matcher(needs_p, p)
        True
    """
    if requirement.namespace != capability.namespace:
        return False
    for name, value in requirement.attributes.items():
        if capability.attributes.get(name) != value:
            return False
    if any(name not in requirement.attributes for name in capability.mandatory_attributes):
        return False
    return requirement.predicate is None or bool(requirement.predicate(capability))


class CapabilityRegistry:
    """Registry of resources, supporting registration and capability lookup."""

    def __init__(self):
        self._resources = []

    def register(self, resource: Resource) -> Resource:
        """Register a resource and return it.

        Args:
            resource: The resource to register. Registering the same resource
                twice has no effect.
        """
        if not any(r is resource for r in self._resources):
            self._resources.append(resource)
        return resource

    def registered_resources(self) -> list[Resource]:
        return list(self._resources)

    def providers(self, requirement: Requirement, matcher: Matcher = default_matcher) -> list[Capability]:
        """Retrieve capabilities matching ``requirement``, in registration order.

        Args:
            requirement: The requirement to match.
            matcher: Predicate deciding whether a capability satisfies a requirement.

        Returns:
            Matching capabilities of every registered resource, including the
            requirement's own resource.
        """
        return [
            capability
            for resource in self._resources
            for capability in resource.capabilities
            if matcher(requirement, capability)
        ]


class RegistryResolveContext(ResolveContext):
    """Resolve context answering candidate queries from a :class:`CapabilityRegistry`.

    Args:
        registry: Where candidate capabilities come from.
        mandatory: Resources that must resolve.
        optional: Resources to resolve if possible.
        wirings: Wirings of resources resolved earlier.
        related: Resources to resolve alongside a given resource, typically
            fragments that should attach on demand.
        matcher: Predicate deciding whether a capability satisfies a requirement.
        sort_key: If given, candidates are sorted by this key (stable, so
            registration order breaks ties); otherwise registration order is
            the preference order.
        effective: If given, decides which requirements take part in the
            resolve instead of the ``effective`` directive.

    Example:
        >>> context = RegistryResolveContext(
        ...     registry,
        ...     mandatory=[app],
        ...     sort_key=lambda c: -c.attributes.get("version", 0),
        ... )
        >>> wires = Resolver().resolve(context)
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        mandatory: Iterable[Resource] = (),
        optional: Iterable[Resource] = (),
        wirings: Optional[Mapping[Resource, Wiring]] = None,
        related: Optional[Mapping[Resource, Iterable[Resource]]] = None,
        matcher: Matcher = default_matcher,
        sort_key: Optional[Callable[[Any], Any]] = None,
        effective: Optional[Callable[[Requirement], bool]] = None,
    ):
        self.registry = registry
        self._mandatory = list(mandatory)
        self._optional = list(optional)
        self._wirings = dict(wirings or {})
        self._related = {resource: list(resources) for resource, resources in (related or {}).items()}
        self._matcher = matcher
        self._sort_key = sort_key
        self._effective = effective
        self._cancel_callbacks = []
        self._lock = threading.Lock()

    def mandatory_resources(self) -> list[Resource]:
        return list(self._mandatory)

    def optional_resources(self) -> list[Resource]:
        return list(self._optional)

    def related_resources(self, resource: Resource) -> list[Resource]:
        return list(self._related.get(resource, ()))

    def find_providers(self, requirement: Requirement) -> list[Capability]:
        candidates = self.registry.providers(requirement.declared_requirement, self._matcher)
        if self._sort_key is not None:
            candidates.sort(key=self._sort_key)
        return candidates

    def insert_hosted_capability(self, capabilities: list, hosted: HostedCapability) -> int:
        """Insert ``hosted`` after every capability it does not sort before."""
        if self._sort_key is None:
            capabilities.append(hosted)
            return len(capabilities) - 1
        key = self._sort_key(hosted)
        index = len(capabilities)
        for i, capability in enumerate(capabilities):
            if key < self._sort_key(capability):
                index = i
                break
        capabilities.insert(index, hosted)
        return index

    def is_effective(self, requirement: Requirement) -> bool:
        if self._effective is not None:
            return self._effective(requirement)
        return super().is_effective(requirement)

    def get_wirings(self) -> dict[Resource, Wiring]:
        return dict(self._wirings)

    def on_cancel(self, callback: Callable[[], None]):
        with self._lock:
            self._cancel_callbacks.append(callback)

    def cancel(self):
        """Cancel every resolve currently using this context."""
        with self._lock:
            callbacks = list(self._cancel_callbacks)
        for callback in callbacks:
            callback()

    def remove_cancel_callback(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._cancel_callbacks:
                self._cancel_callbacks.remove(callback)
