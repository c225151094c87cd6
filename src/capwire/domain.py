"""Domain models used throughout the resolver.

Resources, capabilities and requirements are owned by the caller and are
never mutated by a resolve. Resources, capabilities and requirements compare
by identity: two declarations with identical content are still distinct.
Hosted capabilities and wires are values.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from capwire.namespaces import (
    CARDINALITY_DIRECTIVE,
    CARDINALITY_MULTIPLE,
    MANDATORY_DIRECTIVE,
    RESOLUTION_DIRECTIVE,
    RESOLUTION_DYNAMIC,
    RESOLUTION_OPTIONAL,
    USES_DIRECTIVE,
    VISIBILITY_DIRECTIVE,
    VISIBILITY_REEXPORT,
)

__all__ = [
    "Resource",
    "Capability",
    "Requirement",
    "HostedCapability",
    "Wire",
    "Wiring",
    "parse_uses",
]

CapabilityPredicate = Callable[["Capability"], bool]


def parse_uses(value: Optional[str]) -> list[str]:
    """Split a ``uses`` style directive into names.

    Entries may be separated by commas, spaces or both; empty entries are
    dropped.

    Example:
        >>> parse_uses("a.b, c.d,,e")
        ['a.b', 'c.d', 'e']
    """
    if not value:
        return []
    return [name for name in value.replace(",", " ").split() if name]


@dataclass(eq=False)
class Resource:
    """A unit that provides capabilities and declares requirements.

    Attributes:
        name: Human readable name; fragments attached to the same host are
            told apart by name.
        capabilities: Capabilities this resource provides, in priority order.
        requirements: Requirements this resource declares, in declaration order.

    Example:
        >>> system = Resource("system")
        >>> java = system.provide("osgi.ee", {"osgi.ee": "JavaSE", "version": (1, 7)})
        >>> app = Resource("app")
        >>> needs_java = app.require("osgi.ee", lambda c: c.attributes["version"] >= (1, 6))
    """

    name: str
    capabilities: list["Capability"] = field(default_factory=list)
    requirements: list["Requirement"] = field(default_factory=list)

    def provide(
        self,
        namespace: str,
        attributes: Optional[dict[str, Any]] = None,
        directives: Optional[dict[str, str]] = None,
    ) -> "Capability":
        """Declare a new capability on this resource and return it."""
        capability = Capability(namespace, dict(attributes or {}), dict(directives or {}), self)
        self.capabilities.append(capability)
        return capability

    def require(
        self,
        namespace: str,
        predicate: Optional[CapabilityPredicate] = None,
        attributes: Optional[dict[str, Any]] = None,
        directives: Optional[dict[str, str]] = None,
    ) -> "Requirement":
        """Declare a new requirement on this resource and return it."""
        requirement = Requirement(
            namespace, self, predicate, dict(attributes or {}), dict(directives or {})
        )
        self.requirements.append(requirement)
        return requirement

    def get_capabilities(self, namespace: Optional[str] = None) -> list["Capability"]:
        if namespace is None:
            return list(self.capabilities)
        return [c for c in self.capabilities if c.namespace == namespace]

    def get_requirements(self, namespace: Optional[str] = None) -> list["Requirement"]:
        if namespace is None:
            return list(self.requirements)
        return [r for r in self.requirements if r.namespace == namespace]

    @property
    def declared_resource(self) -> "Resource":
        return self

    def __repr__(self):
        return self.name


@dataclass(frozen=True, eq=False)
class Capability:
    """A named, attributed fact provided by a resource.

    Attributes:
        namespace: The namespace the capability belongs to.
        attributes: Matching attributes, for example ``{"osgi.wiring.package": "p"}``.
        directives: Resolver directives such as ``uses`` and ``mandatory``.
        resource: The declaring resource.
    """

    namespace: str
    attributes: dict[str, Any]
    directives: dict[str, str]
    resource: Resource

    @property
    def uses(self) -> list[str]:
        """Names listed in the ``uses`` directive."""
        return parse_uses(self.directives.get(USES_DIRECTIVE))

    @property
    def mandatory_attributes(self) -> list[str]:
        """Attribute names a requirement must match explicitly."""
        return parse_uses(self.directives.get(MANDATORY_DIRECTIVE))

    @property
    def declared_capability(self) -> "Capability":
        return self

    def __repr__(self):
        value = self.attributes.get(self.namespace)
        label = f"{self.namespace}={value}" if value is not None else self.namespace
        return f"[{self.resource!r}] {label}"


@dataclass(frozen=True, eq=False)
class Requirement:
    """A filtered need declared by a resource.

    Attributes:
        namespace: The namespace of capabilities that can satisfy this requirement.
        resource: The declaring resource.
        predicate: Opaque predicate applied by the resolve context to candidate
            capabilities, or None to accept every capability of the namespace.
        attributes: Attribute values a candidate must carry; these count as
            explicitly matched for a capability's ``mandatory`` directive.
        directives: Resolver directives (``resolution``, ``cardinality``,
            ``effective``, ``visibility``).
    """

    namespace: str
    resource: Resource
    predicate: Optional[CapabilityPredicate] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    directives: dict[str, str] = field(default_factory=dict)

    @property
    def is_optional(self) -> bool:
        return self.directives.get(RESOLUTION_DIRECTIVE) == RESOLUTION_OPTIONAL

    @property
    def is_dynamic(self) -> bool:
        return self.directives.get(RESOLUTION_DIRECTIVE) == RESOLUTION_DYNAMIC

    @property
    def is_multiple(self) -> bool:
        return self.directives.get(CARDINALITY_DIRECTIVE) == CARDINALITY_MULTIPLE

    @property
    def is_reexport(self) -> bool:
        return self.directives.get(VISIBILITY_DIRECTIVE) == VISIBILITY_REEXPORT

    @property
    def declared_requirement(self) -> "Requirement":
        return self

    def __repr__(self):
        label = ", ".join(f"{k}={v}" for k, v in self.attributes.items())
        return f"[{self.resource!r}] {self.namespace}({label})"


@dataclass(frozen=True)
class HostedCapability:
    """A capability offered on behalf of a resource other than its declarer.

    Fragments do not provide capabilities in their own right; once attached,
    their capabilities appear as if provided by the host. Hosted capabilities
    are values, so independently created views of the same declared
    capability on the same host are equal.

    Attributes:
        resource: The resource the capability is attributed to (the host).
        declared_capability: The capability as declared by the fragment.
    """

    resource: Any
    declared_capability: Capability

    @property
    def namespace(self) -> str:
        return self.declared_capability.namespace

    @property
    def attributes(self) -> dict[str, Any]:
        return self.declared_capability.attributes

    @property
    def directives(self) -> dict[str, str]:
        return self.declared_capability.directives

    @property
    def uses(self) -> list[str]:
        return self.declared_capability.uses

    @property
    def mandatory_attributes(self) -> list[str]:
        return self.declared_capability.mandatory_attributes

    def __repr__(self):
        return f"[{self.resource!r}] {self.declared_capability!r}"


@dataclass(frozen=True)
class Wire:
    """An accepted binding of a requirement to a capability.

    Attributes:
        requirer: The resource whose requirement is satisfied.
        requirement: The declared requirement.
        provider: The resource providing the capability (the host, for
            fragment capabilities).
        capability: The declared capability.
    """

    requirer: Resource
    requirement: Requirement
    provider: Resource
    capability: Capability

    def __repr__(self):
        return f"{self.requirement!r} -> {self.capability!r}"


@dataclass(frozen=True, eq=False)
class Wiring:
    """Snapshot of a resource that has already been resolved.

    Attributes:
        resource: The resolved resource.
        capabilities: Capabilities the resource offers now it is resolved;
            for hosts this includes attached fragment capabilities.
        requirements: Requirements that took part in resolving the resource.
        required_wires: Wires from this resource's requirements.
        provided_wires: Wires to this resource's capabilities.
    """

    resource: Resource
    capabilities: tuple = ()
    requirements: tuple = ()
    required_wires: tuple = ()
    provided_wires: tuple = ()

    @staticmethod
    def of(resource: Resource, required_wires=(), provided_wires=()) -> "Wiring":
        """Build a wiring exposing the resource's own capabilities and requirements."""
        return Wiring(
            resource,
            tuple(resource.capabilities),
            tuple(resource.requirements),
            tuple(required_wires),
            tuple(provided_wires),
        )

    def required_resource_wires(self, namespace: Optional[str] = None) -> list[Wire]:
        if namespace is None:
            return list(self.required_wires)
        return [w for w in self.required_wires if w.requirement.namespace == namespace]

    def resource_capabilities(self, namespace: Optional[str] = None) -> list:
        if namespace is None:
            return list(self.capabilities)
        return [c for c in self.capabilities if c.namespace == namespace]
