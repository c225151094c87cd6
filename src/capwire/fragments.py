"""Fragment attachment: hosts seen together with their selected fragments.

While resolving, a host and the fragments selected for it behave as a single
resource. :class:`WrappedResource` is that combined view: its capabilities
are the host's and the fragments' capabilities re-attributed to the wrapper,
and its requirements are the host's and the fragments' payload requirements.
"""

from dataclasses import dataclass
from typing import Any, Optional

from capwire.domain import HostedCapability, Requirement, Resource
from capwire.namespaces import HOST_NAMESPACE, strategy_for

__all__ = ["WrappedResource", "WrappedRequirement", "is_fragment", "is_payload"]


def is_fragment(resource) -> bool:
    """A fragment is a resource declaring a requirement on a host."""
    return any(r.namespace == HOST_NAMESPACE for r in resource.requirements)


def is_payload(requirement) -> bool:
    """Whether a fragment requirement is carried over to the host it attaches to."""
    return strategy_for(requirement.namespace).payload


@dataclass(frozen=True)
class WrappedRequirement:
    """A requirement re-attributed to another resource.

    Used for fragment requirements merged into a host, and for requirements
    of resolved resources whose wires name a different requirer.
    """

    resource: Any
    declared_requirement: Requirement

    @property
    def namespace(self) -> str:
        return self.declared_requirement.namespace

    @property
    def predicate(self):
        return self.declared_requirement.predicate

    @property
    def attributes(self):
        return self.declared_requirement.attributes

    @property
    def directives(self):
        return self.declared_requirement.directives

    @property
    def is_optional(self) -> bool:
        return self.declared_requirement.is_optional

    @property
    def is_dynamic(self) -> bool:
        return self.declared_requirement.is_dynamic

    @property
    def is_multiple(self) -> bool:
        return self.declared_requirement.is_multiple

    @property
    def is_reexport(self) -> bool:
        return self.declared_requirement.is_reexport

    def __repr__(self):
        return f"[{self.resource!r}] {self.declared_requirement!r}"


class WrappedResource:
    """A host merged with the fragments selected to attach to it."""

    def __init__(self, host: Resource, fragments: list[Resource]):
        self.declared_resource = host
        self.fragments = list(fragments)
        self.name = host.name
        self.capabilities = [HostedCapability(self, c) for c in host.capabilities]
        self.capabilities += [
            HostedCapability(self, c)
            for fragment in self.fragments
            for c in fragment.capabilities
            if strategy_for(c.namespace).attaches_to_host
        ]
        self.requirements = [WrappedRequirement(self, r) for r in host.requirements]
        self.requirements += [
            WrappedRequirement(self, r)
            for fragment in self.fragments
            for r in fragment.requirements
            if is_payload(r)
        ]

    def get_capabilities(self, namespace: Optional[str] = None) -> list:
        if namespace is None:
            return list(self.capabilities)
        return [c for c in self.capabilities if c.namespace == namespace]

    def get_requirements(self, namespace: Optional[str] = None) -> list:
        if namespace is None:
            return list(self.requirements)
        return [r for r in self.requirements if r.namespace == namespace]

    def __repr__(self):
        return f"{self.declared_resource!r}{self.fragments!r}"
