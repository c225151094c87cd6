"""The resolve context: everything the resolver learns about the outside world.

A resolve context decides which resources must (and may) be resolved, where
candidate capabilities come from and in which order they are preferred, and
what is already resolved. Implementations must be safe to call from worker
threads.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Mapping

from capwire.domain import Capability, HostedCapability, Requirement, Resource, Wire, Wiring
from capwire.namespaces import EFFECTIVE_DIRECTIVE, EFFECTIVE_RESOLVE, PACKAGE_NAMESPACE

__all__ = ["ResolveContext"]


class ResolveContext(ABC):
    """Abstract resolve context.

    Only :meth:`find_providers` and :meth:`insert_hosted_capability` must be
    implemented; every other hook has a sensible default.
    """

    def mandatory_resources(self) -> Iterable[Resource]:
        """Resources that must resolve, or the resolve fails."""
        return ()

    def optional_resources(self) -> Iterable[Resource]:
        """Resources to resolve if possible; their failure is not an error."""
        return ()

    def related_resources(self, resource: Resource) -> Iterable[Resource]:
        """Resources to resolve alongside ``resource`` if possible.

        Typically fragments that should attach on demand when their host
        resolves. Related resources are treated as optional.
        """
        return ()

    @abstractmethod
    def find_providers(self, requirement: Requirement) -> list[Capability]:
        """Return capabilities matching ``requirement``, most preferred first.

        The returned list belongs to the resolver, which may mutate it.
        """

    @abstractmethod
    def insert_hosted_capability(self, capabilities: list, hosted: HostedCapability) -> int:
        """Insert ``hosted`` into ``capabilities`` in preference order.

        Args:
            capabilities: A list previously returned by :meth:`find_providers`,
                possibly already modified by the resolver.
            hosted: The capability to insert.

        Returns:
            The index at which ``hosted`` was inserted.
        """

    def is_effective(self, requirement: Requirement) -> bool:
        """Whether ``requirement`` takes part in this resolve."""
        effective = requirement.directives.get(EFFECTIVE_DIRECTIVE)
        return effective is None or effective == EFFECTIVE_RESOLVE

    def get_wirings(self) -> Mapping[Resource, Wiring]:
        """Wirings of resources that are already resolved."""
        return {}

    def get_substitution_wires(self, wiring: Wiring) -> list[Wire]:
        """Wires through which a resolved resource imports a package it also exports.

        Such exports were substituted when the resource resolved, so they are
        not visible to other resources.
        """
        exported = {
            capability.attributes.get(PACKAGE_NAMESPACE)
            for capability in wiring.resource.capabilities
            if capability.namespace == PACKAGE_NAMESPACE
        }
        return [
            wire
            for wire in wiring.required_resource_wires(PACKAGE_NAMESPACE)
            if wire.capability.attributes.get(PACKAGE_NAMESPACE) in exported
        ]

    def on_cancel(self, callback: Callable[[], None]):
        """Register ``callback`` to be invoked if this resolve should be cancelled.

        Called exactly once per resolve, before any other method. The default
        implementation never cancels.
        """

    def remove_cancel_callback(self, callback: Callable[[], None]):
        """Forget ``callback`` once the resolve that registered it has finished.

        Called once per resolve, after its last other call on the context.
        """
