"""Namespace and directive vocabulary, and per-namespace resolution behaviour.

Capabilities and requirements are grouped into namespaces. A handful of
namespaces get special treatment from the resolver (packages are imported
into a package space, bundles re-export their provider's packages, hosts
attach fragments, and so on). Rather than scattering string comparisons
through the resolver, each namespace is classified into a
:class:`NamespaceKind` and the kind's :class:`NamespaceStrategy` answers the
questions the resolver needs to ask.
"""

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "PACKAGE_NAMESPACE",
    "BUNDLE_NAMESPACE",
    "HOST_NAMESPACE",
    "IDENTITY_NAMESPACE",
    "EXECUTION_ENVIRONMENT_NAMESPACE",
    "USES_DIRECTIVE",
    "MANDATORY_DIRECTIVE",
    "RESOLUTION_DIRECTIVE",
    "CARDINALITY_DIRECTIVE",
    "EFFECTIVE_DIRECTIVE",
    "VISIBILITY_DIRECTIVE",
    "RESOLUTION_MANDATORY",
    "RESOLUTION_OPTIONAL",
    "RESOLUTION_DYNAMIC",
    "CARDINALITY_SINGLE",
    "CARDINALITY_MULTIPLE",
    "EFFECTIVE_RESOLVE",
    "VISIBILITY_REEXPORT",
    "PackageContribution",
    "NamespaceKind",
    "NamespaceStrategy",
    "strategy_for",
]

PACKAGE_NAMESPACE = "osgi.wiring.package"
BUNDLE_NAMESPACE = "osgi.wiring.bundle"
HOST_NAMESPACE = "osgi.wiring.host"
IDENTITY_NAMESPACE = "osgi.identity"
EXECUTION_ENVIRONMENT_NAMESPACE = "osgi.ee"

USES_DIRECTIVE = "uses"
MANDATORY_DIRECTIVE = "mandatory"
RESOLUTION_DIRECTIVE = "resolution"
CARDINALITY_DIRECTIVE = "cardinality"
EFFECTIVE_DIRECTIVE = "effective"
VISIBILITY_DIRECTIVE = "visibility"

RESOLUTION_MANDATORY = "mandatory"
RESOLUTION_OPTIONAL = "optional"
RESOLUTION_DYNAMIC = "dynamic"
CARDINALITY_SINGLE = "single"
CARDINALITY_MULTIPLE = "multiple"
EFFECTIVE_RESOLVE = "resolve"
VISIBILITY_REEXPORT = "reexport"


class PackageContribution(Enum):
    """How a chosen candidate feeds the requirer's package space."""

    IMPORT = "import"
    """The capability itself is an imported package."""

    REQUIRE = "require"
    """Every package exported by the provider becomes a required package."""

    USES_ONLY = "uses-only"
    """Only the capability's ``uses`` directive matters."""


class NamespaceKind(Enum):
    PACKAGE = "package"
    BUNDLE = "bundle"
    HOST = "host"
    IDENTITY = "identity"
    EXECUTION_ENVIRONMENT = "execution-environment"
    GENERIC = "generic"

    @staticmethod
    def of(namespace: str) -> "NamespaceKind":
        """Classify a namespace string, defaulting to :attr:`GENERIC`."""
        return _KIND_BY_NAMESPACE.get(namespace, NamespaceKind.GENERIC)

    @property
    def strategy(self) -> "NamespaceStrategy":
        return _STRATEGIES[self]


@dataclass(frozen=True)
class NamespaceStrategy:
    """Resolution behaviour attached to a :class:`NamespaceKind`."""

    contribution: PackageContribution
    """How a wired capability of this namespace enters the package space."""

    suppress_self_wires: bool
    """Whether no wire is emitted when requirer and provider are the same resource."""

    payload: bool
    """Whether a fragment requirement in this namespace is carried over to its host."""

    attaches_to_host: bool
    """Whether a fragment capability in this namespace is offered by its host."""

    wire_order: int
    """Sort bucket for wires of a resource; lower buckets are emitted first."""


_KIND_BY_NAMESPACE = {
    PACKAGE_NAMESPACE: NamespaceKind.PACKAGE,
    BUNDLE_NAMESPACE: NamespaceKind.BUNDLE,
    HOST_NAMESPACE: NamespaceKind.HOST,
    IDENTITY_NAMESPACE: NamespaceKind.IDENTITY,
    EXECUTION_ENVIRONMENT_NAMESPACE: NamespaceKind.EXECUTION_ENVIRONMENT,
}

_STRATEGIES = {
    NamespaceKind.PACKAGE: NamespaceStrategy(
        contribution=PackageContribution.IMPORT,
        suppress_self_wires=True,
        payload=True,
        attaches_to_host=True,
        wire_order=0,
    ),
    NamespaceKind.BUNDLE: NamespaceStrategy(
        contribution=PackageContribution.REQUIRE,
        suppress_self_wires=True,
        payload=True,
        attaches_to_host=True,
        wire_order=1,
    ),
    NamespaceKind.HOST: NamespaceStrategy(
        contribution=PackageContribution.USES_ONLY,
        suppress_self_wires=True,
        payload=False,
        attaches_to_host=False,
        wire_order=2,
    ),
    NamespaceKind.IDENTITY: NamespaceStrategy(
        contribution=PackageContribution.USES_ONLY,
        suppress_self_wires=False,
        payload=True,
        attaches_to_host=False,
        wire_order=2,
    ),
    NamespaceKind.EXECUTION_ENVIRONMENT: NamespaceStrategy(
        contribution=PackageContribution.USES_ONLY,
        suppress_self_wires=False,
        payload=False,
        attaches_to_host=True,
        wire_order=2,
    ),
    NamespaceKind.GENERIC: NamespaceStrategy(
        contribution=PackageContribution.USES_ONLY,
        suppress_self_wires=False,
        payload=True,
        attaches_to_host=True,
        wire_order=2,
    ),
}


def strategy_for(namespace: str) -> NamespaceStrategy:
    """Return the resolution strategy for ``namespace``.

    Example:
        >>> strategy_for(PACKAGE_NAMESPACE).contribution
        <PackageContribution.IMPORT: 'import'>
        >>> strategy_for("com.example.widget").wire_order
        2
    """
    return NamespaceKind.of(namespace).strategy
