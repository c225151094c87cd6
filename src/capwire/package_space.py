"""Package spaces and the uses constraint check.

For a given permutation, every resource reachable from the roots of the
resolve gets a :class:`Packages` record describing which package
capabilities it exports, imports, receives through required bundles and
is exposed to through ``uses`` directives. A resource is consistent when
every package it can see comes from one compatible source.

Package spaces are computed in phases; within a phase each resource is an
independent task fanned out through a :class:`~capwire.executor.TaskGroup`.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

from capwire.candidates import Candidates
from capwire.domain import HostedCapability, Requirement, Resource
from capwire.errors import DynamicResolutionError, UsesConstraintViolation
from capwire.executor import TaskGroup
from capwire.fragments import WrappedRequirement
from capwire.namespaces import PACKAGE_NAMESPACE, PackageContribution, strategy_for
from capwire.session import PermutationType, ResolveSession

__all__ = [
    "Blame",
    "UsedBlames",
    "Packages",
    "WireCandidate",
    "calculate_package_spaces",
    "check_package_space_consistency",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireCandidate:
    """A requirement paired with the capability it is (or would be) wired to."""

    requirement: Any
    capability: Any


@dataclass(frozen=True)
class Blame:
    """Why a package capability is visible to a resource.

    Attributes:
        capability: The visible package capability.
        requirements: The chain of requirements through which it became
            visible, root first; None for the resource's own exports.
    """

    capability: Any
    requirements: Optional[tuple] = None

    @property
    def root(self):
        return self.requirements[0]


class UsedBlames:
    """All the ways a single used capability became visible to a resource.

    For chains rooted at a multiple cardinality requirement, the candidate of
    that requirement which pulled the used capability in is recorded as a
    root cause, so a conflict can be repaired by dropping just those
    candidates.
    """

    def __init__(self, capability):
        self.capability = capability
        self.blames: list[Blame] = []
        self._root_causes: dict = {}

    def add_blame(self, blame: Blame, matching_root_cause):
        self.blames.append(blame)
        if matching_root_cause is not None and blame.root.is_multiple:
            self._root_causes.setdefault(blame.root, set()).add(matching_root_cause)

    def root_causes(self, requirement) -> set:
        return self._root_causes.get(requirement, set())

    def __repr__(self):
        return repr(self.blames)


class Packages:
    """The package space of one resource."""

    def __init__(self):
        self.exported: dict[str, Blame] = {}
        self.imported: dict[str, list[Blame]] = {}
        self.required: dict[str, list[Blame]] = {}
        self.used: dict[str, dict[Any, UsedBlames]] = {}
        self.sources: dict[Any, dict] = {}


def _package_name(capability) -> Optional[str]:
    return capability.attributes.get(PACKAGE_NAMESPACE)


def calculate_package_spaces(
    session: ResolveSession, candidates: Candidates, hosts: Iterable[Resource]
) -> dict[Resource, Packages]:
    """Compute the package space of every resource reachable from ``hosts``.

    Args:
        session: The current resolve session.
        candidates: The permutation being checked.
        hosts: Root resources (wrapped hosts where fragments are attached).

    Returns:
        A mapping from resource to its :class:`Packages`.
    """
    hosts = list(hosts)
    group = TaskGroup(session.executor)

    # breadth first, one round of tasks per distance from the hosts
    wire_candidates: dict[Resource, list[WireCandidate]] = {}
    seen = set(hosts)
    frontier = deque(dict.fromkeys(hosts))
    while frontier:
        found: dict = {}
        lock = threading.Lock()
        batch = list(frontier)
        frontier.clear()
        for resource in batch:
            group.execute(_phase, session, _collect_wire_candidates, session, candidates, resource, found, lock)
        group.wait()
        for resource in batch:
            wire_candidates[resource] = found[resource]
            for wire_candidate in found[resource]:
                provider = wire_candidate.capability.resource
                if provider not in seen:
                    seen.add(provider)
                    frontier.append(provider)

    all_packages = {resource: Packages() for resource in wire_candidates}

    for resource, packages in all_packages.items():
        group.execute(_phase, session, _calculate_exported_packages, session, candidates, resource, packages.exported)
    group.wait()

    for resource, packages in all_packages.items():
        group.execute(
            _phase, session, _merge_packages,
            session, candidates, wire_candidates[resource], all_packages, resource, packages,
        )
    group.wait()

    # required packages make sources recursive, so those are done up front
    for resource, packages in all_packages.items():
        if packages.required:
            _compute_package_sources(session, all_packages, resource, packages)
    for resource, packages in all_packages.items():
        if not packages.sources:
            group.execute(_phase, session, _compute_package_sources, session, all_packages, resource, packages)
    group.wait()

    for resource in all_packages:
        group.execute(_phase, session, _compute_uses, session, wire_candidates[resource], all_packages, resource)
    group.wait()

    return all_packages


def _phase(session: ResolveSession, task, *args):
    session.check_cancelled()
    task(*args)


def _collect_wire_candidates(
    session: ResolveSession, candidates: Candidates, resource: Resource, found: dict, lock: threading.Lock
):
    wire_candidates = _wire_candidates(session, candidates, resource)
    with lock:
        found[resource] = wire_candidates


def _wire_candidates(session: ResolveSession, candidates: Candidates, resource: Resource) -> list[WireCandidate]:
    found = []
    wiring = session.wirings.get(resource)
    if wiring is not None:
        for wire in wiring.required_resource_wires():
            requirement = wire.requirement
            if requirement.resource is not wire.requirer or requirement.is_dynamic:
                requirement = WrappedRequirement(wire.requirer, requirement)
            capability = wire.capability
            if capability.resource is not wire.provider:
                capability = HostedCapability(wire.provider, capability)
            found.append(WireCandidate(requirement, capability))
        # the dynamic candidate must come last; see _merge_packages
        if session.dynamic_requirement is not None and resource is session.dynamic_host:
            capability = candidates.first_candidate(session.dynamic_requirement)
            found.append(WireCandidate(session.dynamic_requirement, capability))
        return found

    for requirement in resource.requirements:
        if requirement.is_dynamic:
            continue
        capabilities = candidates.get_candidates(requirement)
        if not capabilities:
            continue
        if requirement.is_multiple:
            found.extend(WireCandidate(requirement, c) for c in capabilities)
        else:
            found.append(WireCandidate(requirement, capabilities[0]))
    return found


def _calculate_exported_packages(
    session: ResolveSession, candidates: Candidates, resource: Resource, exports: dict[str, Blame]
):
    wiring = session.wirings.get(resource)
    capabilities = wiring.resource_capabilities() if wiring is not None else resource.capabilities
    for capability in capabilities:
        if capability.namespace != PACKAGE_NAMESPACE:
            continue
        if capability.resource is not resource:
            capability = HostedCapability(resource, capability)
        exports[_package_name(capability)] = Blame(capability)
    if not exports:
        return

    # substituted exports are imported instead
    if wiring is None:
        for requirement in resource.requirements:
            if requirement.namespace == PACKAGE_NAMESPACE:
                candidate = candidates.first_candidate(requirement)
                if candidate is not None:
                    exports.pop(_package_name(candidate), None)
    else:
        for wire in session.context.get_substitution_wires(wiring):
            exports.pop(_package_name(wire.capability), None)


def _merge_packages(
    session: ResolveSession,
    candidates: Candidates,
    wire_candidates: list[WireCandidate],
    all_packages: dict[Resource, Packages],
    resource: Resource,
    packages: Packages,
):
    dynamic_importing = session.dynamic_requirement is not None and resource is session.dynamic_host
    for index, wire_candidate in enumerate(wire_candidates):
        if dynamic_importing and index == len(wire_candidates) - 1:
            name = _package_name(wire_candidate.capability)
            if name in packages.exported or name in packages.imported or name in packages.required:
                raise DynamicResolutionError(
                    wire_candidate.requirement,
                    f"Resource {resource!r} cannot dynamically import package "
                    f"'{name}' since it already has access to it.",
                )
        _merge_candidate_packages(
            session, candidates, all_packages, packages, wire_candidate.requirement, wire_candidate.capability
        )


def _merge_candidate_packages(
    session: ResolveSession,
    candidates: Candidates,
    all_packages: dict[Resource, Packages],
    packages: Packages,
    requirement: Requirement,
    capability,
):
    visited_capabilities = set()
    visited_bundles = set()
    # depth first over re-exported bundles, in declaration order
    pending = [capability]
    while pending:
        capability = pending.pop()
        if capability in visited_capabilities:
            continue
        visited_capabilities.add(capability)

        contribution = strategy_for(capability.namespace).contribution
        if contribution is PackageContribution.IMPORT:
            _merge_candidate_package(packages.imported, requirement, capability)
        elif contribution is PackageContribution.REQUIRE:
            provider = capability.resource
            if provider not in visited_bundles:
                visited_bundles.add(provider)
                for blame in all_packages[provider].exported.values():
                    _merge_candidate_package(packages.required, requirement, blame.capability)
            reexported = [c for c in _reexported_bundles(session, candidates, provider) if c is not None]
            pending.extend(reversed(reexported))


def _reexported_bundles(session: ResolveSession, candidates: Candidates, provider: Resource) -> list:
    wiring = session.wirings.get(provider)
    if wiring is not None:
        return [
            w.capability
            for w in wiring.required_resource_wires()
            if strategy_for(w.requirement.namespace).contribution is PackageContribution.REQUIRE
            and w.requirement.is_reexport
        ]
    return [
        candidates.first_candidate(r)
        for r in provider.requirements
        if strategy_for(r.namespace).contribution is PackageContribution.REQUIRE and r.is_reexport
    ]


def _merge_candidate_package(target: dict, requirement: Requirement, capability):
    if capability.namespace == PACKAGE_NAMESPACE:
        target.setdefault(_package_name(capability), []).append(Blame(capability, (requirement,)))


def _compute_package_sources(
    session: ResolveSession, all_packages: dict[Resource, Packages], resource: Resource, packages: Packages
):
    """Record, for every capability of ``resource``, the capabilities it is backed by.

    A package exported by a resource that also receives the same package
    from a required bundle is backed by both. Providers whose sources are
    not known yet are computed first, so chains of required bundles are
    walked with an explicit stack.
    """
    by_package = {resource: _declare_package_sources(session, resource, packages)}
    stack = [resource]
    while stack:
        current = stack[-1]
        current_packages = all_packages[current]
        blocked = next(
            (
                blame.capability.resource
                for blame in _required_blames(by_package[current], current_packages)
                if blame.capability not in all_packages[blame.capability.resource].sources
                and blame.capability.resource not in by_package
            ),
            None,
        )
        if blocked is not None:
            by_package[blocked] = _declare_package_sources(session, blocked, all_packages[blocked])
            stack.append(blocked)
            continue

        stack.pop()
        for blame in _required_blames(by_package[current], current_packages):
            package_sources = by_package[current][_package_name(blame.capability)]
            if blame.capability in package_sources:
                continue
            package_sources[blame.capability] = None
            package_sources.update(_package_sources(blame.capability, all_packages))


def _declare_package_sources(session: ResolveSession, resource: Resource, packages: Packages) -> dict:
    wiring = session.wirings.get(resource)
    capabilities = wiring.resource_capabilities() if wiring is not None else resource.capabilities
    # sources are dicts used as insertion ordered sets
    by_package: dict[str, dict] = {}
    for capability in capabilities:
        if capability.namespace == PACKAGE_NAMESPACE:
            package_sources = by_package.setdefault(_package_name(capability), {})
            if capability.resource is not resource:
                capability = HostedCapability(resource, capability)
            packages.sources[capability] = package_sources
            package_sources[capability] = None
        elif capability.uses:
            # generic capabilities with uses take part in consistency checks
            packages.sources[capability] = {capability: None}
        else:
            packages.sources[capability] = {}
    return by_package


def _required_blames(by_package: dict, packages: Packages):
    for name in by_package:
        yield from packages.required.get(name, ())


def _package_sources(capability, all_packages: dict[Resource, Packages]) -> dict:
    packages = all_packages.get(capability.resource)
    if packages is None:
        return {}
    return packages.sources.get(capability, {})


def _compute_uses(
    session: ResolveSession,
    wire_candidates: list[WireCandidate],
    all_packages: dict[Resource, Packages],
    resource: Resource,
):
    # resolved resources are consistent already, unless dynamically importing
    wiring = session.wirings.get(resource)
    dynamic_importing = session.dynamic_requirement is not None and resource is session.dynamic_host
    if wiring is not None and not dynamic_importing:
        return

    packages = all_packages[resource]
    cycle: set = set()
    for wire_candidate in wire_candidates:
        requirement = wire_candidate.requirement
        if strategy_for(requirement.namespace).contribution is not PackageContribution.USES_ONLY:
            continue
        _merge_uses(
            resource, packages, wire_candidate.capability, (requirement,),
            wire_candidate.capability, all_packages, cycle,
        )
    for blames in list(packages.imported.values()) + list(packages.required.values()):
        for blame in blames:
            _merge_uses(resource, packages, blame.capability, (blame.root,), None, all_packages, cycle)


def _merge_uses(
    current: Resource,
    packages: Packages,
    capability,
    blame_requirements: tuple,
    matching,
    all_packages: dict[Resource, Packages],
    cycle: set,
):
    """Add to ``packages.used`` everything ``capability`` exposes through ``uses``.

    Each used capability is recorded, then followed before the next one is
    recorded. The walk keeps one generator per visited capability on an
    explicit stack, so long ``uses`` chains do not grow the call stack.
    """
    stack = [iter([(capability, blame_requirements)])]
    while stack:
        step = next(stack[-1], None)
        if step is None:
            stack.pop()
            continue
        capability, chain = step
        if capability.resource is current or capability in cycle:
            continue
        cycle.add(capability)
        stack.append(_record_uses(packages, capability, chain, matching, all_packages))


def _record_uses(packages: Packages, capability, blame_requirements: tuple, matching, all_packages):
    for source in _package_sources(capability, all_packages):
        uses = source.uses
        if not uses:
            continue
        source_packages = all_packages[source.resource]
        for used_name in uses:
            exported = source_packages.exported.get(used_name)
            if exported is not None:
                source_blames = [exported]
            else:
                source_blames = source_packages.required.get(used_name) or source_packages.imported.get(used_name)
            if not source_blames:
                continue

            used = packages.used.setdefault(used_name, {})
            for blame in source_blames:
                chain = blame_requirements
                if blame.requirements:
                    # only the last link is wired to the blamed capability
                    chain = blame_requirements + (blame.requirements[-1],)
                used.setdefault(blame.capability, UsedBlames(blame.capability)).add_blame(
                    Blame(blame.capability, chain), matching
                )
                yield blame.capability, chain


def _is_compatible(current_blames: list[Blame], capability, all_packages: dict[Resource, Packages]) -> bool:
    if not current_blames:
        return True
    if len(current_blames) == 1 and current_blames[0].capability == capability:
        return True
    current_sources = set()
    for blame in current_blames:
        current_sources.update(_package_sources(blame.capability, all_packages))
    candidate_sources = set(_package_sources(capability, all_packages))
    return current_sources >= candidate_sources or candidate_sources >= current_sources


def _requirements_to_check(session: ResolveSession, resource: Resource) -> list[Requirement]:
    requirements = list(resource.requirements)
    dynamic = session.dynamic_requirement
    if dynamic is not None and resource is session.dynamic_host and dynamic not in requirements:
        requirements.append(dynamic)
    return requirements


@dataclass
class _ConsistencyFrame:
    resource: Resource
    requirements: Iterator[Requirement]
    permutation_count: int
    requirement: Optional[Requirement] = None


def check_package_space_consistency(
    session: ResolveSession,
    resource: Resource,
    candidates: Candidates,
    dynamic: bool,
    all_packages: dict[Resource, Packages],
    checked: dict,
) -> Optional[UsesConstraintViolation]:
    """Check that ``resource`` and everything it is wired to see consistent packages.

    On a violation, permutations that may avoid it are queued on the session.
    Providers are visited depth first with an explicit stack; when one of
    them is inconsistent, every requirement on the path leading to it is
    permutated unless a deeper step already queued a permutation.

    Args:
        session: The current resolve session.
        resource: The resource to check.
        candidates: The permutation being checked.
        dynamic: Whether ``resource`` is a resolved host being dynamically wired.
        all_packages: Package spaces from :func:`calculate_package_spaces`.
        checked: Per-permutation cache of already checked resources.

    Returns:
        The :class:`~capwire.errors.UsesConstraintViolation` found, or None.
    """
    if not dynamic and resource in session.wirings:
        return None
    if resource in checked:
        return checked[resource]
    error = _check_packages(session, resource, candidates, all_packages, checked)
    if error is not None:
        return error

    stack = [
        _ConsistencyFrame(resource, iter(_requirements_to_check(session, resource)), session.permutation_count())
    ]
    while stack:
        frame = stack[-1]
        frame.requirement = next(frame.requirements, None)
        if frame.requirement is None:
            stack.pop()
            continue
        capability = candidates.first_candidate(frame.requirement)
        if capability is None or capability.resource is frame.resource:
            continue
        provider = capability.resource
        if provider in session.wirings:
            continue
        if provider in checked:
            error = checked[provider]
        else:
            error = _check_packages(session, provider, candidates, all_packages, checked)
            if error is None:
                stack.append(
                    _ConsistencyFrame(
                        provider, iter(_requirements_to_check(session, provider)), session.permutation_count()
                    )
                )
                continue
        if error is not None:
            for frame in reversed(stack):
                if frame.permutation_count == session.permutation_count():
                    session.add_permutation(PermutationType.IMPORT, candidates.permutate(frame.requirement))
            return error
    return None


def _check_packages(
    session: ResolveSession,
    resource: Resource,
    candidates: Candidates,
    all_packages: dict[Resource, Packages],
    checked: dict,
) -> Optional[UsesConstraintViolation]:
    packages = all_packages[resource]

    # fragment imports may overlap the host's imports
    for name, blames in packages.imported.items():
        source = blames[0]
        for blame in blames[1:]:
            if blame.capability.resource is not source.capability.resource:
                session.add_permutation(PermutationType.IMPORT, candidates.permutate(blame.root))
                session.add_permutation(PermutationType.IMPORT, candidates.permutate(source.root))
                error = _violation(session, candidates, resource, name, source, blame)
                logger.debug(
                    "Candidate permutation failed due to a conflict with a fragment import; "
                    "will try another if possible. (%s)", error.message,
                )
                checked[resource] = error
                return error

    error = None
    permutation = None
    mutated: set = set()

    for name, export_blame in packages.exported.items():
        for used_blames in packages.used.get(name, {}).values():
            if _is_compatible([export_blame], used_blames.capability, all_packages):
                continue
            for used_blame in used_blames.blames:
                if session.check_multiple(used_blames, used_blame, candidates):
                    continue
                permutation = permutation or candidates.copy()
                error = error or _violation(session, candidates, resource, name, used_blame)
                _permutate_blame_chain(permutation, used_blame, mutated)
        if error is not None:
            if mutated:
                session.add_permutation(PermutationType.USES, permutation)
            logger.debug(
                "Candidate permutation failed due to a conflict between an export and import; "
                "will try another if possible. (%s)", error.message,
            )
            checked[resource] = error
            return error

    # imports shadow packages from required bundles
    visible = dict(packages.required)
    visible.update(packages.imported)
    for name, requirement_blames in visible.items():
        for used_blames in packages.used.get(name, {}).values():
            if _is_compatible(requirement_blames, used_blames.capability, all_packages):
                continue
            for used_blame in used_blames.blames:
                if session.check_multiple(used_blames, used_blame, candidates):
                    continue
                permutation = permutation or candidates.copy()
                error = error or _violation(
                    session, candidates, resource, name, requirement_blames[0], used_blame
                )
                _permutate_blame_chain(permutation, used_blame, mutated)

            if error is not None:
                if mutated:
                    session.add_permutation(PermutationType.USES, permutation)
                # backtrack on the import itself if the uses chain cannot be changed
                for requirement_blame in requirement_blames:
                    if requirement_blame.root not in mutated:
                        session.permutate_if_needed(PermutationType.IMPORT, requirement_blame.root, candidates)
                logger.debug(
                    "Candidate permutation failed due to a conflict between imports; "
                    "will try another if possible. (%s)", error.message,
                )
                checked[resource] = error
                return error

    checked[resource] = None
    return None


def _permutate_blame_chain(permutation: Candidates, used_blame: Blame, mutated: set):
    # the deepest requirement in the chain is the most recent decision
    for requirement in reversed(used_blame.requirements):
        if requirement.is_multiple:
            continue
        if requirement in mutated:
            break
        if permutation.can_remove_candidate(requirement):
            permutation.remove_first_candidate(requirement)
            mutated.add(requirement)
            break


def _violation(
    session: ResolveSession,
    candidates: Candidates,
    resource: Resource,
    package: str,
    blame1: Blame,
    blame2: Optional[Blame] = None,
) -> UsesConstraintViolation:
    if blame2 is None:
        message = (
            f"Uses constraint violation. Unable to resolve resource {resource!r} "
            f"because it exports package '{package}' and is also exposed to it from "
            f"resource {blame1.capability.resource!r} via the following dependency chain:\n\n"
            f"{_describe_chain(session, candidates, blame1)}"
        )
        return UsesConstraintViolation(
            message, resource, package, [blame1.capability], [blame1.root]
        )
    message = (
        f"Uses constraint violation. Unable to resolve resource {resource!r} "
        f"because it is exposed to package '{package}' from resources "
        f"{blame1.capability.resource!r} and {blame2.capability.resource!r} "
        f"via two dependency chains.\n\n"
        f"Chain 1:\n{_describe_chain(session, candidates, blame1)}\n\n"
        f"Chain 2:\n{_describe_chain(session, candidates, blame2)}"
    )
    return UsesConstraintViolation(
        message, resource, package, [blame1.capability, blame2.capability], [blame2.root]
    )


def _describe_chain(session: ResolveSession, candidates: Candidates, blame: Blame) -> str:
    lines = []
    requirements = blame.requirements or ()
    for index, requirement in enumerate(requirements):
        is_package = requirement.namespace == PACKAGE_NAMESPACE
        lines.append(f"  {requirement.resource!r}")
        lines.append(f"    {'import' if is_package else 'require'}: {requirement!r}")
        lines.append("     |")
        capability = _satisfying_capability(session, candidates, requirement)
        provided = "export" if is_package else "provide"
        if index + 1 < len(requirements):
            if capability is not None and capability.namespace == PACKAGE_NAMESPACE:
                used = _satisfying_capability(session, candidates, requirements[index + 1])
                used_name = _package_name(used) if used is not None else None
                lines.append(
                    f"    {provided}: {PACKAGE_NAMESPACE}={_package_name(capability)}; uses:={used_name}"
                )
            else:
                lines.append(f"    {provided}: {capability!r}")
        elif capability is not None:
            value = capability.attributes.get(capability.namespace)
            lines.append(f"    {provided}: {capability.namespace}: {value if value is not None else ''}")
    lines.append(f"  {blame.capability.resource!r}")
    return "\n".join(lines)


def _satisfying_capability(session: ResolveSession, candidates: Candidates, requirement: Requirement):
    capability = candidates.first_candidate(requirement)
    if capability is None and requirement.resource in session.wirings:
        declared = requirement.declared_requirement
        for wire in session.wirings[requirement.resource].required_resource_wires():
            if wire.requirement is declared:
                return wire.capability
    return capability
