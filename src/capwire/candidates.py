"""The candidate index: ordered candidate capabilities for every requirement.

:class:`Candidates` is built once per resolve by asking the resolve context
for the providers of every effective requirement reachable from the
resources being resolved. Afterwards it is only ever copied: each copy is a
*permutation* that differs from its parent by the candidates removed from
the front of some requirements' lists. Copies are cheap because candidate
lists are shared between copies until one of them needs to change a list in
a way other than dropping its current front.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from capwire.domain import HostedCapability
from capwire.errors import (
    DynamicResolutionError,
    FragmentNotSelectedError,
    MissingRequirementError,
    ResolutionError,
)
from capwire.fragments import WrappedResource, is_fragment
from capwire.namespaces import HOST_NAMESPACE, IDENTITY_NAMESPACE, PACKAGE_NAMESPACE
from capwire.session import PermutationType

__all__ = ["CandidateSelector", "ShadowList", "Candidates"]

logger = logging.getLogger(__name__)


class CandidateSelector:
    """An ordered candidate list with a movable front.

    Dropping the current (front) candidate only advances an offset, so copies
    made by :meth:`copy` can keep sharing the same underlying list. Any other
    change first takes a private copy of the remaining candidates.
    """

    def __init__(self, candidates: list):
        self._candidates = candidates
        self._offset = 0
        self._shared = False

    @property
    def remaining(self) -> list:
        return self._candidates[self._offset:]

    @property
    def current(self):
        if self._offset < len(self._candidates):
            return self._candidates[self._offset]
        return None

    def is_empty(self) -> bool:
        return self._offset >= len(self._candidates)

    def __len__(self):
        return len(self._candidates) - self._offset

    def __contains__(self, capability):
        return capability in self.remaining

    def remove_current(self):
        """Drop and return the front candidate."""
        current = self.current
        self._offset += 1
        return current

    def remove(self, capability):
        """Drop ``capability`` wherever it is, preserving the order of the rest."""
        if capability in self:
            self._own()
            self._candidates.remove(capability)

    def replace(self, old, new):
        self._own()
        self._candidates[self._candidates.index(old)] = new

    def copy(self) -> "CandidateSelector":
        self._shared = True
        duplicate = CandidateSelector(self._candidates)
        duplicate._offset = self._offset
        duplicate._shared = True
        return duplicate

    def _own(self):
        if self._shared or self._offset:
            self._candidates = self._candidates[self._offset:]
            self._offset = 0
            self._shared = False

    def __repr__(self):
        return repr(self.remaining)


class ShadowList(CandidateSelector):
    """A candidate list kept in step with the list the resolve context sees.

    The resolver attributes merged fragment capabilities to a wrapped host,
    while the resolve context expects them attributed to the declared host.
    The context orders its own view through
    :meth:`~capwire.context.ResolveContext.insert_hosted_capability` and the
    returned index is mirrored here.
    """

    def __init__(self, selector: CandidateSelector):
        super().__init__(selector.remaining)
        self.original = selector.remaining

    def insert_hosted(self, context, wrapped, hosted: HostedCapability):
        """Insert ``hosted`` in the context's view and ``wrapped`` at the same index."""
        self._own()
        declared = hosted.declared_capability
        if declared in self.original:
            index = self.original.index(declared)
            del self.original[index]
            del self._candidates[index]
        index = context.insert_hosted_capability(self.original, hosted)
        self._candidates.insert(index, wrapped)


@dataclass
class _PopulateResult:
    success: bool = False
    error: Optional[ResolutionError] = None
    remaining: list = field(default_factory=list)
    candidates: dict = field(default_factory=dict)


class Candidates:
    """Candidate capabilities for every requirement of one permutation.

    Args:
        session: The resolve session this index belongs to.
    """

    _UNPROCESSED, _PROCESSING, _SUBSTITUTED, _EXPORTED = range(4)

    def __init__(self, session):
        self._session = session
        self._candidate_map: dict = {}
        self._dependents: dict = {}
        self._wrapped_hosts: dict = {}
        self._populate_results: dict = {}
        self._substitutable: dict = {}
        self._delta: dict = {}

    @property
    def _context(self):
        return self._session.context

    @property
    def _wirings(self):
        return self._session.wirings

    # Population

    def populate(self, resources):
        """Find candidates for ``resources`` and everything they transitively need.

        Resources that cannot be populated are recorded as failed and removed
        from every candidate list, which can in turn fail resources that
        depended on them.
        """
        failed: dict = {}
        to_populate = deque(resources)
        while to_populate:
            self._session.check_cancelled()
            resource = to_populate[0]
            result = self._populate_results.get(resource)
            if result is None:
                result = _PopulateResult(remaining=list(resource.requirements))
                self._populate_results[resource] = result
            if result.success or result.error is not None:
                to_populate.popleft()
                continue
            if not result.remaining:
                to_populate.popleft()
                result.success = True
                for requirement, candidates in result.candidates.items():
                    self._add_candidates(requirement, candidates)
                result.candidates = {}
                logger.debug("Populated candidates for %r", resource)
                if not is_fragment(resource):
                    for related in self._context.related_resources(resource):
                        if self._session.is_valid_related_resource(related):
                            to_populate.appendleft(related)
                continue

            requirement = result.remaining.pop(0)
            if not self._is_effective(requirement):
                continue
            candidates = list(self._context.find_providers(requirement))
            discovered = []
            cause = self._process_candidates(discovered, requirement, candidates)
            if not candidates and not requirement.is_optional:
                if is_fragment(resource) and resource in self._wirings:
                    # resolved fragment with no unresolved host to attach to
                    result.success = True
                else:
                    result.error = MissingRequirementError(requirement, cause)
                    failed[resource] = None
                    logger.debug("%s", result.error.message)
                to_populate.popleft()
            else:
                if candidates:
                    result.candidates[requirement] = candidates
                to_populate.extendleft(reversed(discovered))

        while failed:
            resource = next(iter(failed))
            del failed[resource]
            self._remove_resource(resource, failed)

    def populate_dynamic(self) -> Optional[ResolutionError]:
        """Populate the candidates of the session's dynamic requirement.

        Candidates already wired to the host are skipped, as is a single
        cardinality requirement the host already has a wire for.

        Returns:
            The failure if no candidate can be populated, otherwise None.
        """
        session = self._session
        host = session.dynamic_host
        requirement = session.dynamic_requirement
        wiring = self._wirings.get(host)
        existing = wiring.required_resource_wires() if wiring is not None else []
        if not requirement.is_multiple and any(
            w.requirement is requirement for w in existing
        ):
            return DynamicResolutionError(
                requirement, f"{requirement!r} is already wired and is not multiple"
            )
        wired = {w.capability for w in existing}
        candidates = [
            c
            for c in self._context.find_providers(requirement)
            if c not in wired and c.declared_capability not in wired
        ]

        discovered = []
        cause = self._process_candidates(discovered, requirement, candidates)
        self._add_candidates(requirement, candidates)
        self.populate(discovered)

        selector = self._candidate_map.get(requirement)
        if selector is None or selector.is_empty():
            return cause or DynamicResolutionError(requirement)
        self._populate_results[host] = _PopulateResult(success=True)
        return None

    def _is_effective(self, requirement) -> bool:
        return self._context.is_effective(requirement) and not requirement.is_dynamic

    def _process_candidates(self, discovered: list, requirement, candidates: list):
        """Drop unusable candidates and collect resources still to populate.

        Mutates ``candidates`` in place.

        Returns:
            The first failure of a dropped candidate's resource, if any.
        """
        cause = None
        fragment_candidates = []
        for capability in list(candidates):
            provider = capability.resource
            fragment = is_fragment(provider)
            if fragment:
                fragment_candidates.append(capability)
            if requirement.namespace == HOST_NAMESPACE and provider in self._wirings:
                # fragments only attach to unresolved hosts
                candidates.remove(capability)
                continue
            if (fragment or provider not in self._wirings) and provider is not requirement.resource:
                result = self._populate_results.get(provider)
                if result is None or (not result.success and result.error is None):
                    discovered.append(provider)
                elif result.error is not None:
                    cause = cause or result.error
                    candidates.remove(capability)

        for capability in fragment_candidates:
            if capability.namespace == IDENTITY_NAMESPACE:
                continue
            wiring = self._wirings.get(capability.resource)
            if wiring is None:
                continue
            for wire in wiring.required_resource_wires(HOST_NAMESPACE):
                host_wiring = self._wirings.get(wire.provider)
                if capability.namespace != PACKAGE_NAMESPACE or (
                    host_wiring is not None and capability in host_wiring.capabilities
                ):
                    if capability in candidates:
                        candidates.remove(capability)
                    self._context.insert_hosted_capability(
                        candidates, HostedCapability(wire.capability.resource, capability)
                    )
        return cause

    def _add_candidates(self, requirement, candidates: list):
        self._candidate_map[requirement] = CandidateSelector(list(candidates))
        for capability in candidates:
            self._dependents.setdefault(capability, {})[requirement] = None

    # Failure cascade

    def _remove_resource(self, resource, failed: dict):
        for requirement in resource.requirements:
            self._remove_requirement(requirement)
        for capability in resource.capabilities:
            self._remove_capability(capability, failed)

    def _remove_requirement(self, requirement):
        selector = self._candidate_map.pop(requirement, None)
        if selector is None:
            return
        for capability in selector.remaining:
            self._dependents.get(capability, {}).pop(requirement, None)

    def _remove_capability(self, capability, failed: dict):
        for requirement in self._dependents.pop(capability, {}):
            selector = self._candidate_map.get(requirement)
            if selector is None:
                continue
            selector.remove(capability)
            if not selector.is_empty():
                continue
            del self._candidate_map[requirement]
            if requirement.is_optional:
                continue
            result = self._populate_results.get(requirement.resource)
            if result is not None:
                provider_result = self._populate_results.get(capability.resource)
                result.success = False
                result.error = MissingRequirementError(
                    requirement, provider_result.error if provider_result else None
                )
            failed[requirement.resource] = None

    def _fail_resource(self, resource, error: ResolutionError):
        result = self._populate_results[resource]
        result.success = False
        result.error = error
        failed: dict = {}
        self._remove_resource(resource, failed)
        while failed:
            resource = next(iter(failed))
            del failed[resource]
            self._remove_resource(resource, failed)

    # Fragments

    def prepare(self) -> Optional[ResolutionError]:
        """Merge selected fragments into their hosts.

        Afterwards every candidate list refers to wrapped hosts instead of the
        declared hosts and fragments, and fragment requirements have become
        requirements of their wrapped hosts.

        Returns:
            The failure of the first mandatory resource that is no longer
            populated, otherwise None.
        """
        wrapped_hosts = []
        unselected = []
        for host_capability, fragments in self._host_fragments().items():
            selected = []
            for host_requirements in fragments.values():
                selected.append(host_requirements[0].resource)
                for host_requirement in host_requirements[1:]:
                    self._dependents[host_capability].pop(host_requirement, None)
                    hosts = self._candidate_map[host_requirement]
                    hosts.remove(host_capability)
                    if hosts.is_empty():
                        unselected.append(host_requirement.resource)
            wrapped = WrappedResource(host_capability.resource, selected)
            wrapped_hosts.append(wrapped)
            self._wrapped_hosts[host_capability.resource] = wrapped

        for fragment in unselected:
            self._fail_resource(fragment, FragmentNotSelectedError(fragment))

        for wrapped in wrapped_hosts:
            self._substitute_wrapped_capabilities(wrapped)
            for requirement in wrapped.requirements:
                declared = requirement.declared_requirement
                selector = self._candidate_map.get(declared)
                if selector is None:
                    continue
                self._candidate_map[requirement] = selector.copy()
                for capability in selector.remaining:
                    dependents = self._dependents.setdefault(capability, {})
                    dependents.pop(declared, None)
                    dependents[requirement] = None

        for resource in self._session.mandatory_resources:
            error = self.resolution_error(resource)
            if error is not None:
                return error

        self._populate_substitutables()
        return None

    def _host_fragments(self) -> dict:
        """Map each host capability to fragment name -> host requirements."""
        host_fragments: dict = {}
        for requirement, selector in self._candidate_map.items():
            if requirement.namespace != HOST_NAMESPACE:
                continue
            for capability in selector.remaining:
                fragments = host_fragments.setdefault(capability, {})
                fragments.setdefault(requirement.resource.name, []).append(requirement)
        return host_fragments

    def _substitute_wrapped_capabilities(self, wrapped: WrappedResource):
        for capability in wrapped.capabilities:
            if capability.namespace == HOST_NAMESPACE:
                continue
            declared = capability.declared_capability
            dependents = self._dependents.get(declared)
            if not dependents:
                continue
            # a fragment attached to several hosts needs its own dependents per host
            self._dependents[capability] = dict(dependents)
            for requirement in dependents:
                selector = self._candidate_map.get(requirement)
                if selector is None:
                    continue
                if not isinstance(selector, ShadowList):
                    selector = ShadowList(selector)
                    self._candidate_map[requirement] = selector
                if declared.resource is not wrapped.declared_resource:
                    selector.insert_hosted(
                        self._context,
                        capability,
                        HostedCapability(wrapped.declared_resource, declared),
                    )
                else:
                    selector.replace(declared, capability)

    # Substitutable exports

    def _populate_substitutables(self):
        for resource, result in self._populate_results.items():
            if result.success:
                self._populate_resource_substitutables(resource)

    def _populate_resource_substitutables(self, resource):
        exports: dict = {}
        for capability in resource.get_capabilities(PACKAGE_NAMESPACE):
            exports.setdefault(capability.attributes.get(PACKAGE_NAMESPACE), []).append(capability)
        if not exports:
            return
        for requirement in resource.get_requirements(PACKAGE_NAMESPACE):
            substitutes = self.get_candidates(requirement)
            if not substitutes:
                continue
            exported = exports.get(substitutes[0].attributes.get(PACKAGE_NAMESPACE))
            if exported is None:
                continue
            if not all(s in exported for s in substitutes):
                for capability in exported:
                    self._substitutable[capability] = requirement

    def check_substitutes(self) -> Optional[ResolutionError]:
        """Drop exports that this permutation substitutes with an import.

        A substituted export is removed from the front of every candidate list
        it appears in, and an alternative import for the substituting
        requirement is queued as a permutation.

        Returns:
            A failure if a mandatory requirement loses all its candidates.
        """
        statuses = {capability: self._UNPROCESSED for capability in self._substitutable}
        for capability in self._substitutable:
            self._is_substituted(capability, statuses)

        for capability, status in statuses.items():
            substituted_requirement = self._substitutable.get(capability)
            if substituted_requirement is not None:
                self._session.permutate_if_needed(
                    PermutationType.SUBSTITUTE, substituted_requirement, self
                )
            for dependent in self._dependents.get(capability, {}):
                selector = self._candidate_map.get(dependent)
                if selector is None:
                    continue
                while not selector.is_empty():
                    if statuses.get(selector.current, self._EXPORTED) == self._EXPORTED:
                        break
                    selector.remove_current()
                if selector.is_empty():
                    if dependent.is_optional:
                        del self._candidate_map[dependent]
                    else:
                        return MissingRequirementError(dependent)
        return None

    def _is_substituted(self, capability, statuses: dict) -> bool:
        result = self._settled_substitution(capability, statuses)
        if result is not None:
            return result
        # each frame is an export being decided and its remaining substitutes
        stack = [self._start_substitution(capability, statuses)]
        while stack:
            current, substitutes = stack[-1]
            if result is False:
                # an export substituting this one is itself exported
                statuses[current] = self._SUBSTITUTED
                stack.pop()
                result = True
                continue
            substitute = next(substitutes, None)
            if substitute is None or substitute.resource is current.resource:
                statuses[current] = self._EXPORTED
                stack.pop()
                result = False
                continue
            result = self._settled_substitution(substitute, statuses)
            if result is None:
                stack.append(self._start_substitution(substitute, statuses))
        return result

    def _settled_substitution(self, capability, statuses: dict) -> Optional[bool]:
        status = statuses.get(capability)
        if status is None or status == self._EXPORTED:
            return False
        if status == self._PROCESSING:
            # cycle: the initiator stays exported
            statuses[capability] = self._EXPORTED
            return False
        if status == self._SUBSTITUTED:
            return True
        if capability not in self._substitutable:
            return False
        return None

    def _start_substitution(self, capability, statuses: dict) -> tuple:
        statuses[capability] = self._PROCESSING
        requirement = self._substitutable[capability]
        return capability, iter(self.get_candidates(requirement) or ())

    # Queries

    def is_populated(self, resource) -> bool:
        result = self._populate_results.get(resource)
        return result is not None and result.success

    def resolution_error(self, resource) -> Optional[ResolutionError]:
        result = self._populate_results.get(resource)
        return result.error if result is not None else None

    @property
    def resource_count(self) -> int:
        return len(self._populate_results)

    def wrapped_host(self, resource):
        """The wrapped host for ``resource``, or ``resource`` if it has no fragments."""
        return self._wrapped_hosts.get(resource, resource)

    def root_hosts(self) -> dict:
        """Map each root resource of the resolve to its (possibly wrapped) host.

        Mandatory resources come first, followed by optional resources that
        populated successfully, both in context order. A fragment contributes
        the hosts it may attach to.
        """
        hosts: dict = {}
        for resource in self._session.mandatory_resources:
            self._add_root_host(resource, hosts)
        for resource in self._session.optional_resources:
            if self.is_populated(resource):
                self._add_root_host(resource, hosts)
        return hosts

    def _add_root_host(self, resource, hosts: dict):
        if is_fragment(resource):
            for requirement in resource.get_requirements(HOST_NAMESPACE):
                for capability in self.get_candidates(requirement) or ():
                    hosts[capability.resource] = self.wrapped_host(capability.resource)
        else:
            hosts[resource] = self.wrapped_host(resource)

    def get_candidates(self, requirement) -> Optional[list]:
        selector = self._candidate_map.get(requirement)
        if selector is None:
            return None
        return selector.remaining

    def first_candidate(self, requirement):
        selector = self._candidate_map.get(requirement)
        return selector.current if selector is not None else None

    # Permutations

    def can_remove_candidate(self, requirement) -> bool:
        selector = self._candidate_map.get(requirement)
        return selector is not None and (len(selector) > 1 or requirement.is_optional)

    def remove_first_candidate(self, requirement):
        self._session.check_cancelled()
        selector = self._candidate_map[requirement]
        removed = selector.remove_current()
        if selector.is_empty():
            del self._candidate_map[requirement]
        self._delta.setdefault(requirement, set()).add(removed)

    def permutate(self, requirement) -> Optional["Candidates"]:
        """A copy without the current candidate of ``requirement``, if it can be dropped."""
        if requirement.is_multiple or not self.can_remove_candidate(requirement):
            return None
        permutation = self.copy()
        permutation.remove_first_candidate(requirement)
        return permutation

    def clear_multiple_cardinality_candidates(self, requirement, capabilities) -> list:
        """Remove ``capabilities`` from a multiple cardinality requirement's list."""
        selector = self._candidate_map.get(requirement)
        if selector is None:
            return []
        remaining = [c for c in selector.remaining if c not in capabilities]
        self._candidate_map[requirement] = CandidateSelector(remaining)
        self._delta.setdefault(requirement, set()).update(capabilities)
        return remaining

    def delta_key(self) -> frozenset:
        """Hashable summary of the candidates this permutation has dropped."""
        return frozenset(
            (requirement, frozenset(removed)) for requirement, removed in self._delta.items()
        )

    def copy(self) -> "Candidates":
        duplicate = Candidates(self._session)
        duplicate._candidate_map = {r: s.copy() for r, s in self._candidate_map.items()}
        duplicate._dependents = self._dependents
        duplicate._wrapped_hosts = self._wrapped_hosts
        duplicate._populate_results = self._populate_results
        duplicate._substitutable = self._substitutable
        duplicate._delta = {r: set(removed) for r, removed in self._delta.items()}
        return duplicate
