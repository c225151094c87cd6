"""Resolving resources into wires.

:class:`Resolver` drives a resolve: it populates the candidate index,
searches candidate permutations until one passes the uses constraint check,
and turns that permutation into the delta of new wires.
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional

from capwire.candidates import Candidates
from capwire.context import ResolveContext
from capwire.domain import Requirement, Resource, Wire, Wiring
from capwire.errors import DynamicResolutionError
from capwire.executor import InlineExecutor
from capwire.fragments import WrappedRequirement, is_fragment
from capwire.package_space import calculate_package_spaces, check_package_space_consistency
from capwire.session import PermutationType, ResolveSession
from capwire.wire_builder import populate_dynamic_wire_map, populate_wire_map, subtract_existing_wires

__all__ = ["Resolver", "resolve", "resolve_dynamic"]

logger = logging.getLogger(__name__)


class Resolver:
    """Computes consistent wirings for the resources of a resolve context.

    A resolver holds no state between calls and can be shared between
    threads; all per-call state lives in a fresh
    :class:`~capwire.session.ResolveSession`.

    Args:
        executor: Executor used to compute package spaces. The caller keeps
            ownership of it.
        parallelism: When no executor is given, the number of worker threads
            to start for each resolve; 1 computes everything in the calling
            thread.

    Example:
        >>> resolver = Resolver(parallelism=4)
        >>> wires = resolver.resolve(context)
        >>> wires[app]
        [[app] osgi.ee() -> [system] osgi.ee=JavaSE]
    """

    def __init__(self, executor: Optional[Executor] = None, parallelism: int = 1):
        if parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {parallelism}")
        self._executor = executor
        self._parallelism = parallelism

    def resolve(self, context: ResolveContext) -> dict[Resource, list[Wire]]:
        """Resolve the mandatory and optional resources of ``context``.

        Args:
            context: Supplies the resources to resolve and their candidates.

        Returns:
            New wires keyed by requiring resource. Resources that were
            already resolved, and optional resources that failed to resolve,
            have no entry.

        Raises:
            ResolutionError: If a mandatory resource cannot be resolved, or
                the context cancelled the resolve.
        """
        if self._executor is not None:
            return self._do_resolve(ResolveSession(context, self._executor))
        if self._parallelism == 1:
            return self._do_resolve(ResolveSession(context, InlineExecutor()))
        with ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="capwire") as executor:
            return self._do_resolve(ResolveSession(context, executor))

    def resolve_dynamic(
        self, context: ResolveContext, host_wiring: Wiring, requirement: Requirement
    ) -> dict[Resource, list[Wire]]:
        """Wire one dynamic requirement of an already resolved resource.

        Args:
            context: Supplies candidates for ``requirement`` and for any
                resource needed to resolve the chosen provider.
            host_wiring: Current wiring of the resource declaring ``requirement``.
            requirement: A requirement with ``resolution:=dynamic``.

        Returns:
            Exactly one new wire for the host, plus wires for any supporting
            resources resolved along the way.

        Raises:
            ValueError: If ``requirement`` does not belong to the host or is not dynamic.
            ResolutionError: If no new wire can be created.
        """
        host = host_wiring.resource
        if requirement.resource is not host:
            raise ValueError(f"{requirement!r} does not belong to {host!r}")
        if not requirement.is_dynamic:
            raise ValueError(f"{requirement!r} is not a dynamic requirement")
        if is_fragment(host):
            raise ValueError(f"{host!r} is a fragment and cannot be dynamically wired")

        session = ResolveSession(context, InlineExecutor(), host, requirement, host_wiring)
        wire_map = self._do_resolve(session)
        if len(wire_map.get(host, ())) != 1:
            raise DynamicResolutionError(requirement)
        return wire_map

    def _do_resolve(self, session: ResolveSession) -> dict:
        try:
            return self._search(session)
        finally:
            session.close()

    def _search(self, session: ResolveSession) -> dict:
        wire_map = {}
        retry = True
        while retry:
            retry = False
            try:
                self._initial_candidates(session)
                if session.current_error is not None:
                    session.check_cancelled()
                    raise session.current_error

                faulty = {}
                candidates = self._find_valid_candidates(session, faulty)
                if session.current_error is not None:
                    retry = session.drop_optional_resources(faulty)
                    for resource in faulty:
                        if session.invalidate_related_resource(resource):
                            retry = True
                    for resource, error in faulty.items():
                        logger.info("Dropping %r: %s", resource, error.message)
                    if not retry:
                        session.check_cancelled()
                        raise session.current_error
                    logger.debug("Retrying resolve without %s", list(faulty))
                else:
                    if session.multiple_cardinality_candidates is not None:
                        candidates = session.multiple_cardinality_candidates
                    wire_map = self._build_wire_map(session, candidates)
            finally:
                session.clear_permutations()
        return subtract_existing_wires(session.wirings, wire_map)

    def _initial_candidates(self, session: ResolveSession):
        candidates = Candidates(session)
        if session.is_dynamic:
            error = candidates.populate_dynamic()
            if error is not None:
                session.current_error = error
                return
        else:
            candidates.populate(
                resource
                for resource in session.mandatory_resources + session.optional_resources
                if is_fragment(resource) or resource not in session.wirings
            )

        logger.debug("Populated candidates for %d resources", candidates.resource_count)
        error = candidates.prepare()
        if error is not None:
            session.current_error = error
        else:
            session.add_permutation(PermutationType.USES, candidates)

    def _find_valid_candidates(self, session: ResolveSession, faulty: dict) -> Optional[Candidates]:
        """Try permutations until one is consistent or none are left.

        ``faulty`` receives the smallest set of failing root resources seen.
        """
        found_faulty = False
        while True:
            candidates = session.next_permutation()
            if candidates is None:
                return None
            current_faulty = {}
            session.current_error = self._check_consistency(session, candidates, current_faulty)
            if current_faulty and (not found_faulty or len(faulty) > len(current_faulty)):
                found_faulty = True
                faulty.clear()
                faulty.update(current_faulty)
            if session.current_error is None:
                return candidates

    def _check_consistency(self, session: ResolveSession, candidates: Candidates, faulty: dict):
        error = candidates.check_substitutes()
        if error is not None:
            return error

        hosts = candidates.root_hosts()
        all_packages = calculate_package_spaces(session, candidates, hosts.values())
        checked = {}
        first_error = None
        for resource, host in hosts.items():
            error = check_package_space_consistency(
                session, host, candidates, session.is_dynamic, all_packages, checked
            )
            if error is None:
                continue
            faulty_resource = resource
            # a violation caused by a fragment's requirement blames the fragment
            for requirement in error.unresolved_requirements:
                if isinstance(requirement, WrappedRequirement):
                    faulty_resource = requirement.declared_requirement.resource
                    break
            faulty[faulty_resource] = error
            first_error = first_error or error
        return first_error

    def _build_wire_map(self, session: ResolveSession, candidates: Candidates) -> dict:
        wire_map = {}
        if session.is_dynamic:
            return populate_dynamic_wire_map(
                session.wirings, session.dynamic_host, session.dynamic_requirement, wire_map, candidates
            )
        for resource in candidates.root_hosts():
            if candidates.is_populated(resource):
                populate_wire_map(session.wirings, candidates.wrapped_host(resource), wire_map, candidates)
        return wire_map


def resolve(context: ResolveContext, parallelism: int = 1) -> dict[Resource, list[Wire]]:
    """Resolve ``context`` with a default :class:`Resolver`.

    Raises:
        ResolutionError: If a mandatory resource cannot be resolved.
    """
    return Resolver(parallelism=parallelism).resolve(context)


def resolve_dynamic(
    context: ResolveContext, host_wiring: Wiring, requirement: Requirement
) -> dict[Resource, list[Wire]]:
    """Wire a dynamic requirement with a default :class:`Resolver`.

    Raises:
        ResolutionError: If no new wire can be created for ``requirement``.
    """
    return Resolver().resolve_dynamic(context, host_wiring, requirement)
