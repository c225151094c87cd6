"""Per-call state of one resolve.

A :class:`ResolveSession` is created for every call to
:meth:`~capwire.resolver.Resolver.resolve` or
:meth:`~capwire.resolver.Resolver.resolve_dynamic` and discarded afterwards.
It owns the queues of candidate permutations still to try, the memo of
permutations already tried and the cancellation flag.
"""

import threading
from concurrent.futures import CancelledError, Executor
from enum import Enum
from typing import Optional

from capwire.context import ResolveContext
from capwire.domain import Requirement, Resource, Wiring
from capwire.errors import ResolutionCancelled, ResolutionError

__all__ = ["PermutationType", "ResolveSession"]


class PermutationType(Enum):
    """Kinds of candidate permutation, in the order they are tried."""

    USES = "uses"
    """Removes a candidate blamed for a uses constraint violation."""

    IMPORT = "import"
    """Backtracks on the choice made for a direct requirement."""

    SUBSTITUTE = "substitute"
    """Imports a different provider for a substituted export."""


class ResolveSession:
    """State shared by every step of a single resolve.

    The processed-permutation memo and the cancellation flag may be touched
    from worker threads; everything else is only used by the thread driving
    the resolve.

    Args:
        context: The resolve context. Its cancellation hook is registered
            before any other call is made on it.
        executor: Executor used to fan out package space computation.
        dynamic_host: For dynamic resolution, the resolved host resource.
        dynamic_requirement: For dynamic resolution, the requirement to wire.
        host_wiring: For dynamic resolution, the host's current wiring.
    """

    def __init__(
        self,
        context: ResolveContext,
        executor: Executor,
        dynamic_host: Optional[Resource] = None,
        dynamic_requirement: Optional[Requirement] = None,
        host_wiring: Optional[Wiring] = None,
    ):
        self._cancelled = threading.Event()
        context.on_cancel(self.cancel)

        self.context = context
        self.executor = executor
        self.dynamic_host = dynamic_host
        self.dynamic_requirement = dynamic_requirement
        self.wirings = dict(context.get_wirings())
        if dynamic_host is not None:
            if host_wiring is not None:
                self.wirings.setdefault(dynamic_host, host_wiring)
            self.mandatory_resources = [dynamic_host]
            self.optional_resources = []
        else:
            self.mandatory_resources = list(context.mandatory_resources())
            self.optional_resources = list(context.optional_resources())

        self.current_error: Optional[ResolutionError] = None
        self.multiple_cardinality_candidates = None

        self._permutations = {kind: [] for kind in PermutationType}
        self._insert_at = {kind: 0 for kind in PermutationType}
        self._processed_deltas = set()
        self._processed_lock = threading.Lock()
        self._mutated: set = set()
        self._substitute_mutated: set = set()
        self._related_validity: dict = {}

    @property
    def is_dynamic(self) -> bool:
        return self.dynamic_host is not None

    def cancel(self):
        self._cancelled.set()

    def close(self):
        """Unregister from the context; the session is not used afterwards."""
        self.context.remove_cancel_callback(self.cancel)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self):
        """Raise :class:`ResolutionCancelled` if cancellation was requested."""
        if self.is_cancelled:
            raise ResolutionCancelled() from CancelledError(
                "resolve cancelled through the resolve context"
            )

    def add_permutation(self, kind: PermutationType, permutation):
        """Queue ``permutation`` ahead of older permutations of the same kind.

        Permutations queued while checking one permutation keep their relative
        order, so the search stays depth first.
        """
        if permutation is None:
            return
        self._permutations[kind].insert(self._insert_at[kind], permutation)
        self._insert_at[kind] += 1

    def permutate_if_needed(self, kind: PermutationType, requirement, permutation):
        """Queue a permutation dropping the current candidate of ``requirement``.

        Only done once per requirement per checked permutation (once per
        resolve for substitutions), and only if another candidate exists.
        """
        if len(permutation.get_candidates(requirement) or ()) <= 1:
            return
        mutated = self._substitute_mutated if kind is PermutationType.SUBSTITUTE else self._mutated
        if requirement in mutated:
            return
        mutated.add(requirement)
        self.add_permutation(kind, permutation.permutate(requirement))

    def next_permutation(self):
        """Take the next untried permutation, or None once all are exhausted."""
        while True:
            self.check_cancelled()
            permutation = self._pop_permutation()
            if permutation is None:
                return None
            with self._processed_lock:
                delta = permutation.delta_key()
                if delta in self._processed_deltas:
                    continue
                self._processed_deltas.add(delta)
            self.multiple_cardinality_candidates = None
            for kind in PermutationType:
                self._insert_at[kind] = 0
            # substitution mutations are tracked for the whole resolve
            self._mutated.clear()
            return permutation

    def _pop_permutation(self):
        for kind in PermutationType:
            if self._permutations[kind]:
                return self._permutations[kind].pop(0)
        return None

    def permutation_count(self) -> int:
        return sum(len(queue) for queue in self._permutations.values())

    def clear_permutations(self):
        for kind in PermutationType:
            self._permutations[kind].clear()
            self._insert_at[kind] = 0
        self.multiple_cardinality_candidates = None
        with self._processed_lock:
            self._processed_deltas.clear()
        self.current_error = None

    def check_multiple(self, used_blames, used_blame, permutation) -> bool:
        """Try to repair a conflict on a multiple cardinality requirement.

        If the blamed chain starts at a multiple cardinality requirement, the
        candidates that pulled in the conflicting capability are removed from
        a copy of ``permutation`` instead of permutating.

        Returns:
            True if the requirement still has a candidate after the removal.
        """
        requirement = used_blame.requirements[0]
        if not requirement.is_multiple:
            return False
        if self.multiple_cardinality_candidates is None:
            self.multiple_cardinality_candidates = permutation.copy()
        remaining = self.multiple_cardinality_candidates.clear_multiple_cardinality_candidates(
            requirement, used_blames.root_causes(requirement)
        )
        return bool(remaining)

    def is_valid_related_resource(self, resource: Resource) -> bool:
        return self._related_validity.setdefault(resource, True)

    def invalidate_related_resource(self, resource: Resource) -> bool:
        """Mark a related resource as not to be populated again.

        Returns:
            True if ``resource`` was a valid related resource until now.
        """
        if self._related_validity.get(resource):
            self._related_validity[resource] = False
            return True
        return False

    def drop_optional_resources(self, resources) -> bool:
        """Remove ``resources`` from the optional set; True if any was removed."""
        before = len(self.optional_resources)
        self.optional_resources = [r for r in self.optional_resources if r not in resources]
        return len(self.optional_resources) != before
