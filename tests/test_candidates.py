from concurrent.futures import CancelledError

import pytest

from capwire.candidates import CandidateSelector, Candidates
from capwire.domain import Resource
from capwire.errors import ResolutionCancelled
from capwire.executor import InlineExecutor
from capwire.registry import RegistryResolveContext
from capwire.session import PermutationType, ResolveSession


def test_selector_drops_current_candidate():
    selector = CandidateSelector(["a", "b", "c"])

    assert selector.remove_current() == "a"
    assert selector.current == "b"
    assert selector.remaining == ["b", "c"]
    assert len(selector) == 2
    assert "a" not in selector


def test_selector_copies_are_independent():
    selector = CandidateSelector(["a", "b", "c"])
    duplicate = selector.copy()

    duplicate.remove_current()
    duplicate.remove("c")
    selector.remove("b")

    assert duplicate.remaining == ["b"]
    assert selector.remaining == ["a", "c"]


def test_selector_replace_keeps_position():
    selector = CandidateSelector(["a", "b", "c"])
    duplicate = selector.copy()

    duplicate.replace("b", "B")

    assert duplicate.remaining == ["a", "B", "c"]
    assert selector.remaining == ["a", "b", "c"]


def test_empty_selector():
    selector = CandidateSelector(["a"])
    selector.remove_current()

    assert selector.is_empty()
    assert selector.current is None


@pytest.fixture
def choices(registry):
    app = registry.register(Resource("app"))
    single = app.require("com.example.single")
    multiple = app.require("com.example.multiple", directives={"cardinality": "multiple"})
    first = registry.register(Resource("first"))
    second = registry.register(Resource("second"))
    capabilities = [
        r.provide(namespace)
        for r in (first, second)
        for namespace in ("com.example.single", "com.example.multiple")
    ]
    session = ResolveSession(RegistryResolveContext(registry, mandatory=[app]), InlineExecutor())
    candidates = Candidates(session)
    candidates.populate([app])
    assert candidates.prepare() is None
    return app, single, multiple, capabilities, candidates


def test_populate_finds_candidates_in_context_order(choices):
    app, single, multiple, (first_single, first_multiple, second_single, second_multiple), candidates = choices

    assert candidates.get_candidates(single) == [first_single, second_single]
    assert candidates.get_candidates(multiple) == [first_multiple, second_multiple]
    assert candidates.is_populated(app)
    assert candidates.resource_count == 3


def test_permutation_drops_first_candidate_from_copy(choices):
    app, single, multiple, (first_single, _, second_single, _), candidates = choices

    permutation = candidates.permutate(single)

    assert permutation.first_candidate(single) is second_single
    assert candidates.first_candidate(single) is first_single
    assert permutation.delta_key() == frozenset({(single, frozenset({first_single}))})
    assert candidates.delta_key() == frozenset()


def test_multiple_cardinality_requirements_are_not_permutated(choices):
    app, single, multiple, capabilities, candidates = choices

    assert candidates.permutate(multiple) is None


def test_last_candidate_of_mandatory_requirement_is_kept(choices):
    app, single, multiple, capabilities, candidates = choices

    permutation = candidates.permutate(single)

    assert permutation.permutate(single) is None


class Permutation:
    def __init__(self, name, *removed):
        self.name = name
        self._delta = frozenset(removed or {name})

    def delta_key(self):
        return self._delta


@pytest.fixture
def session(registry):
    return ResolveSession(RegistryResolveContext(registry), InlineExecutor())


def test_uses_permutations_are_tried_before_import_permutations(session):
    session.add_permutation(PermutationType.IMPORT, Permutation("import"))
    session.add_permutation(PermutationType.SUBSTITUTE, Permutation("substitute"))
    session.add_permutation(PermutationType.USES, Permutation("uses"))

    assert [session.next_permutation().name for _ in range(3)] == ["uses", "import", "substitute"]
    assert session.next_permutation() is None


def test_permutations_found_later_are_tried_first(session):
    session.add_permutation(PermutationType.USES, Permutation("a"))
    session.add_permutation(PermutationType.USES, Permutation("b"))
    assert session.next_permutation().name == "a"

    session.add_permutation(PermutationType.USES, Permutation("c"))
    session.add_permutation(PermutationType.USES, Permutation("d"))

    assert [session.next_permutation().name for _ in range(3)] == ["c", "d", "b"]


def test_already_tried_permutations_are_skipped(session):
    session.add_permutation(PermutationType.USES, Permutation("a", "x"))
    session.add_permutation(PermutationType.IMPORT, Permutation("b", "x"))

    assert session.next_permutation().name == "a"
    assert session.next_permutation() is None


def test_cancelled_session_stops_handing_out_permutations(registry):
    context = RegistryResolveContext(registry)
    session = ResolveSession(context, InlineExecutor())
    session.add_permutation(PermutationType.USES, Permutation("a"))

    context.cancel()

    assert session.is_cancelled
    with pytest.raises(ResolutionCancelled) as e:
        session.next_permutation()
    assert isinstance(e.value.__cause__, CancelledError)
