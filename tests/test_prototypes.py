import threading

import networkx as nx
import pytest

from src.knowshowgo.errors import InvariantViolationError, MissingFieldError, NotFoundError
from src.knowshowgo.models import NodeKind, Rel
from src.knowshowgo.networkx_memory import NetworkXMemoryTools
from src.knowshowgo.prototypes import PrototypeManager


@pytest.fixture
def manager():
    return PrototypeManager(NetworkXMemoryTools())


def _is_a_edges(manager):
    return [e for e in manager.memory.list_edges() if e.rel == Rel.IS_A]


def test_create_prototype_with_multiple_parents(manager):
    thing = manager.create_prototype("Thing")
    agent = manager.create_prototype("Agent", parents=[thing])
    named = manager.create_prototype("Named")
    person = manager.create_prototype("Person", "A human", parents=[agent, named], base_prototype_uuid=agent)

    parents = {e.to_node for e in manager.memory.edges_from(person, Rel.IS_A)}
    assert parents == {agent, named}
    assert len(manager.memory.edges_from(person, Rel.IS_A)) == 2
    assert manager.ancestors(person) == [agent, named, thing]
    assert manager.get_prototype(person).props["description"] == "A human"
    assert manager.find_prototype_by_name("Person").uuid == person


def test_create_prototype_validates_before_writing(manager):
    with pytest.raises(MissingFieldError):
        manager.create_prototype("  ")
    with pytest.raises(NotFoundError):
        manager.create_prototype("Orphan", parents=["missing-uuid"])
    assert manager.memory.list_nodes() == []


def test_direct_cycle_rejected(manager):
    a = manager.create_prototype("A")
    b = manager.create_prototype("B", parents=[a])
    edges_before = len(_is_a_edges(manager))

    with pytest.raises(InvariantViolationError) as ctx:
        manager.add_parent(a, b)
    assert ctx.value.kind == "InvariantViolation"
    assert len(_is_a_edges(manager)) == edges_before


def test_transitive_cycle_and_self_loop_rejected(manager):
    a = manager.create_prototype("A")
    b = manager.create_prototype("B", parents=[a])
    c = manager.create_prototype("C", parents=[b])

    with pytest.raises(InvariantViolationError):
        manager.add_parent(a, c)
    with pytest.raises(InvariantViolationError):
        manager.add_parent(c, c)


def test_add_parent_allows_diamond_and_is_idempotent(manager):
    root = manager.create_prototype("Root")
    left = manager.create_prototype("Left", parents=[root])
    right = manager.create_prototype("Right", parents=[root])
    leaf = manager.create_prototype("Leaf", parents=[left])

    edge = manager.add_parent(leaf, right)
    again = manager.add_parent(leaf, right)
    assert edge.uuid == again.uuid
    assert manager.ancestors(leaf) == [left, right, root]


def test_add_parent_requires_existing_prototypes(manager):
    a = manager.create_prototype("A")
    with pytest.raises(NotFoundError):
        manager.add_parent(a, "missing")
    with pytest.raises(NotFoundError):
        manager.add_parent("missing", a)


def test_version_chain_is_a_simple_path(manager):
    proto = manager.create_prototype("Person")
    v1 = manager.create_concept(proto, {"name": "Alice", "age": 30})
    v2 = manager.create_concept(proto, {"name": "Alice", "age": 31}, previous_version_uuid=v1)

    from_v1 = manager.memory.edges_from(v1, Rel.NEXT_VERSION)
    assert len(from_v1) == 1
    assert from_v1[0].to_node == v2

    v3 = manager.create_concept(proto, {"name": "Alice", "age": 32}, previous_version_uuid=v2)
    assert manager.version_chain(v2) == [v1, v2, v3]
    assert manager.latest_version(v1) == v3
    assert manager.is_current(v3)
    assert not manager.is_current(v1)
    assert len([e for e in manager.memory.list_edges() if e.rel == Rel.NEXT_VERSION]) == 2


def test_superseded_version_cannot_branch(manager):
    proto = manager.create_prototype("Person")
    v1 = manager.create_concept(proto, {"name": "Alice"})
    manager.create_concept(proto, {"name": "Alice B"}, previous_version_uuid=v1)
    nodes_before = len(manager.memory.list_nodes())

    with pytest.raises(InvariantViolationError):
        manager.create_concept(proto, {"name": "Alice C"}, previous_version_uuid=v1)
    assert len(manager.memory.list_nodes()) == nodes_before


def test_create_concept_reference_errors(manager):
    proto = manager.create_prototype("Person")
    with pytest.raises(NotFoundError):
        manager.create_concept("missing", {"name": "Bob"})
    with pytest.raises(MissingFieldError):
        manager.create_concept("", {"name": "Bob"})
    with pytest.raises(NotFoundError) as ctx:
        manager.create_concept(proto, {"name": "Bob"}, previous_version_uuid="missing")
    assert ctx.value.field == "previous_version_uuid"


def test_concept_links_to_prototype(manager):
    proto = manager.create_prototype("Person")
    concept_uuid = manager.create_concept(proto, {"name": "Alice"}, embedding=[0.9, 0.1])

    concept = manager.get_concept(concept_uuid)
    assert concept.kind == NodeKind.CONCEPT
    assert concept.props["prototypeUuid"] == proto
    assert concept.llm_embedding == [0.9, 0.1]
    assert manager.memory.get_edge(concept_uuid, proto, Rel.INSTANCE_OF) is not None
    assert manager.get_concept(proto) is None
    assert manager.get_prototype(concept_uuid) is None


def _pause_after(manager, monkeypatch, method_name):
    """Make `method_name` wait for a second caller so unguarded check-then-write calls would interleave."""
    barrier = threading.Barrier(2)
    original = getattr(manager, method_name)

    def paused(*args, **kwargs):
        result = original(*args, **kwargs)
        try:
            barrier.wait(timeout=0.5)
        except threading.BrokenBarrierError:
            pass
        return result

    monkeypatch.setattr(manager, method_name, paused)


def _run_concurrently(*calls):
    outcomes = []
    lock = threading.Lock()

    def run(call):
        try:
            result = call()
        except InvariantViolationError as exc:
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)
    return outcomes


def test_concurrent_opposite_parent_links_stay_acyclic(manager, monkeypatch):
    a = manager.create_prototype("A")
    b = manager.create_prototype("B")
    _pause_after(manager, monkeypatch, "would_create_cycle")

    outcomes = _run_concurrently(lambda: manager.add_parent(a, b), lambda: manager.add_parent(b, a))

    assert len(outcomes) == 2
    assert sum(isinstance(o, InvariantViolationError) for o in outcomes) == 1
    assert len(_is_a_edges(manager)) == 1
    assert nx.is_directed_acyclic_graph(manager.inheritance_graph())


def test_concurrent_supersedes_do_not_fork_the_chain(manager, monkeypatch):
    proto = manager.create_prototype("Doc")
    v1 = manager.create_concept(proto, {"name": "draft"})
    _pause_after(manager, monkeypatch, "is_current")

    outcomes = _run_concurrently(
        lambda: manager.create_concept(proto, {"name": "left"}, previous_version_uuid=v1),
        lambda: manager.create_concept(proto, {"name": "right"}, previous_version_uuid=v1),
    )

    assert len(outcomes) == 2
    assert sum(isinstance(o, InvariantViolationError) for o in outcomes) == 1
    assert len(manager.memory.edges_from(v1, Rel.NEXT_VERSION)) == 1
    winner = next(o for o in outcomes if isinstance(o, str))
    assert manager.version_chain(v1) == [v1, winner]
