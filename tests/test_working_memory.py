"""Tests for WorkingMemoryGraph reinforcement, decay and pruning."""
import threading

import pytest

from src.knowshowgo.errors import OutOfRangeError
from src.knowshowgo.working_memory import WorkingMemoryGraph


def test_link_creates_edge_with_seed_weight():
    wm = WorkingMemoryGraph(reinforce_delta=2.0, max_weight=10.0)
    weight = wm.link("a", "b", seed_weight=1.0)
    assert weight == 1.0
    assert wm.get_weight("a", "b") == 1.0


def test_link_is_idempotent():
    wm = WorkingMemoryGraph(reinforce_delta=2.0, max_weight=10.0)
    wm.link("a", "b", seed_weight=1.0)
    weight = wm.link("a", "b", seed_weight=7.0)
    assert weight == 1.0
    assert wm.edge_count() == 1


def test_link_caps_seed_weight():
    wm = WorkingMemoryGraph(max_weight=3.0)
    assert wm.link("a", "b", seed_weight=9.0) == 3.0


def test_access_reinforces_edge():
    wm = WorkingMemoryGraph(reinforce_delta=1.0, max_weight=100.0)
    wm.link("a", "b", seed_weight=5.0)
    weight = wm.access("a", "b")
    assert weight == 6.0


def test_access_never_exceeds_max_weight():
    wm = WorkingMemoryGraph(reinforce_delta=5.0, max_weight=12.0)
    wm.link("a", "b", seed_weight=1.0)
    for _ in range(100):
        weight = wm.access("a", "b")
        assert weight <= 12.0
    assert wm.get_weight("a", "b") == 12.0


def test_access_returns_none_for_missing_edge():
    wm = WorkingMemoryGraph()
    assert wm.access("missing", "edge") is None
    assert not wm.has_link("missing", "edge")


def test_get_weight_no_side_effects():
    wm = WorkingMemoryGraph(reinforce_delta=1.0)
    wm.link("a", "b", seed_weight=5.0)
    assert wm.get_weight("a", "b") == 5.0
    assert wm.get_weight("a", "b") == 5.0  # Still 5.0, no reinforcement
    assert wm.get_weight("b", "a") == 0.0


def test_get_activation_boost():
    wm = WorkingMemoryGraph()
    wm.link("x", "target", seed_weight=3.0)
    wm.link("y", "target", seed_weight=2.0)
    assert wm.get_activation_boost("target") == 5.0


def test_get_activation_boost_missing_node():
    wm = WorkingMemoryGraph()
    assert wm.get_activation_boost("nonexistent") == 0.0
    assert wm.get_activation_boost("nonexistent", default=1.5) == 1.5


def test_decay_all():
    wm = WorkingMemoryGraph(decay_rate=0.5)
    wm.link("a", "b", seed_weight=10.0)
    wm.link("b", "c", seed_weight=20.0)
    assert wm.decay_all() == 0
    assert wm.get_weight("a", "b") == 5.0
    assert wm.get_weight("b", "c") == 10.0


def test_decay_prunes_weak_edges():
    wm = WorkingMemoryGraph(decay_rate=0.99)
    wm.link("a", "b", seed_weight=0.5)
    wm.link("c", "d", seed_weight=100.0)

    for _ in range(10):
        wm.decay_all()
        if not wm.has_link("a", "b"):
            break

    assert not wm.has_link("a", "b")
    assert wm.get_weight("a", "b") == 0.0
    assert wm.get_activation_boost("b") == 0.0


def test_decay_eventually_empties_graph():
    wm = WorkingMemoryGraph(decay_rate=0.5, epsilon=0.01)
    wm.link("a", "b", seed_weight=1.0)
    pruned = 0
    for _ in range(20):
        pruned += wm.decay_all()
    assert pruned == 1
    assert wm.edge_count() == 0
    assert wm.get_top_activated() == []


def test_invalid_configuration_rejected():
    with pytest.raises(OutOfRangeError):
        WorkingMemoryGraph(decay_rate=1.5)
    with pytest.raises(OutOfRangeError):
        WorkingMemoryGraph(max_weight=0)
    with pytest.raises(OutOfRangeError):
        WorkingMemoryGraph(epsilon=-1)


def test_clear():
    wm = WorkingMemoryGraph()
    wm.link("a", "b", seed_weight=10.0)
    wm.link("c", "d", seed_weight=5.0)
    wm.clear()
    assert wm.get_weight("a", "b") == 0.0
    assert wm.edge_count() == 0


def test_get_top_activated():
    wm = WorkingMemoryGraph()
    wm.link("a", "hot", seed_weight=8.0)
    wm.link("b", "hot", seed_weight=2.0)
    wm.link("a", "warm", seed_weight=4.0)
    wm.link("a", "cold", seed_weight=1.0)

    top = wm.get_top_activated(top_k=2)
    assert top == [("hot", 10.0), ("warm", 4.0)]


@pytest.mark.parametrize(
    "read",
    [
        lambda wm: wm.has_link("a", "b"),
        lambda wm: wm.get_weight("a", "b"),
        lambda wm: wm.edge_count(),
    ],
    ids=["has_link", "get_weight", "edge_count"],
)
def test_reads_wait_for_in_flight_writes(read):
    wm = WorkingMemoryGraph()
    wm.link("a", "b", seed_weight=2.0)
    results = []
    reader = threading.Thread(target=lambda: results.append(read(wm)))

    with wm._lock:
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()
        assert results == []
    reader.join(timeout=2.0)

    assert not reader.is_alive()
    assert results in ([True], [2.0], [1])
