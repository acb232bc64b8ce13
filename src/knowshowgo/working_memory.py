"""
Working Memory Graph: short-term activation layer with reinforcement and decay.

Implements Hebbian learning: frequently accessed associations become stronger,
and every association fades each time decay_all() is called. Edges whose
weight falls under `epsilon` are dropped, so one-off associations do not
accumulate.

This is SEPARATE from the semantic store:
- Semantic store (MemoryTools backends) = durable, global knowledge
- Working memory = session-scoped activation for retrieval boosting

Decay is never scheduled here; callers invoke decay_all() explicitly.
"""

import threading
from typing import List, Tuple

import networkx as nx

from src.knowshowgo.errors import OutOfRangeError
from src.knowshowgo.logging_setup import get_logger

log = get_logger(__name__)


class WorkingMemoryGraph:
    """NetworkX-backed working memory for selection/retrieval boosting.

    Usage:
        wm = WorkingMemoryGraph(reinforce_delta=1.0, max_weight=100.0, decay_rate=0.1)

        # Create the edge once (idempotent)
        wm.link("procedure_uuid", "step_uuid", seed_weight=0.5)

        # Access reinforces existing edges (read = strengthen)
        weight = wm.access("procedure_uuid", "step_uuid")

        # Query without side effects
        weight = wm.get_weight("procedure_uuid", "step_uuid")

        # Fade everything, pruning edges under epsilon
        wm.decay_all()
    """

    def __init__(
        self,
        reinforce_delta: float = 1.0,
        max_weight: float = 100.0,
        decay_rate: float = 0.1,
        epsilon: float = 0.01,
    ) -> None:
        if max_weight <= 0:
            raise OutOfRangeError("max_weight must be positive", field="max_weight")
        if not 0.0 <= decay_rate <= 1.0:
            raise OutOfRangeError("decay_rate must be in [0, 1]", field="decay_rate")
        if epsilon < 0:
            raise OutOfRangeError("epsilon must not be negative", field="epsilon")
        self._g = nx.DiGraph()
        self._lock = threading.RLock()
        self.reinforce_delta = reinforce_delta
        self.max_weight = max_weight
        self.decay_rate = decay_rate
        self.epsilon = epsilon

    def link(self, source: str, target: str, seed_weight: float = 1.0) -> float:
        """Create the edge if absent; an existing edge is left untouched. Returns its weight."""
        with self._lock:
            if not self._g.has_edge(source, target):
                self._g.add_edge(source, target, weight=min(self.max_weight, seed_weight))
            return self._g[source][target]["weight"]

    def access(self, source: str, target: str):
        """Access reinforces the edge if present. Returns None if edge doesn't exist."""
        with self._lock:
            if not self._g.has_edge(source, target):
                return None
            self._g[source][target]["weight"] = min(
                self.max_weight, self._g[source][target]["weight"] + self.reinforce_delta
            )
            return self._g[source][target]["weight"]

    def has_link(self, source: str, target: str) -> bool:
        with self._lock:
            return self._g.has_edge(source, target)

    def get_weight(self, source: str, target: str) -> float:
        """Query edge weight without reinforcement (no side effects); 0.0 when absent."""
        with self._lock:
            edge = self._g.get_edge_data(source, target)
            return 0.0 if edge is None else edge.get("weight", 0.0)

    def get_activation_boost(self, node_uuid: str, default: float = 0.0) -> float:
        """Get total incoming activation for a node (for retrieval boosting)."""
        with self._lock:
            if not self._g.has_node(node_uuid):
                return default
            total = sum(
                self._g[pred][node_uuid].get("weight", 0.0)
                for pred in self._g.predecessors(node_uuid)
            )
        return total if total > 0 else default

    def decay_all(self) -> int:
        """Multiply every weight by (1 - decay_rate); prune edges under epsilon. Returns the pruned count."""
        factor = 1.0 - self.decay_rate
        with self._lock:
            pruned = []
            for u, v, data in self._g.edges(data=True):
                data["weight"] = data.get("weight", 0.0) * factor
                if data["weight"] < self.epsilon:
                    pruned.append((u, v))
            self._g.remove_edges_from(pruned)
            self._g.remove_nodes_from([n for n in list(self._g.nodes()) if self._g.degree(n) == 0])
            remaining = self._g.number_of_edges()
        if pruned:
            log.info("edges_pruned", count=len(pruned), remaining=remaining)
        return len(pruned)

    def edge_count(self) -> int:
        with self._lock:
            return self._g.number_of_edges()

    def clear(self) -> None:
        """Clear all activation (start fresh session)."""
        with self._lock:
            self._g.clear()

    def get_top_activated(self, top_k: int = 10) -> List[Tuple[str, float]]:
        """Get nodes with highest total incoming activation."""
        activations = []
        with self._lock:
            nodes = list(self._g.nodes())
        for node in nodes:
            boost = self.get_activation_boost(node, default=0.0)
            if boost > 0:
                activations.append((node, boost))
        activations.sort(key=lambda x: x[1], reverse=True)
        return activations[:top_k]
