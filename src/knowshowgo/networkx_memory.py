import copy
import threading
from typing import List, Dict, Any, Optional, Union
import networkx as nx

from src.knowshowgo.models import Node, Edge, Provenance, SearchHit, to_jsonable
from src.knowshowgo.similarity import matches_filters, rank_nodes
from src.knowshowgo.tools import MemoryTools


class NetworkXMemoryTools(MemoryTools):
    """
    In-memory MemoryTools backed by a NetworkX MultiDiGraph.

    Nodes and edges are stored as private copies: callers mutate what they
    read and only an explicit upsert publishes the change. The lock is held
    for a single entity write or a single copy, never across calls.
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()
        self._nodes: Dict[str, Node] = {}
        self._edges: Dict[str, Edge] = {}
        self._provenance: Dict[str, Provenance] = {}
        self._lock = threading.RLock()

    def upsert(self, item: Union[Node, Edge], provenance: Provenance, embedding_request: Optional[bool] = False) -> Dict[str, Any]:
        stored = copy.deepcopy(item)
        if isinstance(stored, (Node, Edge)):
            stored.props = to_jsonable(stored.props)
        with self._lock:
            if isinstance(stored, Node):
                self._nodes[stored.uuid] = stored
                self.graph.add_node(stored.uuid, kind=stored.kind)
            elif isinstance(stored, Edge):
                previous = self._edges.get(stored.uuid)
                if previous is not None and self.graph.has_edge(previous.from_node, previous.to_node, key=previous.uuid):
                    self.graph.remove_edge(previous.from_node, previous.to_node, key=previous.uuid)
                self._edges[stored.uuid] = stored
                self.graph.add_edge(stored.from_node, stored.to_node, key=stored.uuid, rel=stored.rel)
            else:
                return {"status": "error", "error": "unknown item type"}
            self._provenance[stored.uuid] = provenance
        return {"status": "success", "uuid": item.uuid}

    def get_node(self, node_uuid: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.get(node_uuid)
            return copy.deepcopy(node) if node is not None else None

    def get_edge_by_uuid(self, edge_uuid: str) -> Optional[Edge]:
        with self._lock:
            edge = self._edges.get(edge_uuid)
            return copy.deepcopy(edge) if edge is not None else None

    def get_provenance(self, item_uuid: str) -> Optional[Provenance]:
        return self._provenance.get(item_uuid)

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return copy.deepcopy(list(self._nodes.values()))

    def list_edges(self) -> List[Edge]:
        with self._lock:
            return copy.deepcopy(list(self._edges.values()))

    def edges_from(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        with self._lock:
            if not self.graph.has_node(node_uuid):
                return []
            found = [
                self._edges[key]
                for _, _, key, data in self.graph.out_edges(node_uuid, keys=True, data=True)
                if rel is None or data.get("rel") == rel
            ]
            return copy.deepcopy(self._in_insertion_order(found))

    def edges_to(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        with self._lock:
            if not self.graph.has_node(node_uuid):
                return []
            found = [
                self._edges[key]
                for _, _, key, data in self.graph.in_edges(node_uuid, keys=True, data=True)
                if rel is None or data.get("rel") == rel
            ]
            return copy.deepcopy(self._in_insertion_order(found))

    def _in_insertion_order(self, edges: List[Edge]) -> List[Edge]:
        order = {key: idx for idx, key in enumerate(self._edges)}
        return sorted(edges, key=lambda e: order[e.uuid])

    def search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None,
        query_embedding: Optional[List[float]] = None,
        min_similarity: float = 0.0,
    ) -> List[SearchHit]:
        candidates = [n for n in self.list_nodes() if matches_filters(n, filters)]
        return rank_nodes(
            candidates,
            query_text,
            top_k,
            query_embedding=query_embedding,
            min_similarity=min_similarity,
        )
