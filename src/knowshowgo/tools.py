from abc import ABC, abstractmethod
from typing import List, Dict, Any, Union, Optional

from src.knowshowgo.models import Node, Edge, Provenance, SearchHit


class MemoryTools(ABC):
    """
    Storage contract for the knowledge graph.

    Implementations must keep upserts idempotent on uuid (latest write wins),
    make each upsert atomic per entity, and return None from lookups of
    unknown uuids rather than raising.
    """

    @abstractmethod
    def upsert(self, item: Union[Node, Edge], provenance: Provenance, embedding_request: Optional[bool] = False) -> Dict[str, Any]:
        """Inserts or updates a node or edge in memory."""
        pass

    @abstractmethod
    def get_node(self, node_uuid: str) -> Optional[Node]:
        """Returns the node with this uuid, or None."""
        pass

    @abstractmethod
    def get_edge_by_uuid(self, edge_uuid: str) -> Optional[Edge]:
        pass

    @abstractmethod
    def list_nodes(self) -> List[Node]:
        """Point-in-time copy of every stored node, in insertion order."""
        pass

    @abstractmethod
    def list_edges(self) -> List[Edge]:
        """Point-in-time copy of every stored edge, in insertion order."""
        pass

    @abstractmethod
    def search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None,
        query_embedding: Optional[List[float]] = None,
        min_similarity: float = 0.0,
    ) -> List[SearchHit]:
        """Searches memory for nodes ranked by similarity to the query."""
        pass

    def get_edge(self, from_node: str, to_node: str, rel: str) -> Optional[Edge]:
        """First edge matching (from_node, to_node, rel), or None."""
        for edge in self.edges_from(from_node, rel):
            if edge.to_node == to_node:
                return edge
        return None

    def edges_from(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        return [
            e for e in self.list_edges()
            if e.from_node == node_uuid and (rel is None or e.rel == rel)
        ]

    def edges_to(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        return [
            e for e in self.list_edges()
            if e.to_node == node_uuid and (rel is None or e.rel == rel)
        ]
