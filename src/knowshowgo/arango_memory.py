import os
import time
from dataclasses import asdict
from typing import List, Dict, Any, Optional, Union

from arango import ArangoClient
from arango.database import StandardDatabase
from arango.exceptions import ArangoError

from src.knowshowgo.errors import StorageError
from src.knowshowgo.logging_setup import get_logger
from src.knowshowgo.models import Node, Edge, Provenance, SearchHit
from src.knowshowgo.similarity import matches_filters, rank_nodes
from src.knowshowgo.tools import MemoryTools

log = get_logger(__name__)


class ArangoMemoryTools(MemoryTools):
    """
    ArangoDB-backed MemoryTools implementation.

    Stores Nodes in a document collection and Edges in an edge collection.
    Embeddings are stored on the node and scored client-side with cosine similarity
    (small-data friendly fallback; switch to native vector indexes if available).
    Driver errors are re-raised as StorageError.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        db_name: Optional[str] = None,
        nodes_collection: str = "nodes",
        edges_collection: str = "edges",
    ):
        self.url = url or os.getenv("ARANGO_URL", "http://localhost:8529")
        self.username = username or os.getenv("ARANGO_USER", "root")
        self.password = password or os.getenv("ARANGO_PASSWORD", "")
        self.db_name = db_name or os.getenv("ARANGO_DB", "knowshowgo")
        self.nodes_collection_name = nodes_collection
        self.edges_collection_name = edges_collection

        try:
            self.client = ArangoClient(hosts=self.url)
            # Connect (create db if needed and permitted)
            sys_db = self.client.db("_system", username=self.username, password=self.password)
            if not sys_db.has_database(self.db_name):
                sys_db.create_database(self.db_name)
            self.db: StandardDatabase = self.client.db(
                self.db_name, username=self.username, password=self.password
            )
            self._ensure_collections()
        except ArangoError as exc:
            raise StorageError(f"Could not open graph database '{self.db_name}'") from exc
        log.info("arango_connected", url=self.url, db=self.db_name)

    def _ensure_collections(self):
        if not self.db.has_collection(self.nodes_collection_name):
            self.db.create_collection(self.nodes_collection_name)
        if not self.db.has_collection(self.edges_collection_name):
            self.db.create_collection(self.edges_collection_name, edge=True)
        self.nodes = self.db.collection(self.nodes_collection_name)
        self.edges = self.db.collection(self.edges_collection_name)

    def _inserted_at(self, collection, key: str) -> int:
        existing = collection.get(key)
        return existing["inserted_at"] if existing and "inserted_at" in existing else time.time_ns()

    def upsert(
        self,
        item: Union[Node, Edge],
        provenance: Provenance,
        embedding_request: Optional[bool] = False,
    ) -> Dict[str, Any]:
        """Upsert node/edge into Arango collections."""
        try:
            if isinstance(item, Node):
                doc = item.to_dict()
                doc["_key"] = item.uuid
                doc["provenance"] = asdict(provenance)
                doc["inserted_at"] = self._inserted_at(self.nodes, item.uuid)
                self.nodes.insert(doc, overwrite=True)
                return {"status": "success", "uuid": item.uuid}
            elif isinstance(item, Edge):
                edge = item.to_dict()
                edge["_key"] = item.uuid
                edge["_from"] = f"{self.nodes_collection_name}/{item.from_node}"
                edge["_to"] = f"{self.nodes_collection_name}/{item.to_node}"
                edge["provenance"] = asdict(provenance)
                edge["inserted_at"] = self._inserted_at(self.edges, item.uuid)
                self.edges.insert(edge, overwrite=True)
                return {"status": "success", "uuid": item.uuid}
        except ArangoError as exc:
            raise StorageError(f"Upsert of {item.uuid} failed") from exc
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Upsert of {item.uuid} failed: document is not JSON-serializable") from exc
        return {"status": "error", "error": "unknown item type"}

    def get_node(self, node_uuid: str) -> Optional[Node]:
        try:
            doc = self.nodes.get(node_uuid)
        except ArangoError as exc:
            raise StorageError(f"Lookup of node {node_uuid} failed") from exc
        return Node.from_dict(doc) if doc else None

    def get_edge_by_uuid(self, edge_uuid: str) -> Optional[Edge]:
        try:
            doc = self.edges.get(edge_uuid)
        except ArangoError as exc:
            raise StorageError(f"Lookup of edge {edge_uuid} failed") from exc
        return Edge.from_dict(doc) if doc else None

    def _query(self, aql: str, bind_vars: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            return list(self.db.aql.execute(aql, bind_vars=bind_vars))
        except ArangoError as exc:
            raise StorageError("Graph query failed") from exc

    def list_nodes(self) -> List[Node]:
        docs = self._query(
            "FOR d IN @@col SORT d.inserted_at RETURN d",
            {"@col": self.nodes_collection_name},
        )
        return [Node.from_dict(d) for d in docs]

    def list_edges(self) -> List[Edge]:
        docs = self._query(
            "FOR e IN @@col SORT e.inserted_at RETURN e",
            {"@col": self.edges_collection_name},
        )
        return [Edge.from_dict(d) for d in docs]

    def edges_from(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        docs = self._query(
            "FOR e IN @@col FILTER e.from_node == @uuid AND (@rel == null OR e.rel == @rel) "
            "SORT e.inserted_at RETURN e",
            {"@col": self.edges_collection_name, "uuid": node_uuid, "rel": rel},
        )
        return [Edge.from_dict(d) for d in docs]

    def edges_to(self, node_uuid: str, rel: Optional[str] = None) -> List[Edge]:
        docs = self._query(
            "FOR e IN @@col FILTER e.to_node == @uuid AND (@rel == null OR e.rel == @rel) "
            "SORT e.inserted_at RETURN e",
            {"@col": self.edges_collection_name, "uuid": node_uuid, "rel": rel},
        )
        return [Edge.from_dict(d) for d in docs]

    def search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None,
        query_embedding: Optional[List[float]] = None,
        min_similarity: float = 0.0,
    ) -> List[SearchHit]:
        """Simple search over nodes with optional embedding-based scoring."""
        candidates = [n for n in self.list_nodes() if matches_filters(n, filters)]
        return rank_nodes(
            candidates,
            query_text,
            top_k,
            query_embedding=query_embedding,
            min_similarity=min_similarity,
        )
