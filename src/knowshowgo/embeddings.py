"""
Mean-embedding aggregation and semantic search over concepts.

A node's vector is the (weighted) mean of its own text embedding and the
embeddings of everything it is associated with (tags, related concepts), so
retrieval is fuzzy: a query close to any of those texts lands near the node.
"""
from typing import List, Dict, Any, Optional, Tuple

from src.knowshowgo.errors import MissingFieldError, NotFoundError
from src.knowshowgo.local_embedder import EmbedFn
from src.knowshowgo.logging_setup import get_logger
from src.knowshowgo.models import Node, Edge, NodeKind, Provenance, Rel, SearchHit
from src.knowshowgo.similarity import mean_embedding
from src.knowshowgo.tools import MemoryTools

log = get_logger(__name__)

# Structural relations that never contribute to a node's embedding
_STRUCTURAL_RELS = (Rel.IS_A, Rel.NEXT_VERSION, Rel.HAS_PROP, Rel.HAS_VALUE, Rel.HAS_DOCUMENT, Rel.INSTANCE_OF)


class EmbeddingAggregator:
    def __init__(self, memory: MemoryTools, embed_fn: Optional[EmbedFn]):
        self.memory = memory
        self.embed_fn = embed_fn

    def _embed(self, text: str) -> Optional[List[float]]:
        if not self.embed_fn or not text:
            return None
        try:
            return self.embed_fn(text)
        except Exception as exc:
            log.warning("embedding_failed", text=text[:80], error=str(exc))
            return None

    def get_or_create_tag(self, text: str, prov: Provenance) -> Node:
        for node in self.memory.list_nodes():
            if node.kind == NodeKind.TAG and node.props.get("text") == text:
                return node
        tag = Node.tag(text)
        tag.llm_embedding = self._embed(text)
        self.memory.upsert(tag, prov, embedding_request=True)
        return tag

    def create_node_with_document(
        self,
        label: str,
        summary: str = "",
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        associations: Optional[List[Dict[str, Any]]] = None,
        prototype_uuid: Optional[str] = None,
        provenance: Optional[Provenance] = None,
    ) -> str:
        """
        Create a concept with a metadata document, tag nodes and associations.

        associations: list of {"target_uuid", "rel", "weight"} dicts; the weight
        (default 1.0) is both the edge weight and the target's weight in the
        concept's mean embedding.
        """
        if not label:
            raise MissingFieldError("label is required", field="label")
        metadata = dict(metadata or {})
        resolved = []
        for assoc in associations or []:
            target = assoc.get("target_uuid") or assoc.get("targetUuid") or assoc.get("to_node")
            if not target:
                raise MissingFieldError("association target_uuid is required", field="associations")
            if self.memory.get_node(target) is None:
                raise NotFoundError(f"Association target {target} not found", field="associations")
            rel = assoc.get("rel") or assoc.get("relation_type") or "related_to"
            resolved.append((target, rel, float(assoc.get("weight", 1.0))))
        if prototype_uuid:
            proto = self.memory.get_node(prototype_uuid)
            if proto is None or proto.kind != NodeKind.PROTOTYPE:
                raise NotFoundError(f"Prototype {prototype_uuid} not found", field="prototype_uuid")

        prov = provenance or Provenance.now(trace_id="ksg-document")
        tag_nodes = [self.get_or_create_tag(text, prov) for text in dict.fromkeys(tags or [])]

        # Metadata stays in the document; on the concept it never replaces label or summary
        props = {k: v for k, v in metadata.items() if k != "name"}
        node = Node.concept(prototype_uuid, {**props, "label": label, "summary": summary or ""})
        self.memory.upsert(node, prov, embedding_request=False)
        if prototype_uuid:
            self.memory.upsert(Edge(from_node=node.uuid, to_node=prototype_uuid, rel=Rel.INSTANCE_OF), prov)

        doc = Node.document(
            node.uuid,
            data=metadata,
            tags=[t.uuid for t in tag_nodes],
            associations=[{"targetUuid": t, "rel": r, "weight": w} for t, r, w in resolved],
        )
        doc.llm_embedding = mean_embedding([t.llm_embedding for t in tag_nodes if t.llm_embedding])
        self.memory.upsert(doc, prov, embedding_request=False)
        self.memory.upsert(Edge(from_node=node.uuid, to_node=doc.uuid, rel=Rel.HAS_DOCUMENT), prov)

        for tag in tag_nodes:
            self.memory.upsert(Edge(from_node=node.uuid, to_node=tag.uuid, rel=Rel.HAS_TAG), prov)
        for target, rel, weight in resolved:
            self.memory.upsert(Edge(from_node=node.uuid, to_node=target, rel=rel, weight=weight), prov)

        self.update_node_embedding(node.uuid, provenance=prov)
        log.info("document_node_created", uuid=node.uuid, tags=len(tag_nodes), associations=len(resolved))
        return node.uuid

    def _embedding_sources(self, node: Node) -> Tuple[List[List[float]], List[float]]:
        vectors: List[List[float]] = []
        weights: List[float] = []
        own_text = " ".join(p for p in (node.label, node.props.get("summary", "")) if p)
        own = self._embed(own_text)
        if own:
            vectors.append(own)
            weights.append(1.0)
        for edge in self.memory.edges_from(node.uuid):
            if edge.rel in _STRUCTURAL_RELS:
                continue
            related = self.memory.get_node(edge.to_node)
            if related is None:
                continue
            vector = related.llm_embedding or self._embed(related.label)
            if vector:
                vectors.append(vector)
                weights.append(edge.weight if edge.rel != Rel.HAS_TAG else 1.0)
        return vectors, weights

    def compute_node_embedding(self, node_uuid: str) -> Optional[List[float]]:
        node = self.memory.get_node(node_uuid)
        if node is None:
            return None
        vectors, weights = self._embedding_sources(node)
        return mean_embedding(vectors, weights)

    def update_node_embedding(self, node_uuid: str, provenance: Optional[Provenance] = None) -> Optional[List[float]]:
        """Recompute and store the mean embedding, e.g. after tags or associations change."""
        node = self.memory.get_node(node_uuid)
        if node is None:
            return None
        vectors, weights = self._embedding_sources(node)
        embedding = mean_embedding(vectors, weights)
        if embedding is not None:
            node.llm_embedding = embedding
            self.memory.upsert(node, provenance or Provenance.now(source="system", trace_id="ksg-embedding"))
        return embedding

    def search_concepts(
        self,
        query: str,
        top_k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        similarity_threshold: float = 0.0,
        query_embedding: Optional[List[float]] = None,
        include_superseded: bool = False,
    ) -> List[SearchHit]:
        """Rank concepts by cosine similarity to the query; never raises on an empty result."""
        embedding = query_embedding or self._embed(query)
        scoped = {"kind": NodeKind.CONCEPT, **(filters or {})}
        superseded = set()
        if not include_superseded:
            superseded = {e.from_node for e in self.memory.list_edges() if e.rel == Rel.NEXT_VERSION}
        hits = self.memory.search(
            query,
            top_k=top_k + len(superseded),
            filters=scoped,
            query_embedding=embedding,
            min_similarity=similarity_threshold,
        )
        return [h for h in hits if h.uuid not in superseded][:top_k]
