from typing import Dict, Any, List, Optional

from src.knowshowgo.assertions import AssertionStore, ResolverPolicy
from src.knowshowgo.config import KSGSettings, load_settings
from src.knowshowgo.embeddings import EmbeddingAggregator
from src.knowshowgo.errors import NotFoundError, OutOfRangeError, MissingFieldError
from src.knowshowgo.ksg_orm import KSGORM, KSGObject, PrototypeSchema
from src.knowshowgo.local_embedder import EmbedFn, HashEmbedder
from src.knowshowgo.logging_setup import configure_logging, get_logger
from src.knowshowgo.models import Assertion, Edge, Node, Provenance, SearchHit
from src.knowshowgo.prototypes import PrototypeManager
from src.knowshowgo.tools import MemoryTools
from src.knowshowgo.working_memory import WorkingMemoryGraph

log = get_logger(__name__)

ASSOCIATION_DIRECTIONS = ("outgoing", "incoming", "both")


class KnowShowGoAPI:
    """
    Public operations surface over an injected MemoryTools backend and embedding function.

    Prototypes, concepts, documents and ORM objects live in the graph store;
    assertions live in their own store and are resolved on read.
    """

    def __init__(
        self,
        memory: MemoryTools,
        embed_fn: Optional[EmbedFn] = None,
        policy: Optional[ResolverPolicy] = None,
        settings: Optional[KSGSettings] = None,
    ):
        self.settings = settings or KSGSettings()
        self.memory = memory
        self.embed_fn = embed_fn
        self.prototypes = PrototypeManager(memory)
        self.orm = KSGORM(memory, embed_fn=embed_fn, prototypes=self.prototypes)
        self.embeddings = EmbeddingAggregator(memory, embed_fn)
        self.assertions = AssertionStore(policy=policy or self.settings.policy)
        self.working_memory = WorkingMemoryGraph(
            reinforce_delta=self.settings.reinforce_delta,
            max_weight=self.settings.max_weight,
            decay_rate=self.settings.decay_rate,
            epsilon=self.settings.decay_epsilon,
        )

    @classmethod
    def from_env(cls, settings: Optional[KSGSettings] = None) -> "KnowShowGoAPI":
        """Build the configured backend with a HashEmbedder."""
        settings = settings or load_settings()
        configure_logging(log_path=settings.log_file)
        if settings.memory_backend == "arango":
            from src.knowshowgo.arango_memory import ArangoMemoryTools

            memory: MemoryTools = ArangoMemoryTools()
        else:
            from src.knowshowgo.networkx_memory import NetworkXMemoryTools

            memory = NetworkXMemoryTools()
        log.info("knowshowgo_started", backend=settings.memory_backend, embed_dim=settings.embed_dim)
        return cls(memory, embed_fn=HashEmbedder(settings.embed_dim), settings=settings)

    def _embed(self, text: str) -> Optional[List[float]]:
        return self.embeddings._embed(text)

    # Prototypes and concepts

    def create_prototype(
        self,
        name: str,
        description: str = "",
        parents: Optional[List[str]] = None,
        base_prototype_uuid: Optional[str] = None,
        labels: Optional[List[str]] = None,
        embedding: Optional[List[float]] = None,
        provenance: Optional[Provenance] = None,
        **props: Any,
    ) -> str:
        if embedding is None and name:
            embedding = self._embed(f"{name} {description}".strip())
        return self.prototypes.create_prototype(
            name,
            description,
            parents=parents,
            base_prototype_uuid=base_prototype_uuid,
            labels=labels,
            embedding=embedding,
            provenance=provenance,
            **props,
        )

    def add_parent(self, child_uuid: str, parent_uuid: str) -> Edge:
        return self.prototypes.add_parent(child_uuid, parent_uuid)

    def get_prototype(self, prototype_uuid: str) -> Optional[Node]:
        return self.prototypes.get_prototype(prototype_uuid)

    def create_concept(
        self,
        prototype_uuid: str,
        data: Dict[str, Any],
        previous_version_uuid: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        provenance: Optional[Provenance] = None,
    ) -> str:
        if embedding is None:
            embedding = self._embed(" ".join(str(v) for v in (data or {}).values()))
        return self.prototypes.create_concept(
            prototype_uuid,
            data,
            previous_version_uuid=previous_version_uuid,
            embedding=embedding,
            provenance=provenance,
        )

    def get_concept(self, concept_uuid: str) -> Optional[Node]:
        return self.prototypes.get_concept(concept_uuid)

    def search_concepts(
        self,
        query: str,
        top_k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        similarity_threshold: float = 0.0,
        query_embedding: Optional[List[float]] = None,
        include_superseded: bool = False,
    ) -> List[SearchHit]:
        return self.embeddings.search_concepts(
            query,
            top_k=top_k,
            filters=filters,
            similarity_threshold=similarity_threshold,
            query_embedding=query_embedding,
            include_superseded=include_superseded,
        )

    # Associations

    def add_association(
        self,
        from_uuid: str,
        to_uuid: str,
        rel: str,
        weight: float = 1.0,
        props: Optional[Dict[str, Any]] = None,
        provenance: Optional[Provenance] = None,
    ) -> Edge:
        if not rel:
            raise MissingFieldError("Association relation is required", field="rel")
        for field_name, node_uuid in (("from_uuid", from_uuid), ("to_uuid", to_uuid)):
            if self.memory.get_node(node_uuid) is None:
                raise NotFoundError(f"Node {node_uuid} not found", field=field_name)
        edge = Edge(from_node=from_uuid, to_node=to_uuid, rel=rel, props=dict(props or {}), weight=weight)
        self.memory.upsert(edge, provenance or Provenance.now(trace_id="ksg-association"))
        log.info("association_created", uuid=edge.uuid, rel=rel, weight=weight)
        return edge

    def get_associations(self, node_uuid: str, direction: str = "outgoing") -> List[Edge]:
        if direction not in ASSOCIATION_DIRECTIONS:
            raise OutOfRangeError(
                f"direction must be one of {', '.join(ASSOCIATION_DIRECTIONS)}", field="direction"
            )
        edges: List[Edge] = []
        if direction in ("outgoing", "both"):
            edges.extend(self.memory.edges_from(node_uuid))
        if direction in ("incoming", "both"):
            seen = {e.uuid for e in edges}
            # Self-loops show up on both sides; list them once
            edges.extend(e for e in self.memory.edges_to(node_uuid) if e.uuid not in seen)
        return edges

    # Documents and embeddings

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
        return self.embeddings.create_node_with_document(
            label,
            summary=summary,
            tags=tags,
            metadata=metadata,
            associations=associations,
            prototype_uuid=prototype_uuid,
            provenance=provenance,
        )

    def update_node_embedding(self, node_uuid: str) -> Optional[List[float]]:
        return self.embeddings.update_node_embedding(node_uuid)

    # ORM

    def register_prototype(
        self,
        name: str,
        properties: Optional[Dict[str, Any]] = None,
        parent_prototypes: Optional[List[str]] = None,
        description: Optional[str] = None,
    ) -> PrototypeSchema:
        return self.orm.register_prototype(name, properties, parent_prototypes, description)

    def orm_create(self, prototype_name: str, data: Dict[str, Any]) -> KSGObject:
        return self.orm.create(prototype_name, data)

    def orm_get(self, concept_uuid: str, prototype_name: Optional[str] = None) -> Optional[KSGObject]:
        return self.orm.get(concept_uuid, prototype_name)

    def orm_find(self, prototype_name: str) -> List[KSGObject]:
        return self.orm.find(prototype_name)

    def orm_find_one(self, prototype_name: str, query: Dict[str, Any]) -> Optional[KSGObject]:
        return self.orm.find_one(prototype_name, query)

    # Assertions

    def create_assertion(self, subject: str, predicate: str, object: Any, **kwargs: Any) -> Assertion:
        return self.assertions.create_assertion(subject, predicate, object, **kwargs)

    def get_assertions(
        self,
        subject: Optional[str] = None,
        predicate: Optional[str] = None,
        include_retracted: bool = False,
    ) -> List[Assertion]:
        return self.assertions.get_assertions(subject, predicate, include_retracted)

    def snapshot(self, subject: str) -> Dict[str, Any]:
        return self.assertions.snapshot(subject)

    def evidence(self, subject: str, predicate: Optional[str] = None):
        return self.assertions.evidence(subject, predicate)
