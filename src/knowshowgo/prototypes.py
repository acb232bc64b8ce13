import threading
from collections import deque
from typing import List, Dict, Any, Optional

import networkx as nx

from src.knowshowgo.errors import InvariantViolationError, MissingFieldError, NotFoundError
from src.knowshowgo.logging_setup import get_logger
from src.knowshowgo.models import Node, Edge, NodeKind, Provenance, Rel
from src.knowshowgo.tools import MemoryTools

log = get_logger(__name__)


class PrototypeManager:
    """
    Creates prototypes (with zero or more `is_a` parents) and chains concept versions.

    The `is_a` relation is kept acyclic: every new parent link is checked for
    reachability from the parent back to the child before it is written.
    Concept versions form a simple path of `next_version` edges.
    Both checks run under one lock with their writes, so concurrent callers
    sharing a manager cannot interleave a check with another caller's write.
    """

    def __init__(self, memory: MemoryTools):
        self.memory = memory
        self._lock = threading.RLock()

    def _prov(self, provenance: Optional[Provenance], trace_id: str) -> Provenance:
        return provenance or Provenance.now(trace_id=trace_id)

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
        if not name or not str(name).strip():
            raise MissingFieldError("Prototype name is required", field="name")

        # Union of legacy base parent and explicit parents, first occurrence wins
        parent_uuids: List[str] = []
        for parent_uuid in ([base_prototype_uuid] if base_prototype_uuid else []) + list(parents or []):
            if parent_uuid not in parent_uuids:
                parent_uuids.append(parent_uuid)
        for parent_uuid in parent_uuids:
            if self.get_prototype(parent_uuid) is None:
                raise NotFoundError(f"Parent prototype {parent_uuid} not found", field="parents")

        prov = self._prov(provenance, "ksg-prototype")
        proto = Node.prototype(name, description, labels=labels, **props)
        proto.llm_embedding = embedding
        self.memory.upsert(proto, prov, embedding_request=True)
        # A brand new node has no descendants, so these links cannot close a cycle
        for parent_uuid in parent_uuids:
            self._link_parent(proto.uuid, parent_uuid, prov)
        log.info("prototype_created", uuid=proto.uuid, name=name, parents=parent_uuids)
        return proto.uuid

    def add_parent(self, child_uuid: str, parent_uuid: str, provenance: Optional[Provenance] = None) -> Edge:
        """Add an `is_a` link between two existing prototypes, rejecting cycles."""
        if self.get_prototype(child_uuid) is None:
            raise NotFoundError(f"Prototype {child_uuid} not found", field="child_uuid")
        if self.get_prototype(parent_uuid) is None:
            raise NotFoundError(f"Prototype {parent_uuid} not found", field="parent_uuid")
        with self._lock:
            existing = self.memory.get_edge(child_uuid, parent_uuid, Rel.IS_A)
            if existing is not None:
                return existing
            if self.would_create_cycle(child_uuid, parent_uuid):
                raise InvariantViolationError(
                    f"is_a({child_uuid} -> {parent_uuid}) would create an inheritance cycle",
                    field="parent_uuid",
                )
            return self._link_parent(child_uuid, parent_uuid, self._prov(provenance, "ksg-proto-inherit"))

    def _link_parent(self, child_uuid: str, parent_uuid: str, prov: Provenance) -> Edge:
        edge = Edge(from_node=child_uuid, to_node=parent_uuid, rel=Rel.IS_A, props={"parentUuid": parent_uuid})
        self.memory.upsert(edge, prov, embedding_request=False)
        return edge

    def inheritance_graph(self) -> nx.DiGraph:
        graph = nx.DiGraph()
        for edge in self.memory.list_edges():
            if edge.rel == Rel.IS_A:
                graph.add_edge(edge.from_node, edge.to_node)
        return graph

    def would_create_cycle(self, child_uuid: str, parent_uuid: str) -> bool:
        if child_uuid == parent_uuid:
            return True
        graph = self.inheritance_graph()
        if not graph.has_node(parent_uuid) or not graph.has_node(child_uuid):
            return False
        return nx.has_path(graph, parent_uuid, child_uuid)

    def ancestors(self, prototype_uuid: str) -> List[str]:
        """Transitive `is_a` parents, breadth-first, nearest first."""
        seen: List[str] = []
        queue = deque([prototype_uuid])
        while queue:
            current = queue.popleft()
            for edge in self.memory.edges_from(current, Rel.IS_A):
                if edge.to_node not in seen and edge.to_node != prototype_uuid:
                    seen.append(edge.to_node)
                    queue.append(edge.to_node)
        return seen

    def get_prototype(self, prototype_uuid: str) -> Optional[Node]:
        node = self.memory.get_node(prototype_uuid)
        if node is None or node.kind != NodeKind.PROTOTYPE:
            return None
        return node

    def find_prototype_by_name(self, name: str) -> Optional[Node]:
        for node in self.memory.list_nodes():
            if node.kind == NodeKind.PROTOTYPE and (node.props.get("name") == name or node.label == name):
                return node
        return None

    def create_concept(
        self,
        prototype_uuid: str,
        data: Dict[str, Any],
        previous_version_uuid: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        provenance: Optional[Provenance] = None,
    ) -> str:
        if not prototype_uuid:
            raise MissingFieldError("prototype_uuid is required", field="prototype_uuid")
        if self.get_prototype(prototype_uuid) is None:
            raise NotFoundError(f"Prototype {prototype_uuid} not found", field="prototype_uuid")
        if previous_version_uuid and self.memory.get_node(previous_version_uuid) is None:
            raise NotFoundError(
                f"Previous version {previous_version_uuid} not found", field="previous_version_uuid"
            )

        prov = self._prov(provenance, "ksg-concept")
        concept = Node.concept(prototype_uuid, dict(data or {}))
        concept.llm_embedding = embedding
        with self._lock:
            if previous_version_uuid and not self.is_current(previous_version_uuid):
                raise InvariantViolationError(
                    f"Concept {previous_version_uuid} is already superseded", field="previous_version_uuid"
                )
            self.memory.upsert(concept, prov, embedding_request=True)
            self.memory.upsert(
                Edge(from_node=concept.uuid, to_node=prototype_uuid, rel=Rel.INSTANCE_OF),
                prov,
                embedding_request=False,
            )
            if previous_version_uuid:
                version_edge = Edge(
                    from_node=previous_version_uuid,
                    to_node=concept.uuid,
                    rel=Rel.NEXT_VERSION,
                    props={"prototypeUuid": prototype_uuid},
                )
                self.memory.upsert(version_edge, prov, embedding_request=False)
        log.info(
            "concept_created",
            uuid=concept.uuid,
            prototype_uuid=prototype_uuid,
            previous_version_uuid=previous_version_uuid,
        )
        return concept.uuid

    def get_concept(self, concept_uuid: str) -> Optional[Node]:
        node = self.memory.get_node(concept_uuid)
        if node is None or node.kind != NodeKind.CONCEPT:
            return None
        return node

    def is_current(self, concept_uuid: str) -> bool:
        return not self.memory.edges_from(concept_uuid, Rel.NEXT_VERSION)

    def latest_version(self, concept_uuid: str) -> str:
        return self.version_chain(concept_uuid)[-1]

    def version_chain(self, concept_uuid: str) -> List[str]:
        """Every version linked to this concept, oldest first."""
        chain = [concept_uuid]
        current = concept_uuid
        while True:
            previous = self.memory.edges_to(current, Rel.NEXT_VERSION)
            if not previous or previous[0].from_node in chain:
                break
            current = previous[0].from_node
            chain.insert(0, current)
        current = concept_uuid
        while True:
            following = self.memory.edges_from(current, Rel.NEXT_VERSION)
            if not following or following[0].to_node in chain:
                break
            current = following[0].to_node
            chain.append(current)
        return chain
