"""
Knowshowgo ORM: schema-driven, lazily hydrated concept records.

Each registered prototype gets a PrototypeSchema (name -> PropertyDescriptor
table). Instances are KSGObject handles over a concept uuid:

1. Nothing is read when a handle is created
2. get_property() checks the local cache, then the cached JSON document
   (via `has_document`), then walks `has_value` edges
3. set_property() only touches the local cache
4. save() upserts the property/value nodes for every changed field, then
   persists the cached document once, bumping its version by 1

The cached document is an optimisation. The `has_prop`/`has_value` edges are
the source of truth and rebuild_document() reconstructs the cache from them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Set, Union

from src.knowshowgo.errors import MissingFieldError, NotFoundError, OutOfRangeError
from src.knowshowgo.local_embedder import EmbedFn
from src.knowshowgo.logging_setup import get_logger
from src.knowshowgo.models import Node, Edge, NodeKind, Provenance, Rel, VALUE_TYPES, infer_value_type, to_jsonable, utcnow
from src.knowshowgo.prototypes import PrototypeManager
from src.knowshowgo.similarity import matches_filters
from src.knowshowgo.tools import MemoryTools

log = get_logger(__name__)

# Upper bound on instances returned by find()
FIND_LIMIT = 1000

_TYPE_ALIASES = {
    "text": "string",
    "str": "string",
    "int": "number",
    "float": "number",
    "bool": "boolean",
    "date": "datetime",
    "ref": "node_ref",
}


@dataclass
class PropertyDescriptor:
    name: str
    value_type: str = "string"
    required: bool = False

    def __post_init__(self):
        self.value_type = _TYPE_ALIASES.get(self.value_type, self.value_type)
        if self.value_type not in VALUE_TYPES:
            raise OutOfRangeError(
                f"Property '{self.name}' has unknown type '{self.value_type}'", field=self.name
            )

    def check(self, value: Any) -> None:
        """Raise OutOfRangeError when a non-null value does not fit the declared type."""
        if value is None:
            return
        if self.value_type == "number":
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif self.value_type == "boolean":
            ok = isinstance(value, bool)
        elif self.value_type == "datetime":
            ok = isinstance(value, (datetime, str))
        else:
            ok = isinstance(value, str)
        if not ok:
            raise OutOfRangeError(
                f"Property '{self.name}' expects {self.value_type}, got {type(value).__name__}",
                field=self.name,
            )


@dataclass
class PrototypeSchema:
    name: str
    prototype_uuid: str
    properties: Dict[str, PropertyDescriptor] = field(default_factory=dict)
    parents: List[str] = field(default_factory=list)

    def validate(self, data: Dict[str, Any], partial: bool = False) -> None:
        if not partial:
            for prop in self.properties.values():
                if prop.required and data.get(prop.name) is None:
                    raise MissingFieldError(f"{self.name}.{prop.name} is required", field=prop.name)
        for key, value in data.items():
            if key in self.properties:
                self.properties[key].check(value)


class KSGObject:
    """Lazy handle over one concept; fields are fetched on first access."""

    def __init__(self, orm: "KSGORM", schema: PrototypeSchema, concept_uuid: str):
        self._orm = orm
        self.schema = schema
        self.uuid = concept_uuid
        self._cache: Dict[str, Any] = {}
        self._dirty: Set[str] = set()
        self._document: Optional[Dict[str, Any]] = None

    def __repr__(self) -> str:
        return f"<{self.schema.name} {self.uuid}>"

    @property
    def dirty_fields(self) -> Set[str]:
        return set(self._dirty)

    def get_property(self, name: str) -> Any:
        if name in self._cache:
            return self._cache[name]
        if self._document is None:
            self._document = self._orm.load_document_data(self.uuid)
        if name in self._document:
            self._cache[name] = self._document[name]
            return self._cache[name]
        value = self._orm.get_property_value(self.uuid, name)
        if value is not None:
            self._cache[name] = value
        return value

    def set_property(self, name: str, value: Any) -> None:
        if name in self.schema.properties:
            self.schema.properties[name].check(value)
        self._cache[name] = value
        self._dirty.add(name)

    def save(self) -> int:
        """Persist changed fields; returns the cached document's version."""
        return self._orm.save(self)

    def reload(self) -> None:
        self._cache.clear()
        self._dirty.clear()
        self._document = None

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"uuid": self.uuid}
        names = list(self.schema.properties)
        if not names:
            if self._document is None:
                self._document = self._orm.load_document_data(self.uuid)
            names = list(self._document)
        names += [n for n in self._cache if n not in names]
        for name in names:
            value = self.get_property(name)
            if value is not None:
                result[name] = value
        return result


class KSGORM:
    """
    Schema registry plus create/get/find over prototype-backed concepts.
    """

    def __init__(
        self,
        memory: MemoryTools,
        embed_fn: Optional[EmbedFn] = None,
        prototypes: Optional[PrototypeManager] = None,
    ):
        self.memory = memory
        self.embed_fn = embed_fn
        self.prototypes = prototypes or PrototypeManager(memory)
        self.registered: Dict[str, PrototypeSchema] = {}

    def _prov(self, trace_id: str = "ksg-orm") -> Provenance:
        return Provenance.now(trace_id=trace_id)

    def _embed(self, text: str) -> Optional[List[float]]:
        if not self.embed_fn:
            return None
        try:
            return self.embed_fn(text)
        except Exception as exc:
            log.warning("embedding_failed", text=text[:80], error=str(exc))
            return None

    # Schema registry

    def register_prototype(
        self,
        name: str,
        properties: Optional[Dict[str, Union[str, Dict[str, Any], PropertyDescriptor]]] = None,
        parent_prototypes: Optional[List[str]] = None,
        description: Optional[str] = None,
    ) -> PrototypeSchema:
        """
        Register (finding or creating) a prototype and its property schema.

        properties maps field name to a type name ("string"), a dict
        ({"type": "number", "required": True}) or a PropertyDescriptor.
        """
        if not name:
            raise MissingFieldError("Prototype name is required", field="name")
        descriptors: Dict[str, PropertyDescriptor] = {}
        for prop_name, declared in (properties or {}).items():
            if isinstance(declared, PropertyDescriptor):
                descriptors[prop_name] = declared
            elif isinstance(declared, dict):
                descriptors[prop_name] = PropertyDescriptor(
                    prop_name, declared.get("type", "string"), bool(declared.get("required", False))
                )
            else:
                descriptors[prop_name] = PropertyDescriptor(prop_name, declared or "string")

        parent_uuids = []
        for parent_name in parent_prototypes or []:
            parent = self.prototypes.find_prototype_by_name(parent_name)
            if parent is None:
                raise NotFoundError(f"Parent prototype '{parent_name}' not found", field="parent_prototypes")
            parent_uuids.append(parent.uuid)

        existing = self.prototypes.find_prototype_by_name(name)
        if existing is not None:
            prototype_uuid = existing.uuid
        else:
            prototype_uuid = self.prototypes.create_prototype(
                name,
                description or f"{name} prototype",
                parents=parent_uuids,
                labels=[name.lower()],
                embedding=self._embed(f"{name} {description or ''}".strip()),
                context="orm",
            )
        schema = PrototypeSchema(name, prototype_uuid, descriptors, list(parent_prototypes or []))
        self.registered[name] = schema
        log.info("orm_prototype_registered", name=name, uuid=prototype_uuid, fields=list(descriptors))
        return schema

    def get_schema(self, name: str) -> Optional[PrototypeSchema]:
        return self.registered.get(name)

    def _schema_for_uuid(self, prototype_uuid: Optional[str]) -> Optional[PrototypeSchema]:
        for schema in self.registered.values():
            if schema.prototype_uuid == prototype_uuid:
                return schema
        return None

    # Instances

    def create(self, prototype_name: str, data: Dict[str, Any]) -> KSGObject:
        schema = self.registered.get(prototype_name)
        if schema is None:
            raise NotFoundError(f"Prototype '{prototype_name}' is not registered", field="prototype_name")
        data = dict(data or {})
        schema.validate(data)

        prov = self._prov("ksg-orm-create")
        label = str(data.get("name") or data.get("label") or prototype_name)
        concept = Node(
            kind=NodeKind.CONCEPT,
            labels=[label],
            props={"label": label, "prototypeUuid": schema.prototype_uuid, "isConcept": True},
            llm_embedding=self._embed(f"{prototype_name} " + " ".join(str(v) for v in data.values())),
        )
        self.memory.upsert(concept, prov, embedding_request=True)
        self.memory.upsert(
            Edge(from_node=concept.uuid, to_node=schema.prototype_uuid, rel=Rel.INSTANCE_OF), prov
        )
        for prop_name, value in data.items():
            self.set_property_value(concept.uuid, prop_name, value, prov)
        self.update_document(concept.uuid, data, prov)

        instance = KSGObject(self, schema, concept.uuid)
        instance._cache = dict(data)
        instance._document = dict(data)
        log.info("orm_created", prototype=prototype_name, uuid=concept.uuid)
        return instance

    def get(self, concept_uuid: str, prototype_name: Optional[str] = None) -> Optional[KSGObject]:
        node = self.memory.get_node(concept_uuid)
        if node is None or node.kind != NodeKind.CONCEPT:
            return None
        schema = self.registered.get(prototype_name) if prototype_name else None
        schema = schema or self._schema_for_uuid(node.props.get("prototypeUuid"))
        if schema is None:
            schema = PrototypeSchema(prototype_name or "Concept", node.props.get("prototypeUuid"))
        return KSGObject(self, schema, concept_uuid)

    def find(self, prototype_name: str) -> List[KSGObject]:
        """Current instances of a registered prototype, best semantic match first."""
        schema = self.registered.get(prototype_name)
        if schema is None:
            return []
        filters = {"kind": NodeKind.CONCEPT, "prototypeUuid": schema.prototype_uuid}
        query_embedding = self._embed(prototype_name)
        if query_embedding:
            candidates = [
                hit.node
                for hit in self.memory.search(
                    prototype_name,
                    top_k=FIND_LIMIT,
                    filters=filters,
                    query_embedding=query_embedding,
                    min_similarity=-1.0,
                )
            ]
        else:
            # Label matching would miss instances not named after their prototype
            candidates = [n for n in self.memory.list_nodes() if matches_filters(n, filters)][:FIND_LIMIT]
        results = []
        for node in candidates:
            if self.memory.get_edge(node.uuid, schema.prototype_uuid, Rel.INSTANCE_OF) is None:
                continue
            if not self.prototypes.is_current(node.uuid):
                continue
            results.append(KSGObject(self, schema, node.uuid))
        return results

    def find_one(self, prototype_name: str, query: Dict[str, Any]) -> Optional[KSGObject]:
        for instance in self.find(prototype_name):
            if all(instance.get_property(key) == value for key, value in query.items()):
                return instance
        return None

    def save(self, instance: KSGObject) -> int:
        doc_node = self._get_document_node(instance.uuid)
        current_version = doc_node.props.get("version", 1) if doc_node else 0
        if not instance._dirty:
            return current_version
        partial = {name: instance._cache[name] for name in instance._dirty}
        instance.schema.validate(partial, partial=True)

        prov = self._prov("ksg-orm-save")
        for name, value in partial.items():
            self.set_property_value(instance.uuid, name, value, prov)

        data = dict(doc_node.props.get("data") or {}) if doc_node else {}
        data.update(partial)
        version = self.update_document(instance.uuid, data, prov)
        instance._document = dict(data)
        instance._dirty.clear()
        log.info("orm_saved", uuid=instance.uuid, fields=sorted(partial), version=version)
        return version

    # Property / value nodes

    def get_property_node(self, prop_name: str) -> Optional[Node]:
        for node in self.memory.list_nodes():
            if node.kind == NodeKind.PROPERTY and node.props.get("propertyName") == prop_name:
                return node
        return None

    def get_or_create_property(self, prop_name: str, value_type: str, prov: Provenance) -> Node:
        node = self.get_property_node(prop_name)
        if node is None:
            node = Node.property_def(prop_name, value_type)
            node.llm_embedding = self._embed(f"property {prop_name} {value_type}")
            self.memory.upsert(node, prov, embedding_request=True)
        return node

    def _value_edge(self, concept_uuid: str, prop_name: str) -> Optional[Edge]:
        for edge in self.memory.edges_from(concept_uuid, Rel.HAS_VALUE):
            if edge.props.get("propertyName") == prop_name:
                return edge
        return None

    def get_property_value(self, concept_uuid: str, prop_name: str) -> Any:
        edge = self._value_edge(concept_uuid, prop_name)
        if edge is None:
            return None
        value_node = self.memory.get_node(edge.to_node)
        if value_node is None or value_node.kind != NodeKind.VALUE:
            return None
        return value_node.props.get("literalValue")

    def set_property_value(self, concept_uuid: str, prop_name: str, value: Any, prov: Provenance) -> str:
        """Create or overwrite the live value node for (concept, prop_name); returns its uuid."""
        value_type = infer_value_type(value)
        prop_node = self.get_or_create_property(prop_name, value_type, prov)
        if self.memory.get_edge(concept_uuid, prop_node.uuid, Rel.HAS_PROP) is None:
            self.memory.upsert(
                Edge(from_node=concept_uuid, to_node=prop_node.uuid, rel=Rel.HAS_PROP,
                     props={"propertyName": prop_name}),
                prov,
            )

        edge = self._value_edge(concept_uuid, prop_name)
        value_node = self.memory.get_node(edge.to_node) if edge else None
        if value_node is not None:
            literal = to_jsonable(value)
            value_node.props["literalValue"] = literal
            value_node.props["label"] = str(literal)
            value_node.props["valueType"] = value_type
            value_node.labels = [str(literal), f"value:{value_type}"]
            value_node.llm_embedding = self._embed(str(literal))
            self.memory.upsert(value_node, prov, embedding_request=True)
            return value_node.uuid

        value_node = Node.value(value, value_type)
        value_node.llm_embedding = self._embed(str(value))
        self.memory.upsert(value_node, prov, embedding_request=True)
        self.memory.upsert(
            Edge(from_node=concept_uuid, to_node=value_node.uuid, rel=Rel.HAS_VALUE,
                 props={"propertyName": prop_name}),
            prov,
        )
        return value_node.uuid

    # Cached document

    def _get_document_node(self, concept_uuid: str) -> Optional[Node]:
        edges = self.memory.edges_from(concept_uuid, Rel.HAS_DOCUMENT)
        if not edges:
            return None
        return self.memory.get_node(edges[0].to_node)

    def load_document_data(self, concept_uuid: str) -> Dict[str, Any]:
        doc_node = self._get_document_node(concept_uuid)
        if doc_node is None:
            return {}
        return dict(doc_node.props.get("data") or {})

    def document_version(self, concept_uuid: str) -> int:
        doc_node = self._get_document_node(concept_uuid)
        return doc_node.props.get("version", 1) if doc_node else 0

    def update_document(self, concept_uuid: str, data: Dict[str, Any], prov: Provenance) -> int:
        """Write the cached document (one upsert); returns the new version."""
        doc_node = self._get_document_node(concept_uuid)
        if doc_node is None:
            doc_node = Node.document(concept_uuid, dict(data), conceptUuid=concept_uuid)
            doc_node.llm_embedding = self._embed(str(sorted(data.items(), key=lambda kv: kv[0])))
            self.memory.upsert(doc_node, prov, embedding_request=True)
            self.memory.upsert(
                Edge(from_node=concept_uuid, to_node=doc_node.uuid, rel=Rel.HAS_DOCUMENT), prov
            )
            return 1
        # Documents are the one node type refreshed in place
        doc_node.props["data"] = to_jsonable(dict(data))
        doc_node.props["version"] = doc_node.props.get("version", 1) + 1
        doc_node.props["updatedAt"] = utcnow().isoformat()
        doc_node.llm_embedding = self._embed(str(sorted(data.items(), key=lambda kv: kv[0])))
        self.memory.upsert(doc_node, prov, embedding_request=True)
        return doc_node.props["version"]

    def rebuild_document(self, concept_uuid: str) -> int:
        """Reconstruct the cached document from `has_value` edges."""
        if self.memory.get_node(concept_uuid) is None:
            raise NotFoundError(f"Concept {concept_uuid} not found", field="concept_uuid")
        data = {}
        for edge in self.memory.edges_from(concept_uuid, Rel.HAS_VALUE):
            name = edge.props.get("propertyName")
            value_node = self.memory.get_node(edge.to_node)
            if name and value_node is not None:
                data[name] = value_node.props.get("literalValue")
        return self.update_document(concept_uuid, data, self._prov("ksg-orm-rebuild"))
