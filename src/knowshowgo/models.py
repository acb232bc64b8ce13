import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

from src.knowshowgo.errors import MissingFieldError, OutOfRangeError


class NodeKind:
    """Discriminants for the structural role of a node."""

    PROTOTYPE = "prototype"
    CONCEPT = "concept"
    PROPERTY = "property"
    VALUE = "value"
    TAG = "tag"
    DOCUMENT = "document"

    ALL = (PROTOTYPE, CONCEPT, PROPERTY, VALUE, TAG, DOCUMENT)


class Rel:
    """Reserved relation names used by the core."""

    IS_A = "is_a"
    NEXT_VERSION = "next_version"
    HAS_PROP = "has_prop"
    HAS_VALUE = "has_value"
    HAS_DOCUMENT = "has_document"
    HAS_TAG = "has_tag"
    INSTANCE_OF = "instance_of"

    RESERVED = (IS_A, NEXT_VERSION, HAS_PROP, HAS_VALUE, HAS_DOCUMENT, HAS_TAG, INSTANCE_OF)


VALUE_TYPES = ("string", "number", "boolean", "datetime", "url", "node_ref")

# props flag stamped on every node of the given kind
_KIND_FLAGS = {
    NodeKind.PROTOTYPE: "isPrototype",
    NodeKind.PROPERTY: "isProperty",
    NodeKind.VALUE: "isValue",
    NodeKind.TAG: "isTag",
    NodeKind.DOCUMENT: "isDocument",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_jsonable(value: Any) -> Any:
    """Replace datetimes (nested in dicts and lists too) with ISO-8601 strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def infer_value_type(value: Any) -> str:
    """Map a Python literal onto a declared property value type."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, str) and value.startswith(("http://", "https://")):
        return "url"
    return "string"


@dataclass
class Provenance:
    """Represents the origin of a piece of information."""
    source: str
    ts: str
    confidence: float
    trace_id: str

    @classmethod
    def now(cls, source: str = "user", trace_id: str = "knowshowgo", confidence: float = 1.0) -> "Provenance":
        return cls(source=source, ts=utcnow().isoformat(), confidence=confidence, trace_id=trace_id)


@dataclass
class Node:
    """A graph vertex; every addressable thing (schema, instance, value, ...) is a node."""
    kind: str
    labels: List[str]
    props: Dict[str, Any]
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    llm_embedding: Optional[List[float]] = None
    status: str = "active"

    def __post_init__(self):
        self.props = to_jsonable(self.props)
        if self.kind not in NodeKind.ALL:
            raise OutOfRangeError(f"Unknown node kind '{self.kind}'", field="kind")
        for kind, flag in _KIND_FLAGS.items():
            if kind == self.kind:
                self.props[flag] = True
            elif flag in self.props and flag != "isPrototype":
                self.props.pop(flag)
        if self.kind != NodeKind.PROTOTYPE:
            self.props["isPrototype"] = False

        if self.kind == NodeKind.PROPERTY:
            if not self.props.get("propertyName"):
                raise MissingFieldError("Property nodes need a propertyName", field="propertyName")
            value_type = self.props.setdefault("valueType", "string")
            if value_type not in VALUE_TYPES:
                raise OutOfRangeError(f"Unknown value type '{value_type}'", field="valueType")
        elif self.kind == NodeKind.VALUE:
            if "literalValue" not in self.props:
                raise MissingFieldError("Value nodes need a literalValue", field="literalValue")
        elif self.kind == NodeKind.DOCUMENT:
            self.props.setdefault("version", 1)

    @property
    def label(self) -> str:
        return str(self.props.get("label") or (self.labels[0] if self.labels else ""))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["props"] = to_jsonable(data["props"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            kind=data.get("kind", NodeKind.CONCEPT),
            labels=list(data.get("labels", [])),
            props=dict(data.get("props", {})),
            uuid=data.get("uuid") or data.get("_key"),
            llm_embedding=data.get("llm_embedding"),
            status=data.get("status") or "active",
        )

    # Kind-specific constructors

    @classmethod
    def prototype(cls, name: str, description: str = "", labels: Optional[List[str]] = None, **props) -> "Node":
        aliases = list(labels or [])
        if name not in aliases:
            aliases.insert(0, name)
        return cls(
            kind=NodeKind.PROTOTYPE,
            labels=aliases,
            props={"label": name, "name": name, "description": description, **props},
        )

    @classmethod
    def concept(cls, prototype_uuid: Optional[str], data: Dict[str, Any]) -> "Node":
        label = str(data.get("name") or data.get("label") or "concept")
        return cls(
            kind=NodeKind.CONCEPT,
            labels=[label],
            props={**data, "label": label, "prototypeUuid": prototype_uuid},
        )

    @classmethod
    def property_def(cls, name: str, value_type: str = "string", required: bool = False) -> "Node":
        return cls(
            kind=NodeKind.PROPERTY,
            labels=[name, f"property:{name}"],
            props={"label": name, "propertyName": name, "valueType": value_type, "required": required},
        )

    @classmethod
    def value(cls, literal: Any, value_type: Optional[str] = None) -> "Node":
        value_type = value_type or infer_value_type(literal)
        literal = to_jsonable(literal)
        return cls(
            kind=NodeKind.VALUE,
            labels=[str(literal), f"value:{value_type}"],
            props={"label": str(literal), "literalValue": literal, "valueType": value_type},
        )

    @classmethod
    def tag(cls, text: str) -> "Node":
        return cls(kind=NodeKind.TAG, labels=[text], props={"label": text, "text": text})

    @classmethod
    def document(cls, target_uuid: str, data: Dict[str, Any], **props) -> "Node":
        now = utcnow().isoformat()
        return cls(
            kind=NodeKind.DOCUMENT,
            labels=["document", f"doc:{target_uuid}"],
            props={
                "label": f"Document for {target_uuid}",
                "targetNodeUuid": target_uuid,
                "data": data,
                "version": 1,
                "createdAt": now,
                "updatedAt": now,
                **props,
            },
        )


@dataclass
class Edge:
    """A typed, weighted, directed relationship between two nodes."""
    from_node: str  # UUID of the source node
    to_node: str    # UUID of the destination node
    rel: str        # The relationship type (e.g., "is_a", "has_value")
    props: Dict[str, Any] = field(default_factory=dict)
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    weight: float = 1.0

    def __post_init__(self):
        self.props = to_jsonable(self.props)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["props"] = to_jsonable(data["props"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            from_node=data["from_node"],
            to_node=data["to_node"],
            rel=data["rel"],
            props=dict(data.get("props", {})),
            uuid=data.get("uuid") or data.get("_key"),
            weight=data.get("weight", 1.0),
        )


@dataclass
class SearchHit:
    """A node returned by a ranked search, with its similarity to the query."""
    node: Node
    similarity: float

    @property
    def uuid(self) -> str:
        return self.node.uuid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.node.uuid,
            "name": self.node.label,
            "kind": self.node.kind,
            "props": self.node.props,
            "similarity": self.similarity,
        }


ASSERTION_STATUSES = ("accepted", "retracted")


def _check_unit_interval(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OutOfRangeError(f"{name} must be a number in [0, 1], got {value!r}", field=name)
    if not 0.0 <= value <= 1.0:
        raise OutOfRangeError(f"{name} must be in [0, 1], got {value}", field=name)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass
class Assertion:
    """An independently scored claim that subject's predicate equals object."""
    subject: str
    predicate: str
    object: Any
    truth: float = 1.0
    strength: float = 1.0
    vote_score: int = 0
    source_rel: float = 1.0
    provenance: Optional[Provenance] = None
    status: str = "accepted"
    created_at: datetime = field(default_factory=utcnow)
    prev_assertion_id: Optional[str] = None
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq: int = 0

    def __post_init__(self):
        for name in ("subject", "predicate", "object"):
            if _is_missing(getattr(self, name)):
                raise MissingFieldError(f"Assertion {name} is required", field=name)
        _check_unit_interval("truth", self.truth)
        _check_unit_interval("strength", self.strength)
        _check_unit_interval("source_rel", self.source_rel)
        if isinstance(self.vote_score, bool) or not isinstance(self.vote_score, int):
            raise OutOfRangeError(f"vote_score must be an integer, got {self.vote_score!r}", field="vote_score")
        if self.status not in ASSERTION_STATUSES:
            raise OutOfRangeError(f"Unknown assertion status '{self.status}'", field="status")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "subject": self.subject,
            "predicate": self.predicate,
            "object": self.object,
            "truth": self.truth,
            "strength": self.strength,
            "voteScore": self.vote_score,
            "sourceRel": self.source_rel,
            "provenance": asdict(self.provenance) if self.provenance else None,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
            "prevAssertionId": self.prev_assertion_id,
        }
