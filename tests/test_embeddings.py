import pytest

from src.knowshowgo.embeddings import EmbeddingAggregator
from src.knowshowgo.errors import MissingFieldError, NotFoundError
from src.knowshowgo.models import Edge, Node, NodeKind, Provenance, Rel
from src.knowshowgo.networkx_memory import NetworkXMemoryTools
from src.knowshowgo.prototypes import PrototypeManager
from src.knowshowgo.similarity import TEXT_MATCH_SCORE, cosine, mean_embedding

VECTORS = {
    "Alpha": [0.0, 0.0, 1.0],
    "Beta": [0.0, 0.0, 1.0],
    "python": [1.0, 0.0, 0.0],
    "ml": [0.0, 1.0, 0.0],
}


def table_embed(text):
    return VECTORS.get(text, [0.0, 0.0, 1.0])


@pytest.fixture
def memory():
    return NetworkXMemoryTools()


@pytest.fixture
def aggregator(memory):
    return EmbeddingAggregator(memory, table_embed)


def _upsert_concept(memory, label, embedding):
    node = Node.concept(None, {"name": label})
    node.llm_embedding = embedding
    memory.upsert(node, Provenance.now(trace_id="embed-test"))
    return node.uuid


def test_mean_embedding():
    assert mean_embedding([[1.0, 0.0], [0.0, 1.0]]) == [0.5, 0.5]
    assert mean_embedding([[1.0, 0.0], [0.0, 1.0]], weights=[3.0, 1.0]) == [0.75, 0.25]
    # mismatched dimensions are skipped
    assert mean_embedding([[1.0, 0.0], [1.0, 1.0, 1.0]]) == [1.0, 0.0]
    assert mean_embedding([]) is None


def test_cosine_edge_cases():
    assert cosine([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
    assert cosine([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
    assert cosine(None, [1.0]) == 0.0


def test_document_node_structure(memory, aggregator):
    uuid = aggregator.create_node_with_document(
        "Alpha", tags=["python", "ml"], metadata={"source": "notes"}
    )
    docs = memory.edges_from(uuid, Rel.HAS_DOCUMENT)
    assert len(docs) == 1
    doc = memory.get_node(docs[0].to_node)
    assert doc.kind == NodeKind.DOCUMENT
    assert doc.props["version"] == 1
    assert doc.props["data"] == {"source": "notes"}
    assert len(doc.props["tags"]) == 2
    assert len(memory.edges_from(uuid, Rel.HAS_TAG)) == 2


def test_metadata_cannot_override_label_or_summary(memory, aggregator):
    uuid = aggregator.create_node_with_document(
        "Alpha",
        summary="first letter",
        metadata={"name": "Omega", "label": "Omega", "summary": "last", "source": "notes"},
    )
    node = memory.get_node(uuid)
    assert node.label == "Alpha"
    assert node.props["summary"] == "first letter"
    assert node.props["source"] == "notes"
    doc = memory.get_node(memory.edges_from(uuid, Rel.HAS_DOCUMENT)[0].to_node)
    assert doc.props["data"]["name"] == "Omega"


def test_tags_are_reused_by_text(memory, aggregator):
    first = aggregator.create_node_with_document("Alpha", tags=["python"])
    second = aggregator.create_node_with_document("Beta", tags=["python", "python"])

    tags = [n for n in memory.list_nodes() if n.kind == NodeKind.TAG]
    assert len(tags) == 1
    assert memory.edges_from(first, Rel.HAS_TAG)[0].to_node == tags[0].uuid
    assert len(memory.edges_from(second, Rel.HAS_TAG)) == 1


def test_embedding_is_mean_of_label_and_tags(memory, aggregator):
    uuid = aggregator.create_node_with_document("Alpha", tags=["python", "ml"])
    assert memory.get_node(uuid).llm_embedding == pytest.approx([1 / 3, 1 / 3, 1 / 3])


def test_association_weight_biases_embedding(memory, aggregator):
    target = _upsert_concept(memory, "Target", [1.0, 0.0, 0.0])
    uuid = aggregator.create_node_with_document(
        "Beta", associations=[{"target_uuid": target, "rel": "related_to", "weight": 3.0}]
    )
    assert memory.get_node(uuid).llm_embedding == pytest.approx([0.75, 0.0, 0.25])
    edge = memory.get_edge(uuid, target, "related_to")
    assert edge.weight == 3.0


def test_unknown_association_target_writes_nothing(memory, aggregator):
    with pytest.raises(NotFoundError):
        aggregator.create_node_with_document("Alpha", tags=["python"], associations=[{"target_uuid": "missing"}])
    with pytest.raises(MissingFieldError):
        aggregator.create_node_with_document("Alpha", associations=[{"rel": "related_to"}])
    assert memory.list_nodes() == []


def test_update_node_embedding_after_new_association(memory, aggregator):
    uuid = aggregator.create_node_with_document("Alpha")
    assert memory.get_node(uuid).llm_embedding == pytest.approx([0.0, 0.0, 1.0])

    target = _upsert_concept(memory, "Target", [1.0, 0.0, 0.0])
    memory.upsert(Edge(from_node=uuid, to_node=target, rel="related_to"), Provenance.now())
    assert aggregator.update_node_embedding(uuid) == pytest.approx([0.5, 0.0, 0.5])
    assert memory.get_node(uuid).llm_embedding == pytest.approx([0.5, 0.0, 0.5])
    assert aggregator.update_node_embedding("missing") is None


def test_search_threshold_returns_empty_list(memory, aggregator):
    _upsert_concept(memory, "a", [1.0, 0.0, 0.0])
    _upsert_concept(memory, "b", [0.0, 0.0, 1.0])

    hits = aggregator.search_concepts("q", top_k=5, similarity_threshold=0.9, query_embedding=[0.0, 1.0, 0.0])
    assert hits == []


def test_search_threshold_applied_before_top_k(memory, aggregator):
    exact = _upsert_concept(memory, "exact", [1.0, 0.0, 0.0])
    _upsert_concept(memory, "orthogonal", [0.0, 1.0, 0.0])
    near = _upsert_concept(memory, "near", [1.0, 1.0, 0.0])

    hits = aggregator.search_concepts("q", top_k=5, similarity_threshold=0.7, query_embedding=[1.0, 0.0, 0.0])
    assert [h.uuid for h in hits] == [exact, near]
    assert hits[0].similarity == pytest.approx(1.0)


def test_search_ties_keep_insertion_order(memory, aggregator):
    first = _upsert_concept(memory, "first", [0.0, 1.0, 0.0])
    second = _upsert_concept(memory, "second", [0.0, 1.0, 0.0])
    hits = aggregator.search_concepts("q", top_k=2, query_embedding=[0.0, 1.0, 0.0])
    assert [h.uuid for h in hits] == [first, second]


def test_search_falls_back_to_label_match(memory):
    aggregator = EmbeddingAggregator(memory, None)
    uuid = aggregator.create_node_with_document("Alpha Centauri", summary="star")
    _upsert_concept(memory, "Betelgeuse", None)

    hits = aggregator.search_concepts("alpha")
    assert [h.uuid for h in hits] == [uuid]
    assert hits[0].similarity == TEXT_MATCH_SCORE


def test_numeric_name_becomes_string_label(memory):
    aggregator = EmbeddingAggregator(memory, None)
    node = Node.concept(None, {"name": 42})
    memory.upsert(node, Provenance.now(trace_id="embed-test"))

    assert node.label == "42"
    assert node.labels == ["42"]
    hits = aggregator.search_concepts("4")
    assert [h.uuid for h in hits] == [node.uuid]


def test_search_skips_superseded_versions(memory, aggregator):
    manager = PrototypeManager(memory)
    proto = manager.create_prototype("Person")
    v1 = manager.create_concept(proto, {"name": "Alice"}, embedding=[1.0, 0.0, 0.0])
    v2 = manager.create_concept(proto, {"name": "Alice"}, previous_version_uuid=v1, embedding=[1.0, 0.0, 0.0])

    hits = aggregator.search_concepts("alice", query_embedding=[1.0, 0.0, 0.0])
    assert [h.uuid for h in hits] == [v2]
    everything = aggregator.search_concepts("alice", query_embedding=[1.0, 0.0, 0.0], include_superseded=True)
    assert [h.uuid for h in everything] == [v1, v2]


def test_failing_embedder_is_tolerated(memory):
    def broken(text):
        raise RuntimeError("model offline")

    aggregator = EmbeddingAggregator(memory, broken)
    uuid = aggregator.create_node_with_document("Alpha", tags=["python"])
    assert memory.get_node(uuid).llm_embedding is None
