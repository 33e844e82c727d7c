import pytest

from conftest import chunk_result, entity, merge, relation
from fusionrag.constants import GRAPH_FIELD_SEP, UNKNOWN_ENTITY_TYPE
from fusionrag.exceptions import MergeError


async def test_entities_merge_by_normalized_name(rag):
    await merge(
        rag,
        [
            chunk_result("c1", [entity("Alice", "c1")]),
            chunk_result("c2", [entity("  ALICE ", "c2")]),
        ],
    )
    graph = rag.chunk_entity_relation_graph
    assert await graph.get_all_labels() == ["alice"]
    node = await graph.get_node("alice")
    assert node["entity_name"] == "Alice"
    assert node["source_id"].split(GRAPH_FIELD_SEP) == ["c1", "c2"]
    assert (await rag.entity_chunks.get_by_id("alice"))["count"] == 2


@pytest.mark.parametrize(
    "first,second",
    [
        (("Alice", "Bob", 1.0), ("Bob", "Alice", 2.0)),
        (("Bob", "Alice", 2.0), ("Alice", "Bob", 1.0)),
    ],
)
async def test_relation_weights_add_up_regardless_of_direction(rag, first, second):
    await merge(rag, [chunk_result("c1", relationships=[relation(first[0], first[1], "c1", first[2])])])
    await merge(rag, [chunk_result("c2", relationships=[relation(second[0], second[1], "c2", second[2])])])

    graph = rag.chunk_entity_relation_graph
    edge = await graph.get_edge("bob", "alice")
    assert edge["weight"] == 3.0
    assert edge["source_id"].split(GRAPH_FIELD_SEP) == ["c1", "c2"]
    provenance = await rag.relation_chunks.get_by_id(f"alice{GRAPH_FIELD_SEP}bob")
    assert provenance["chunk_weights"] == {
        "c1": first[2],
        "c2": second[2],
    }


async def test_relation_weights_add_up_within_one_document(rag):
    await merge(
        rag,
        [
            chunk_result("c1", relationships=[relation("Alice", "Bob", "c1", 1.0, keywords="team")]),
            chunk_result("c2", relationships=[relation("Bob", "Alice", "c2", 2.0, keywords="friends, team")]),
        ],
    )
    edge = await rag.chunk_entity_relation_graph.get_edge("alice", "bob")
    assert edge["weight"] == 3.0
    assert edge["keywords"] == "friends, team"


async def test_remerging_same_chunks_changes_nothing(rag):
    results = [
        chunk_result(
            "c1",
            [entity("Alice", "c1"), entity("Bob", "c1")],
            [relation("Alice", "Bob", "c1", 2.0)],
        )
    ]
    first = await merge(rag, results)
    assert first["entities"] == 2 and first["relations"] == 1

    graph = rag.chunk_entity_relation_graph
    node_before = await graph.get_node("alice")
    edge_before = await graph.get_edge("alice", "bob")

    second = await merge(rag, results)
    assert second == {"entities": 0, "relations": 0, "placeholders": 0, "skipped": 3}
    assert await graph.get_node("alice") == node_before
    assert await graph.get_edge("alice", "bob") == edge_before
    assert (await rag.entity_chunks.get_by_id("alice"))["chunk_ids"] == ["c1"]


async def test_dangling_relation_creates_placeholder_endpoints(rag):
    stats = await merge(
        rag, [chunk_result("c1", [entity("Alice", "c1")], [relation("Alice", "Zed", "c1")])]
    )
    assert stats["placeholders"] == 1

    graph = rag.chunk_entity_relation_graph
    placeholder = await graph.get_node("zed")
    assert placeholder["entity_type"] == UNKNOWN_ENTITY_TYPE
    assert placeholder["entity_name"] == "Zed"
    assert (await graph.get_node("alice"))["entity_type"] == "person"
    assert "zed" in (await rag.full_entities.get_by_id("doc-1"))["entity_names"]


async def test_placeholder_type_is_replaced_by_real_type(rag):
    await merge(rag, [chunk_result("c1", relationships=[relation("Alice", "Zed", "c1")])])
    await merge(rag, [chunk_result("c2", [entity("Zed", "c2", entity_type="location")])], doc_id="doc-2")
    node = await rag.chunk_entity_relation_graph.get_node("zed")
    assert node["entity_type"] == "location"
    assert "alt_entity_types" not in node


async def test_first_type_wins_and_others_are_kept_as_alternates(rag):
    await merge(rag, [chunk_result("c1", [entity("Mercury", "c1", entity_type="planet")])])
    await merge(
        rag,
        [chunk_result("c2", [entity("Mercury", "c2", entity_type="element")])],
        doc_id="doc-2",
    )
    node = await rag.chunk_entity_relation_graph.get_node("mercury")
    assert node["entity_type"] == "planet"
    assert node["alt_entity_types"] == "element"


async def test_few_fragments_are_joined_without_llm(rag, llm):
    await merge(rag, [chunk_result(f"c{i}", [entity("Alice", f"c{i}")]) for i in range(3)])
    node = await rag.chunk_entity_relation_graph.get_node("alice")
    assert llm.summary_calls == 0
    assert len(node["description"].split(GRAPH_FIELD_SEP)) == 3


async def test_many_fragments_trigger_one_summary(rag, llm):
    await merge(rag, [chunk_result(f"c{i}", [entity("Alice", f"c{i}")]) for i in range(5)])
    node = await rag.chunk_entity_relation_graph.get_node("alice")
    assert llm.summary_calls == 1
    assert node["description"] == "SUMMARY"
    assert len(node["source_id"].split(GRAPH_FIELD_SEP)) == 5


async def test_duplicate_descriptions_are_not_repeated(rag, llm):
    same = "Alice is an engineer."
    await merge(
        rag,
        [chunk_result(f"c{i}", [entity("Alice", f"c{i}", description=same)]) for i in range(5)],
    )
    node = await rag.chunk_entity_relation_graph.get_node("alice")
    assert node["description"] == same
    assert llm.summary_calls == 0


async def test_failed_keys_are_collected_and_others_committed(rag, llm):
    llm.fail_summary_for.add("Brokenium")
    results = [chunk_result(f"c{i}", [entity("Brokenium", f"c{i}")]) for i in range(5)]
    results.append(chunk_result("c9", [entity("Alice", "c9")]))

    with pytest.raises(MergeError) as exc_info:
        await merge(rag, results)

    assert [key for key, _ in exc_info.value.failures] == ["brokenium"]
    assert isinstance(exc_info.value.failures[0][1], RuntimeError)
    graph = rag.chunk_entity_relation_graph
    assert await graph.has_node("alice")
    assert not await graph.has_node("brokenium")


async def test_document_index_records_entities_and_relations(rag):
    await merge(
        rag,
        [chunk_result("c1", [entity("Alice", "c1"), entity("Bob", "c1")], [relation("Bob", "Alice", "c1")])],
    )
    entities = await rag.full_entities.get_by_id("doc-1")
    relations = await rag.full_relations.get_by_id("doc-1")
    assert entities["entity_names"] == ["alice", "bob"]
    assert relations["relation_pairs"] == [["alice", "bob"]]
    assert relations["count"] == 1


async def test_entity_and_relation_vectors_are_written(rag):
    await merge(rag, [chunk_result("c1", [entity("Alice", "c1")], [relation("Alice", "Bob", "c1")])])
    hits = await rag.entities_vdb.query("Alice", top_k=5)
    assert {h["entity_key"] for h in hits} == {"alice", "bob"}
    rel_hits = await rag.relationships_vdb.query("link", top_k=5)
    assert [(h["src_id"], h["tgt_id"]) for h in rel_hits] == [("alice", "bob")]


async def test_single_oversize_fragment_is_summarized(rag, llm):
    rag._global_config["summary_max_tokens"] = 5
    long_description = " ".join(f"word{i}" for i in range(50))
    await merge(rag, [chunk_result("c1", [entity("Alice", "c1", description=long_description)])])
    node = await rag.chunk_entity_relation_graph.get_node("alice")
    assert llm.summary_calls == 1
    assert node["description"] == "SUMMARY"


async def test_placeholder_description_is_dropped_on_first_real_merge(rag):
    await merge(
        rag,
        [chunk_result("c1", relationships=[relation("Alice", "Zed", "c1", description="Alice walks Zed.")])],
    )
    graph = rag.chunk_entity_relation_graph
    placeholder = await graph.get_node("zed")
    assert placeholder["is_placeholder"] is True
    assert placeholder["description"] == "Alice walks Zed."

    await merge(
        rag,
        [chunk_result("c2", [entity("Zed", "c2", entity_type="animal", description="Zed is a dog.")])],
        doc_id="doc-2",
    )
    node = await graph.get_node("zed")
    assert node["description"] == "Zed is a dog."
    assert node["is_placeholder"] is False
    assert node["source_id"].split(GRAPH_FIELD_SEP) == ["c1", "c2"]
    # 关系本身的描述不受影响
    assert (await graph.get_edge("alice", "zed"))["description"] == "Alice walks Zed."
