import pytest

from conftest import ScriptedRerank, chunk_result, entity, merge, relation
from fusionrag.base import QueryParam
from fusionrag.operate import (
    _merge_chunk_candidates,
    _render_entity,
    _render_relation,
    _rerank_chunks,
)
from fusionrag.prompt import PROMPTS


@pytest.fixture
async def chain_rag(rag):
    """Twelve concept entities E0..E11 linked in a chain, one chunk each."""
    results = []
    for k in range(12):
        relationships = [relation(f"E{k}", f"E{k + 1}", f"c{k}")] if k < 11 else []
        results.append(
            chunk_result(f"c{k}", [entity(f"E{k}", f"c{k}", entity_type="concept")], relationships)
        )
    await merge(rag, results)
    return rag


def _section_tokens(tokenizer, items, render):
    return sum(tokenizer.count_tokens(render(item)) for item in items)


async def test_section_budgets_are_respected(chain_rag, tokenizer):
    param = QueryParam(
        mode="local",
        ll_keywords=["concept entity"],
        only_need_context=True,
        max_entity_tokens=40,
        max_relation_tokens=40,
        max_total_tokens=400,
        enable_rerank=False,
    )
    result = await chain_rag.aquery("which concepts are linked?", param)
    data = result.raw_data["data"]
    truncated = result.metadata["truncated"]

    assert truncated["entities"] and truncated["relationships"]
    assert len(data["entities"]) == 8
    assert len(data["relationships"]) == 4
    assert _section_tokens(tokenizer, data["entities"], _render_entity) <= 40
    assert _section_tokens(tokenizer, data["relationships"], _render_relation) <= 40
    assert tokenizer.count_tokens(result.content) <= 400
    assert result.metadata["processing_info"]["total_entities_found"] == 12


async def test_total_ceiling_trims_graph_sections(chain_rag, tokenizer):
    param = QueryParam(
        mode="local",
        ll_keywords=["concept entity"],
        only_need_context=True,
        max_entity_tokens=1000,
        max_relation_tokens=1000,
        max_total_tokens=80,
        enable_rerank=False,
    )
    result = await chain_rag.aquery("which concepts are linked?", param)
    assert tokenizer.count_tokens(result.content) <= 80
    assert result.metadata["truncated"]["entities"]
    assert PROMPTS["context_references_header"] in result.content


async def test_entities_are_ranked_by_degree_first(rag):
    await merge(
        rag,
        [
            chunk_result(
                "h1",
                [entity("Hub", "h1"), entity("Lone", "h1")],
                [relation("Hub", name, "h1") for name in ("A", "B", "C")],
            )
        ],
    )
    param = QueryParam(mode="local", ll_keywords=["Lone"], only_need_context=True)
    data = (await rag.aquery("who is lone?", param)).raw_data["data"]
    names = [e["entity_name"] for e in data["entities"]]
    assert names[0] == "Hub"
    assert names[-1] == "Lone"


async def test_global_mode_expands_relations_to_endpoints(chain_rag):
    param = QueryParam(mode="global", hl_keywords=["link"], only_need_context=True, top_k=1)
    data = (await chain_rag.aquery("how are things linked?", param)).raw_data["data"]
    assert len(data["relationships"]) == 1
    rel = data["relationships"][0]
    assert {e["entity_key"] for e in data["entities"]} == {rel["src_id"], rel["tgt_id"]}


async def test_no_match_returns_fail_response(rag, llm):
    llm.keywords = {"high_level_keywords": ["themes"], "low_level_keywords": ["nothing"]}
    result = await rag.aquery("what is in the empty store?", QueryParam(mode="mix"))
    assert result.content == PROMPTS["fail_response"]
    assert result.raw_data["status"] == "failure"
    assert llm.answer_prompts == []


async def test_long_query_without_keywords_returns_fail_response(chain_rag):
    query = "please tell me everything you know about all of the concepts in this store"
    assert len(query) >= 50
    result = await chain_rag.aquery(query, QueryParam(mode="local", only_need_context=True))
    assert result.content == PROMPTS["fail_response"]


async def test_short_query_falls_back_to_itself_as_keyword(chain_rag):
    result = await chain_rag.aquery("E3", QueryParam(mode="local", only_need_context=True))
    assert result.metadata["keywords"]["low_level"] == ["E3"]
    assert result.raw_data["data"]["entities"]


async def test_supplied_keywords_skip_extraction(chain_rag, llm):
    llm.keywords = {"high_level_keywords": ["ignored"], "low_level_keywords": ["ignored"]}
    param = QueryParam(mode="local", ll_keywords=["E5"], only_need_context=True)
    result = await chain_rag.aquery("tell me about E5", param)
    assert result.metadata["keywords"] == {"high_level": [], "low_level": ["E5"]}


async def test_only_need_prompt_returns_full_prompt(chain_rag):
    param = QueryParam(
        mode="local", ll_keywords=["E1"], only_need_prompt=True, user_prompt="Answer briefly."
    )
    result = await chain_rag.aquery("what is E1?", param)
    assert "---User Query---" in result.content
    assert result.content.endswith("what is E1?")
    assert "Answer briefly." in result.content


async def test_answer_is_generated_from_context(chain_rag, llm):
    param = QueryParam(mode="local", ll_keywords=["E1"])
    result = await chain_rag.aquery("what is E1?", param)
    assert result.content == "ANSWER"
    prompt, system_prompt = llm.answer_prompts[-1]
    assert prompt == "what is E1?"
    assert PROMPTS["context_entities_header"] in system_prompt


async def test_streaming_answer(chain_rag):
    param = QueryParam(mode="local", ll_keywords=["E1"], stream=True)
    result = await chain_rag.aquery("what is E1?", param)
    assert result.is_streaming
    pieces = [piece async for piece in result.response_iterator]
    assert "".join(pieces) == "ANSWER"
    assert result.raw_data["status"] == "success"


def test_chunk_candidates_dedup_keeps_highest_score():
    vector_hits = [{"chunk_id": "c1", "content": "x", "score": 0.9, "source_type": "vector"}]
    entity_hits = [
        {"chunk_id": "c1", "content": "x", "score": 0.4, "source_type": "entity"},
        {"chunk_id": "c2", "content": "y", "score": 0.5, "source_type": "entity"},
    ]
    merged = _merge_chunk_candidates(vector_hits, entity_hits)
    assert [(c["chunk_id"], c["score"], c["source_type"]) for c in merged] == [
        ("c1", 0.9, "vector"),
        ("c2", 0.5, "entity"),
    ]


def _chunks(n):
    return [
        {"chunk_id": f"C{i}", "content": f"chunk {i}", "score": 1.0 - i / 100}
        for i in range(1, n + 1)
    ]


async def test_rerank_reorders_and_cuts_to_chunk_top_k():
    rerank = ScriptedRerank(
        [
            {"index": 2, "relevance_score": 0.95},
            {"index": 0, "relevance_score": 0.5},
            {"index": 1, "relevance_score": 0.1},
        ]
    )
    param = QueryParam(chunk_top_k=2, enable_rerank=True)
    result = await _rerank_chunks("q", _chunks(3), param, {"rerank_service": rerank})
    assert [c["chunk_id"] for c in result] == ["C3", "C1"]
    assert result[0]["rerank_score"] == 0.95


async def test_rerank_candidates_are_capped():
    rerank = ScriptedRerank([{"index": 0, "relevance_score": 0.5}])
    param = QueryParam(chunk_top_k=2, enable_rerank=True)
    await _rerank_chunks(
        "q", _chunks(10), param, {"rerank_service": rerank, "rerank_candidate_factor": 3}
    )
    assert len(rerank.calls[0]) == 6


async def test_rerank_disabled_keeps_similarity_order():
    rerank = ScriptedRerank([])
    param = QueryParam(chunk_top_k=2, enable_rerank=False)
    result = await _rerank_chunks("q", _chunks(3), param, {"rerank_service": rerank})
    assert [c["chunk_id"] for c in result] == ["C1", "C2"]
    assert rerank.calls == []
