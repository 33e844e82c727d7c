import asyncio
import time

import numpy as np
import pytest

from conftest import HashEmbedding, ScriptedLLM, ScriptedRerank, extraction
from fusionrag.exceptions import (
    ExtractionParseError,
    InputValidationError,
    RateLimitError,
    RerankParseError,
)
from fusionrag.services import parse_extraction_response, parse_keywords_response


# ---------- extraction parsing ----------


def test_parse_entities_and_relationships():
    response = extraction(
        "entity<|#|>Alice<|#|>Person<|#|>Alice is an engineer.",
        "entity<|#|>Acme Corp<|#|>Organization<|#|>A robotics company.",
        "relation<|#|>Alice<|#|>Acme Corp<|#|>employment, robotics<|#|>Alice works at Acme.<|#|>2.5",
    )
    result = parse_extraction_response(response)
    assert [e["entity_name"] for e in result.entities] == ["Alice", "Acme Corp"]
    assert result.entities[0]["entity_type"] == "person"
    assert len(result.relationships) == 1
    rel = result.relationships[0]
    assert (rel["src_id"], rel["tgt_id"]) == ("Alice", "Acme Corp")
    assert rel["weight"] == 2.5
    assert rel["keywords"] == "employment, robotics"


def test_parse_accepts_delimiter_alias_and_default_weight():
    result = parse_extraction_response(
        extraction("relation<#>A<#>B<#>link<#>A links to B.")
    )
    assert result.relationships[0]["weight"] == 1.0


def test_parse_skips_malformed_lines_and_self_loops():
    response = extraction(
        "entity<|#|>Alice<|#|>Person",
        "entity<|#|>Bob<|#|>bad|type<|#|>Bob.",
        "relation<|#|>Alice<|#|>alice<|#|>self<|#|>Self loop.",
        "some chatter the model added",
        "entity<|#|>Carol<|#|>Person<|#|>Carol is a doctor.",
    )
    result = parse_extraction_response(response)
    assert [e["entity_name"] for e in result.entities] == ["Carol"]
    assert result.relationships == []


def test_parse_stops_at_completion_delimiter():
    response = "entity<|#|>A<|#|>concept<|#|>First.\n<|COMPLETE|>\nentity<|#|>B<|#|>concept<|#|>Late."
    result = parse_extraction_response(response)
    assert [e["entity_name"] for e in result.entities] == ["A"]


def test_parse_empty_completed_response_is_valid():
    result = parse_extraction_response("<|COMPLETE|>")
    assert result.entities == [] and result.relationships == []


def test_parse_garbage_raises():
    with pytest.raises(ExtractionParseError):
        parse_extraction_response("I could not find anything useful here.")


def test_parse_truncates_to_limits():
    lines = [f"entity<|#|>E{i}<|#|>concept<|#|>Entity {i}." for i in range(5)]
    result = parse_extraction_response(extraction(*lines), max_entities=3)
    assert len(result.entities) == 3


# ---------- keywords ----------


def test_parse_keywords_response():
    result = parse_keywords_response(
        '{"high_level_keywords": ["AI ethics", ""], "low_level_keywords": ["GPT"]}'
    )
    assert result.high_level_keywords == ["AI ethics"]
    assert result.low_level_keywords == ["GPT"]


def test_parse_keywords_degrades_to_empty():
    result = parse_keywords_response("no json at all")
    assert result.high_level_keywords == [] and result.low_level_keywords == []


async def test_llm_extract_entities_uses_scripted_response():
    llm = ScriptedLLM()
    llm.extractions["Alice"] = extraction("entity<|#|>Alice<|#|>Person<|#|>An engineer.")
    result = await llm.extract_entities("Alice builds robots.", ["Person"])
    assert result.entities[0]["entity_name"] == "Alice"
    assert llm.extraction_calls == 1


async def test_llm_extraction_concurrency_is_capped():
    class SlowLLM(ScriptedLLM):
        def __init__(self):
            super().__init__()
            self._extraction_semaphore = asyncio.Semaphore(2)
            self.in_flight = 0
            self.peak = 0

        async def generate(self, prompt, system_prompt=None, history_messages=None, config=None):
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            await asyncio.sleep(0.01)
            self.in_flight -= 1
            return "<|COMPLETE|>"

    llm = SlowLLM()
    await asyncio.gather(*[llm.extract_entities(f"text {i}", ["Person"]) for i in range(6)])
    assert llm.peak == 2


# ---------- embedding ----------


async def test_embed_batch_validates_input():
    service = HashEmbedding()
    with pytest.raises(InputValidationError):
        await service.embed_batch([])
    with pytest.raises(InputValidationError):
        await service.embed_batch(["ok", "   "])
    assert service.calls == 0


async def test_embed_batch_splits_into_provider_batches():
    service = HashEmbedding(max_batch_size=2)
    vectors = await service.embed_batch(["a", "b", "c", "d", "e"])
    assert vectors.shape == (5, HashEmbedding.DIM)
    assert service.calls == 3


async def test_embed_retries_rate_limit_errors():
    class Flaky(HashEmbedding):
        def __init__(self):
            super().__init__(max_retries=3)
            self.failures_left = 2

        async def _embed_batch(self, texts):
            if self.failures_left:
                self.failures_left -= 1
                self.calls += 1
                raise RateLimitError("slow down")
            return await super()._embed_batch(texts)

    service = Flaky()
    vector = await service.embed("hello")
    assert service.calls == 3
    assert isinstance(vector, np.ndarray)


async def test_embed_gives_up_after_max_retries():
    class AlwaysLimited(HashEmbedding):
        async def _embed_batch(self, texts):
            self.calls += 1
            raise RateLimitError("slow down")

    service = AlwaysLimited(max_retries=3)
    with pytest.raises(RateLimitError):
        await service.embed("hello")
    assert service.calls == 3


async def test_embed_does_not_retry_other_errors():
    class Broken(HashEmbedding):
        async def _embed_batch(self, texts):
            self.calls += 1
            raise ValueError("bad request")

    service = Broken(max_retries=3)
    with pytest.raises(ValueError):
        await service.embed("hello")
    assert service.calls == 1


async def test_embed_keeps_min_interval_between_requests():
    class Timed(HashEmbedding):
        def __init__(self):
            super().__init__(min_interval=0.05)
            self.started: list[float] = []

        async def _embed_batch(self, texts):
            self.started.append(time.monotonic())
            return await super()._embed_batch(texts)

    service = Timed()
    await asyncio.gather(service.embed("one"), service.embed("two"), service.embed("three"))
    gaps = [b - a for a, b in zip(service.started, service.started[1:])]
    assert len(gaps) == 2
    assert all(gap >= 0.045 for gap in gaps)


async def test_embed_rejects_wrong_vector_count():
    class Short(HashEmbedding):
        async def _embed_batch(self, texts):
            return (await super()._embed_batch(texts))[:-1]

    with pytest.raises(ValueError):
        await Short().embed_batch(["a", "b"])


# ---------- rerank ----------


async def test_rerank_sorts_and_cuts_to_top_n():
    service = ScriptedRerank(
        [
            {"index": 0, "relevance_score": 0.2},
            {"index": 2, "relevance_score": 0.9},
            {"index": 1, "relevance_score": 0.5},
        ]
    )
    results = await service.rerank("q", ["a", "b", "c"], top_n=2)
    assert [r.index for r in results] == [2, 1]


async def test_rerank_rejects_out_of_range_index():
    service = ScriptedRerank([{"index": 5, "relevance_score": 0.9}])
    with pytest.raises(RerankParseError):
        await service.rerank("q", ["a", "b"])


async def test_rerank_rejects_malformed_item():
    service = ScriptedRerank([{"relevance_score": 0.9}])
    with pytest.raises(RerankParseError):
        await service.rerank("q", ["a"])


async def test_rerank_validates_documents():
    service = ScriptedRerank([])
    assert await service.rerank("q", []) == []
    with pytest.raises(InputValidationError):
        await service.rerank("q", ["a", " "])
    assert service.calls == []
