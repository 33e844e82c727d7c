import hashlib
import json

import numpy as np
import pytest

from fusionrag import FusionRAG
from fusionrag.operate import merge_nodes_and_edges
from fusionrag.services import BaseEmbeddingService, BaseLLMService, BaseRerankService
from fusionrag.utils import Tokenizer


class WordCodec:
    """Whitespace tokenizer: one token per word, ids assigned on first sight."""

    def __init__(self):
        self.vocab: dict[str, int] = {}
        self.words: list[str] = []

    def encode(self, content: str) -> list[int]:
        ids = []
        for word in content.split():
            if word not in self.vocab:
                self.vocab[word] = len(self.words)
                self.words.append(word)
            ids.append(self.vocab[word])
        return ids

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self.words[t] for t in tokens)


class HashEmbedding(BaseEmbeddingService):
    """Bag-of-words embedding: a constant component plus one md5 bucket per word."""

    DIM = 32

    def __init__(self, **kwargs):
        kwargs.setdefault("min_interval", 0)
        kwargs.setdefault("retry_backoff", 0)
        super().__init__(embedding_dim=self.DIM, **kwargs)
        self.calls = 0

    async def _embed_batch(self, texts):
        self.calls += 1
        vectors = np.zeros((len(texts), self.DIM), dtype=np.float32)
        for i, text in enumerate(texts):
            vectors[i, 0] = 1.0
            for word in text.lower().split():
                bucket = 1 + int(hashlib.md5(word.encode()).hexdigest(), 16) % (self.DIM - 1)
                vectors[i, bucket] += 1.0
        return vectors


class ScriptedLLM(BaseLLMService):
    """Answers by prompt kind: summaries, keywords, scripted extractions, answers."""

    def __init__(self):
        super().__init__(max_concurrent_extractions=4, language="English")
        # 文本片段 -> 抽取结果
        self.extractions: dict[str, str] = {}
        self.keywords = {"high_level_keywords": [], "low_level_keywords": []}
        self.answer = "ANSWER"
        self.summary_calls = 0
        self.extraction_calls = 0
        self.fail_summary_for: set[str] = set()
        self.answer_prompts: list[tuple[str, str | None]] = []

    async def generate(self, prompt, system_prompt=None, history_messages=None, config=None):
        if "Description List" in prompt:
            self.summary_calls += 1
            for name in self.fail_summary_for:
                if name in prompt:
                    raise RuntimeError(f"summary failed for {name}")
            return "SUMMARY"
        if "high_level_keywords" in prompt:
            return json.dumps(self.keywords)
        if system_prompt and "extracting entities" in system_prompt:
            self.extraction_calls += 1
            for marker, response in self.extractions.items():
                if marker in prompt:
                    return response
            return "<|COMPLETE|>"
        self.answer_prompts.append((prompt, system_prompt))
        return self.answer


class ScriptedRerank(BaseRerankService):
    def __init__(self, results):
        self.results = results
        self.calls: list[list[str]] = []

    async def _rerank(self, query, documents, top_n):
        self.calls.append(list(documents))
        return self.results


def extraction(*records: str) -> str:
    """Join delimited records into an extraction response."""
    return "\n".join(list(records) + ["<|COMPLETE|>"])


def entity(name, chunk, entity_type="person", description=None, timestamp=1):
    return {
        "entity_name": name,
        "entity_type": entity_type,
        "description": description or f"{name} from {chunk}",
        "source_id": chunk,
        "file_path": "notes.txt",
        "timestamp": timestamp,
    }


def relation(src, tgt, chunk, weight=1.0, keywords="link", description=None, timestamp=1):
    return {
        "src_id": src,
        "tgt_id": tgt,
        "weight": weight,
        "keywords": keywords,
        "description": description or f"{src} and {tgt} in {chunk}",
        "source_id": chunk,
        "file_path": "notes.txt",
        "timestamp": timestamp,
    }


def chunk_result(chunk_id, entities=(), relationships=()):
    return {
        "chunk_id": chunk_id,
        "chunk_order_index": 0,
        "embedding": None,
        "entities": list(entities),
        "relationships": list(relationships),
    }


async def merge(rag, results, doc_id="doc-1"):
    """Merge chunk results straight into the storages of a FusionRAG instance."""
    return await merge_nodes_and_edges(
        chunk_results=results,
        knowledge_graph_inst=rag.chunk_entity_relation_graph,
        entity_vdb=rag.entities_vdb,
        relationships_vdb=rag.relationships_vdb,
        global_config=rag._global_config,
        full_entities_storage=rag.full_entities,
        full_relations_storage=rag.full_relations,
        doc_id=doc_id,
        entity_chunks_storage=rag.entity_chunks,
        relation_chunks_storage=rag.relation_chunks,
    )


@pytest.fixture
def tokenizer():
    return Tokenizer("word", WordCodec())


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def embedding():
    return HashEmbedding()


@pytest.fixture
async def rag(tmp_path, tokenizer, llm, embedding):
    instance = FusionRAG(
        working_dir=str(tmp_path / "rag"),
        workspace="",
        llm_service=llm,
        embedding_service=embedding,
        tokenizer=tokenizer,
        chunk_token_size=60,
        chunk_overlap_token_size=10,
        cosine_better_than_threshold=0.0,
        llm_model_max_async=2,
    )
    await instance.initialize_storages()
    yield instance
    await instance.finalize_storages()
