"""
Collaborator service contracts.

Concrete adapters subclass these bases and implement only the transport hook
(``generate`` / ``_embed_batch`` / ``_rerank``). Prompting, parsing, batching,
throttling, retry and validation live here so every adapter behaves the same way.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import json_repair
import numpy as np
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .base import (
    EntityExtractionResult,
    KeywordsResult,
    LLMCallConfig,
    RerankResult,
)
from .constants import (
    DEFAULT_EMBEDDING_BATCH_NUM,
    DEFAULT_EMBEDDING_MAX_RETRIES,
    DEFAULT_EMBEDDING_MIN_INTERVAL,
    DEFAULT_EMBEDDING_RETRY_BACKOFF,
    DEFAULT_EMBEDDING_RETRY_MAX_WAIT,
    DEFAULT_MAX_ENTITIES_PER_CHUNK,
    DEFAULT_MAX_EXTRACTION_ASYNC,
    DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK,
    DEFAULT_SUMMARY_LANGUAGE,
)
from .exceptions import (
    APIConnectionError,
    APITimeoutError,
    ExtractionParseError,
    InputValidationError,
    RateLimitError,
    RerankParseError,
)
from .prompt import PROMPTS
from .utils import (
    get_content_summary,
    get_env_value,
    is_float_regex,
    logger,
    sanitize_and_normalize_extracted_text,
    split_string_by_multi_markers,
)

# 仅对瞬时错误重试
RETRYABLE_ERRORS = (RateLimitError, APITimeoutError, APIConnectionError)


def _handle_single_entity_extraction(record_attributes: list[str]) -> dict | None:
    if len(record_attributes) < 4 or record_attributes[0].strip().lower() != "entity":
        return None

    entity_name = sanitize_and_normalize_extracted_text(
        record_attributes[1], remove_inner_quotes=True
    )
    if not entity_name:
        logger.warning("Entity extraction error: empty entity name")
        return None

    # 类型去空格、小写
    entity_type = sanitize_and_normalize_extracted_text(
        record_attributes[2], remove_inner_quotes=True
    )
    entity_type = entity_type.replace(" ", "").lower()
    if not entity_type or any(c in entity_type for c in "()<>|/\\"):
        logger.warning(
            f"Entity extraction error: invalid entity type for '{entity_name}'"
        )
        return None

    description = sanitize_and_normalize_extracted_text(record_attributes[3])
    if not description:
        logger.warning(
            f"Entity extraction error: empty description for '{entity_name}'"
        )
        return None

    return {
        "entity_name": entity_name,
        "entity_type": entity_type,
        "description": description,
    }


def _handle_single_relationship_extraction(record_attributes: list[str]) -> dict | None:
    if (
        len(record_attributes) < 5
        or record_attributes[0].strip().lower() not in ("relation", "relationship")
    ):
        return None

    source = sanitize_and_normalize_extracted_text(
        record_attributes[1], remove_inner_quotes=True
    )
    target = sanitize_and_normalize_extracted_text(
        record_attributes[2], remove_inner_quotes=True
    )
    if not source or not target:
        logger.warning("Relationship extraction error: empty endpoint")
        return None
    if source.casefold() == target.casefold():
        logger.debug(f"Relationship extraction: dropping self loop on '{source}'")
        return None

    keywords = sanitize_and_normalize_extracted_text(
        record_attributes[3], remove_inner_quotes=True
    )
    keywords = keywords.replace("，", ",")
    description = sanitize_and_normalize_extracted_text(record_attributes[4])

    # 可选的第 6 个字段：权重
    weight = 1.0
    if len(record_attributes) >= 6:
        weight_str = record_attributes[5].strip().strip("\"'")
        if is_float_regex(weight_str):
            weight = float(weight_str)
    if weight < 0:
        weight = 0.0

    return {
        "src_id": source,
        "tgt_id": target,
        "weight": weight,
        "description": description,
        "keywords": keywords,
    }


def parse_extraction_response(
    response: str,
    max_entities: int = DEFAULT_MAX_ENTITIES_PER_CHUNK,
    max_relationships: int = DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK,
) -> EntityExtractionResult:
    """Parse delimited entity/relation records out of an extraction response.

    One record per line; fields are separated by ``<|#|>`` (``<#>`` is accepted too).
    Parsing stops at the completion sentinel. Malformed lines are skipped.

    Raises:
        ExtractionParseError: nothing parseable and no completion sentinel, i.e.
            the response is not an extraction result at all.
    """
    tuple_delimiters = [PROMPTS["DEFAULT_TUPLE_DELIMITER"]] + PROMPTS[
        "DEFAULT_TUPLE_DELIMITER_ALIASES"
    ]
    completion_delimiter = PROMPTS["DEFAULT_COMPLETION_DELIMITER"]

    result = EntityExtractionResult()
    response = response or ""
    completed = False
    for line in response.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith(completion_delimiter):
            completed = True
            break
        if completion_delimiter in line:
            line = line.split(completion_delimiter, 1)[0]
            completed = True
        record_attributes = split_string_by_multi_markers(line, tuple_delimiters)
        if record_attributes:
            record_attributes[0] = record_attributes[0].strip("()`*- ")

        entity = _handle_single_entity_extraction(record_attributes)
        if entity is not None:
            result.entities.append(entity)
        else:
            relation = _handle_single_relationship_extraction(record_attributes)
            if relation is not None:
                result.relationships.append(relation)
        if completed:
            break

    if not completed and not result.entities and not result.relationships:
        logger.warning(
            f"Unparseable extraction response: {get_content_summary(response)}"
        )
        raise ExtractionParseError(
            "Extraction response contained no entity or relation records",
            payload_preview=get_content_summary(response),
        )

    if len(result.entities) > max_entities or len(result.relationships) > max_relationships:
        logger.warning(
            f"Extraction exceeded limits: entities {len(result.entities)}/{max_entities}, "
            f"relationships {len(result.relationships)}/{max_relationships}. Truncating..."
        )
        result.entities = result.entities[:max_entities]
        result.relationships = result.relationships[:max_relationships]
    return result


def parse_keywords_response(response: str) -> KeywordsResult:
    """Parse the keyword-extraction JSON. Any failure degrades to empty keyword lists."""
    try:
        keywords_data = json_repair.loads(response or "")
    except Exception as e:
        logger.warning(
            f"Keyword extraction parse failed ({type(e).__name__}): "
            f"{get_content_summary(response)}"
        )
        return KeywordsResult()

    if not isinstance(keywords_data, dict):
        logger.warning(
            f"Keyword extraction returned no JSON object: {get_content_summary(response)}"
        )
        return KeywordsResult()

    def _clean(values: Any) -> list[str]:
        if not isinstance(values, list):
            return []
        return [str(v).strip() for v in values if v is not None and str(v).strip()]

    return KeywordsResult(
        high_level_keywords=_clean(keywords_data.get("high_level_keywords")),
        low_level_keywords=_clean(keywords_data.get("low_level_keywords")),
    )


# LLM 服务基类
class BaseLLMService(ABC):
    """Language-model collaborator.

    Subclasses implement ``generate`` (and optionally ``generate_stream``).
    Entity extraction calls go through a shared semaphore so at most
    ``max_concurrent_extractions`` of them are in flight; callers over the cap wait.
    """

    def __init__(
        self,
        max_concurrent_extractions: int = get_env_value(
            "MAX_EXTRACTION_ASYNC", DEFAULT_MAX_EXTRACTION_ASYNC, int
        ),
        language: str = get_env_value("SUMMARY_LANGUAGE", DEFAULT_SUMMARY_LANGUAGE),
    ):
        self.max_concurrent_extractions = max_concurrent_extractions
        self.language = language
        self._extraction_semaphore = asyncio.Semaphore(max_concurrent_extractions)

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history_messages: list[dict[str, str]] | None = None,
        config: LLMCallConfig | None = None,
    ) -> str:
        """Return the complete model response for ``prompt``."""

    async def generate_stream(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history_messages: list[dict[str, str]] | None = None,
        config: LLMCallConfig | None = None,
    ) -> AsyncIterator[str]:
        # 默认实现：一次性返回完整结果
        yield await self.generate(prompt, system_prompt, history_messages, config)

    async def extract_entities(
        self,
        text: str,
        entity_types: list[str],
        max_entities: int = DEFAULT_MAX_ENTITIES_PER_CHUNK,
        max_relationships: int = DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK,
        config: LLMCallConfig | None = None,
    ) -> EntityExtractionResult:
        context_base = dict(
            tuple_delimiter=PROMPTS["DEFAULT_TUPLE_DELIMITER"],
            completion_delimiter=PROMPTS["DEFAULT_COMPLETION_DELIMITER"],
            entity_types=", ".join(entity_types),
            language=self.language,
            max_entities=max_entities,
            max_relationships=max_relationships,
        )
        system_prompt = PROMPTS["entity_extraction_system_prompt"].format(**context_base)
        user_prompt = PROMPTS["entity_extraction_user_prompt"].format(
            **context_base, input_text=text
        )

        started = time.monotonic()
        async with self._extraction_semaphore:
            waited = time.monotonic() - started
            if waited > 1.0:
                logger.warning(
                    f"Extraction slot wait was {waited:.1f}s for text length {len(text)}"
                )
            response = await self.generate(
                user_prompt, system_prompt=system_prompt, config=config
            )
        return parse_extraction_response(response, max_entities, max_relationships)

    async def extract_keywords(
        self, query: str, config: LLMCallConfig | None = None
    ) -> KeywordsResult:
        prompt = PROMPTS["keywords_extraction"].format(query=query)
        response = await self.generate(prompt, config=config)
        return parse_keywords_response(response)

    async def summarize(
        self,
        description_type: str,
        description_name: str,
        description_list: list[str],
        summary_length: int,
        config: LLMCallConfig | None = None,
    ) -> str:
        json_descriptions = "\n".join(
            json.dumps({"Description": d}, ensure_ascii=False)
            for d in description_list
        )
        prompt = PROMPTS["summarize_entity_descriptions"].format(
            description_type=description_type,
            description_name=description_name,
            description_list=json_descriptions,
            summary_length=summary_length,
            language=self.language,
        )
        return (await self.generate(prompt, config=config)).strip()


# 嵌入服务基类
class BaseEmbeddingService(ABC):
    """Embedding collaborator.

    ``embed_batch`` validates the input, splits it into provider batches and sends
    each batch through a single-slot gate that keeps ``min_interval`` seconds
    between requests. Rate-limit and timeout errors are retried with exponential
    backoff; anything else propagates on the first failure.
    """

    def __init__(
        self,
        embedding_dim: int,
        max_token_size: int = 8192,
        max_batch_size: int = get_env_value(
            "EMBEDDING_BATCH_NUM", DEFAULT_EMBEDDING_BATCH_NUM, int
        ),
        min_interval: float = get_env_value(
            "EMBEDDING_MIN_INTERVAL", DEFAULT_EMBEDDING_MIN_INTERVAL, float
        ),
        max_retries: int = get_env_value(
            "EMBEDDING_MAX_RETRIES", DEFAULT_EMBEDDING_MAX_RETRIES, int
        ),
        retry_backoff: float = DEFAULT_EMBEDDING_RETRY_BACKOFF,
        retry_max_wait: float = DEFAULT_EMBEDDING_RETRY_MAX_WAIT,
        model_name: str | None = None,
    ):
        self.embedding_dim = embedding_dim
        self.max_token_size = max_token_size
        self.max_batch_size = max_batch_size
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.retry_max_wait = retry_max_wait
        self.model_name = model_name
        self._gate = asyncio.Lock()
        self._last_request_at: float | None = None

    @abstractmethod
    async def _embed_batch(self, texts: list[str]) -> list[list[float]] | np.ndarray:
        """Provider call for one batch; must return one vector per text."""

    async def embed(self, text: str) -> np.ndarray:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        if not texts:
            raise InputValidationError("Texts to embed cannot be empty")
        for i, text in enumerate(texts):
            if text is None or not str(text).strip():
                raise InputValidationError(
                    f"Text at index {i} is empty or whitespace only"
                )

        results: list[np.ndarray] = []
        for start in range(0, len(texts), self.max_batch_size):
            batch = texts[start : start + self.max_batch_size]
            vectors = await self._embed_with_retry(batch)
            if len(vectors) != len(batch):
                raise ValueError(
                    f"Embedding service returned {len(vectors)} vectors for {len(batch)} texts"
                )
            results.append(vectors)
        return np.concatenate(results, axis=0)

    async def _embed_with_retry(self, batch: list[str]) -> np.ndarray:
        vectors = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.retry_backoff, min=0, max=self.retry_max_wait
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                vectors = await self._throttled_call(batch)
        return vectors

    async def _throttled_call(self, batch: list[str]) -> np.ndarray:
        # 单槽闸门：请求之间至少间隔 min_interval 秒
        async with self._gate:
            if self._last_request_at is not None:
                elapsed = time.monotonic() - self._last_request_at
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
            try:
                vectors = await self._embed_batch(batch)
            finally:
                self._last_request_at = time.monotonic()
        return np.asarray(vectors, dtype=np.float32)


# 重排序服务基类
class BaseRerankService(ABC):
    """Rerank collaborator.

    ``_rerank`` returns raw ``{"index", "relevance_score"}`` items; ``rerank``
    validates them against the input and sorts by score, highest first.
    """

    @abstractmethod
    async def _rerank(
        self, query: str, documents: list[str], top_n: int
    ) -> list[dict[str, Any]]:
        """Provider call."""

    async def rerank(
        self, query: str, documents: list[str], top_n: int | None = None
    ) -> list[RerankResult]:
        if not documents:
            return []
        for i, document in enumerate(documents):
            if document is None or not str(document).strip():
                raise InputValidationError(
                    f"Document at index {i} is empty or whitespace only"
                )
        top_n = len(documents) if top_n is None else min(top_n, len(documents))

        raw_results = await self._rerank(query, documents, top_n)
        if not isinstance(raw_results, list):
            raise RerankParseError(
                "Rerank response is not a list",
                payload_preview=get_content_summary(str(raw_results)),
            )

        results: list[RerankResult] = []
        seen: set[int] = set()
        for item in raw_results:
            try:
                index = int(item["index"])
                score = float(item["relevance_score"])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    f"Malformed rerank item: {get_content_summary(str(item))}"
                )
                raise RerankParseError(
                    f"Malformed rerank item: {e}",
                    payload_preview=get_content_summary(str(item)),
                ) from e
            if index < 0 or index >= len(documents):
                raise RerankParseError(
                    f"Rerank index {index} out of range for {len(documents)} documents"
                )
            if index in seen:
                continue
            seen.add(index)
            results.append(RerankResult(index=index, relevance_score=score))

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        return results[:top_n]
