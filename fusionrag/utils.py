from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections import Counter
from hashlib import md5
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

import numpy as np
from dotenv import load_dotenv

from .constants import (
    DEFAULT_FILE_PATH_MORE_PLACEHOLDER,
    DEFAULT_LOG_PREVIEW_LENGTH,
    DEFAULT_SOURCE_IDS_LIMIT_METHOD,
    GRAPH_FIELD_SEP,
    SOURCE_IDS_LIMIT_METHOD_FIFO,
    VALID_SOURCE_IDS_LIMIT_METHODS,
)
from .exceptions import PipelineCancelledException

# use the .env that is inside the current folder
# allows to use different .env file for each fusionrag instance
# the OS environment variables take precedence over the .env file
load_dotenv(dotenv_path=".env", override=False)

# 包级日志器，导入时不配置 handler
logger = logging.getLogger("fusionrag")
logger.propagate = True


def setup_logger(
    logger_name: str = "fusionrag",
    level: str = "INFO",
    log_format: str = "%(levelname)s: %(message)s",
) -> logging.Logger:
    """Attach a single stream handler to the named logger.

    Calling it more than once replaces the previous handler instead of stacking them.
    """
    target = logging.getLogger(logger_name)
    target.setLevel(level)
    for handler in list(target.handlers):
        if getattr(handler, "_fusionrag_handler", False):
            target.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(log_format))
    handler._fusionrag_handler = True  # type: ignore[attr-defined]
    target.addHandler(handler)
    return target


# 从环境变量读取配置，带类型转换
def get_env_value(
    env_key: str, default: Any, value_type: type = str, special_none: bool = False
) -> Any:
    """
    Get value from environment variable with type conversion

    Args:
        env_key (str): Environment variable key
        default (any): Default value if env variable is not set
        value_type (type): Type to convert the value to
        special_none (bool): If True, return None when value is "None"

    Returns:
        any: Converted value from environment or default
    """
    value = os.getenv(env_key)
    if value is None:
        return default

    if special_none and value == "None":
        return None

    if value_type is bool:
        return value.lower() in ("true", "1", "yes", "t", "on")

    # list 类型按 JSON 解析
    if value_type is list:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON for {env_key}, using default")
            return default
        return parsed if isinstance(parsed, list) else default

    try:
        return value_type(value)
    except (ValueError, TypeError):
        logger.warning(f"Invalid value for {env_key}: {value!r}, using default")
        return default


# 计算内容的 MD5 哈希作为 ID
def compute_mdhash_id(content: str, prefix: str = "") -> str:
    """
    Compute a unique ID for a given content string.

    The ID is a combination of the given prefix and the MD5 hash of the content string.
    """
    return prefix + md5(content.encode()).hexdigest()


def get_content_summary(content: str, max_length: int = DEFAULT_LOG_PREVIEW_LENGTH) -> str:
    """Get summary of document content

    Args:
        content: Original document content
        max_length: Maximum length of summary

    Returns:
        Truncated content with ellipsis if needed
    """
    content = (content or "").strip()
    if len(content) <= max_length:
        return content
    return content[:max_length] + "..."


class TokenizerInterface(Protocol):
    """
    Defines the interface for a tokenizer, requiring encode and decode methods.
    """

    def encode(self, content: str) -> list[int]: ...

    def decode(self, tokens: list[int]) -> str: ...


# 分词器包装
class Tokenizer:
    """
    A wrapper around a tokenizer to provide a consistent interface for encoding and decoding.
    """

    def __init__(self, model_name: str, tokenizer: TokenizerInterface):
        self.model_name: str = model_name
        self.tokenizer: TokenizerInterface = tokenizer

    def encode(self, content: str) -> list[int]:
        return self.tokenizer.encode(content)

    def decode(self, tokens: list[int]) -> str:
        return self.tokenizer.decode(tokens)

    # 统计 token 数
    def count_tokens(self, content: str) -> int:
        if not content:
            return 0
        return len(self.encode(content))


class TiktokenTokenizer(Tokenizer):
    """
    A Tokenizer implementation using the tiktoken library.
    """

    def __init__(self, model_name: str = "gpt-4o-mini"):
        import tiktoken

        try:
            tokenizer = tiktoken.encoding_for_model(model_name)
        except KeyError:
            raise ValueError(f"Invalid model_name: {model_name}.")
        super().__init__(model_name=model_name, tokenizer=tokenizer)


def always_get_an_event_loop() -> asyncio.AbstractEventLoop:
    """
    Ensure that there is always an event loop available.

    This function tries to get the current event loop. If the current event loop is closed or does not exist,
    it creates a new event loop and sets it as the current event loop.
    """
    try:
        current_loop = asyncio.get_event_loop()
        if current_loop.is_closed():
            raise RuntimeError("Event loop is closed.")
        return current_loop
    except RuntimeError:
        logger.info("Creating a new event loop in main thread.")
        new_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(new_loop)
        return new_loop


def check_cancellation(cancel_event: asyncio.Event | None, stage: str = "") -> None:
    """Raise PipelineCancelledException if the caller has requested cancellation."""
    if cancel_event is not None and cancel_event.is_set():
        message = f"User cancelled during {stage}" if stage else "User cancelled"
        raise PipelineCancelledException(message)


# 文本清洗
_SURROGATE_PATTERN = re.compile(r"[\ud800-\udfff\ufffe\uffff]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def sanitize_and_normalize_extracted_text(
    input_text: str, remove_inner_quotes: bool = False
) -> str:
    """Clean a field produced by the extraction model.

    Strips surrogate characters, collapses whitespace and trims surrounding quotes.
    """
    if not input_text:
        return ""
    text = _SURROGATE_PATTERN.sub("", input_text)
    text = _WHITESPACE_PATTERN.sub(" ", text).strip()
    if remove_inner_quotes:
        text = text.replace('"', "").replace("'", "")
    else:
        # 只去掉首尾成对的引号
        while len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'`":
            text = text[1:-1].strip()
    return text


def normalize_entity_name(name: str) -> str:
    """Identity key for an entity name.

    Whitespace runs collapse to a single space, the ends are trimmed and the
    result is casefolded, so "Alice  Smith" and "alice smith" share one node.
    """
    if not name:
        return ""
    return _WHITESPACE_PATTERN.sub(" ", name).strip().casefold()


def split_string_by_multi_markers(content: str, markers: list[str]) -> list[str]:
    """Split a string by multiple markers"""
    if not markers:
        return [content]
    content = content if content is not None else ""
    results = re.split("|".join(re.escape(marker) for marker in markers), content)
    return [r.strip() for r in results if r.strip()]


def is_float_regex(value: str) -> bool:
    return bool(re.match(r"^[-+]?[0-9]*\.?[0-9]+$", value))


# 按 token 预算截断列表，遇到第一个超出预算的条目即停止
def truncate_list_by_token_size(
    list_data: list[Any],
    key: Callable[[Any], str],
    max_token_size: int,
    tokenizer: Tokenizer,
) -> list[Any]:
    """Truncate a list of data by token size.

    Items are kept in order until the running token total would exceed
    ``max_token_size``; everything from the first overflowing item on is dropped.
    """
    if max_token_size <= 0:
        return []
    tokens = 0
    for i, data in enumerate(list_data):
        tokens += tokenizer.count_tokens(key(data))
        if tokens > max_token_size:
            return list_data[:i]
    return list_data


def make_relation_chunk_key(src: str, tgt: str) -> str:
    """Order-independent key for a relationship in the relation-chunks index."""
    return GRAPH_FIELD_SEP.join(sorted((src, tgt)))


def normalize_source_ids_limit_method(method: str | None) -> str:
    if not method:
        return DEFAULT_SOURCE_IDS_LIMIT_METHOD
    normalized = method.upper()
    if normalized not in VALID_SOURCE_IDS_LIMIT_METHODS:
        logger.warning(
            "Unknown SOURCE_IDS_LIMIT_METHOD '%s', falling back to %s",
            method,
            DEFAULT_SOURCE_IDS_LIMIT_METHOD,
        )
        return DEFAULT_SOURCE_IDS_LIMIT_METHOD
    return normalized


# 限制 source_id 数量：FIFO 保留最新的，KEEP 保留最早的
def apply_source_ids_limit(
    source_ids: list[str],
    limit: int,
    method: str,
    *,
    identifier: str | None = None,
) -> list[str]:
    """Cap a provenance list for storage on a graph record."""
    if limit <= 0:
        return []
    source_ids = list(source_ids)
    if len(source_ids) <= limit:
        return source_ids

    normalized_method = normalize_source_ids_limit_method(method)
    if normalized_method == SOURCE_IDS_LIMIT_METHOD_FIFO:
        truncated = source_ids[-limit:]
    else:
        truncated = source_ids[:limit]

    if identifier:
        logger.debug(
            f"Source_id truncated: {identifier} | {normalized_method} keeping "
            f"{len(truncated)} of {len(source_ids)} entries"
        )
    return truncated


def merge_source_ids(
    existing_ids: list[str] | None, new_ids: list[str] | None
) -> list[str]:
    """Merge two ordered id lists, keeping first-seen order and dropping duplicates."""
    merged: list[str] = []
    seen: set[str] = set()
    for sequence in (existing_ids, new_ids):
        if not sequence:
            continue
        for source_id in sequence:
            if source_id and source_id not in seen:
                seen.add(source_id)
                merged.append(source_id)
    return merged


def limit_file_paths(
    file_paths: list[str], max_file_paths: int, method: str
) -> list[str]:
    """Cap a file-path list, appending a placeholder that records how many were dropped."""
    file_paths = [fp for fp in file_paths if fp and not fp.startswith("...")]
    if max_file_paths <= 0 or len(file_paths) <= max_file_paths:
        return file_paths
    dropped = len(file_paths) - max_file_paths
    normalized_method = normalize_source_ids_limit_method(method)
    if normalized_method == SOURCE_IDS_LIMIT_METHOD_FIFO:
        kept = file_paths[-max_file_paths:]
    else:
        kept = file_paths[:max_file_paths]
    kept.append(f"...{DEFAULT_FILE_PATH_MORE_PLACEHOLDER}({dropped} more)...")
    return kept


def extract_file_name(file_path: str | None) -> str:
    """File name of a local path or URL, "unknown" when there is none."""
    if not file_path:
        return "unknown"
    if file_path.lower().startswith(("http://", "https://")):
        path = urlparse(file_path).path
        name = path.rstrip("/").rsplit("/", 1)[-1]
        return name or file_path
    return os.path.basename(file_path.replace("\\", "/")) or file_path


def is_url(file_path: str | None) -> bool:
    return bool(file_path) and file_path.lower().startswith(("http://", "https://"))


# 生成参考文献列表：按出现频次降序、首次出现位置升序
def generate_reference_list_from_chunks(
    chunks: list[dict],
) -> tuple[list[dict], list[dict]]:
    """
    Generate reference list from chunks, prioritizing by occurrence frequency.

    Returns:
        tuple: (reference_list, updated_chunks_with_reference_ids)
            - reference_list: [{"reference_id": "1", "file_path": "/path/to/file.pdf"}, ...]
            - updated_chunks: chunks with a "reference_id" field added
    """
    if not chunks:
        return [], []

    def _valid(fp: str | None) -> bool:
        return bool(fp) and fp != "unknown_source"

    counts = Counter(c.get("file_path") for c in chunks if _valid(c.get("file_path")))

    first_index: dict[str, int] = {}
    for i, chunk in enumerate(chunks):
        fp = chunk.get("file_path")
        if _valid(fp) and fp not in first_index:
            first_index[fp] = i

    sorted_paths = sorted(first_index, key=lambda fp: (-counts[fp], first_index[fp]))
    path_to_ref = {fp: str(i + 1) for i, fp in enumerate(sorted_paths)}

    updated_chunks = []
    for chunk in chunks:
        updated = chunk.copy()
        updated["reference_id"] = path_to_ref.get(chunk.get("file_path"), "")
        updated_chunks.append(updated)

    reference_list = [
        {"reference_id": path_to_ref[fp], "file_path": fp} for fp in sorted_paths
    ]
    return reference_list, updated_chunks


# 线性梯度加权轮询：排名越靠前的实体/关系分到越多的文本块
def pick_by_weighted_polling(
    entities_or_relations: list[dict],
    max_related_chunks: int,
    min_related_chunks: int = 1,
) -> list[str]:
    """
    Linear gradient weighted polling algorithm for text chunk selection.

    Each item must carry a "sorted_chunks" list. The first item receives up to
    ``max_related_chunks`` chunks, the last ``min_related_chunks``; leftover quota
    is handed out in further rounds to items that still have unused chunks.
    """
    if not entities_or_relations:
        return []

    n = len(entities_or_relations)
    if n == 1:
        return entities_or_relations[0].get("sorted_chunks", [])[:max_related_chunks]

    expected_counts = []
    for i in range(n):
        ratio = i / (n - 1)
        expected = max_related_chunks - ratio * (max_related_chunks - min_related_chunks)
        expected_counts.append(int(round(expected)))

    selected_chunks: list[str] = []
    used_counts: list[int] = []
    total_remaining = 0

    for i, item in enumerate(entities_or_relations):
        sorted_chunks = item.get("sorted_chunks", [])
        actual = min(expected_counts[i], len(sorted_chunks))
        selected_chunks.extend(sorted_chunks[:actual])
        used_counts.append(actual)
        total_remaining += max(0, expected_counts[i] - actual)

    # 第二轮：把剩余配额分给还有未用块的条目
    for _ in range(total_remaining):
        allocated = False
        for i, item in enumerate(entities_or_relations):
            sorted_chunks = item.get("sorted_chunks", [])
            if used_counts[i] < len(sorted_chunks):
                selected_chunks.append(sorted_chunks[used_counts[i]])
                used_counts[i] += 1
                allocated = True
                break
        if not allocated:
            break

    return selected_chunks


def cosine_similarity(v1: Any, v2: Any) -> float:
    """Calculate cosine similarity between two vectors"""
    a = np.asarray(v1, dtype=np.float32)
    b = np.asarray(v2, dtype=np.float32)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


# 按与查询向量的余弦相似度挑选文本块
def pick_by_vector_similarity(
    query_embedding: Any,
    chunk_vectors: dict[str, Any],
    num_of_chunks: int,
) -> list[tuple[str, float]]:
    """Rank candidate chunks by similarity to the query embedding.

    Returns ``(chunk_id, similarity)`` pairs, most similar first.
    """
    if query_embedding is None or not chunk_vectors or num_of_chunks <= 0:
        return []
    scored = [
        (chunk_id, cosine_similarity(query_embedding, vector))
        for chunk_id, vector in chunk_vectors.items()
        if vector is not None
    ]
    scored.sort(key=lambda x: x[1], reverse=True)
    return scored[:num_of_chunks]


def load_json(file_name: str) -> Any:
    if not os.path.exists(file_name):
        return None
    with open(file_name, encoding="utf-8-sig") as f:
        return json.load(f)


def write_json(json_obj: Any, file_name: str) -> None:
    os.makedirs(os.path.dirname(file_name) or ".", exist_ok=True)
    tmp_name = f"{file_name}.tmp"
    with open(tmp_name, "w", encoding="utf-8") as f:
        json.dump(json_obj, f, indent=2, ensure_ascii=False)
    os.replace(tmp_name, file_name)
