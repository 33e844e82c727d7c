from __future__ import annotations

import asyncio
import json
import time
from collections import Counter, defaultdict
from typing import Any, Callable

from fusionrag.exceptions import (
    ChunkProcessingError,
    ChunkTokenLimitExceededError,
    InputValidationError,
    MergeError,
    PipelineCancelledException,
)
from fusionrag.utils import (
    logger,
    compute_mdhash_id,
    Tokenizer,
    check_cancellation,
    normalize_entity_name,
    truncate_list_by_token_size,
    pick_by_weighted_polling,
    pick_by_vector_similarity,
    generate_reference_list_from_chunks,
    apply_source_ids_limit,
    merge_source_ids,
    limit_file_paths,
    make_relation_chunk_key,
    extract_file_name,
    is_url,
)
from fusionrag.base import (
    BaseGraphStorage,
    BaseKVStorage,
    BaseVectorStorage,
    QueryParam,
    QueryResult,
    QueryContextResult,
)
from fusionrag.events import TaskStage, TaskState
from fusionrag.prompt import PROMPTS
from fusionrag.constants import (
    GRAPH_FIELD_SEP,
    UNKNOWN_ENTITY_TYPE,
    DEFAULT_RELATED_CHUNK_NUMBER,
    DEFAULT_KG_CHUNK_PICK_METHOD,
    DEFAULT_ENTITY_TYPES,
    DEFAULT_RERANK_CANDIDATE_FACTOR,
    DEFAULT_KEYWORD_FALLBACK_QUERY_LENGTH,
    DEFAULT_MAX_FILE_PATHS,
)
from fusionrag.kg.shared_storage import get_storage_keyed_lock

# 进度回调：接收 TaskState，不得阻塞
ProgressReporter = Callable[[TaskState], None]


def _report(
    report_progress: ProgressReporter | None,
    stage: TaskStage,
    current: int = 0,
    total: int = 0,
    description: str = "",
    doc_id: str | None = None,
    **details: Any,
) -> None:
    if report_progress is None:
        return
    report_progress(
        TaskState(
            stage=stage,
            current=current,
            total=total,
            description=description,
            doc_id=doc_id,
            details=details,
        )
    )


def chunking_by_token_size(
    tokenizer: Tokenizer,
    content: str,
    split_by_character: str | None = None,  # 自定义分隔符（如 "\n\n"）
    split_by_character_only: bool = False,  # 是否仅按字符分割
    chunk_overlap_token_size: int = 100,
    chunk_token_size: int = 1200,
) -> list[dict[str, Any]]:
    """默认文档分块函数，按 token 数量切分长文本，支持自定义分隔符和重叠窗口。

    Returns:
        [{"tokens": int, "content": str, "chunk_order_index": int}, ...]
        Chunks whose content is blank are dropped; order indexes stay contiguous.
    """
    if chunk_token_size <= 0:
        raise InputValidationError("chunk_token_size must be positive")
    if chunk_overlap_token_size < 0 or chunk_overlap_token_size >= chunk_token_size:
        raise InputValidationError(
            f"chunk_overlap_token_size ({chunk_overlap_token_size}) must be in "
            f"[0, chunk_token_size ({chunk_token_size}))"
        )

    step = chunk_token_size - chunk_overlap_token_size
    new_chunks: list[tuple[int, str]] = []
    if split_by_character:
        # 先按分隔符切分
        raw_chunks = content.split(split_by_character)
        for chunk in raw_chunks:
            _tokens = tokenizer.encode(chunk)
            if len(_tokens) <= chunk_token_size:
                new_chunks.append((len(_tokens), chunk))
                continue
            # 严格字符分割时，单块超限直接报错
            if split_by_character_only:
                logger.warning(
                    "Chunk split_by_character exceeds token limit: len=%d limit=%d",
                    len(_tokens),
                    chunk_token_size,
                )
                raise ChunkTokenLimitExceededError(
                    chunk_tokens=len(_tokens),
                    chunk_token_limit=chunk_token_size,
                    chunk_preview=chunk[:120],
                )
            # 混合模式：超限的块再按 token 滑动窗口切分
            for start in range(0, len(_tokens), step):
                new_chunks.append(
                    (
                        min(chunk_token_size, len(_tokens) - start),
                        tokenizer.decode(_tokens[start : start + chunk_token_size]),
                    )
                )
                if start + chunk_token_size >= len(_tokens):
                    break
    else:
        # 纯 token 滑动窗口
        tokens = tokenizer.encode(content)
        for start in range(0, len(tokens), step):
            new_chunks.append(
                (
                    min(chunk_token_size, len(tokens) - start),
                    tokenizer.decode(tokens[start : start + chunk_token_size]),
                )
            )
            # 最后一个窗口已覆盖到结尾，不再产生只含重叠部分的块
            if start + chunk_token_size >= len(tokens):
                break

    results: list[dict[str, Any]] = []
    for _len, chunk in new_chunks:
        chunk = chunk.strip()
        if not chunk:
            continue
        results.append(
            {
                "tokens": _len,
                "content": chunk,
                "chunk_order_index": len(results),
            }
        )
    return results


async def _handle_entity_relation_summary(
    description_type: str,  # "Entity" 或 "Relation"
    entity_or_relation_name: str,
    description_list: list[str],  # 待合并的描述列表
    seperator: str,
    global_config: dict,
) -> tuple[str, bool]:
    """Merge description fragments, summarizing with the LLM when they grow too large.

    1. At most ``force_llm_summary_on_merge`` fragments and under ``summary_max_tokens``:
       join them with ``seperator``, no LLM call.
    2. Fits in ``summary_context_size``: one summarize call over all fragments.
    3. Otherwise map-reduce: summarize groups that fit the context size, then
       repeat on the group summaries.

    Returns:
        (description, llm_was_used)
    """
    if not description_list:
        return "", False

    tokenizer: Tokenizer = global_config["tokenizer"]
    summary_context_size = global_config["summary_context_size"]
    summary_max_tokens = global_config["summary_max_tokens"]
    # 单个片段未超上限时原样返回
    if (
        len(description_list) == 1
        and tokenizer.count_tokens(description_list[0]) <= summary_max_tokens
    ):
        return description_list[0], False
    force_llm_summary_on_merge = global_config["force_llm_summary_on_merge"]

    current_list = description_list[:]
    llm_was_used = False

    while True:
        total_tokens = sum(tokenizer.count_tokens(desc) for desc in current_list)

        if total_tokens <= summary_context_size or len(current_list) <= 2:
            # 片段数未超过阈值且总长度未超上限，直接拼接
            if (
                len(current_list) <= force_llm_summary_on_merge
                and total_tokens <= summary_max_tokens
            ):
                return seperator.join(current_list), llm_was_used
            if total_tokens > summary_context_size:
                logger.warning(
                    f"Summarizing {entity_or_relation_name}: Oversize description found"
                )
            final_summary = await _summarize_descriptions(
                description_type,
                entity_or_relation_name,
                current_list,
                global_config,
            )
            return final_summary, True

        # Map：按 summary_context_size 分组，每组至少两条
        chunks: list[list[str]] = []
        current_chunk: list[str] = []
        current_tokens = 0
        for desc in current_list:
            desc_tokens = tokenizer.count_tokens(desc)
            if current_tokens + desc_tokens > summary_context_size and current_chunk:
                if len(current_chunk) == 1:
                    current_chunk.append(desc)
                    chunks.append(current_chunk)
                    current_chunk = []
                    current_tokens = 0
                else:
                    chunks.append(current_chunk)
                    current_chunk = [desc]
                    current_tokens = desc_tokens
            else:
                current_chunk.append(desc)
                current_tokens += desc_tokens
        if current_chunk:
            chunks.append(current_chunk)

        logger.info(
            f"   Summarizing {entity_or_relation_name}: Map {len(current_list)} descriptions into {len(chunks)} groups"
        )

        # Reduce
        new_summaries = []
        for chunk in chunks:
            if len(chunk) == 1:
                new_summaries.append(chunk[0])
            else:
                new_summaries.append(
                    await _summarize_descriptions(
                        description_type,
                        entity_or_relation_name,
                        chunk,
                        global_config,
                    )
                )
                llm_was_used = True
        current_list = new_summaries


async def _summarize_descriptions(
    description_type: str,
    description_name: str,
    description_list: list[str],
    global_config: dict,
) -> str:
    llm_service = global_config["llm_service"]
    tokenizer: Tokenizer = global_config["tokenizer"]

    # 防止单次请求超出上下文
    truncated = truncate_list_by_token_size(
        description_list,
        key=lambda d: json.dumps({"Description": d}, ensure_ascii=False),
        max_token_size=global_config["summary_context_size"],
        tokenizer=tokenizer,
    ) or description_list[:1]

    summary = await llm_service.summarize(
        description_type,
        description_name,
        truncated,
        global_config["summary_length_recommended"],
    )
    if not summary:
        raise ValueError(
            f"Empty summary returned for {description_type} {description_name}"
        )
    return summary


def _stamp_extraction_result(
    extraction, chunk_key: str, file_path: str, timestamp: int
) -> tuple[list[dict], list[dict]]:
    """Attach provenance (chunk id, file path, timestamp) to parsed records."""
    entities = [
        {**dp, "source_id": chunk_key, "file_path": file_path, "timestamp": timestamp}
        for dp in extraction.entities
    ]
    relationships = [
        {**dp, "source_id": chunk_key, "file_path": file_path, "timestamp": timestamp}
        for dp in extraction.relationships
    ]
    return entities, relationships


async def process_chunks(
    chunks: dict[str, dict[str, Any]],
    global_config: dict[str, Any],
    doc_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
    report_progress: ProgressReporter | None = None,
) -> list[dict[str, Any]]:
    """Embed and extract every chunk of one document concurrently.

    All chunks start at once; the first failure cancels the rest and is raised
    as ChunkProcessingError naming the chunk.

    Returns:
        One result per chunk, in chunk order:
        {"chunk_id", "chunk_order_index", "embedding", "entities", "relationships"}
    """
    llm_service = global_config["llm_service"]
    embedding_service = global_config["embedding_service"]
    entity_types = global_config.get("entity_types") or DEFAULT_ENTITY_TYPES
    max_entities = global_config["max_entities_per_chunk"]
    max_relationships = global_config["max_relationships_per_chunk"]

    total = len(chunks)
    processed = 0

    async def _process_single_chunk(chunk_key: str, chunk_dp: dict[str, Any]):
        nonlocal processed
        check_cancellation(cancel_event, "chunk processing")
        content = chunk_dp["content"]
        file_path = chunk_dp.get("file_path", "unknown_source")
        try:
            # 嵌入与抽取并发执行
            embedding, extraction = await asyncio.gather(
                embedding_service.embed(content),
                llm_service.extract_entities(
                    content, entity_types, max_entities, max_relationships
                ),
            )
        except (PipelineCancelledException, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.error(
                f"Chunk {chunk_key} (order {chunk_dp.get('chunk_order_index')}) failed: {e}"
            )
            raise ChunkProcessingError(
                chunk_key, chunk_dp.get("chunk_order_index", -1), e
            ) from e

        entities, relationships = _stamp_extraction_result(
            extraction, chunk_key, file_path, int(time.time())
        )
        processed += 1
        _report(
            report_progress,
            TaskStage.PROCESSING_CHUNKS,
            processed,
            total,
            f"Chunk {processed} of {total} extracted {len(entities)} Ent + {len(relationships)} Rel",
            doc_id,
            chunk_id=chunk_key,
        )
        return {
            "chunk_id": chunk_key,
            "chunk_order_index": chunk_dp.get("chunk_order_index", 0),
            "embedding": embedding,
            "entities": entities,
            "relationships": relationships,
        }

    tasks = [
        asyncio.create_task(_process_single_chunk(chunk_key, chunk_dp))
        for chunk_key, chunk_dp in chunks.items()
    ]
    if not tasks:
        return []

    # 遇到第一个异常立即返回，取消其余任务
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    first_exception = None
    for task in done:
        if task.exception() is not None:
            first_exception = task.exception()
            break
    if first_exception is not None:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        raise first_exception

    results = [task.result() for task in tasks]
    results.sort(key=lambda r: r["chunk_order_index"])
    return results


def _split_field(value: Any) -> list[str]:
    if not value:
        return []
    return [item for item in str(value).split(GRAPH_FIELD_SEP) if item]


def _ordered_new_descriptions(
    records: list[dict], existing: list[str]
) -> list[str]:
    """Unique new descriptions ordered by (timestamp, longest first), excluding stored ones."""
    seen = set(existing)
    unique: dict[str, dict] = {}
    for dp in records:
        desc = dp.get("description")
        if not desc or desc in seen or desc in unique:
            continue
        unique[desc] = dp
    ordered = sorted(
        unique.values(),
        key=lambda x: (x.get("timestamp", 0), -len(x.get("description", ""))),
    )
    return [dp["description"] for dp in ordered]


def _merge_file_paths(
    existing: Any, records: list[dict], global_config: dict
) -> str:
    file_paths = [fp for fp in _split_field(existing) if not fp.startswith("...")]
    seen = set(file_paths)
    for dp in records:
        fp = dp.get("file_path")
        if fp and fp not in seen:
            seen.add(fp)
            file_paths.append(fp)
    file_paths = limit_file_paths(
        file_paths,
        global_config.get("max_file_paths", DEFAULT_MAX_FILE_PATHS),
        global_config["source_ids_limit_method"],
    )
    return GRAPH_FIELD_SEP.join(file_paths)


async def _load_provenance(
    chunks_storage: BaseKVStorage | None, key: str, stored_record: dict | None
) -> tuple[list[str], dict]:
    """Full chunk provenance of a key, falling back to the (possibly capped) graph source_id.

    Returns:
        (chunk_ids, provenance_record)
    """
    if chunks_storage is not None:
        stored = await chunks_storage.get_by_id(key)
        if stored and isinstance(stored.get("chunk_ids"), list):
            return [cid for cid in stored["chunk_ids"] if cid], stored
    if stored_record:
        return _split_field(stored_record.get("source_id")), {}
    return [], {}


async def _merge_nodes_then_upsert(
    entity_key: str,
    nodes_data: list[dict],
    knowledge_graph_inst: BaseGraphStorage,
    entity_vdb: BaseVectorStorage | None,
    global_config: dict,
    entity_chunks_storage: BaseKVStorage | None = None,
):
    """合并同一实体的新旧数据并写入图、向量库和溯源索引。

    Contributions from chunks already present in the entity's provenance are
    ignored, so re-merging the same chunks leaves the stored entity unchanged.

    Returns:
        the merged node data, or None when every contribution was already merged
    """
    already_node = await knowledge_graph_inst.get_node(entity_key)
    existing_full_source_ids, _ = await _load_provenance(
        entity_chunks_storage, entity_key, already_node
    )

    # 已合并过的块不再重复计入
    if already_node is not None:
        known = set(existing_full_source_ids)
        new_nodes = [dp for dp in nodes_data if dp["source_id"] not in known]
        if not new_nodes:
            logger.debug(f"Entity {entity_key}: no new contributions, skipped")
            return None
    else:
        new_nodes = nodes_data

    # 实体类型：先写入者为准，占位类型可被真实类型覆盖
    type_counts = Counter(
        dp.get("entity_type") or UNKNOWN_ENTITY_TYPE for dp in new_nodes
    )
    real_types = [t for t, _ in type_counts.most_common() if t != UNKNOWN_ENTITY_TYPE]
    candidate_type = real_types[0] if real_types else UNKNOWN_ENTITY_TYPE
    alt_types: list[str] = []
    if already_node is not None:
        stored_type = already_node.get("entity_type") or UNKNOWN_ENTITY_TYPE
        entity_type = candidate_type if stored_type == UNKNOWN_ENTITY_TYPE else stored_type
        alt_types = _split_field(already_node.get("alt_entity_types"))
    else:
        entity_type = candidate_type
    for t in real_types:
        if t != entity_type and t not in alt_types:
            alt_types.append(t)

    # 占位实体的描述来自关系，真实实体首次合并时丢弃
    is_placeholder = bool(already_node and already_node.get("is_placeholder"))
    already_description = (
        _split_field(already_node.get("description"))
        if already_node and not is_placeholder
        else []
    )
    description_list = already_description + _ordered_new_descriptions(
        new_nodes, already_description
    )
    if not description_list:
        description_list = [entity_key]

    entity_name = (
        already_node.get("entity_name") if already_node else None
    ) or new_nodes[0].get("entity_name") or entity_key

    description, llm_was_used = await _handle_entity_relation_summary(
        "Entity", entity_name, description_list, GRAPH_FIELD_SEP, global_config
    )
    if llm_was_used:
        logger.info(f"LLMmrg: `{entity_name}` | {len(description_list)} fragments")

    full_source_ids = merge_source_ids(
        existing_full_source_ids, [dp["source_id"] for dp in new_nodes]
    )
    source_ids = apply_source_ids_limit(
        full_source_ids,
        global_config["max_source_ids_per_entity"],
        global_config["source_ids_limit_method"],
        identifier=f"`{entity_name}`",
    )

    node_data = dict(
        entity_id=entity_key,
        entity_name=entity_name,
        entity_type=entity_type,
        description=description,
        source_id=GRAPH_FIELD_SEP.join(source_ids),
        file_path=_merge_file_paths(
            already_node.get("file_path") if already_node else None,
            new_nodes,
            global_config,
        ),
        created_at=int(time.time()),
    )
    if alt_types:
        node_data["alt_entity_types"] = GRAPH_FIELD_SEP.join(alt_types)
    if is_placeholder:
        node_data["is_placeholder"] = False

    await knowledge_graph_inst.upsert_node(entity_key, node_data=node_data)
    await _upsert_entity_vector(entity_vdb, node_data)
    if entity_chunks_storage is not None:
        await entity_chunks_storage.upsert(
            {entity_key: {"chunk_ids": full_source_ids, "count": len(full_source_ids)}}
        )
    return node_data


async def _upsert_entity_vector(entity_vdb: BaseVectorStorage | None, node_data: dict):
    if entity_vdb is None:
        return
    entity_key = node_data["entity_id"]
    await entity_vdb.upsert(
        {
            compute_mdhash_id(entity_key, prefix="ent-"): {
                "entity_name": node_data["entity_name"],
                "entity_key": entity_key,
                "entity_type": node_data["entity_type"],
                "content": f"{node_data['entity_name']}\n{node_data['description']}",
                "source_id": node_data["source_id"],
                "file_path": node_data.get("file_path", "unknown_source"),
            }
        }
    )


async def _merge_edges_then_upsert(
    src_key: str,
    tgt_key: str,
    edges_data: list[dict],
    knowledge_graph_inst: BaseGraphStorage,
    relationships_vdb: BaseVectorStorage | None,
    entity_vdb: BaseVectorStorage | None,
    global_config: dict,
    relation_chunks_storage: BaseKVStorage | None = None,
    entity_chunks_storage: BaseKVStorage | None = None,
    added_entities: list[dict] | None = None,
):
    """合并同一对实体之间的关系（无向），必要时为缺失端点创建占位实体。

    Weight is the stored weight plus the weights of contributions from chunks
    not yet in the relation's provenance.
    """
    src_key, tgt_key = sorted((src_key, tgt_key))
    relation_key = make_relation_chunk_key(src_key, tgt_key)

    already_edge = await knowledge_graph_inst.get_edge(src_key, tgt_key)
    existing_full_source_ids, provenance = await _load_provenance(
        relation_chunks_storage, relation_key, already_edge
    )

    if already_edge is not None:
        known = set(existing_full_source_ids)
        new_edges = [dp for dp in edges_data if dp["source_id"] not in known]
        if not new_edges:
            logger.debug(f"Relation {src_key}~{tgt_key}: no new contributions, skipped")
            return None
    else:
        new_edges = edges_data

    # 端点显示名：以抽取结果中的原始写法为准
    display_names = {}
    for dp in new_edges:
        for raw in (dp["src_id"], dp["tgt_id"]):
            display_names.setdefault(normalize_entity_name(raw), raw)
    source_name = (already_edge or {}).get("source_name") or display_names.get(src_key, src_key)
    target_name = (already_edge or {}).get("target_name") or display_names.get(tgt_key, tgt_key)

    weight = float((already_edge or {}).get("weight", 0.0) or 0.0) + sum(
        float(dp.get("weight", 1.0)) for dp in new_edges
    )

    already_description = _split_field((already_edge or {}).get("description"))
    description_list = already_description + _ordered_new_descriptions(
        new_edges, already_description
    )

    # 关键词取并集，排序后以逗号连接
    keyword_set = set()
    for raw in [(already_edge or {}).get("keywords")] + [dp.get("keywords") for dp in new_edges]:
        if raw:
            keyword_set.update(k.strip() for k in str(raw).split(",") if k.strip())
    keywords = ", ".join(sorted(keyword_set))

    relation_name = f"({source_name}, {target_name})"
    description, llm_was_used = await _handle_entity_relation_summary(
        "Relation", relation_name, description_list, GRAPH_FIELD_SEP, global_config
    )
    if llm_was_used:
        logger.info(f"LLMmrg: {relation_name} | {len(description_list)} fragments")

    full_source_ids = merge_source_ids(
        existing_full_source_ids, [dp["source_id"] for dp in new_edges]
    )
    source_ids = apply_source_ids_limit(
        full_source_ids,
        global_config["max_source_ids_per_relation"],
        global_config["source_ids_limit_method"],
        identifier=relation_name,
    )
    source_id = GRAPH_FIELD_SEP.join(source_ids)
    file_path = _merge_file_paths(
        (already_edge or {}).get("file_path"), new_edges, global_config
    )

    # 端点不存在时创建占位实体
    for node_key, node_name in ((src_key, source_name), (tgt_key, target_name)):
        if await knowledge_graph_inst.has_node(node_key):
            continue
        placeholder = dict(
            entity_id=node_key,
            entity_name=node_name,
            entity_type=UNKNOWN_ENTITY_TYPE,
            description=description or node_name,
            source_id=source_id,
            file_path=file_path,
            created_at=int(time.time()),
            is_placeholder=True,
        )
        await knowledge_graph_inst.upsert_node(node_key, node_data=placeholder)
        await _upsert_entity_vector(entity_vdb, placeholder)
        if entity_chunks_storage is not None:
            await entity_chunks_storage.upsert(
                {node_key: {"chunk_ids": full_source_ids, "count": len(full_source_ids)}}
            )
        if added_entities is not None:
            added_entities.append(placeholder)
        logger.info(f"Created placeholder entity `{node_name}` for dangling relation")

    edge_data = dict(
        weight=weight,
        description=description,
        keywords=keywords,
        source_id=source_id,
        file_path=file_path,
        created_at=int(time.time()),
        source_name=source_name,
        target_name=target_name,
    )
    await knowledge_graph_inst.upsert_edge(src_key, tgt_key, edge_data=edge_data)

    if relationships_vdb is not None:
        await relationships_vdb.upsert(
            {
                compute_mdhash_id(src_key + tgt_key, prefix="rel-"): {
                    "src_id": src_key,
                    "tgt_id": tgt_key,
                    "source_name": source_name,
                    "target_name": target_name,
                    "keywords": keywords,
                    "content": f"{keywords}\t{source_name}\n{target_name}\n{description}",
                    "source_id": source_id,
                    "file_path": file_path,
                    "weight": weight,
                }
            }
        )
    if relation_chunks_storage is not None:
        chunk_weights = dict(provenance.get("chunk_weights") or {})
        for dp in new_edges:
            chunk_weights[dp["source_id"]] = chunk_weights.get(dp["source_id"], 0.0) + float(
                dp.get("weight", 1.0)
            )
        await relation_chunks_storage.upsert(
            {
                relation_key: {
                    "chunk_ids": full_source_ids,
                    "count": len(full_source_ids),
                    "chunk_weights": chunk_weights,
                }
            }
        )

    return dict(src_id=src_key, tgt_id=tgt_key, **edge_data)


async def merge_nodes_and_edges(
    chunk_results: list[dict],
    knowledge_graph_inst: BaseGraphStorage,
    entity_vdb: BaseVectorStorage | None,
    relationships_vdb: BaseVectorStorage | None,
    global_config: dict[str, Any],
    full_entities_storage: BaseKVStorage | None = None,
    full_relations_storage: BaseKVStorage | None = None,
    doc_id: str | None = None,
    entity_chunks_storage: BaseKVStorage | None = None,
    relation_chunks_storage: BaseKVStorage | None = None,
    cancel_event: asyncio.Event | None = None,
    report_progress: ProgressReporter | None = None,
) -> dict[str, int]:
    """合并一个文档所有块的抽取结果并写入存储。

    Phase 1 merges entities, Phase 2 merges relations (creating placeholder
    endpoints), Phase 3 records the document's entity and relation index.
    Each key is merged under a keyed lock shared by every document being
    inserted into the same workspace; different keys merge concurrently.

    A failing key does not stop the others. Failures are collected and raised
    together as MergeError after all phases; successful writes are kept.

    Returns:
        {"entities": merged_count, "relations": merged_count, "skipped": n}
    """
    check_cancellation(cancel_event, "merge")

    # 本地归并：按规范化名称聚合实体，按无序端点对聚合关系
    all_nodes: dict[str, list[dict]] = defaultdict(list)
    all_edges: dict[tuple[str, str], list[dict]] = defaultdict(list)
    for result in chunk_results:
        for dp in result.get("entities", []):
            key = normalize_entity_name(dp.get("entity_name", ""))
            if key:
                all_nodes[key].append(dp)
        for dp in result.get("relationships", []):
            src = normalize_entity_name(dp.get("src_id", ""))
            tgt = normalize_entity_name(dp.get("tgt_id", ""))
            if not src or not tgt or src == tgt:
                continue
            all_edges[tuple(sorted((src, tgt)))].append(dp)

    total_entities = len(all_nodes)
    total_relations = len(all_edges)
    logger.info(
        f"Merging stage {doc_id or ''}: {total_entities} entities, {total_relations} relations"
    )

    graph_max_async = global_config.get("llm_model_max_async", 4) * 2
    semaphore = asyncio.Semaphore(graph_max_async)
    workspace = global_config.get("workspace", "")
    namespace = f"{workspace}:GraphDB" if workspace else "GraphDB"

    failures: list[tuple[str, BaseException]] = []
    skipped = 0

    def _collect(keys: list[str], results: list) -> list:
        ok = []
        for key, result in zip(keys, results):
            if isinstance(result, (asyncio.CancelledError, PipelineCancelledException)):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Merge failed for {key}: {result}")
                failures.append((key, result))
            else:
                ok.append(result)
        return ok

    # ===== Phase 1: 实体 =====
    entities_done = 0

    async def _locked_process_entity(entity_key: str, entities: list[dict]):
        nonlocal entities_done
        async with semaphore:
            check_cancellation(cancel_event, "entity merge")
            async with get_storage_keyed_lock([entity_key], namespace=namespace):
                node = await _merge_nodes_then_upsert(
                    entity_key,
                    entities,
                    knowledge_graph_inst,
                    entity_vdb,
                    global_config,
                    entity_chunks_storage,
                )
        entities_done += 1
        _report(
            report_progress,
            TaskStage.MERGING_ENTITIES,
            entities_done,
            total_entities,
            f"Merged entity {entities_done} of {total_entities}",
            doc_id,
        )
        return node

    entity_keys = list(all_nodes.keys())
    entity_results = await asyncio.gather(
        *[_locked_process_entity(k, all_nodes[k]) for k in entity_keys],
        return_exceptions=True,
    )
    merged_entities = _collect(entity_keys, entity_results)
    skipped += sum(1 for n in merged_entities if n is None)

    # ===== Phase 2: 关系 =====
    relations_done = 0
    added_entities: list[dict] = []

    async def _locked_process_edge(edge_key: tuple[str, str], edges: list[dict]):
        nonlocal relations_done
        async with semaphore:
            check_cancellation(cancel_event, "relation merge")
            # 同时锁住两个端点，避免与端点实体的合并或占位创建交错
            async with get_storage_keyed_lock(sorted(edge_key), namespace=namespace):
                edge = await _merge_edges_then_upsert(
                    edge_key[0],
                    edge_key[1],
                    edges,
                    knowledge_graph_inst,
                    relationships_vdb,
                    entity_vdb,
                    global_config,
                    relation_chunks_storage,
                    entity_chunks_storage,
                    added_entities,
                )
        relations_done += 1
        _report(
            report_progress,
            TaskStage.MERGING_RELATIONS,
            relations_done,
            total_relations,
            f"Merged relation {relations_done} of {total_relations}",
            doc_id,
        )
        return edge

    edge_keys = list(all_edges.keys())
    edge_results = await asyncio.gather(
        *[_locked_process_edge(k, all_edges[k]) for k in edge_keys],
        return_exceptions=True,
    )
    merged_edges = _collect(
        [make_relation_chunk_key(*k) for k in edge_keys], edge_results
    )
    skipped += sum(1 for e in merged_edges if e is None)

    # ===== Phase 3: 文档级实体/关系索引 =====
    if doc_id and (full_entities_storage is not None or full_relations_storage is not None):
        _report(
            report_progress,
            TaskStage.UPDATING_STORAGE,
            description="Updating document entity and relation index",
            doc_id=doc_id,
        )
        try:
            entity_names = set(entity_keys) | {e["entity_id"] for e in added_entities}
            relation_pairs = {tuple(k) for k in edge_keys}
            if full_entities_storage is not None:
                existing = await full_entities_storage.get_by_id(doc_id) or {}
                entity_names.update(existing.get("entity_names", []))
                await full_entities_storage.upsert(
                    {
                        doc_id: {
                            "entity_names": sorted(entity_names),
                            "count": len(entity_names),
                        }
                    }
                )
            if full_relations_storage is not None:
                existing = await full_relations_storage.get_by_id(doc_id) or {}
                relation_pairs.update(
                    tuple(p) for p in existing.get("relation_pairs", [])
                )
                await full_relations_storage.upsert(
                    {
                        doc_id: {
                            "relation_pairs": [list(p) for p in sorted(relation_pairs)],
                            "count": len(relation_pairs),
                        }
                    }
                )
        except Exception as e:
            logger.error(f"Failed to update document index for {doc_id}: {e}")
            failures.append((doc_id, e))

    if failures:
        raise MergeError(doc_id or "", failures)

    return {
        "entities": sum(1 for n in merged_entities if n is not None),
        "relations": sum(1 for e in merged_edges if e is not None),
        "placeholders": len(added_entities),
        "skipped": skipped,
    }


# ===================== 检索 =====================


def _rank_key(item: dict) -> tuple:
    # 度数优先，其次相似度，最后时间
    return (item.get("rank", 0), item.get("score", 0.0), item.get("created_at", 0))


def _display(value: Any) -> str:
    return str(value or "").replace(GRAPH_FIELD_SEP, "; ")


def _render_relation(r: dict) -> str:
    return (
        f"{r['source_name']} -> {r['target_name']}: "
        f"{_display(r.get('keywords'))} - {_display(r.get('description'))}"
    )


def _render_entity(e: dict) -> str:
    return f"{e['entity_name']} ({e.get('entity_type', UNKNOWN_ENTITY_TYPE)}): {_display(e.get('description'))}"


def _render_chunk(c: dict) -> str:
    return f"[{extract_file_name(c.get('file_path'))}] {c['content']}"


def _render_reference(ref: dict) -> str:
    file_path = ref["file_path"]
    name = extract_file_name(file_path)
    if is_url(file_path):
        return f"[{ref['reference_id']}] [{name}]({file_path})"
    return f"[{ref['reference_id']}] [{name}] {file_path}"


def _entity_record(key: str, node: dict, degree: int, score: float) -> dict:
    return {
        "entity_name": node.get("entity_name") or key,
        "entity_key": key,
        "entity_type": node.get("entity_type", UNKNOWN_ENTITY_TYPE),
        "description": node.get("description", ""),
        "source_id": node.get("source_id", ""),
        "file_path": node.get("file_path", "unknown_source"),
        "created_at": node.get("created_at", 0),
        "rank": degree,
        "score": float(score),
    }


def _relation_record(src: str, tgt: str, edge: dict, degree: int, score: float) -> dict:
    return {
        "src_id": src,
        "tgt_id": tgt,
        "source_name": edge.get("source_name") or src,
        "target_name": edge.get("target_name") or tgt,
        "keywords": edge.get("keywords", ""),
        "description": edge.get("description", ""),
        "weight": float(edge.get("weight", 1.0)),
        "source_id": edge.get("source_id", ""),
        "file_path": edge.get("file_path", "unknown_source"),
        "created_at": edge.get("created_at", 0),
        "rank": degree,
        "score": float(score),
    }


def _merge_by_key(key: Callable[[dict], Any], *item_lists: list[dict]) -> list[dict]:
    """Union several candidate lists, keeping the higher-scored copy of each key."""
    merged: dict[Any, dict] = {}
    for items in item_lists:
        for item in items:
            k = key(item)
            if k not in merged or item["score"] > merged[k]["score"]:
                merged[k] = item
    return sorted(merged.values(), key=_rank_key, reverse=True)


def _entity_identity(e: dict) -> str:
    return e["entity_key"]


def _relation_identity(r: dict) -> tuple[str, str]:
    return tuple(sorted((r["src_id"], r["tgt_id"])))


async def _entities_for_keys(
    scores: dict[str, float], knowledge_graph_inst: BaseGraphStorage
) -> list[dict]:
    keys = list(scores)
    if not keys:
        return []
    nodes_dict, degrees = await asyncio.gather(
        knowledge_graph_inst.get_nodes_batch(keys),
        knowledge_graph_inst.node_degrees_batch(keys),
    )
    node_datas = [
        _entity_record(k, nodes_dict[k], degrees.get(k, 0), scores[k])
        for k in keys
        if nodes_dict.get(k) is not None
    ]
    if len(node_datas) < len(keys):
        logger.warning("Some entities are missing from the graph, storage may be damaged")
    return sorted(node_datas, key=_rank_key, reverse=True)


async def _relations_for_pairs(
    scores: dict[tuple[str, str], float], knowledge_graph_inst: BaseGraphStorage
) -> list[dict]:
    pairs = list(scores)
    if not pairs:
        return []
    edges_dict, degrees = await asyncio.gather(
        knowledge_graph_inst.get_edges_batch([{"src": s, "tgt": t} for s, t in pairs]),
        knowledge_graph_inst.edge_degrees_batch(pairs),
    )
    edge_datas = [
        _relation_record(s, t, edges_dict[(s, t)], degrees.get((s, t), 0), scores[(s, t)])
        for s, t in pairs
        if edges_dict.get((s, t)) is not None
    ]
    return sorted(edge_datas, key=_rank_key, reverse=True)


async def _get_node_data(
    ll_keywords: str,
    knowledge_graph_inst: BaseGraphStorage,
    entities_vdb: BaseVectorStorage,
    query_param: QueryParam,
) -> tuple[list[dict], list[dict]]:
    """local：按低级关键词检索实体，再扩展到相连的关系。"""
    logger.info(
        f"Query nodes: {ll_keywords} (top_k:{query_param.top_k}, cosine:{entities_vdb.cosine_better_than_threshold})"
    )
    results = await entities_vdb.query(ll_keywords, top_k=query_param.top_k)
    if not results:
        return [], []

    scores: dict[str, float] = {}
    for r in results:
        key = r.get("entity_key") or normalize_entity_name(r.get("entity_name", ""))
        if key:
            scores[key] = max(scores.get(key, 0.0), float(r.get("distance", 0.0)))

    node_datas = await _entities_for_keys(scores, knowledge_graph_inst)
    use_relations = await _find_most_related_edges_from_entities(
        node_datas, knowledge_graph_inst
    )
    logger.info(
        f"Local query: {len(node_datas)} entites, {len(use_relations)} relations"
    )
    return node_datas, use_relations


async def _find_most_related_edges_from_entities(
    node_datas: list[dict], knowledge_graph_inst: BaseGraphStorage
) -> list[dict]:
    node_keys = [e["entity_key"] for e in node_datas]
    batch_edges = await knowledge_graph_inst.get_nodes_edges_batch(node_keys)

    # 关系继承其端点实体中最高的相似度
    edge_scores: dict[tuple[str, str], float] = {}
    for entity in node_datas:
        for src, tgt in batch_edges.get(entity["entity_key"]) or []:
            pair = tuple(sorted((src, tgt)))
            edge_scores[pair] = max(edge_scores.get(pair, 0.0), entity["score"])
    return await _relations_for_pairs(edge_scores, knowledge_graph_inst)


async def _get_edge_data(
    hl_keywords: str,
    knowledge_graph_inst: BaseGraphStorage,
    relationships_vdb: BaseVectorStorage,
    query_param: QueryParam,
) -> tuple[list[dict], list[dict]]:
    """global：按高级关键词检索关系，再取关系两端的实体。"""
    logger.info(
        f"Query edges: {hl_keywords} (top_k:{query_param.top_k}, cosine:{relationships_vdb.cosine_better_than_threshold})"
    )
    results = await relationships_vdb.query(hl_keywords, top_k=query_param.top_k)
    if not results:
        return [], []

    scores: dict[tuple[str, str], float] = {}
    for r in results:
        src, tgt = r.get("src_id"), r.get("tgt_id")
        if not src or not tgt:
            continue
        pair = tuple(sorted((src, tgt)))
        scores[pair] = max(scores.get(pair, 0.0), float(r.get("distance", 0.0)))

    edge_datas = await _relations_for_pairs(scores, knowledge_graph_inst)
    use_entities = await _find_most_related_entities_from_relationships(
        edge_datas, knowledge_graph_inst
    )
    logger.info(
        f"Global query: {len(use_entities)} entites, {len(edge_datas)} relations"
    )
    return use_entities, edge_datas


async def _find_most_related_entities_from_relationships(
    edge_datas: list[dict], knowledge_graph_inst: BaseGraphStorage
) -> list[dict]:
    entity_scores: dict[str, float] = {}
    for edge in edge_datas:
        for key in (edge["src_id"], edge["tgt_id"]):
            entity_scores[key] = max(entity_scores.get(key, 0.0), edge["score"])
    return await _entities_for_keys(entity_scores, knowledge_graph_inst)


async def _get_vector_context(
    query: str,
    chunks_vdb: BaseVectorStorage,
    query_param: QueryParam,
    query_embedding=None,
) -> list[dict]:
    """naive/mix：直接按查询向量检索文本块。"""
    results = await chunks_vdb.query(
        query, top_k=query_param.chunk_top_k, query_embedding=query_embedding
    )
    valid_chunks = []
    for result in results:
        if not result.get("content"):
            continue
        valid_chunks.append(
            {
                "chunk_id": result["id"],
                "content": result["content"],
                "file_path": result.get("file_path", "unknown_source"),
                "full_doc_id": result.get("full_doc_id"),
                "score": float(result.get("distance", 0.0)),
                "source_type": "vector",
            }
        )
    logger.info(f"Naive query: {len(valid_chunks)} chunks (chunk_top_k:{query_param.chunk_top_k})")
    return valid_chunks


async def _find_related_text_unit(
    items: list[dict],
    source_type: str,
    text_chunks_db: BaseKVStorage,
    backlink_storage: BaseKVStorage | None,
    global_config: dict[str, Any],
    chunks_vdb: BaseVectorStorage | None = None,
    query_embedding=None,
) -> list[dict]:
    """找出实体或关系溯源到的文本块。

    Chunk ids come from the backlink index (full provenance) and fall back to
    the record's source_id. With the VECTOR pick method candidates are ranked
    by similarity of their stored vectors to the query; otherwise by weighted
    polling, where a chunk inherits its best parent's score.
    """
    if not items:
        return []

    related_chunk_number = global_config.get(
        "related_chunk_number", DEFAULT_RELATED_CHUNK_NUMBER
    )
    pick_method = global_config.get("kg_chunk_pick_method", DEFAULT_KG_CHUNK_PICK_METHOD)

    if source_type == "entity":
        keys = [e["entity_key"] for e in items]
    else:
        keys = [make_relation_chunk_key(r["src_id"], r["tgt_id"]) for r in items]
    if backlink_storage is not None:
        stored = await backlink_storage.get_by_ids(keys)
    else:
        stored = [None] * len(keys)

    items_with_chunks = []
    chunk_occurrence: Counter = Counter()
    parent_score: dict[str, float] = {}
    for item, record in zip(items, stored):
        if record and record.get("chunk_ids"):
            chunk_ids = list(dict.fromkeys(record["chunk_ids"]))
        else:
            chunk_ids = list(dict.fromkeys(_split_field(item.get("source_id"))))
        if not chunk_ids:
            continue
        chunk_occurrence.update(chunk_ids)
        for cid in chunk_ids:
            parent_score[cid] = max(parent_score.get(cid, 0.0), item["score"])
        items_with_chunks.append({"chunk_ids": chunk_ids})
    if not items_with_chunks:
        return []

    selected: list[tuple[str, float]] = []
    if pick_method == "VECTOR" and query_embedding is not None and chunks_vdb is not None:
        num_of_chunks = max(1, int(related_chunk_number * len(items_with_chunks) / 2))
        vectors = await chunks_vdb.get_vectors_by_ids(list(parent_score))
        selected = pick_by_vector_similarity(query_embedding, vectors, num_of_chunks)
        if not selected:
            logger.warning(
                f"No chunk vectors found for {source_type} chunks, falling back to WEIGHT"
            )
    if not selected:
        for item in items_with_chunks:
            # 出现次数多的块优先
            item["sorted_chunks"] = sorted(
                item["chunk_ids"], key=lambda c: -chunk_occurrence[c]
            )
        picked = pick_by_weighted_polling(items_with_chunks, related_chunk_number, 1)
        selected = [(cid, parent_score[cid]) for cid in dict.fromkeys(picked)]

    chunk_data_list = await text_chunks_db.get_by_ids([cid for cid, _ in selected])
    result_chunks = []
    for (chunk_id, score), chunk_data in zip(selected, chunk_data_list):
        if not chunk_data or not chunk_data.get("content"):
            continue
        result_chunks.append(
            {
                "chunk_id": chunk_id,
                "content": chunk_data["content"],
                "file_path": chunk_data.get("file_path", "unknown_source"),
                "full_doc_id": chunk_data.get("full_doc_id"),
                "score": float(score),
                "source_type": source_type,
            }
        )
    logger.debug(
        f"Find {len(result_chunks)} {source_type}-related chunks from {len(items_with_chunks)} items ({pick_method})"
    )
    return result_chunks


def _merge_chunk_candidates(*chunk_lists: list[dict]) -> list[dict]:
    """按 chunk_id 去重（保留最高分），再按分数降序。"""
    merged: dict[str, dict] = {}
    for chunks in chunk_lists:
        for chunk in chunks:
            chunk_id = chunk["chunk_id"]
            if chunk_id not in merged or chunk["score"] > merged[chunk_id]["score"]:
                merged[chunk_id] = chunk
    return sorted(merged.values(), key=lambda c: c["score"], reverse=True)


async def _rerank_chunks(
    query: str,
    chunks: list[dict],
    query_param: QueryParam,
    global_config: dict[str, Any],
) -> list[dict]:
    """Rerank merged chunks when enabled; always returns at most chunk_top_k chunks.

    Chunks the reranker does not return are dropped.
    """
    if not chunks:
        return []
    rerank_service = global_config.get("rerank_service")
    if not query_param.enable_rerank or rerank_service is None:
        if query_param.enable_rerank:
            logger.debug("Rerank is enabled but no rerank service is configured")
        return chunks[: query_param.chunk_top_k]

    factor = global_config.get("rerank_candidate_factor", DEFAULT_RERANK_CANDIDATE_FACTOR)
    candidates = chunks[: max(1, query_param.chunk_top_k * factor)]
    results = await rerank_service.rerank(
        query, [c["content"] for c in candidates], top_n=query_param.chunk_top_k
    )
    reranked = []
    for result in results:
        chunk = dict(candidates[result.index])
        chunk["rerank_score"] = result.relevance_score
        reranked.append(chunk)
    logger.info(f"Rerank: {len(candidates)} candidates -> {len(reranked)} chunks")
    return reranked[: query_param.chunk_top_k]


def _format_section(header: str, lines: list[str]) -> str:
    body = "\n".join(lines)
    return f"{header}\n\n```\n{body}\n```"


def _build_context_str(
    entities: list[dict] | None,
    relations: list[dict] | None,
    chunks: list[dict],
    reference_list: list[dict],
) -> str:
    """拼接上下文：关系、实体、文本块、参考文献。None 表示不输出该段。"""
    sections = []
    if relations is not None:
        sections.append(
            _format_section(
                PROMPTS["context_relations_header"],
                [_render_relation(r) for r in relations],
            )
        )
    if entities is not None:
        sections.append(
            _format_section(
                PROMPTS["context_entities_header"],
                [_render_entity(e) for e in entities],
            )
        )
    sections.append(
        _format_section(
            PROMPTS["context_chunks_header"], [_render_chunk(c) for c in chunks]
        )
    )
    sections.append(
        _format_section(
            PROMPTS["context_references_header"],
            [_render_reference(ref) for ref in reference_list],
        )
    )
    return "\n\n".join(sections)


def _apply_token_truncation(
    entities: list[dict],
    relations: list[dict],
    query_param: QueryParam,
    tokenizer: Tokenizer,
) -> tuple[list[dict], list[dict], dict[str, bool]]:
    """关系优先占用预算，其次实体；每段在第一次超出时截断。"""
    kept_relations = truncate_list_by_token_size(
        relations,
        key=lambda r: _render_relation(r) + "\n",
        max_token_size=query_param.max_relation_tokens,
        tokenizer=tokenizer,
    )
    kept_entities = truncate_list_by_token_size(
        entities,
        key=lambda e: _render_entity(e) + "\n",
        max_token_size=query_param.max_entity_tokens,
        tokenizer=tokenizer,
    )
    truncated = {
        "entities": len(kept_entities) < len(entities),
        "relationships": len(kept_relations) < len(relations),
        "chunks": False,
    }
    logger.info(
        f"After truncation: {len(kept_entities)} entities, {len(kept_relations)} relations"
    )
    return kept_entities, kept_relations, truncated


def _fit_context(
    entities: list[dict] | None,
    relations: list[dict] | None,
    chunks: list[dict],
    query_param: QueryParam,
    tokenizer: Tokenizer,
    truncated: dict[str, bool],
) -> tuple[str, list[dict], list[dict], list[dict] | None, list[dict] | None]:
    """Fill the remaining budget with chunks, then enforce the total token ceiling.

    Returns:
        (context, final_chunks_with_reference_ids, reference_list, entities, relations)
    """
    entities = list(entities) if entities is not None else None
    relations = list(relations) if relations is not None else None

    # 文本块使用剩余预算
    base_context = _build_context_str(entities, relations, [], [])
    available = query_param.max_total_tokens - tokenizer.count_tokens(base_context)
    kept_chunks = truncate_list_by_token_size(
        chunks,
        key=lambda c: _render_chunk(c) + "\n",
        max_token_size=max(available, 0),
        tokenizer=tokenizer,
    )
    if len(kept_chunks) < len(chunks):
        truncated["chunks"] = True

    # 参考文献也计入总预算，超出时依次删减文本块、实体、关系
    while True:
        reference_list, final_chunks = generate_reference_list_from_chunks(kept_chunks)
        context = _build_context_str(entities, relations, final_chunks, reference_list)
        if tokenizer.count_tokens(context) <= query_param.max_total_tokens:
            break
        if kept_chunks:
            kept_chunks.pop()
            truncated["chunks"] = True
        elif entities:
            entities.pop()
            truncated["entities"] = True
        elif relations:
            relations.pop()
            truncated["relationships"] = True
        else:
            logger.warning("Context headers alone exceed max_total_tokens")
            break
    return context, final_chunks, reference_list, entities, relations


def _convert_to_user_format(
    entities: list[dict],
    relations: list[dict],
    chunks: list[dict],
    reference_list: list[dict],
    query_mode: str,
    hl_keywords: list[str],
    ll_keywords: list[str],
    truncated: dict[str, bool],
    processing_info: dict[str, int],
    include_references: bool = True,
) -> dict[str, Any]:
    if not include_references:
        reference_list = []
        chunks = [{k: v for k, v in c.items() if k != "reference_id"} for c in chunks]
    return {
        "status": "success",
        "message": "Query executed successfully",
        "data": {
            "entities": [dict(e) for e in entities],
            "relationships": [dict(r) for r in relations],
            "chunks": [dict(c) for c in chunks],
            "references": reference_list,
        },
        "metadata": {
            "query_mode": query_mode,
            "keywords": {"high_level": hl_keywords, "low_level": ll_keywords},
            "truncated": dict(truncated),
            "processing_info": processing_info,
        },
    }


async def _perform_kg_search(
    query: str,
    ll_keywords: list[str],
    hl_keywords: list[str],
    knowledge_graph_inst: BaseGraphStorage,
    entities_vdb: BaseVectorStorage,
    relationships_vdb: BaseVectorStorage,
    query_param: QueryParam,
    global_config: dict[str, Any],
    chunks_vdb: BaseVectorStorage | None = None,
) -> dict[str, Any]:
    """按模式执行图检索和向量检索，返回未截断的候选。"""
    mode = query_param.mode
    ll_keywords_str = ", ".join(ll_keywords)
    hl_keywords_str = ", ".join(hl_keywords)
    use_vector_chunks = mode in ("mix", "hybrid") and chunks_vdb is not None

    # 查询向量在向量检索与 VECTOR 选块之间共用
    query_embedding = None
    if chunks_vdb is not None and (
        use_vector_chunks
        or global_config.get("kg_chunk_pick_method", DEFAULT_KG_CHUNK_PICK_METHOD) == "VECTOR"
    ):
        query_embedding = await global_config["embedding_service"].embed(query)

    async def _empty_pair():
        return [], []

    async def _empty_list():
        return []

    local_task = (
        _get_node_data(ll_keywords_str, knowledge_graph_inst, entities_vdb, query_param)
        if ll_keywords and mode in ("local", "mix", "hybrid")
        else _empty_pair()
    )
    global_task = (
        _get_edge_data(hl_keywords_str, knowledge_graph_inst, relationships_vdb, query_param)
        if hl_keywords and mode in ("global", "mix", "hybrid")
        else _empty_pair()
    )
    vector_task = (
        _get_vector_context(query, chunks_vdb, query_param, query_embedding)
        if use_vector_chunks
        else _empty_list()
    )
    (local_entities, local_relations), (global_entities, global_relations), vector_chunks = (
        await asyncio.gather(local_task, global_task, vector_task)
    )

    # local 的关系端点也作为候选实体
    local_endpoints = await _find_most_related_entities_from_relationships(
        local_relations, knowledge_graph_inst
    )
    entities = _merge_by_key(
        _entity_identity, local_entities, local_endpoints, global_entities
    )
    relations = _merge_by_key(_relation_identity, local_relations, global_relations)

    return {
        "entities": entities,
        "relations": relations,
        "vector_chunks": vector_chunks,
        "query_embedding": query_embedding,
    }


async def _build_query_context(
    query: str,
    ll_keywords: list[str],
    hl_keywords: list[str],
    knowledge_graph_inst: BaseGraphStorage,
    entities_vdb: BaseVectorStorage,
    relationships_vdb: BaseVectorStorage,
    text_chunks_db: BaseKVStorage,
    query_param: QueryParam,
    global_config: dict[str, Any],
    chunks_vdb: BaseVectorStorage | None = None,
    entity_chunks_db: BaseKVStorage | None = None,
    relation_chunks_db: BaseKVStorage | None = None,
    cancel_event: asyncio.Event | None = None,
) -> QueryContextResult | None:
    """检索 -> 截断 -> 取块 -> 合并/重排 -> 拼接上下文。

    Returns None when no entity, relationship or chunk candidate was found.
    """
    tokenizer: Tokenizer = global_config["tokenizer"]
    search_result = await _perform_kg_search(
        query,
        ll_keywords,
        hl_keywords,
        knowledge_graph_inst,
        entities_vdb,
        relationships_vdb,
        query_param,
        global_config,
        chunks_vdb,
    )
    check_cancellation(cancel_event, "retrieval")
    if (
        not search_result["entities"]
        and not search_result["relations"]
        and not search_result["vector_chunks"]
    ):
        return None

    entities, relations, truncated = _apply_token_truncation(
        search_result["entities"], search_result["relations"], query_param, tokenizer
    )

    entity_chunks, relation_chunks = await asyncio.gather(
        _find_related_text_unit(
            entities,
            "entity",
            text_chunks_db,
            entity_chunks_db,
            global_config,
            chunks_vdb,
            search_result["query_embedding"],
        ),
        _find_related_text_unit(
            relations,
            "relationship",
            text_chunks_db,
            relation_chunks_db,
            global_config,
            chunks_vdb,
            search_result["query_embedding"],
        ),
    )
    merged_chunks = _merge_chunk_candidates(
        search_result["vector_chunks"], entity_chunks, relation_chunks
    )
    final_candidates = await _rerank_chunks(query, merged_chunks, query_param, global_config)
    check_cancellation(cancel_event, "chunk selection")

    context, final_chunks, reference_list, entities, relations = _fit_context(
        entities, relations, final_candidates, query_param, tokenizer, truncated
    )

    raw_data = _convert_to_user_format(
        entities,
        relations,
        final_chunks,
        reference_list,
        query_param.mode,
        hl_keywords,
        ll_keywords,
        truncated,
        {
            "total_entities_found": len(search_result["entities"]),
            "total_relations_found": len(search_result["relations"]),
            "entities_after_truncation": len(entities),
            "relations_after_truncation": len(relations),
            "merged_chunks_count": len(merged_chunks),
            "final_chunks_count": len(final_chunks),
        },
        query_param.include_references,
    )
    return QueryContextResult(context=context, raw_data=raw_data, truncated=truncated)


async def extract_keywords_only(
    text: str,
    param: QueryParam,
    global_config: dict[str, Any],
) -> tuple[list[str], list[str]]:
    """调用 LLM 从查询中提取高级/低级关键词。"""
    result = await global_config["llm_service"].extract_keywords(text)
    return result.high_level_keywords, result.low_level_keywords


async def get_keywords_from_query(
    query: str,
    query_param: QueryParam,
    global_config: dict[str, Any],
) -> tuple[list[str], list[str]]:
    """Keywords supplied on the query param win; otherwise ask the LLM."""
    if query_param.hl_keywords or query_param.ll_keywords:
        return list(query_param.hl_keywords), list(query_param.ll_keywords)
    return await extract_keywords_only(query, query_param, global_config)


def no_result_response(
    query_mode: str, message: str = "Query returned no results"
) -> QueryResult:
    """The fail sentinel with a ``status: failure`` payload."""
    return QueryResult(
        content=PROMPTS["fail_response"],
        raw_data={
            "status": "failure",
            "message": message,
            "data": {},
            "metadata": {"query_mode": query_mode},
        },
    )


async def _generate_answer(
    query: str,
    sys_prompt: str,
    query_param: QueryParam,
    global_config: dict[str, Any],
    raw_data: dict[str, Any],
) -> QueryResult:
    llm_service = global_config["llm_service"]
    config = global_config.get("query_llm_config")
    history = query_param.conversation_history or None
    if query_param.stream:
        return QueryResult(
            response_iterator=llm_service.generate_stream(
                query, system_prompt=sys_prompt, history_messages=history, config=config
            ),
            raw_data=raw_data,
            is_streaming=True,
        )
    response = await llm_service.generate(
        query, system_prompt=sys_prompt, history_messages=history, config=config
    )
    return QueryResult(content=response.strip(), raw_data=raw_data)


async def kg_query(
    query: str,
    knowledge_graph_inst: BaseGraphStorage,
    entities_vdb: BaseVectorStorage,
    relationships_vdb: BaseVectorStorage,
    text_chunks_db: BaseKVStorage,
    query_param: QueryParam,
    global_config: dict[str, Any],
    system_prompt: str | None = None,
    chunks_vdb: BaseVectorStorage | None = None,
    entity_chunks_db: BaseKVStorage | None = None,
    relation_chunks_db: BaseKVStorage | None = None,
    cancel_event: asyncio.Event | None = None,
) -> QueryResult | None:
    """知识图谱查询（local / global / hybrid / mix）。

    Returns:
        QueryResult, or None when nothing relevant was retrieved.

    Raises:
        PipelineCancelledException: ``cancel_event`` was set between stages
    """
    if not query:
        return no_result_response(query_param.mode, "Query text is empty")

    hl_keywords, ll_keywords = await get_keywords_from_query(
        query, query_param, global_config
    )
    logger.debug(f"High-level keywords: {hl_keywords}")
    logger.debug(f"Low-level  keywords: {ll_keywords}")
    check_cancellation(cancel_event, "keyword extraction")

    # 关键词为空时，短查询直接作为低级关键词
    if not hl_keywords and not ll_keywords:
        if len(query) < global_config.get(
            "keyword_fallback_query_length", DEFAULT_KEYWORD_FALLBACK_QUERY_LENGTH
        ):
            logger.warning("Forced low_level_keywords to origin query: %s", query)
            ll_keywords = [query]
        else:
            logger.warning("low_level_keywords and high_level_keywords is empty")
            return None

    context_result = await _build_query_context(
        query,
        ll_keywords,
        hl_keywords,
        knowledge_graph_inst,
        entities_vdb,
        relationships_vdb,
        text_chunks_db,
        query_param,
        global_config,
        chunks_vdb,
        entity_chunks_db,
        relation_chunks_db,
        cancel_event,
    )
    if context_result is None:
        logger.info("[kg_query] No query context could be built; returning no-result.")
        return None

    if query_param.only_need_context and not query_param.only_need_prompt:
        return QueryResult(content=context_result.context, raw_data=context_result.raw_data)

    user_prompt = f"\n\n{query_param.user_prompt}" if query_param.user_prompt else "n/a"
    sys_prompt = (system_prompt or PROMPTS["rag_response"]).format(
        response_type=query_param.response_type,
        user_prompt=user_prompt,
        context_data=context_result.context,
    )
    if query_param.only_need_prompt:
        return QueryResult(
            content="\n\n".join([sys_prompt, "---User Query---", query]),
            raw_data=context_result.raw_data,
        )

    check_cancellation(cancel_event, "answer generation")
    tokenizer: Tokenizer = global_config["tokenizer"]
    logger.debug(
        f"[kg_query] Sending to LLM: {tokenizer.count_tokens(query) + tokenizer.count_tokens(sys_prompt):,} tokens"
    )
    return await _generate_answer(
        query, sys_prompt, query_param, global_config, context_result.raw_data
    )


async def naive_query(
    query: str,
    chunks_vdb: BaseVectorStorage,
    query_param: QueryParam,
    global_config: dict[str, Any],
    system_prompt: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> QueryResult | None:
    """纯向量检索：只用文本块构建上下文。"""
    if not query:
        return no_result_response("naive", "Query text is empty")

    tokenizer: Tokenizer = global_config["tokenizer"]
    chunks = await _get_vector_context(query, chunks_vdb, query_param)
    check_cancellation(cancel_event, "retrieval")
    if not chunks:
        logger.info("[naive_query] No relevant document chunks found; returning no-result.")
        return None

    merged_chunks = _merge_chunk_candidates(chunks)
    final_candidates = await _rerank_chunks(query, merged_chunks, query_param, global_config)
    check_cancellation(cancel_event, "chunk selection")
    truncated = {"entities": False, "relationships": False, "chunks": False}
    context, final_chunks, reference_list, _, _ = _fit_context(
        None, None, final_candidates, query_param, tokenizer, truncated
    )
    raw_data = _convert_to_user_format(
        [],
        [],
        final_chunks,
        reference_list,
        "naive",
        [],
        [],
        truncated,
        {
            "total_chunks_found": len(chunks),
            "final_chunks_count": len(final_chunks),
        },
        query_param.include_references,
    )

    if query_param.only_need_context and not query_param.only_need_prompt:
        return QueryResult(content=context, raw_data=raw_data)

    user_prompt = f"\n\n{query_param.user_prompt}" if query_param.user_prompt else "n/a"
    sys_prompt = (system_prompt or PROMPTS["naive_rag_response"]).format(
        response_type=query_param.response_type,
        user_prompt=user_prompt,
        content_data=context,
    )
    if query_param.only_need_prompt:
        return QueryResult(
            content="\n\n".join([sys_prompt, "---User Query---", query]),
            raw_data=raw_data,
        )
    check_cancellation(cancel_event, "answer generation")
    return await _generate_answer(query, sys_prompt, query_param, global_config, raw_data)
