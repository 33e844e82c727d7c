from __future__ import annotations

import asyncio
import inspect
import os
from dataclasses import dataclass, field, fields, replace
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union, final

from dotenv import load_dotenv

from fusionrag.base import (
    BaseGraphStorage,
    BaseKVStorage,
    BaseVectorStorage,
    DeletionResult,
    LLMCallConfig,
    QueryParam,
    QueryResult,
    StoragesStatus,
    TextChunkSchema,
)
from fusionrag.constants import (
    DEFAULT_CHUNK_OVERLAP_TOKEN_SIZE,
    DEFAULT_CHUNK_TOKEN_SIZE,
    DEFAULT_COSINE_THRESHOLD,
    DEFAULT_ENTITY_TYPES,
    DEFAULT_FORCE_LLM_SUMMARY_ON_MERGE,
    DEFAULT_KEYWORD_FALLBACK_QUERY_LENGTH,
    DEFAULT_KG_CHUNK_PICK_METHOD,
    DEFAULT_MAX_ASYNC,
    DEFAULT_MAX_ENTITIES_PER_CHUNK,
    DEFAULT_MAX_FILE_PATHS,
    DEFAULT_MAX_GRAPH_NODES,
    DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK,
    DEFAULT_MAX_SOURCE_IDS_PER_ENTITY,
    DEFAULT_MAX_SOURCE_IDS_PER_RELATION,
    DEFAULT_RELATED_CHUNK_NUMBER,
    DEFAULT_RERANK_CANDIDATE_FACTOR,
    DEFAULT_SOURCE_IDS_LIMIT_METHOD,
    DEFAULT_SUMMARY_CONTEXT_SIZE,
    DEFAULT_SUMMARY_LENGTH_RECOMMENDED,
    DEFAULT_SUMMARY_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TIKTOKEN_MODEL_NAME,
    DEFAULT_WORKING_DIR,
    DEFAULT_WORKSPACE,
    GRAPH_FIELD_SEP,
    UNKNOWN_ENTITY_TYPE,
)
from fusionrag.events import ProgressCallback, ProgressChannel, TaskStage, TaskState
from fusionrag.exceptions import InputValidationError, MergeError
from fusionrag.kg import get_storage_class, verify_storage_implementation
from fusionrag.kg.shared_storage import get_storage_keyed_lock
from fusionrag.namespace import NameSpace
from fusionrag.operate import (
    chunking_by_token_size,
    kg_query,
    merge_nodes_and_edges,
    naive_query,
    no_result_response,
    process_chunks,
)
from fusionrag.types import KnowledgeGraph
from fusionrag.utils import (
    TiktokenTokenizer,
    Tokenizer,
    always_get_an_event_loop,
    apply_source_ids_limit,
    check_cancellation,
    compute_mdhash_id,
    get_content_summary,
    get_env_value,
    logger,
    make_relation_chunk_key,
    normalize_entity_name,
    normalize_source_ids_limit_method,
)

# use the .env that is inside the current folder
# allows to use different .env file for each fusionrag instance
# the OS environment variables take precedence over the .env file
load_dotenv(dotenv_path=".env", override=False)


@final
@dataclass
class FusionRAG:
    """FusionRAG: knowledge-graph and vector fused retrieval-augmented generation."""

    # Directory
    # ---
    # 缓存与持久化文件目录
    working_dir: str = field(
        default=get_env_value("WORKING_DIR", DEFAULT_WORKING_DIR, str)
    )
    """Directory where the storages persist their files."""

    # Storage
    # ---
    # 默认存储后端，可按名称替换
    kv_storage: str = field(default="JsonKVStorage")
    vector_storage: str = field(default="NanoVectorDBStorage")
    graph_storage: str = field(default="NetworkXStorage")

    # 工作区，用于数据隔离
    workspace: str = field(default_factory=lambda: os.getenv("WORKSPACE", DEFAULT_WORKSPACE))
    """Workspace for data isolation. Defaults to the WORKSPACE environment variable or ""."""

    # Collaborators
    # ---
    # 大模型服务（BaseLLMService）
    llm_service: Any = field(default=None)
    """Language-model collaborator. Required for insert and for non-bypass queries."""
    # 嵌入服务（BaseEmbeddingService）
    embedding_service: Any = field(default=None)
    """Embedding collaborator. Required."""
    # 重排序服务（BaseRerankService），可选
    rerank_service: Any = field(default=None)
    """Optional rerank collaborator; chunks keep similarity order when absent."""
    # 回答生成时使用的调用参数
    query_llm_config: LLMCallConfig = field(
        default_factory=lambda: LLMCallConfig(temperature=DEFAULT_TEMPERATURE)
    )

    # Text chunking
    # ---
    # 文本块最大 token 数
    chunk_token_size: int = field(
        default=get_env_value("CHUNK_SIZE", DEFAULT_CHUNK_TOKEN_SIZE, int)
    )
    # 相邻文本块的重叠 token 数
    chunk_overlap_token_size: int = field(
        default=get_env_value("CHUNK_OVERLAP_SIZE", DEFAULT_CHUNK_OVERLAP_TOKEN_SIZE, int)
    )
    # 分词器实例，为空时使用 tiktoken
    tokenizer: Optional[Tokenizer] = field(default=None)
    tiktoken_model_name: str = field(
        default=get_env_value("TIKTOKEN_MODEL_NAME", DEFAULT_TIKTOKEN_MODEL_NAME, str)
    )
    chunking_func: Callable[
        [Tokenizer, str, Optional[str], bool, int, int],
        Union[List[Dict[str, Any]], Awaitable[List[Dict[str, Any]]]],
    ] = field(default_factory=lambda: chunking_by_token_size)
    """
    Custom chunking function, sync or async, called as
    ``chunking_func(tokenizer, content, split_by_character, split_by_character_only,
    chunk_overlap_token_size, chunk_token_size)``. It returns a list of
    ``{"tokens", "content", "chunk_order_index"}`` dicts.
    """

    # Entity extraction
    # ---
    entity_types: list[str] = field(
        default_factory=lambda: get_env_value("ENTITY_TYPES", DEFAULT_ENTITY_TYPES, list)
    )
    max_entities_per_chunk: int = field(
        default=get_env_value(
            "MAX_ENTITIES_PER_CHUNK", DEFAULT_MAX_ENTITIES_PER_CHUNK, int
        )
    )
    max_relationships_per_chunk: int = field(
        default=get_env_value(
            "MAX_RELATIONSHIPS_PER_CHUNK", DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK, int
        )
    )

    # Merge
    # ---
    # 描述片段数超过该值时调用 LLM 摘要
    force_llm_summary_on_merge: int = field(
        default=get_env_value(
            "FORCE_LLM_SUMMARY_ON_MERGE", DEFAULT_FORCE_LLM_SUMMARY_ON_MERGE, int
        )
    )
    # 描述 token 数超过该值时调用 LLM 摘要
    summary_max_tokens: int = field(
        default=get_env_value("SUMMARY_MAX_TOKENS", DEFAULT_SUMMARY_MAX_TOKENS, int)
    )
    # 单次摘要请求的最大输入 token 数
    summary_context_size: int = field(
        default=get_env_value("SUMMARY_CONTEXT_SIZE", DEFAULT_SUMMARY_CONTEXT_SIZE, int)
    )
    summary_length_recommended: int = field(
        default=get_env_value(
            "SUMMARY_LENGTH_RECOMMENDED", DEFAULT_SUMMARY_LENGTH_RECOMMENDED, int
        )
    )
    # 合并并发度为 2 * llm_model_max_async
    llm_model_max_async: int = field(
        default=get_env_value("MAX_ASYNC", DEFAULT_MAX_ASYNC, int)
    )
    max_source_ids_per_entity: int = field(
        default=get_env_value(
            "MAX_SOURCE_IDS_PER_ENTITY", DEFAULT_MAX_SOURCE_IDS_PER_ENTITY, int
        )
    )
    max_source_ids_per_relation: int = field(
        default=get_env_value(
            "MAX_SOURCE_IDS_PER_RELATION", DEFAULT_MAX_SOURCE_IDS_PER_RELATION, int
        )
    )
    # 溯源上限策略：FIFO 保留最新，KEEP 保留最早
    source_ids_limit_method: str = field(
        default_factory=lambda: normalize_source_ids_limit_method(
            get_env_value("SOURCE_IDS_LIMIT_METHOD", DEFAULT_SOURCE_IDS_LIMIT_METHOD, str)
        )
    )
    max_file_paths: int = field(
        default=get_env_value("MAX_FILE_PATHS", DEFAULT_MAX_FILE_PATHS, int)
    )

    # Retrieval
    # ---
    cosine_better_than_threshold: float = field(
        default=get_env_value("COSINE_THRESHOLD", DEFAULT_COSINE_THRESHOLD, float)
    )
    """Minimum cosine similarity for a vector match."""
    related_chunk_number: int = field(
        default=get_env_value("RELATED_CHUNK_NUMBER", DEFAULT_RELATED_CHUNK_NUMBER, int)
    )
    """Number of related chunks to grab from a single entity or relation."""
    # 'WEIGHT' 按权重轮询，'VECTOR' 按向量相似度
    kg_chunk_pick_method: str = field(
        default=get_env_value("KG_CHUNK_PICK_METHOD", DEFAULT_KG_CHUNK_PICK_METHOD, str)
    )
    rerank_candidate_factor: int = field(
        default=get_env_value(
            "RERANK_CANDIDATE_FACTOR", DEFAULT_RERANK_CANDIDATE_FACTOR, int
        )
    )
    """Pre-rerank cap is chunk_top_k * rerank_candidate_factor."""
    keyword_fallback_query_length: int = field(
        default=DEFAULT_KEYWORD_FALLBACK_QUERY_LENGTH
    )
    max_graph_nodes: int = field(
        default=get_env_value("MAX_GRAPH_NODES", DEFAULT_MAX_GRAPH_NODES, int)
    )

    vector_db_storage_cls_kwargs: dict[str, Any] = field(default_factory=dict)
    """Additional parameters for vector database storage."""

    _storages_status: StoragesStatus = field(default=StoragesStatus.NOT_CREATED)

    def __post_init__(self):
        if not os.path.exists(self.working_dir):
            logger.info(f"Creating working directory {self.working_dir}")
            os.makedirs(self.working_dir)

        for storage_type, storage_name in (
            ("KV_STORAGE", self.kv_storage),
            ("VECTOR_STORAGE", self.vector_storage),
            ("GRAPH_STORAGE", self.graph_storage),
        ):
            verify_storage_implementation(storage_type, storage_name)

        if self.embedding_service is None:
            raise ValueError("embedding_service is required")

        self.vector_db_storage_cls_kwargs = {
            "cosine_better_than_threshold": self.cosine_better_than_threshold,
            **self.vector_db_storage_cls_kwargs,
        }

        if self.tokenizer is None:
            self.tokenizer = TiktokenTokenizer(self.tiktoken_model_name)

        if self.force_llm_summary_on_merge < 3:
            logger.warning(
                f"force_llm_summary_on_merge should be at least 3, got {self.force_llm_summary_on_merge}"
            )
        if self.summary_length_recommended > self.summary_max_tokens:
            logger.warning(
                f"summary_max_tokens({self.summary_max_tokens}) should be greater than summary_length_recommended({self.summary_length_recommended})"
            )

        # 浅拷贝：服务对象按引用传给存储和算子
        global_config = {f.name: getattr(self, f.name) for f in fields(self)}
        self._global_config = global_config
        _print_config = ",\n  ".join(
            f"{k} = {v}" for k, v in global_config.items() if not k.endswith("_service")
        )
        logger.debug(f"FusionRAG init with param:\n  {_print_config}\n")

        self.key_string_value_json_storage_cls: type[BaseKVStorage] = partial(  # type: ignore
            get_storage_class(self.kv_storage), global_config=global_config
        )
        self.vector_db_storage_cls: type[BaseVectorStorage] = partial(  # type: ignore
            get_storage_class(self.vector_storage), global_config=global_config
        )
        self.graph_storage_cls: type[BaseGraphStorage] = partial(  # type: ignore
            get_storage_class(self.graph_storage), global_config=global_config
        )

        self.full_docs: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_FULL_DOCS, workspace=self.workspace
        )
        self.text_chunks: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_TEXT_CHUNKS, workspace=self.workspace
        )
        self.full_entities: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_FULL_ENTITIES, workspace=self.workspace
        )
        self.full_relations: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_FULL_RELATIONS, workspace=self.workspace
        )
        self.entity_chunks: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_ENTITY_CHUNKS, workspace=self.workspace
        )
        self.relation_chunks: BaseKVStorage = self.key_string_value_json_storage_cls(  # type: ignore
            namespace=NameSpace.KV_STORE_RELATION_CHUNKS, workspace=self.workspace
        )
        self.chunk_entity_relation_graph: BaseGraphStorage = self.graph_storage_cls(  # type: ignore
            namespace=NameSpace.GRAPH_STORE_CHUNK_ENTITY_RELATION,
            workspace=self.workspace,
        )
        self.entities_vdb: BaseVectorStorage = self.vector_db_storage_cls(  # type: ignore
            namespace=NameSpace.VECTOR_STORE_ENTITIES,
            workspace=self.workspace,
            embedding_service=self.embedding_service,
            meta_fields={
                "entity_name",
                "entity_key",
                "entity_type",
                "source_id",
                "content",
                "file_path",
            },
        )
        self.relationships_vdb: BaseVectorStorage = self.vector_db_storage_cls(  # type: ignore
            namespace=NameSpace.VECTOR_STORE_RELATIONSHIPS,
            workspace=self.workspace,
            embedding_service=self.embedding_service,
            meta_fields={
                "src_id",
                "tgt_id",
                "source_name",
                "target_name",
                "keywords",
                "source_id",
                "content",
                "file_path",
                "weight",
            },
        )
        self.chunks_vdb: BaseVectorStorage = self.vector_db_storage_cls(  # type: ignore
            namespace=NameSpace.VECTOR_STORE_CHUNKS,
            workspace=self.workspace,
            embedding_service=self.embedding_service,
            meta_fields={"full_doc_id", "content", "file_path"},
        )

        self._progress = ProgressChannel()
        self._storages_status = StoragesStatus.CREATED

    def _storages(self) -> list[tuple[str, Any]]:
        # 固定顺序：初始化、持久化、清理都按此顺序逐个执行
        return [
            ("full_docs", self.full_docs),
            ("text_chunks", self.text_chunks),
            ("full_entities", self.full_entities),
            ("full_relations", self.full_relations),
            ("entity_chunks", self.entity_chunks),
            ("relation_chunks", self.relation_chunks),
            ("entities_vdb", self.entities_vdb),
            ("relationships_vdb", self.relationships_vdb),
            ("chunks_vdb", self.chunks_vdb),
            ("chunk_entity_relation_graph", self.chunk_entity_relation_graph),
        ]

    async def initialize_storages(self):
        """Storage initialization must be called one by one to prevent deadlock"""
        if self._storages_status == StoragesStatus.CREATED:
            for _, storage in self._storages():
                await storage.initialize()
            self._storages_status = StoragesStatus.INITIALIZED
            logger.debug("All storage types initialized")

    async def finalize_storages(self):
        """Flush and close every storage; one failure does not stop the others."""
        if self._storages_status != StoragesStatus.INITIALIZED:
            return
        await self._progress.aclose()

        successful_finalizations = []
        failed_finalizations = []
        for storage_name, storage in self._storages():
            try:
                await storage.finalize()
                successful_finalizations.append(storage_name)
                logger.debug(f"Successfully finalized {storage_name}")
            except Exception as e:
                logger.error(f"Failed to finalize {storage_name}: {e}")
                failed_finalizations.append(storage_name)

        if successful_finalizations:
            logger.info(f"Successfully finalized {len(successful_finalizations)} storages")
        if failed_finalizations:
            logger.error(
                f"Failed to finalize {len(failed_finalizations)} storages: {', '.join(failed_finalizations)}"
            )
        self._storages_status = StoragesStatus.FINALIZED

    # ===================== 进度事件 =====================

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Subscribe to insert progress events; returns an unsubscribe function."""
        return self._progress.subscribe(callback)

    def _emit(
        self,
        stage: TaskStage,
        current: int = 0,
        total: int = 0,
        description: str = "",
        doc_id: str | None = None,
    ) -> None:
        self._progress.emit(
            TaskState(
                stage=stage,
                current=current,
                total=total,
                description=description,
                doc_id=doc_id,
            )
        )

    # ===================== 插入 =====================

    def insert(
        self,
        input: str,
        doc_id: str | None = None,
        file_path: str | None = None,
        split_by_character: str | None = None,
        split_by_character_only: bool = False,
    ) -> str:
        """Sync insert of one document; returns its document id."""
        loop = always_get_an_event_loop()
        return loop.run_until_complete(
            self.ainsert(
                input, doc_id, file_path, split_by_character, split_by_character_only
            )
        )

    async def ainsert(
        self,
        input: str,
        doc_id: str | None = None,
        file_path: str | None = None,
        split_by_character: str | None = None,
        split_by_character_only: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """插入一个文档：分块 -> 嵌入+抽取 -> 存块 -> 合并图谱 -> 持久化。

        Args:
            input: document text
            doc_id: document id; defaults to an MD5 hash of the content, so
                inserting the same content again is a no-op
            file_path: used for citations, defaults to "unknown_source"
            split_by_character: split on this string first, then by token size
            split_by_character_only: only split on ``split_by_character``
            cancel_event: set it to abort between pipeline stages

        Returns:
            the document id

        Raises:
            ChunkProcessingError: a chunk failed embedding or extraction; nothing was written
            MergeError: some entities/relations failed to merge; the rest were committed
        """
        if input is None or not input.strip():
            raise InputValidationError("Document content cannot be empty")
        content = input.strip()
        doc_id = doc_id or compute_mdhash_id(content, prefix="doc-")
        file_path = file_path or "unknown_source"

        namespace = f"{self.workspace}:DocInsert" if self.workspace else "DocInsert"
        async with get_storage_keyed_lock([doc_id], namespace=namespace):
            if await self.full_docs.get_by_id(doc_id) is not None:
                logger.info(f"Document {doc_id} already inserted, skipping")
                self._emit(
                    TaskStage.COMPLETED, 1, 1, "Document already inserted", doc_id
                )
                return doc_id
            await self._process_document(
                content,
                doc_id,
                file_path,
                split_by_character,
                split_by_character_only,
                cancel_event,
            )
        return doc_id

    async def _process_document(
        self,
        content: str,
        doc_id: str,
        file_path: str,
        split_by_character: str | None,
        split_by_character_only: bool,
        cancel_event: asyncio.Event | None,
    ) -> None:
        logger.info(f"Processing document {doc_id}: {get_content_summary(content, 80)}")

        # 1. 分块
        self._emit(TaskStage.DOCUMENT_CHUNKING, 0, 1, "Chunking document", doc_id)
        chunking_result = self.chunking_func(
            self.tokenizer,
            content,
            split_by_character,
            split_by_character_only,
            self.chunk_overlap_token_size,
            self.chunk_token_size,
        )
        if inspect.isawaitable(chunking_result):
            chunking_result = await chunking_result
        if not isinstance(chunking_result, (list, tuple)):
            raise TypeError(
                f"chunking_func must return a list or tuple of dicts, got {type(chunking_result)}"
            )
        chunks: dict[str, TextChunkSchema] = {
            compute_mdhash_id(doc_id + dp["content"], prefix="chunk-"): {
                **dp,
                "full_doc_id": doc_id,
                "file_path": file_path,
            }
            for dp in chunking_result
        }
        if not chunks:
            raise InputValidationError(f"Document {doc_id} produced no chunks")
        self._emit(
            TaskStage.DOCUMENT_CHUNKING, 1, 1, f"Split into {len(chunks)} chunks", doc_id
        )
        check_cancellation(cancel_event, "chunking")

        # 2. 嵌入 + 实体关系抽取
        chunk_results = await process_chunks(
            chunks,
            self._global_config,
            doc_id=doc_id,
            cancel_event=cancel_event,
            report_progress=self._progress.emit,
        )
        check_cancellation(cancel_event, "chunk processing")

        # 3. 存储文本块及其向量
        self._emit(TaskStage.STORING_TEXT_CHUNKS, 0, len(chunks), "Storing chunks", doc_id)
        await self.text_chunks.upsert(chunks)
        self._emit(
            TaskStage.STORING_CHUNK_VECTORS, 0, len(chunks), "Storing chunk vectors", doc_id
        )
        await self.chunks_vdb.upsert(
            {
                result["chunk_id"]: {
                    **chunks[result["chunk_id"]],
                    "vector": result["embedding"],
                }
                for result in chunk_results
            }
        )
        check_cancellation(cancel_event, "chunk storage")

        # 4. 合并到知识图谱；部分失败时仍持久化已提交的数据
        try:
            await merge_nodes_and_edges(
                chunk_results=chunk_results,
                knowledge_graph_inst=self.chunk_entity_relation_graph,
                entity_vdb=self.entities_vdb,
                relationships_vdb=self.relationships_vdb,
                global_config=self._global_config,
                full_entities_storage=self.full_entities,
                full_relations_storage=self.full_relations,
                doc_id=doc_id,
                entity_chunks_storage=self.entity_chunks,
                relation_chunks_storage=self.relation_chunks,
                cancel_event=cancel_event,
                report_progress=self._progress.emit,
            )
        except MergeError:
            await self._insert_done()
            raise

        # 5. 最后写入文档记录，作为插入完成的标志
        self._emit(TaskStage.STORING_FULL_DOCUMENT, 0, 1, "Storing document", doc_id)
        await self.full_docs.upsert(
            {
                doc_id: {
                    "content": content,
                    "file_path": file_path,
                    "chunks_count": len(chunks),
                    "chunks_list": list(chunks.keys()),
                }
            }
        )

        await self._insert_done(doc_id)
        self._emit(TaskStage.COMPLETED, 1, 1, "Document processed", doc_id)
        logger.info(f"Completed processing document {doc_id} ({len(chunks)} chunks)")

    async def _insert_done(self, doc_id: str | None = None) -> None:
        # 逐个持久化，任一时刻最多一个存储处于未刷盘状态
        self._emit(TaskStage.PERSISTING, 0, len(self._storages()), "Persisting", doc_id)
        for _, storage in self._storages():
            await storage.index_done_callback()

    # ===================== 查询 =====================

    def query(
        self,
        query: str,
        param: QueryParam = QueryParam(),
        system_prompt: str | None = None,
    ) -> QueryResult:
        """Sync query."""
        loop = always_get_an_event_loop()
        return loop.run_until_complete(self.aquery(query, param, system_prompt))

    async def aquery(
        self,
        query: str,
        param: QueryParam = QueryParam(),
        system_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> QueryResult:
        """异步查询：按 param.mode 检索上下文并生成回答。

        Returns:
            QueryResult with ``content`` (or ``response_iterator`` when streaming)
            and ``raw_data``. When nothing relevant is found the content is
            ``PROMPTS["fail_response"]``.
        """
        check_cancellation(cancel_event, "query")
        global_config = self._global_config

        if param.mode in ["local", "global", "hybrid", "mix"]:
            result = await kg_query(
                query.strip(),
                self.chunk_entity_relation_graph,
                self.entities_vdb,
                self.relationships_vdb,
                self.text_chunks,
                param,
                global_config,
                system_prompt=system_prompt,
                chunks_vdb=self.chunks_vdb,
                entity_chunks_db=self.entity_chunks,
                relation_chunks_db=self.relation_chunks,
                cancel_event=cancel_event,
            )
        elif param.mode == "naive":
            result = await naive_query(
                query.strip(),
                self.chunks_vdb,
                param,
                global_config,
                system_prompt=system_prompt,
                cancel_event=cancel_event,
            )
        elif param.mode == "bypass":
            history = param.conversation_history or None
            if param.stream:
                result = QueryResult(
                    response_iterator=self.llm_service.generate_stream(
                        query,
                        system_prompt=system_prompt,
                        history_messages=history,
                        config=self.query_llm_config,
                    ),
                    is_streaming=True,
                )
            else:
                response = await self.llm_service.generate(
                    query,
                    system_prompt=system_prompt,
                    history_messages=history,
                    config=self.query_llm_config,
                )
                result = QueryResult(content=response.strip())
        else:
            raise ValueError(f"Unknown mode {param.mode}")

        check_cancellation(cancel_event, "query")
        if result is None:
            return no_result_response(param.mode)
        return result

    async def aquery_data(
        self,
        query: str,
        param: QueryParam = QueryParam(),
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Retrieve structured data only: entities, relationships, chunks and references."""
        if param.mode == "bypass":
            raise ValueError("bypass mode retrieves no data")
        data_param = replace(
            param, only_need_context=True, only_need_prompt=False, stream=False
        )
        result = await self.aquery(query, data_param, cancel_event=cancel_event)
        return result.raw_data or {}

    def query_data(self, query: str, param: QueryParam = QueryParam()) -> dict[str, Any]:
        loop = always_get_an_event_loop()
        return loop.run_until_complete(self.aquery_data(query, param))

    # ===================== 图谱查看 =====================

    async def get_graph_labels(self) -> list[str]:
        return await self.chunk_entity_relation_graph.get_all_labels()

    async def get_popular_labels(self, limit: int = 300) -> list[str]:
        return await self.chunk_entity_relation_graph.get_popular_labels(limit)

    async def get_knowledge_graph(
        self,
        node_label: str,
        max_depth: int = 3,
        max_nodes: int | None = None,
    ) -> KnowledgeGraph:
        """Get the subgraph around ``node_label`` ("*" for the whole graph).

        max_nodes defaults to, and is capped at, ``self.max_graph_nodes``.
        """
        if max_nodes is None:
            max_nodes = self.max_graph_nodes
        else:
            max_nodes = min(max_nodes, self.max_graph_nodes)
        if node_label != "*":
            node_label = normalize_entity_name(node_label)
        return await self.chunk_entity_relation_graph.get_knowledge_graph(
            node_label, max_depth, max_nodes
        )

    # ===================== 删除 =====================

    async def adelete_by_doc_id(self, doc_id: str) -> DeletionResult:
        """删除文档及其文本块，并更新受影响的实体和关系。

        Entities and relationships whose provenance becomes empty are deleted.
        The others lose the document's chunks from their provenance, and a
        relationship's weight drops by the weight those chunks contributed.
        Descriptions are kept as merged. An entity that lost all of its own
        chunks but still has relationships is kept, backed by their chunks.
        """
        doc = await self.full_docs.get_by_id(doc_id)
        if doc is None:
            logger.warning(f"Document {doc_id} not found")
            return DeletionResult(
                status="not_found",
                doc_id=doc_id,
                message=f"Document {doc_id} not found.",
            )
        file_path = doc.get("file_path")
        doc_chunk_ids = set(doc.get("chunks_list", []))
        logger.info(f"Deleting document {doc_id} with {len(doc_chunk_ids)} chunks")

        entity_record = await self.full_entities.get_by_id(doc_id) or {}
        relation_record = await self.full_relations.get_by_id(doc_id) or {}
        graph = self.chunk_entity_relation_graph
        namespace = f"{self.workspace}:GraphDB" if self.workspace else "GraphDB"

        try:
            for src, tgt in relation_record.get("relation_pairs", []):
                async with get_storage_keyed_lock(sorted([src, tgt]), namespace=namespace):
                    await self._remove_relation_provenance(src, tgt, doc_chunk_ids)
            for entity_key in entity_record.get("entity_names", []):
                async with get_storage_keyed_lock([entity_key], namespace=namespace):
                    await self._remove_entity_provenance(entity_key, doc_chunk_ids)

            await self.chunks_vdb.delete(list(doc_chunk_ids))
            await self.text_chunks.delete(list(doc_chunk_ids))
            await self.full_entities.delete([doc_id])
            await self.full_relations.delete([doc_id])
            await self.full_docs.delete([doc_id])
        finally:
            await self._insert_done()

        logger.info(
            f"Deleted document {doc_id}; graph now has {len(await graph.get_all_labels())} entities"
        )
        return DeletionResult(
            status="success",
            doc_id=doc_id,
            message=f"Document {doc_id} deleted successfully",
            file_path=file_path,
        )

    async def _remove_relation_provenance(
        self, src: str, tgt: str, doc_chunk_ids: set[str]
    ) -> None:
        graph = self.chunk_entity_relation_graph
        relation_key = make_relation_chunk_key(src, tgt)
        edge = await graph.get_edge(src, tgt)
        record = await self.relation_chunks.get_by_id(relation_key) or {}
        if edge is None:
            await self.relation_chunks.delete([relation_key])
            return

        chunk_ids = record.get("chunk_ids") or [
            c for c in str(edge.get("source_id", "")).split(GRAPH_FIELD_SEP) if c
        ]
        remaining = [c for c in chunk_ids if c not in doc_chunk_ids]
        rel_vdb_id = compute_mdhash_id(src + tgt, prefix="rel-")
        if not remaining:
            await graph.remove_edges([(src, tgt)])
            await self.relationships_vdb.delete([rel_vdb_id])
            await self.relation_chunks.delete([relation_key])
            logger.debug(f"Deleted relation {src}~{tgt}")
            return

        chunk_weights = dict(record.get("chunk_weights") or {})
        weight = float(edge.get("weight", 0.0))
        for chunk_id in chunk_ids:
            if chunk_id in doc_chunk_ids:
                weight -= float(chunk_weights.pop(chunk_id, 0.0))
        source_ids = apply_source_ids_limit(
            remaining, self.max_source_ids_per_relation, self.source_ids_limit_method
        )
        updated_edge = {
            **edge,
            "weight": max(weight, 0.0),
            "source_id": GRAPH_FIELD_SEP.join(source_ids),
        }
        await graph.upsert_edge(src, tgt, edge_data=updated_edge)
        await self.relationships_vdb.upsert(
            {
                rel_vdb_id: {
                    "src_id": src,
                    "tgt_id": tgt,
                    "source_name": updated_edge.get("source_name", src),
                    "target_name": updated_edge.get("target_name", tgt),
                    "keywords": updated_edge.get("keywords", ""),
                    "content": f"{updated_edge.get('keywords', '')}\t{updated_edge.get('source_name', src)}\n"
                    f"{updated_edge.get('target_name', tgt)}\n{updated_edge.get('description', '')}",
                    "source_id": updated_edge["source_id"],
                    "file_path": updated_edge.get("file_path", "unknown_source"),
                    "weight": updated_edge["weight"],
                }
            }
        )
        await self.relation_chunks.upsert(
            {
                relation_key: {
                    "chunk_ids": remaining,
                    "count": len(remaining),
                    "chunk_weights": chunk_weights,
                }
            }
        )

    async def _remove_entity_provenance(
        self, entity_key: str, doc_chunk_ids: set[str]
    ) -> None:
        graph = self.chunk_entity_relation_graph
        node = await graph.get_node(entity_key)
        record = await self.entity_chunks.get_by_id(entity_key) or {}
        if node is None:
            await self.entity_chunks.delete([entity_key])
            return

        chunk_ids = record.get("chunk_ids") or [
            c for c in str(node.get("source_id", "")).split(GRAPH_FIELD_SEP) if c
        ]
        remaining = [c for c in chunk_ids if c not in doc_chunk_ids]
        ent_vdb_id = compute_mdhash_id(entity_key, prefix="ent-")

        if not remaining:
            # 仍有关系连接时保留实体，改由关系的溯源支撑
            edges = await graph.get_node_edges(entity_key) or []
            for src, tgt in edges:
                edge = await graph.get_edge(src, tgt) or {}
                for chunk_id in str(edge.get("source_id", "")).split(GRAPH_FIELD_SEP):
                    if chunk_id and chunk_id not in remaining:
                        remaining.append(chunk_id)
            if not remaining:
                await graph.delete_node(entity_key)
                await self.entities_vdb.delete([ent_vdb_id])
                await self.entity_chunks.delete([entity_key])
                logger.debug(f"Deleted entity {entity_key}")
                return

        source_ids = apply_source_ids_limit(
            remaining, self.max_source_ids_per_entity, self.source_ids_limit_method
        )
        updated_node = {**node, "source_id": GRAPH_FIELD_SEP.join(source_ids)}
        await graph.upsert_node(entity_key, node_data=updated_node)
        await self.entities_vdb.upsert(
            {
                ent_vdb_id: {
                    "entity_name": updated_node.get("entity_name", entity_key),
                    "entity_key": entity_key,
                    "entity_type": updated_node.get("entity_type", UNKNOWN_ENTITY_TYPE),
                    "content": f"{updated_node.get('entity_name', entity_key)}\n{updated_node.get('description', '')}",
                    "source_id": updated_node["source_id"],
                    "file_path": updated_node.get("file_path", "unknown_source"),
                }
            }
        )
        await self.entity_chunks.upsert(
            {entity_key: {"chunk_ids": remaining, "count": len(remaining)}}
        )

    def delete_by_doc_id(self, doc_id: str) -> DeletionResult:
        loop = always_get_an_event_loop()
        return loop.run_until_complete(self.adelete_by_doc_id(doc_id))

    async def adrop_all(self) -> dict[str, dict[str, str]]:
        """Drop every storage of this workspace (full reset)."""
        results = {}
        for storage_name, storage in self._storages():
            results[storage_name] = await storage.drop()
        logger.info(f"[{self.workspace or '_'}] Dropped all storages")
        return results
