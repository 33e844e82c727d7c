from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from dotenv import load_dotenv
from dataclasses import dataclass, field
from typing import (
    Any,
    Literal,
    TypedDict,
    Optional,
    Dict,
    List,
    AsyncIterator,
)
from .types import KnowledgeGraph
from .constants import (
    DEFAULT_TOP_K,
    DEFAULT_CHUNK_TOP_K,
    DEFAULT_MAX_ENTITY_TOKENS,
    DEFAULT_MAX_RELATION_TOKENS,
    DEFAULT_MAX_TOTAL_TOKENS,
    DEFAULT_TEMPERATURE,
)
from .utils import get_env_value

# use the .env that is inside the current folder
# allows to use different .env file for each fusionrag instance
# the OS environment variables take precedence over the .env file
load_dotenv(dotenv_path=".env", override=False)


class TextChunkSchema(TypedDict):
    # 块的token数
    tokens: int
    # 块的文本内容
    content: str
    # 所属文档ID
    full_doc_id: str
    # 块在文档中的顺序
    chunk_order_index: int
    # 来源文件路径
    file_path: str


# 用户查询时的核心配置类
@dataclass
class QueryParam:
    """Configuration parameters for query execution in FusionRAG."""

    mode: Literal["local", "global", "hybrid", "naive", "mix", "bypass"] = "mix"
    """Specifies the retrieval mode:
    - "local": entity-centric search, then expand to connected relationships.  先查实体 再找边
    - "global": relationship-centric search, then expand to endpoint entities.  先查边再找实体
    - "hybrid": local + global, same path as "mix".
    - "naive": direct chunk vector search only.  基础向量搜索
    - "mix": local + global + direct chunk vector search.  混合知识图谱+向量检索
    - "bypass": answer with the language model, no retrieval.  不进行任何检索
    """

    # 是否只需要返回检索到的上下文，不生成回答
    only_need_context: bool = False
    """If True, only returns the retrieved context without generating a response."""

    # 是否只需要生成的提示词，而不需要生成回答
    only_need_prompt: bool = False
    """If True, only returns the generated prompt without producing a response."""

    # 回答格式
    response_type: str = "Multiple Paragraphs"
    """Defines the response format. Examples: 'Multiple Paragraphs', 'Single Paragraph', 'Bullet Points'."""

    # 是否流式输出
    stream: bool = False
    """If True, enables streaming output for real-time responses."""

    # 检索的实体/关系数量
    top_k: int = get_env_value("TOP_K", DEFAULT_TOP_K, int)
    """Number of top items to retrieve. Represents entities in 'local' mode and relationships in 'global' mode."""

    # 检索的文本块数量
    chunk_top_k: int = get_env_value("CHUNK_TOP_K", DEFAULT_CHUNK_TOP_K, int)
    """Number of text chunks kept after merging (and reranking, when enabled)."""

    # 实体上下文最大 token 数
    max_entity_tokens: int = get_env_value(
        "MAX_ENTITY_TOKENS", DEFAULT_MAX_ENTITY_TOKENS, int
    )
    """Maximum number of tokens allocated for the entity section."""

    # 关系上下文最大 token 数
    max_relation_tokens: int = get_env_value(
        "MAX_RELATION_TOKENS", DEFAULT_MAX_RELATION_TOKENS, int
    )
    """Maximum number of tokens allocated for the relationship section."""

    # 总上下文最大 token 数
    max_total_tokens: int = get_env_value(
        "MAX_TOTAL_TOKENS", DEFAULT_MAX_TOTAL_TOKENS, int
    )
    """Hard ceiling on the whole assembled context (all sections plus the reference list)."""

    # 高级关键词列表
    hl_keywords: list[str] = field(default_factory=list)
    """List of high-level keywords. When either keyword list is supplied, keyword extraction is skipped."""

    # 低级关键词列表
    ll_keywords: list[str] = field(default_factory=list)
    """List of low-level keywords."""

    # 会话历史消息，仅发送给LLM作为上下文，不用于检索
    conversation_history: list[dict[str, str]] = field(default_factory=list)
    """Format: [{"role": "user/assistant", "content": "message"}]."""

    # 用户自定义提示词
    user_prompt: str | None = None
    """Additional instructions injected into the response prompt."""

    # 是否启用重新排序
    enable_rerank: bool = get_env_value("RERANK_BY_DEFAULT", True, bool)
    """Rerank merged chunks when a rerank service is configured."""

    # 是否在响应中包含参考文献列表
    include_references: bool = True
    """If True, the raw data and response keep the reference list."""


# LLM 调用参数，按值传递
@dataclass(frozen=True)
class LLMCallConfig:
    """Per-call knobs for the language-model service."""

    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int | None = None
    top_p: float | None = None
    stop: tuple[str, ...] = ()


@dataclass
class EntityExtractionResult:
    """Entities and relationships parsed out of one chunk."""

    entities: list[dict[str, Any]] = field(default_factory=list)
    relationships: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class KeywordsResult:
    high_level_keywords: list[str] = field(default_factory=list)
    low_level_keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RerankResult:
    # 原始文档列表中的下标
    index: int
    relevance_score: float


# 存储命名空间抽象基类
@dataclass
class StorageNameSpace(ABC):
    # 命名空间（如 "entities", "text_chunks"）
    namespace: str
    # 工作空间（用于多实例隔离）
    workspace: str
    # 全局配置
    global_config: dict[str, Any]

    # 初始化存储
    async def initialize(self):
        """Initialize the storage"""
        pass

    # 最终化存储
    async def finalize(self):
        """Finalize the storage"""
        pass

    # 索引完成后回调（提交数据）
    @abstractmethod
    async def index_done_callback(self) -> None:
        """Commit the storage operations after indexing"""

    # 删除所有数据
    @abstractmethod
    async def drop(self) -> dict[str, str]:
        """Drop all data from storage and clean up resources

        Clears memory, removes the persisted file and resets the storage to its
        initial state. The drop is persisted immediately.

        Returns:
            dict[str, str]: {"status": "success" | "error", "message": str}
        """


# 向量存储抽象基类
@dataclass
class BaseVectorStorage(StorageNameSpace, ABC):
    # 嵌入服务（BaseEmbeddingService）
    embedding_service: Any
    # 相似度阈值
    cosine_better_than_threshold: float = field(default=0.2)
    # 随向量一起保存的元数据字段
    meta_fields: set[str] = field(default_factory=set)

    def _validate_embedding_service(self):
        if self.embedding_service is None:
            raise ValueError(
                "embedding_service is required for vector storage. "
                "Please provide a BaseEmbeddingService instance."
            )

    # 向量搜索，返回前 top_k 个最相似的结果
    @abstractmethod
    async def query(
        self, query: str, top_k: int, query_embedding: list[float] | None = None
    ) -> list[dict[str, Any]]:
        """Query the vector storage and retrieve top_k results.

        Each result carries "id", "distance" (cosine similarity, higher is closer),
        "created_at" and the stored meta fields.

        Args:
            query: The query string to search for
            top_k: Number of top results to return
            query_embedding: Optional pre-computed embedding for the query.
        """

    # 插入或更新向量
    @abstractmethod
    async def upsert(self, data: dict[str, dict[str, Any]]) -> None:
        """Insert or update vectors in the storage.

        A record may carry a precomputed "vector"; otherwise its "content" is embedded.
        Changes are persisted on the next index_done_callback.
        """

    @abstractmethod
    async def get_by_id(self, id: str) -> dict[str, Any] | None:
        """Get vector data by its ID"""

    @abstractmethod
    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        """Get multiple vector data by their IDs, skipping unknown ids"""

    # 删除多个向量
    @abstractmethod
    async def delete(self, ids: list[str]):
        """Delete vectors with specified IDs"""

    # 仅获取向量值（不含元数据）
    @abstractmethod
    async def get_vectors_by_ids(self, ids: list[str]) -> dict[str, list[float]]:
        """Get vectors by their IDs, returning {id: [vector_values], ...}"""


# 用于存储文档、文本块、溯源索引等结构化数据
@dataclass
class BaseKVStorage(StorageNameSpace, ABC):
    @abstractmethod
    async def get_by_id(self, id: str) -> dict[str, Any] | None:
        """Get value by id"""

    @abstractmethod
    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any] | None]:
        """Get values by ids, None for ids that do not exist (order preserved)"""

    # 返回不存在的键
    @abstractmethod
    async def filter_keys(self, keys: set[str]) -> set[str]:
        """Return un-exist keys"""

    @abstractmethod
    async def upsert(self, data: dict[str, dict[str, Any]]) -> None:
        """Upsert data

        Changes are persisted on the next index_done_callback.
        """

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete specific records from storage by their IDs"""

    @abstractmethod
    async def is_empty(self) -> bool:
        """Check if the storage is empty"""


class BaseGraphStorage(StorageNameSpace, ABC):
    """All operations related to edges in graph should be undirected."""

    @abstractmethod
    async def has_node(self, node_id: str) -> bool:
        """Check if a node exists in the graph."""

    @abstractmethod
    async def has_edge(self, source_node_id: str, target_node_id: str) -> bool:
        """Check if an edge exists between two nodes."""

    # 获取节点的度（连接的边数）
    @abstractmethod
    async def node_degree(self, node_id: str) -> int:
        """Get the degree (number of connected edges) of a node."""

    # 获取边的度（源节点和目标节点的度数之和）
    @abstractmethod
    async def edge_degree(self, src_id: str, tgt_id: str) -> int:
        """Get the total degree of an edge (sum of degrees of its source and target nodes)."""

    @abstractmethod
    async def get_node(self, node_id: str) -> dict[str, str] | None:
        """Get node by its ID, returning only node properties."""

    @abstractmethod
    async def get_edge(
        self, source_node_id: str, target_node_id: str
    ) -> dict[str, str] | None:
        """Get edge properties between two nodes."""

    @abstractmethod
    async def get_node_edges(self, source_node_id: str) -> list[tuple[str, str]] | None:
        """Get all edges connected to a node as (source_id, target_id) tuples,
        or None if the node doesn't exist."""

    # 批量操作，默认逐个获取
    async def get_nodes_batch(self, node_ids: list[str]) -> dict[str, dict]:
        """Get nodes as a batch.

        Default implementation fetches nodes one by one.
        """
        result = {}
        for node_id in node_ids:
            node = await self.get_node(node_id)
            if node is not None:
                result[node_id] = node
        return result

    async def node_degrees_batch(self, node_ids: list[str]) -> dict[str, int]:
        result = {}
        for node_id in node_ids:
            result[node_id] = await self.node_degree(node_id)
        return result

    async def edge_degrees_batch(
        self, edge_pairs: list[tuple[str, str]]
    ) -> dict[tuple[str, str], int]:
        result = {}
        for src_id, tgt_id in edge_pairs:
            result[(src_id, tgt_id)] = await self.edge_degree(src_id, tgt_id)
        return result

    async def get_edges_batch(
        self, pairs: list[dict[str, str]]
    ) -> dict[tuple[str, str], dict]:
        """Get edges for [{"src": ..., "tgt": ...}, ...]; missing edges are skipped."""
        result = {}
        for pair in pairs:
            src_id = pair["src"]
            tgt_id = pair["tgt"]
            edge = await self.get_edge(src_id, tgt_id)
            if edge is not None:
                result[(src_id, tgt_id)] = edge
        return result

    async def get_nodes_edges_batch(
        self, node_ids: list[str]
    ) -> dict[str, list[tuple[str, str]]]:
        result = {}
        for node_id in node_ids:
            edges = await self.get_node_edges(node_id)
            result[node_id] = edges if edges is not None else []
        return result

    @abstractmethod
    async def upsert_node(self, node_id: str, node_data: dict[str, str]) -> None:
        """Insert a new node or update an existing node in the graph."""

    @abstractmethod
    async def upsert_edge(
        self, source_node_id: str, target_node_id: str, edge_data: dict[str, str]
    ) -> None:
        """Insert a new edge or update an existing edge in the graph."""

    @abstractmethod
    async def delete_node(self, node_id: str) -> None:
        """Delete a node and its incident edges."""

    @abstractmethod
    async def remove_edges(self, edges: list[tuple[str, str]]):
        """Delete multiple edges."""

    @abstractmethod
    async def get_all_labels(self) -> list[str]:
        """Get all node ids in the graph, sorted."""

    @abstractmethod
    async def get_knowledge_graph(
        self, node_label: str, max_depth: int = 3, max_nodes: int = 1000
    ) -> KnowledgeGraph:
        """
        Retrieve a connected subgraph of nodes starting at ``node_label``
        (breadth-first). "*" selects the whole graph, highest degree first.
        """

    @abstractmethod
    async def get_popular_labels(self, limit: int = 300) -> list[str]:
        """Get node ids ordered by degree, highest first."""


class StoragesStatus(str, Enum):
    """Storages status"""

    NOT_CREATED = "not_created"
    CREATED = "created"
    INITIALIZED = "initialized"
    FINALIZED = "finalized"


@dataclass
class DeletionResult:
    """Represents the result of a deletion operation."""

    status: Literal["success", "not_found", "fail"]
    doc_id: str
    message: str
    file_path: str | None = None


# 统一查询结果
@dataclass
class QueryResult:
    """
    统一查询结果数据结构，适用于所有查询模式。

    Attributes:
        content: 非流式响应的文本内容
        response_iterator: 流式响应的异步迭代器
        raw_data: 完整的结构化数据，包括引用和元数据
        is_streaming: 是否为流式结果
    """

    content: Optional[str] = None
    response_iterator: Optional[AsyncIterator[str]] = None
    raw_data: Optional[Dict[str, Any]] = None
    is_streaming: bool = False

    # 从 raw_data 中提取参考文献列表的便捷属性
    @property
    def reference_list(self) -> List[Dict[str, str]]:
        if self.raw_data:
            return self.raw_data.get("data", {}).get("references", [])
        return []

    # 从 raw_data 中提取元数据的便捷属性
    @property
    def metadata(self) -> Dict[str, Any]:
        if self.raw_data:
            return self.raw_data.get("metadata", {})
        return {}


# 上下文结果
@dataclass
class QueryContextResult:
    """
    Assembled retrieval context.

    Attributes:
        context: LLM context string
        raw_data: Complete structured data including reference_list
        truncated: per-section flags, True when the section dropped items to fit its budget
    """

    context: str
    raw_data: Dict[str, Any]
    truncated: Dict[str, bool] = field(
        default_factory=lambda: {"entities": False, "relationships": False, "chunks": False}
    )

    @property
    def is_truncated(self) -> bool:
        return any(self.truncated.values())

    @property
    def reference_list(self) -> List[Dict[str, str]]:
        return self.raw_data.get("data", {}).get("references", [])
