"""
Centralized configuration constants for FusionRAG.

This module defines default values for configuration constants used across
the ingestion pipeline, the merge engine and the retrieval context builder.
Every value can be overridden through the environment (see fusionrag.utils.get_env_value).
"""

# 默认工作目录与工作空间
DEFAULT_WORKING_DIR = "./fusionrag_cache"
DEFAULT_WORKSPACE = ""

# 分块
DEFAULT_CHUNK_TOKEN_SIZE = 1200
DEFAULT_CHUNK_OVERLAP_TOKEN_SIZE = 100

# 抽取
DEFAULT_SUMMARY_LANGUAGE = "English"
DEFAULT_ENTITY_TYPES = [
    "Person",
    "Creature",
    "Organization",
    "Location",
    "Event",
    "Concept",
    "Method",
    "Content",
    "Data",
    "Artifact",
    "NaturalObject",
]
DEFAULT_MAX_ENTITIES_PER_CHUNK = 45
DEFAULT_MAX_RELATIONSHIPS_PER_CHUNK = 60
# 全局抽取并发上限
DEFAULT_MAX_EXTRACTION_ASYNC = 10
DEFAULT_MAX_ASYNC = 4

# 实体类型占位符（由悬挂关系创建的实体）
UNKNOWN_ENTITY_TYPE = "UNKNOWN"

# Separator for description, source_id and relation-key fields
GRAPH_FIELD_SEP = "<SEP>"

# 描述合并
# 描述片段数超过该阈值时强制调用 LLM 进行摘要
DEFAULT_FORCE_LLM_SUMMARY_ON_MERGE = 3
# 合并后描述 token 数超过该值时强制摘要
DEFAULT_SUMMARY_MAX_TOKENS = 1200
# 单次摘要请求的最大输入 token 数（超过则 map-reduce）
DEFAULT_SUMMARY_CONTEXT_SIZE = 12000
DEFAULT_SUMMARY_LENGTH_RECOMMENDED = 600

# 溯源上限
DEFAULT_MAX_SOURCE_IDS_PER_ENTITY = 300
DEFAULT_MAX_SOURCE_IDS_PER_RELATION = 300
SOURCE_IDS_LIMIT_METHOD_KEEP = "KEEP"
SOURCE_IDS_LIMIT_METHOD_FIFO = "FIFO"
DEFAULT_SOURCE_IDS_LIMIT_METHOD = SOURCE_IDS_LIMIT_METHOD_FIFO
VALID_SOURCE_IDS_LIMIT_METHODS = {
    SOURCE_IDS_LIMIT_METHOD_KEEP,
    SOURCE_IDS_LIMIT_METHOD_FIFO,
}
DEFAULT_MAX_FILE_PATHS = 100
DEFAULT_FILE_PATH_MORE_PLACEHOLDER = "truncated"

# 检索
DEFAULT_TOP_K = 40
DEFAULT_CHUNK_TOP_K = 20
DEFAULT_MAX_ENTITY_TOKENS = 6000
DEFAULT_MAX_RELATION_TOKENS = 8000
DEFAULT_MAX_TOTAL_TOKENS = 30000
DEFAULT_COSINE_THRESHOLD = 0.2
DEFAULT_RELATED_CHUNK_NUMBER = 5
DEFAULT_KG_CHUNK_PICK_METHOD = "VECTOR"
# 重排序前候选块数量 = chunk_top_k * factor
DEFAULT_RERANK_CANDIDATE_FACTOR = 3
# 关键词为空时，短于该长度的查询直接作为低级关键词
DEFAULT_KEYWORD_FALLBACK_QUERY_LENGTH = 50

# 图谱查询返回的最大节点数
DEFAULT_MAX_GRAPH_NODES = 1000

# 嵌入服务
DEFAULT_EMBEDDING_MIN_INTERVAL = 0.1
DEFAULT_EMBEDDING_MAX_RETRIES = 3
DEFAULT_EMBEDDING_BATCH_NUM = 10
DEFAULT_EMBEDDING_RETRY_BACKOFF = 1.0
DEFAULT_EMBEDDING_RETRY_MAX_WAIT = 10.0

# LLM 调用
DEFAULT_TEMPERATURE = 0.3
DEFAULT_TIKTOKEN_MODEL_NAME = "gpt-4o-mini"

# 日志中输出的负载预览长度
DEFAULT_LOG_PREVIEW_LENGTH = 200
