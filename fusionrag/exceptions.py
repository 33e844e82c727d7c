from __future__ import annotations

from typing import Any


class InputValidationError(ValueError):
    """Raised when a caller supplies invalid input (empty text, bad parameters)."""


# 瞬时服务错误，可重试
class TransientServiceError(Exception):
    """Base class for transient collaborator failures that may succeed on retry."""


class RateLimitError(TransientServiceError):
    """Raised by a service adapter when the provider rejects a call for rate limiting."""


class APITimeoutError(TransientServiceError):
    """Raised by a service adapter when a provider call times out."""


class APIConnectionError(TransientServiceError):
    """Raised by a service adapter when the provider cannot be reached."""


# 模型返回内容无法解析
class ResponseParseError(ValueError):
    """Raised when a model response cannot be parsed into the expected structure."""

    def __init__(self, message: str, payload_preview: str = ""):
        super().__init__(message)
        self.payload_preview = payload_preview


class ExtractionParseError(ResponseParseError):
    """Entity/relationship extraction output had no usable records."""


class RerankParseError(ResponseParseError):
    """Rerank service returned results that do not map back to the input documents."""


class ChunkTokenLimitExceededError(ValueError):
    """Raised when a chunk exceeds the configured token limit."""

    def __init__(
        self,
        chunk_tokens: int,
        chunk_token_limit: int,
        chunk_preview: str | None = None,
    ) -> None:
        preview = chunk_preview.strip() if chunk_preview else None
        truncated_preview = preview[:80] if preview else None
        preview_note = f" Preview: '{truncated_preview}'" if truncated_preview else ""
        message = (
            f"Chunk token length {chunk_tokens} exceeds chunk_token_size {chunk_token_limit}."
            f"{preview_note}"
        )
        super().__init__(message)
        self.chunk_tokens = chunk_tokens
        self.chunk_token_limit = chunk_token_limit
        self.chunk_preview = truncated_preview


class ChunkProcessingError(Exception):
    """A single chunk failed during embedding or extraction; the whole document insert fails."""

    def __init__(self, chunk_id: str, chunk_order_index: int, cause: BaseException):
        super().__init__(
            f"Chunk {chunk_id} (order {chunk_order_index}) failed: "
            f"{type(cause).__name__}: {cause}"
        )
        self.chunk_id = chunk_id
        self.chunk_order_index = chunk_order_index
        self.cause = cause


class MergeError(Exception):
    """One or more entities/relationships failed to merge for a document.

    Successfully merged keys stay committed; ``failures`` lists the rest as
    ``(key, exception)`` pairs.
    """

    def __init__(self, doc_id: str, failures: list[tuple[Any, BaseException]]):
        keys = ", ".join(str(key) for key, _ in failures[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        super().__init__(
            f"{len(failures)} merge failure(s) for {doc_id}: {keys}{more}"
        )
        self.doc_id = doc_id
        self.failures = failures


class PipelineCancelledException(Exception):
    """Raised when an insert or query operation is cancelled by its caller."""

    def __init__(self, message: str = "User cancelled"):
        super().__init__(message)
        self.message = message


class StorageNotInitializedError(RuntimeError):
    """Raised when storage operations are attempted before initialization."""

    def __init__(self, storage_type: str = "Storage"):
        super().__init__(
            f"{storage_type} not initialized. Please ensure proper initialization:\n"
            "\n"
            "  rag = FusionRAG(...)\n"
            "  await rag.initialize_storages()\n"
        )
