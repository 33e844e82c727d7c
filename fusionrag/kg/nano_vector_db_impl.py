from __future__ import annotations

import asyncio
import base64
import os
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, final

import numpy as np
from nano_vectordb import NanoVectorDB

from ..base import BaseVectorStorage
from ..exceptions import StorageNotInitializedError
from ..utils import logger


_INTERNAL_FIELDS = ("__id__", "__vector__", "__created_at__", "__metrics__", "vector")


def _encode_vector(vector: np.ndarray) -> str:
    return base64.b64encode(zlib.compress(vector.astype(np.float16).tobytes())).decode(
        "utf-8"
    )


def _decode_vector(encoded: str) -> np.ndarray:
    return np.frombuffer(
        zlib.decompress(base64.b64decode(encoded)), dtype=np.float16
    ).astype(np.float32)


def _to_record(dp: dict[str, Any]) -> dict[str, Any]:
    record = {k: v for k, v in dp.items() if k not in _INTERNAL_FIELDS}
    record["id"] = dp["__id__"]
    record["created_at"] = dp.get("__created_at__")
    return record


@final
@dataclass
class NanoVectorDBStorage(BaseVectorStorage):
    """Vector collection backed by nano-vectordb (cosine similarity, JSON file)."""

    _client: NanoVectorDB | None = field(default=None, init=False, repr=False)
    _storage_lock: asyncio.Lock | None = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self._validate_embedding_service()
        kwargs = self.global_config.get("vector_db_storage_cls_kwargs", {})
        cosine_threshold = kwargs.get("cosine_better_than_threshold")
        if cosine_threshold is None:
            raise ValueError(
                "cosine_better_than_threshold must be specified in vector_db_storage_cls_kwargs"
            )
        self.cosine_better_than_threshold = cosine_threshold

        working_dir = self.global_config["working_dir"]
        if self.workspace:
            workspace_dir = os.path.join(working_dir, self.workspace)
        else:
            workspace_dir = working_dir
        os.makedirs(workspace_dir, exist_ok=True)
        self._client_file_name = os.path.join(
            workspace_dir, f"vdb_{self.namespace}.json"
        )

    async def initialize(self):
        if self._client is not None:
            return
        self._storage_lock = asyncio.Lock()
        self._client = NanoVectorDB(
            self.embedding_service.embedding_dim,
            storage_file=self._client_file_name,
        )

    def _get_client(self) -> NanoVectorDB:
        if self._client is None:
            raise StorageNotInitializedError(f"NanoVectorDBStorage({self.namespace})")
        return self._client

    async def upsert(self, data: dict[str, dict[str, Any]]) -> None:
        if not data:
            return
        client = self._get_client()
        current_time = int(time.time())

        # 未提供向量的记录才需要计算嵌入
        missing = [k for k, v in data.items() if v.get("vector") is None]
        if missing:
            embeddings = await self.embedding_service.embed_batch(
                [data[k]["content"] for k in missing]
            )
            computed = dict(zip(missing, embeddings))
        else:
            computed = {}

        list_data = []
        for key, value in data.items():
            vector = value.get("vector")
            if vector is None:
                vector = computed[key]
            vector = np.asarray(vector, dtype=np.float32)
            record = {
                "__id__": key,
                "__vector__": vector,
                "__created_at__": current_time,
                # nano-vectordb 不返回向量本身，压缩后作为元数据保存
                "vector": _encode_vector(vector),
            }
            for meta_key in self.meta_fields:
                if meta_key in value:
                    record[meta_key] = value[meta_key]
            list_data.append(record)

        async with self._storage_lock:
            client.upsert(datas=list_data)
        logger.debug(
            f"[{self.workspace or '_'}] Upserted {len(list_data)} vectors into {self.namespace}"
        )

    async def query(
        self, query: str, top_k: int, query_embedding: list[float] | None = None
    ) -> list[dict[str, Any]]:
        client = self._get_client()
        if query_embedding is None:
            query_embedding = await self.embedding_service.embed(query)
        results = client.query(
            query=np.asarray(query_embedding, dtype=np.float32),
            top_k=top_k,
            better_than_threshold=self.cosine_better_than_threshold,
        )
        # __metrics__ 为余弦相似度，越大越相近
        formatted = []
        for dp in results:
            record = _to_record(dp)
            record["distance"] = float(dp["__metrics__"])
            formatted.append(record)
        return formatted

    async def get_by_id(self, id: str) -> dict[str, Any] | None:
        result = self._get_client().get([id])
        if not result:
            return None
        return _to_record(result[0])

    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        return [_to_record(dp) for dp in self._get_client().get(ids)]

    async def get_vectors_by_ids(self, ids: list[str]) -> dict[str, list[float]]:
        if not ids:
            return {}
        vectors = {}
        for dp in self._get_client().get(ids):
            encoded = dp.get("vector")
            if encoded:
                vectors[dp["__id__"]] = _decode_vector(encoded).tolist()
        return vectors

    async def delete(self, ids: list[str]):
        if not ids:
            return
        client = self._get_client()
        async with self._storage_lock:
            client.delete(ids)
        logger.debug(
            f"[{self.workspace or '_'}] Deleted {len(ids)} vectors from {self.namespace}"
        )

    async def index_done_callback(self) -> None:
        client = self._get_client()
        async with self._storage_lock:
            client.save()

    async def drop(self) -> dict[str, str]:
        try:
            async with self._storage_lock:
                if os.path.exists(self._client_file_name):
                    os.remove(self._client_file_name)
                self._client = NanoVectorDB(
                    self.embedding_service.embedding_dim,
                    storage_file=self._client_file_name,
                )
        except OSError as e:
            logger.error(f"Error dropping {self.namespace}: {e}")
            return {"status": "error", "message": str(e)}
        logger.info(f"[{self.workspace or '_'}] Dropped {self.namespace}")
        return {"status": "success", "message": "data dropped"}
