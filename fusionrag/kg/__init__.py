from __future__ import annotations

import importlib

# 存储实现注册表：类名 -> 模块路径
STORAGES = {
    "JsonKVStorage": ".kg.json_kv_impl",
    "NanoVectorDBStorage": ".kg.nano_vector_db_impl",
    "NetworkXStorage": ".kg.networkx_impl",
}

# 每种存储类型允许的实现
STORAGE_IMPLEMENTATIONS = {
    "KV_STORAGE": {
        "implementations": ["JsonKVStorage"],
    },
    "GRAPH_STORAGE": {
        "implementations": ["NetworkXStorage"],
    },
    "VECTOR_STORAGE": {
        "implementations": ["NanoVectorDBStorage"],
    },
}


def verify_storage_implementation(storage_type: str, storage_name: str) -> None:
    """Verify if storage implementation is compatible with specified storage type

    Args:
        storage_type: Storage type (KV_STORAGE, GRAPH_STORAGE etc.)
        storage_name: Storage implementation name

    Raises:
        ValueError: If storage implementation is incompatible or missing required methods
    """
    if storage_type not in STORAGE_IMPLEMENTATIONS:
        raise ValueError(f"Unknown storage type: {storage_type}")

    storage_info = STORAGE_IMPLEMENTATIONS[storage_type]
    if storage_name not in storage_info["implementations"]:
        raise ValueError(
            f"Storage implementation '{storage_name}' is not compatible with {storage_type}. "
            f"Compatible implementations are: {', '.join(storage_info['implementations'])}"
        )


def get_storage_class(storage_name: str):
    """Import the storage module lazily and return the class."""
    if storage_name not in STORAGES:
        raise ValueError(f"Unknown storage implementation: {storage_name}")
    module = importlib.import_module(STORAGES[storage_name], package="fusionrag")
    return getattr(module, storage_name)
