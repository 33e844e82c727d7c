from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import dataclass
from typing import final

import networkx as nx

from ..base import BaseGraphStorage
from ..exceptions import StorageNotInitializedError
from ..types import KnowledgeGraph, KnowledgeGraphEdge, KnowledgeGraphNode
from ..utils import logger


@final
@dataclass
class NetworkXStorage(BaseGraphStorage):
    """Undirected property graph kept in a networkx.Graph and saved as GraphML."""

    @staticmethod
    def load_nx_graph(file_name) -> nx.Graph | None:
        if os.path.exists(file_name):
            return nx.read_graphml(file_name)
        return None

    @staticmethod
    def write_nx_graph(graph: nx.Graph, file_name, workspace="_"):
        logger.info(
            f"[{workspace}] Writing graph with {graph.number_of_nodes()} nodes, {graph.number_of_edges()} edges"
        )
        nx.write_graphml(graph, file_name)

    def __post_init__(self):
        working_dir = self.global_config["working_dir"]
        if self.workspace:
            workspace_dir = os.path.join(working_dir, self.workspace)
        else:
            workspace_dir = working_dir
        os.makedirs(workspace_dir, exist_ok=True)
        self._graphml_xml_file = os.path.join(
            workspace_dir, f"graph_{self.namespace}.graphml"
        )
        self._graph: nx.Graph | None = None
        self._storage_lock: asyncio.Lock | None = None
        self._dirty = False

    async def initialize(self):
        if self._graph is not None:
            return
        self._storage_lock = asyncio.Lock()
        preloaded_graph = NetworkXStorage.load_nx_graph(self._graphml_xml_file)
        if preloaded_graph is not None:
            logger.info(
                f"[{self.workspace or '_'}] Loaded graph from {self._graphml_xml_file} with "
                f"{preloaded_graph.number_of_nodes()} nodes, {preloaded_graph.number_of_edges()} edges"
            )
        self._graph = preloaded_graph or nx.Graph()

    def _get_graph(self) -> nx.Graph:
        if self._graph is None:
            raise StorageNotInitializedError(f"NetworkXStorage({self.namespace})")
        return self._graph

    async def has_node(self, node_id: str) -> bool:
        return self._get_graph().has_node(node_id)

    async def has_edge(self, source_node_id: str, target_node_id: str) -> bool:
        return self._get_graph().has_edge(source_node_id, target_node_id)

    async def get_node(self, node_id: str) -> dict[str, str] | None:
        graph = self._get_graph()
        if not graph.has_node(node_id):
            return None
        return dict(graph.nodes[node_id])

    async def node_degree(self, node_id: str) -> int:
        graph = self._get_graph()
        return graph.degree(node_id) if graph.has_node(node_id) else 0

    async def edge_degree(self, src_id: str, tgt_id: str) -> int:
        return await self.node_degree(src_id) + await self.node_degree(tgt_id)

    async def get_edge(
        self, source_node_id: str, target_node_id: str
    ) -> dict[str, str] | None:
        graph = self._get_graph()
        if not graph.has_edge(source_node_id, target_node_id):
            return None
        return dict(graph.edges[(source_node_id, target_node_id)])

    async def get_node_edges(self, source_node_id: str) -> list[tuple[str, str]] | None:
        graph = self._get_graph()
        if not graph.has_node(source_node_id):
            return None
        return list(graph.edges(source_node_id))

    async def upsert_node(self, node_id: str, node_data: dict[str, str]) -> None:
        graph = self._get_graph()
        async with self._storage_lock:
            graph.add_node(node_id, **node_data)
            self._dirty = True

    async def upsert_edge(
        self, source_node_id: str, target_node_id: str, edge_data: dict[str, str]
    ) -> None:
        graph = self._get_graph()
        async with self._storage_lock:
            graph.add_edge(source_node_id, target_node_id, **edge_data)
            self._dirty = True

    async def delete_node(self, node_id: str) -> None:
        graph = self._get_graph()
        async with self._storage_lock:
            if graph.has_node(node_id):
                graph.remove_node(node_id)
                self._dirty = True
                logger.debug(f"[{self.workspace or '_'}] Node {node_id} deleted")

    async def remove_edges(self, edges: list[tuple[str, str]]):
        graph = self._get_graph()
        async with self._storage_lock:
            for source, target in edges:
                if graph.has_edge(source, target):
                    graph.remove_edge(source, target)
                    self._dirty = True

    async def get_all_labels(self) -> list[str]:
        return sorted(str(node) for node in self._get_graph().nodes())

    async def get_popular_labels(self, limit: int = 300) -> list[str]:
        graph = self._get_graph()
        ranked = sorted(graph.degree(), key=lambda x: (-x[1], str(x[0])))
        return [str(node) for node, _ in ranked[:limit]]

    async def get_knowledge_graph(
        self, node_label: str, max_depth: int = 3, max_nodes: int = 1000
    ) -> KnowledgeGraph:
        graph = self._get_graph()
        result = KnowledgeGraph()

        if node_label == "*":
            # 全图：按度数从高到低取前 max_nodes 个节点
            ranked = sorted(graph.degree(), key=lambda x: (-x[1], str(x[0])))
            if len(ranked) > max_nodes:
                result.is_truncated = True
            selected = [node for node, _ in ranked[:max_nodes]]
        else:
            if not graph.has_node(node_label):
                logger.warning(f"[{self.workspace or '_'}] Node {node_label} not found")
                return result
            # 广度优先，按层扩展
            selected = []
            visited = {node_label}
            queue = deque([(node_label, 0)])
            while queue:
                node, depth = queue.popleft()
                if len(selected) >= max_nodes:
                    result.is_truncated = True
                    break
                selected.append(node)
                if depth >= max_depth:
                    continue
                neighbors = sorted(
                    (n for n in graph.neighbors(node) if n not in visited),
                    key=lambda n: (-graph.degree(n), str(n)),
                )
                for neighbor in neighbors:
                    visited.add(neighbor)
                    queue.append((neighbor, depth + 1))

        subgraph = graph.subgraph(selected)
        for node in subgraph.nodes():
            node_data = dict(subgraph.nodes[node])
            labels = [node_data.get("entity_name") or str(node)]
            result.nodes.append(
                KnowledgeGraphNode(id=str(node), labels=labels, properties=node_data)
            )
        for source, target in subgraph.edges():
            edge_data = dict(subgraph.edges[(source, target)])
            result.edges.append(
                KnowledgeGraphEdge(
                    id=f"{source}-{target}",
                    type="UNDIRECTED",
                    source=str(source),
                    target=str(target),
                    properties=edge_data,
                )
            )
        logger.info(
            f"[{self.workspace or '_'}] Subgraph query successful | Node count: "
            f"{len(result.nodes)} | Edge count: {len(result.edges)}"
        )
        return result

    async def index_done_callback(self) -> None:
        graph = self._get_graph()
        async with self._storage_lock:
            if not self._dirty:
                return
            NetworkXStorage.write_nx_graph(
                graph, self._graphml_xml_file, self.workspace or "_"
            )
            self._dirty = False

    async def drop(self) -> dict[str, str]:
        try:
            async with self._storage_lock:
                if os.path.exists(self._graphml_xml_file):
                    os.remove(self._graphml_xml_file)
                self._graph = nx.Graph()
                self._dirty = False
        except OSError as e:
            logger.error(f"Error dropping graph {self.namespace}: {e}")
            return {"status": "error", "message": str(e)}
        logger.info(f"[{self.workspace or '_'}] Dropped graph {self.namespace}")
        return {"status": "success", "message": "data dropped"}

    async def finalize(self):
        if self._graph is not None:
            await self.index_done_callback()
