"""Graph store contract consumed by the community builder, plus an in-memory implementation."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, List, Optional

import networkx as nx

from .schema import Edge, EdgeType, Neighbor, Node, NodeType, validate_edge

logger = logging.getLogger(__name__)


class GraphStore(ABC):
    """Storage operations the consolidation layer relies on.

    Implementations must be safe for concurrent use from several threads.
    Every write is an idempotent upsert keyed by UUID.
    """

    @abstractmethod
    def get_entity_nodes_by_group(self, group_id: str) -> List[Node]:
        raise NotImplementedError

    @abstractmethod
    def get_node_neighbors(self, node_uuid: str, group_id: str) -> List[Neighbor]:
        raise NotImplementedError

    @abstractmethod
    def get_all_group_ids(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def get_node(self, node_uuid: str, group_id: str) -> Node:
        """Return the node or raise KeyError when it cannot be resolved."""
        raise NotImplementedError

    @abstractmethod
    def upsert_node(self, node: Node) -> None:
        raise NotImplementedError

    @abstractmethod
    def upsert_edge(self, edge: Edge) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_existing_community(self, entity_uuid: str) -> Optional[Node]:
        raise NotImplementedError

    @abstractmethod
    def find_modal_community(self, entity_uuid: str) -> Optional[Node]:
        raise NotImplementedError

    @abstractmethod
    def remove_communities(self) -> None:
        """Delete every community node and its edges across all groups."""
        raise NotImplementedError


class InMemoryGraphStore(GraphStore):
    """
    Thin wrapper over a MultiDiGraph keyed by node and edge UUIDs.

    Node payloads live under the ``node`` attribute and edge payloads under
    ``edge``; the edge UUID doubles as the multigraph key.
    """

    def __init__(self) -> None:
        self.graph = nx.MultiDiGraph()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Node helpers
    # ------------------------------------------------------------------ #
    def _node(self, node_uuid: str) -> Node:
        if node_uuid not in self.graph:
            raise KeyError(f"Unknown node '{node_uuid}'")
        return self.graph.nodes[node_uuid]["node"]

    def upsert_node(self, node: Node) -> None:
        node.validate()
        with self._lock:
            if node.uuid in self.graph:
                existing = self._node(node.uuid)
                if existing.group_id != node.group_id:
                    raise ValueError(
                        f"Node '{node.uuid}' already belongs to group '{existing.group_id}', "
                        f"cannot move to '{node.group_id}'."
                    )
                self.graph.nodes[node.uuid]["node"] = node
            else:
                self.graph.add_node(node.uuid, node=node)

    def get_node(self, node_uuid: str, group_id: str) -> Node:
        with self._lock:
            node = self._node(node_uuid)
        if node.group_id != group_id:
            raise KeyError(f"Node '{node_uuid}' not found in group '{group_id}'")
        return node

    def get_nodes_by_type(self, node_type: NodeType, group_id: Optional[str] = None) -> List[Node]:
        with self._lock:
            nodes = [data["node"] for _, data in self.graph.nodes(data=True)]
        return [
            n
            for n in nodes
            if NodeType(n.node_type) == node_type and (group_id is None or n.group_id == group_id)
        ]

    def get_entity_nodes_by_group(self, group_id: str) -> List[Node]:
        return self.get_nodes_by_type(NodeType.ENTITY, group_id)

    def get_all_group_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for node in self.get_nodes_by_type(NodeType.ENTITY):
            seen.setdefault(node.group_id, None)
        return list(seen)

    # ------------------------------------------------------------------ #
    # Edge helpers
    # ------------------------------------------------------------------ #
    def upsert_edge(self, edge: Edge) -> None:
        with self._lock:
            source = self._node(edge.source_uuid)
            target = self._node(edge.target_uuid)
            validate_edge(edge, source, target)
            if self.graph.has_edge(edge.source_uuid, edge.target_uuid, key=edge.uuid):
                self.graph.edges[edge.source_uuid, edge.target_uuid, edge.uuid]["edge"] = edge
            else:
                self.graph.add_edge(edge.source_uuid, edge.target_uuid, key=edge.uuid, edge=edge)

    def get_edges(self, edge_type: Optional[EdgeType] = None) -> List[Edge]:
        with self._lock:
            edges = [data["edge"] for _, _, data in self.graph.edges(data=True)]
        if edge_type is None:
            return edges
        return [e for e in edges if EdgeType(e.edge_type) == edge_type]

    # ------------------------------------------------------------------ #
    # Adjacency / community queries
    # ------------------------------------------------------------------ #
    def get_node_neighbors(self, node_uuid: str, group_id: str) -> List[Neighbor]:
        """Count non-community edges to other entity nodes of the same group."""
        counts: Counter[str] = Counter()
        with self._lock:
            if node_uuid not in self.graph:
                return []
            incident = list(self.graph.out_edges(node_uuid, data=True)) + list(
                self.graph.in_edges(node_uuid, data=True)
            )
            for src, dst, data in incident:
                edge: Edge = data["edge"]
                if EdgeType(edge.edge_type) == EdgeType.COMMUNITY or edge.group_id != group_id:
                    continue
                other = dst if src == node_uuid else src
                if other == node_uuid:
                    continue
                if NodeType(self._node(other).node_type) != NodeType.ENTITY:
                    continue
                counts[other] += 1
        return [Neighbor(node_uuid=uuid, edge_count=count) for uuid, count in counts.items()]

    def _communities_of(self, entity_uuid: str) -> List[Node]:
        communities: List[Node] = []
        for src, _, data in self.graph.in_edges(entity_uuid, data=True):
            if data["edge"].is_membership:
                communities.append(self._node(src))
        return communities

    def get_existing_community(self, entity_uuid: str) -> Optional[Node]:
        with self._lock:
            if entity_uuid not in self.graph:
                return None
            communities = self._communities_of(entity_uuid)
        return communities[0] if communities else None

    def find_modal_community(self, entity_uuid: str) -> Optional[Node]:
        with self._lock:
            if entity_uuid not in self.graph:
                return None
            entity = self._node(entity_uuid)
            votes: Counter[str] = Counter()
            by_uuid: Dict[str, Node] = {}
            for neighbor in self.get_node_neighbors(entity_uuid, entity.group_id):
                for community in self._communities_of(neighbor.node_uuid):
                    votes[community.uuid] += neighbor.edge_count
                    by_uuid[community.uuid] = community
        if not votes:
            return None
        modal_uuid, count = votes.most_common(1)[0]
        logger.debug(
            "Modal community for %s is %s (%d neighbor edges)", entity_uuid, modal_uuid, count
        )
        return by_uuid[modal_uuid]

    def get_members(self, community_uuid: str) -> List[Node]:
        with self._lock:
            if community_uuid not in self.graph:
                return []
            return [
                self._node(dst)
                for _, dst, data in self.graph.out_edges(community_uuid, data=True)
                if data["edge"].is_membership
            ]

    def remove_communities(self) -> None:
        with self._lock:
            community_ids = [
                node_id
                for node_id, data in self.graph.nodes(data=True)
                if data["node"].is_community
            ]
            # Removing a node drops its incident edges as well.
            self.graph.remove_nodes_from(community_ids)
        logger.info("Removed %d community nodes", len(community_ids))
