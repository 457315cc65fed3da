from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeType(str, Enum):
    ENTITY = "entity"
    EPISODIC = "episodic"
    COMMUNITY = "community"


class EdgeType(str, Enum):
    ENTITY = "entity"
    EPISODIC = "episodic"
    COMMUNITY = "community"


HAS_MEMBER = "HAS_MEMBER"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Node:
    uuid: str
    name: str
    node_type: NodeType
    group_id: str
    summary: str = ""
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    valid_from: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.name:
            raise ValueError("name cannot be empty")
        if not self.group_id:
            raise ValueError("group_id cannot be empty")

    @property
    def is_community(self) -> bool:
        return NodeType(self.node_type) == NodeType.COMMUNITY


@dataclass
class Edge:
    uuid: str
    source_uuid: str
    target_uuid: str
    group_id: str
    relation_type: str
    edge_type: EdgeType = EdgeType.ENTITY
    valid_from: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)
    source_ids: List[str] = field(default_factory=list)
    weight: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_membership(self) -> bool:
        return self.relation_type == HAS_MEMBER


@dataclass(frozen=True)
class Neighbor:
    """Adjacency entry used only while clustering."""

    node_uuid: str
    edge_count: int


def validate_edge(edge: Edge, source: Node, target: Node) -> None:
    """Check the group and membership invariants for an edge about to be stored."""
    if source.group_id != edge.group_id or target.group_id != edge.group_id:
        raise ValueError(
            f"Edge '{edge.uuid}' endpoints must share group '{edge.group_id}' "
            f"(source={source.group_id}, target={target.group_id})."
        )
    src_type = NodeType(source.node_type)
    dst_type = NodeType(target.node_type)
    if edge.is_membership:
        if EdgeType(edge.edge_type) != EdgeType.COMMUNITY:
            raise ValueError("HAS_MEMBER edges must have the community edge type.")
        if not (src_type == NodeType.COMMUNITY and dst_type == NodeType.ENTITY):
            raise ValueError("HAS_MEMBER edges must link COMMUNITY -> ENTITY.")
    elif dst_type == NodeType.COMMUNITY:
        raise ValueError("Only HAS_MEMBER edges may point at a COMMUNITY node.")


def new_membership_edge(
    edge_uuid: str, community: Node, entity: Node, created_at: datetime
) -> Edge:
    return Edge(
        uuid=edge_uuid,
        source_uuid=community.uuid,
        target_uuid=entity.uuid,
        group_id=community.group_id,
        relation_type=HAS_MEMBER,
        edge_type=EdgeType.COMMUNITY,
        valid_from=created_at,
        updated_at=created_at,
        source_ids=[community.uuid],
    )
