"""Knowledge-graph domain model and storage contract."""

from .graph_store import GraphStore, InMemoryGraphStore
from .schema import HAS_MEMBER, Edge, EdgeType, Neighbor, Node, NodeType, new_membership_edge, validate_edge

__all__ = [
    "GraphStore",
    "InMemoryGraphStore",
    "HAS_MEMBER",
    "Edge",
    "EdgeType",
    "Neighbor",
    "Node",
    "NodeType",
    "new_membership_edge",
    "validate_edge",
]
