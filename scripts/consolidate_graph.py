#!/usr/bin/env python3
"""Load an entity graph from JSON, build communities with OpenAI, and print them."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict

# Make src/ available for imports when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from community import CommunityBuilder, CommunityConfig
from graph import Edge, EdgeType, InMemoryGraphStore, Node, NodeType
from llm import ContinuationConfig, OpenAIEmbedder, OpenAILLM


def load_graph(path: Path) -> InMemoryGraphStore:
    """
    Expected layout::

        {"nodes": [{"uuid": ..., "name": ..., "group_id": ..., "summary": ...}],
         "edges": [{"source": ..., "target": ..., "relation": ...}]}
    """
    payload: Dict[str, Any] = json.loads(path.read_text())
    store = InMemoryGraphStore()
    for raw in payload.get("nodes", []):
        store.upsert_node(
            Node(
                uuid=raw["uuid"],
                name=raw["name"],
                node_type=NodeType(raw.get("type", NodeType.ENTITY.value)),
                group_id=raw["group_id"],
                summary=raw.get("summary", ""),
            )
        )
    for raw in payload.get("edges", []):
        source = store.graph.nodes[raw["source"]]["node"]
        store.upsert_edge(
            Edge(
                uuid=raw.get("uuid") or str(uuid.uuid4()),
                source_uuid=raw["source"],
                target_uuid=raw["target"],
                group_id=raw.get("group_id", source.group_id),
                relation_type=raw.get("relation", "RELATES_TO"),
                edge_type=EdgeType.ENTITY,
                weight=float(raw.get("weight", 1.0)),
            )
        )
    return store


def summarize_communities(store: InMemoryGraphStore) -> None:
    communities = store.get_nodes_by_type(NodeType.COMMUNITY)
    print(f"\n=== Communities ({len(communities)}) ===")
    for community in communities:
        members = store.get_members(community.uuid)
        print(f"- [{community.group_id}] {community.name} ({len(members)} members)")
        print(f"  {community.summary}")
        for member in members:
            print(f"    * {member.name}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build entity communities for a JSON graph")
    parser.add_argument("graph", type=Path, help="Path to the graph JSON file")
    parser.add_argument(
        "--group", action="append", default=[], help="Group ID to consolidate (repeatable; default all)"
    )
    parser.add_argument("--model", type=str, default="gpt-4o-mini", help="Chat model name")
    parser.add_argument(
        "--embedding-model", type=str, default="text-embedding-3-small", help="Embedding model name"
    )
    parser.add_argument(
        "--update",
        action="append",
        default=[],
        help="Entity UUID to fold into an existing community after building (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    store = load_graph(args.graph)
    builder = CommunityBuilder(
        store,
        OpenAILLM(model=args.model),
        OpenAIEmbedder(model=args.embedding_model),
        config=CommunityConfig.from_env(),
        continuation=ContinuationConfig.from_env(),
    )

    builder.remove_communities()
    result = builder.build_communities(args.group)
    for failure in result.errors:
        print(f"! {failure}")

    for entity_uuid in args.update:
        entity = store.graph.nodes[entity_uuid]["node"]
        update = builder.update_community(entity)
        print(f"Updated {entity.name}: {len(update.community_edges)} new membership edge(s)")

    summarize_communities(store)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
