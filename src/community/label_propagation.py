from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Mapping, Sequence

from graph.schema import Neighbor

MAX_ITERATIONS = 100


def label_propagation(
    projection: Mapping[str, Sequence[Neighbor]],
    max_iterations: int = MAX_ITERATIONS,
) -> List[List[str]]:
    """
    Group nodes by synchronous, edge-count-weighted label propagation.

    Every node starts with its own integer label (projection order). Each
    round reads only the previous round's labels. The heaviest neighbor
    label wins, ties going to the larger label. A winner backed by a weight
    of 1 or less is taken only if its label is larger than the node's own.
    Singleton groups are dropped.
    """
    if not projection:
        return []

    labels: Dict[str, int] = {uuid: idx for idx, uuid in enumerate(projection)}

    for _ in range(max_iterations):
        changed = False
        next_labels: Dict[str, int] = {}

        for uuid, neighbors in projection.items():
            current = labels[uuid]

            votes: Dict[int, int] = defaultdict(int)
            for neighbor in neighbors:
                if neighbor.node_uuid in labels:
                    votes[labels[neighbor.node_uuid]] += neighbor.edge_count

            new_label = current
            if votes:
                top_label, top_count = max(votes.items(), key=lambda item: (item[1], item[0]))
                if top_count > 1:
                    new_label = top_label
                elif top_label > current:
                    new_label = top_label

            next_labels[uuid] = new_label
            if new_label != current:
                changed = True

        if not changed:
            break
        labels = next_labels

    buckets: Dict[int, List[str]] = defaultdict(list)
    for uuid, label in labels.items():
        buckets[label].append(uuid)

    return [members for members in buckets.values() if len(members) > 1]
