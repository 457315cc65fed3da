"""Community detection and maintenance on top of a GraphStore."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from graph.graph_store import GraphStore
from graph.schema import Edge, Neighbor, Node, NodeType, new_membership_edge, utc_now
from llm.base import LLM, Embedder
from llm.config import ContinuationConfig
from llm.continuation import generate_text_response

from .config import CommunityConfig
from .errors import ClusterFailure, CommunityBuildError, CommunityError, SummarizationError
from .label_propagation import label_propagation
from .prompts import community_name_messages, summarize_pair_messages

logger = logging.getLogger(__name__)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _clean_name(text: str) -> str:
    return text.strip().strip("\"'").strip()


@dataclass
class BuildCommunitiesResult:
    community_nodes: List[Node] = field(default_factory=list)
    community_edges: List[Edge] = field(default_factory=list)
    errors: List[ClusterFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise CommunityBuildError(self.errors)


@dataclass
class CommunityAssignment:
    community: Optional[Node]
    is_new: bool


@dataclass
class UpdateCommunityResult:
    community_nodes: List[Node] = field(default_factory=list)
    community_edges: List[Edge] = field(default_factory=list)


class CommunityBuilder:
    """
    Clusters entity nodes and keeps one Community node per cluster.

    ``summarizer`` handles pairwise summaries and defaults to ``llm``; ``llm``
    names communities. ``uuid_factory`` and ``clock`` are injectable so runs
    can be reproduced.
    """

    def __init__(
        self,
        store: GraphStore,
        llm: LLM,
        embedder: Embedder,
        summarizer: Optional[LLM] = None,
        config: Optional[CommunityConfig] = None,
        continuation: Optional[ContinuationConfig] = None,
        uuid_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.summarizer = summarizer or llm
        self.embedder = embedder
        self.config = config or CommunityConfig()
        self.continuation = continuation or ContinuationConfig()
        self.uuid_factory = uuid_factory or _new_uuid
        self.clock = clock or utc_now

    # ------------------------------------------------------------------ #
    # Clustering
    # ------------------------------------------------------------------ #
    def get_community_clusters(self, group_ids: Optional[Sequence[str]] = None) -> List[List[Node]]:
        if not group_ids:
            try:
                group_ids = self.store.get_all_group_ids()
            except Exception as exc:
                raise CommunityError("failed to get group IDs") from exc

        clusters: List[List[Node]] = []
        for group_id in group_ids:
            try:
                nodes = self.store.get_entity_nodes_by_group(group_id)
                projection = self._build_projection(nodes, group_id)
            except Exception as exc:
                raise CommunityError(f"failed to build projection for group {group_id}") from exc

            for member_uuids in label_propagation(projection, self.config.max_iterations):
                members = self._get_nodes_by_uuids(member_uuids, group_id)
                if members:
                    clusters.append(members)
            logger.debug("Group %s: %d entity nodes", group_id, len(nodes))
        return clusters

    def _build_projection(self, nodes: Sequence[Node], group_id: str) -> Dict[str, List[Neighbor]]:
        return {node.uuid: self.store.get_node_neighbors(node.uuid, group_id) for node in nodes}

    def _get_nodes_by_uuids(self, uuids: Sequence[str], group_id: str) -> List[Node]:
        nodes: List[Node] = []
        for node_uuid in uuids:
            try:
                nodes.append(self.store.get_node(node_uuid, group_id))
            except KeyError:
                logger.debug("Skipping unresolvable node %s in group %s", node_uuid, group_id)
        return nodes

    # ------------------------------------------------------------------ #
    # Building
    # ------------------------------------------------------------------ #
    def build_communities(
        self,
        group_ids: Optional[Sequence[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BuildCommunitiesResult:
        """
        Build one community per cluster, at most ``config.max_concurrency`` at a time.

        A failing cluster does not stop the others. Check ``result.errors``
        (or call ``raise_for_errors``) for the clusters that did not make it.
        Once ``cancel_event`` is set, clusters that have not started are
        reported as failures and running LLM calls stop before their next attempt.
        """
        clusters = self.get_community_clusters(group_ids)
        logger.info("Clustering produced %d clusters", len(clusters))

        result = BuildCommunitiesResult()
        lock = threading.Lock()

        def build(cluster: List[Node]) -> None:
            try:
                if cancel_event is not None and cancel_event.is_set():
                    raise CommunityError("cancelled before the cluster was started")
                node, edges = self.build_community(cluster, cancel_event)
            except Exception as exc:  # collected per cluster
                logger.warning("Failed to build community for %d nodes: %s", len(cluster), exc)
                with lock:
                    result.errors.append(ClusterFailure([n.uuid for n in cluster], exc))
                return
            with lock:
                result.community_nodes.append(node)
                result.community_edges.extend(edges)

        with ThreadPoolExecutor(
            max_workers=self.config.max_concurrency, thread_name_prefix="community"
        ) as pool:
            list(pool.map(build, clusters))

        logger.info(
            "Built %d communities (%d edges, %d failed clusters)",
            len(result.community_nodes),
            len(result.community_edges),
            len(result.errors),
        )
        return result

    def build_community(
        self, cluster: Sequence[Node], cancel_event: Optional[threading.Event] = None
    ) -> Tuple[Node, List[Edge]]:
        if not cluster:
            raise ValueError("empty cluster")

        summary = self.hierarchical_summarize([node.summary for node in cluster], cancel_event)
        name = self.generate_community_name(summary, cancel_event)

        now = self.clock()
        community = Node(
            uuid=self.uuid_factory(),
            name=name,
            node_type=NodeType.COMMUNITY,
            group_id=cluster[0].group_id,
            summary=summary,
            created_at=now,
            updated_at=now,
            valid_from=now,
        )
        community.embedding = self.embedder.embed_single(community.name)
        self.store.upsert_node(community)

        edges = [new_membership_edge(self.uuid_factory(), community, member, now) for member in cluster]
        for edge in edges:
            self.store.upsert_edge(edge)
        logger.debug("Created community %s (%r) with %d members", community.uuid, name, len(edges))
        return community, edges

    # ------------------------------------------------------------------ #
    # Summarization
    # ------------------------------------------------------------------ #
    def hierarchical_summarize(
        self, summaries: Sequence[str], cancel_event: Optional[threading.Event] = None
    ) -> str:
        """
        Reduce ``summaries`` to one by summarizing adjacent pairs, round by round.

        An odd element at the end of a round is carried into the next round
        unchanged. A single summary is returned as is.
        """
        if not summaries:
            raise ValueError("no summaries to process")

        current = list(summaries)
        while len(current) > 1:
            carried: List[str] = []
            if len(current) % 2 == 1:
                carried.append(current.pop())
            pairs = [(current[i], current[i + 1]) for i in range(0, len(current), 2)]
            current = self._summarize_round(pairs, cancel_event) + carried
        return current[0]

    def _summarize_round(
        self, pairs: List[Tuple[str, str]], cancel_event: Optional[threading.Event]
    ) -> List[str]:
        results: List[str] = [""] * len(pairs)
        pool = ThreadPoolExecutor(max_workers=len(pairs), thread_name_prefix="summarize")
        try:
            futures = {
                pool.submit(self.summarize_pair, left, right, cancel_event): idx
                for idx, (left, right) in enumerate(pairs)
            }
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            errors = {futures[f]: f.exception() for f in done if f.exception() is not None}
            if errors:
                first = errors[min(errors)]
                raise SummarizationError(f"failed to summarize pairs: {first}") from first
            for future, idx in futures.items():
                results[idx] = future.result()
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
        return results

    def summarize_pair(
        self, left: str, right: str, cancel_event: Optional[threading.Event] = None
    ) -> str:
        return generate_text_response(
            self.summarizer,
            summarize_pair_messages(left, right),
            max_retries=self.config.text_max_retries,
            config=self.continuation,
            cancel_event=cancel_event,
        )

    def generate_community_name(
        self, summary: str, cancel_event: Optional[threading.Event] = None
    ) -> str:
        # A reply that is only quotes counts as empty and is retried.
        return generate_text_response(
            self.llm,
            community_name_messages(summary),
            max_retries=self.config.text_max_retries,
            config=self.continuation,
            cancel_event=cancel_event,
            postprocess=_clean_name,
        )

    # ------------------------------------------------------------------ #
    # Incremental updates
    # ------------------------------------------------------------------ #
    def determine_entity_community(self, entity: Node) -> CommunityAssignment:
        existing = self.store.get_existing_community(entity.uuid)
        if existing is not None:
            return CommunityAssignment(community=existing, is_new=False)

        modal = self.store.find_modal_community(entity.uuid)
        if modal is None:
            return CommunityAssignment(community=None, is_new=False)
        return CommunityAssignment(community=modal, is_new=True)

    def update_community(
        self, entity: Node, cancel_event: Optional[threading.Event] = None
    ) -> UpdateCommunityResult:
        """
        Fold a newly extracted entity into the community its neighbors mostly belong to.

        Entities that already belong to a community, or whose neighbors belong to
        none, leave the graph untouched.
        """
        assignment = self.determine_entity_community(entity)
        if assignment.community is None:
            logger.debug("Entity %s has no community among its neighbors", entity.uuid)
            return UpdateCommunityResult()
        if not assignment.is_new:
            logger.debug("Entity %s already belongs to %s", entity.uuid, assignment.community.uuid)
            return UpdateCommunityResult()

        community = assignment.community
        summary = self.summarize_pair(entity.summary, community.summary, cancel_event)
        name = self.generate_community_name(summary, cancel_event)
        now = self.clock()
        updated = replace(community, summary=summary, name=name, updated_at=now)
        updated.embedding = self.embedder.embed_single(updated.name)
        self.store.upsert_node(updated)

        edge = new_membership_edge(self.uuid_factory(), updated, entity, now)
        self.store.upsert_edge(edge)
        logger.debug("Added %s to community %s (%r)", entity.uuid, updated.uuid, name)
        return UpdateCommunityResult(community_nodes=[updated], community_edges=[edge])

    def remove_communities(self) -> None:
        self.store.remove_communities()
