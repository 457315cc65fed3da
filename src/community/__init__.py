"""Community detection and hierarchical summarization for entity graphs."""

from .builder import BuildCommunitiesResult, CommunityAssignment, CommunityBuilder, UpdateCommunityResult
from .config import CommunityConfig
from .errors import ClusterFailure, CommunityBuildError, CommunityError, SummarizationError
from .label_propagation import label_propagation

__all__ = [
    "BuildCommunitiesResult",
    "CommunityAssignment",
    "CommunityBuilder",
    "UpdateCommunityResult",
    "CommunityConfig",
    "ClusterFailure",
    "CommunityBuildError",
    "CommunityError",
    "SummarizationError",
    "label_propagation",
]
