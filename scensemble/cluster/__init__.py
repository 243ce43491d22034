from .consensus import (
    BASE_ALGORITHMS,
    ConsensusClusteringEngine,
    ConsensusResult,
    GridPoint,
    RunResult,
    aggregate_runs,
    build_grid,
    co_assignment,
    consensus_cluster,
    default_dims,
    finalize_consensus,
)
from .markers import MarkerResult, find_markers, score_markers

__all__ = [
    # consensus
    "ConsensusClusteringEngine",
    "ConsensusResult",
    "GridPoint",
    "RunResult",
    "BASE_ALGORITHMS",
    "default_dims",
    "build_grid",
    "co_assignment",
    "aggregate_runs",
    "finalize_consensus",
    "consensus_cluster",
    # markers
    "MarkerResult",
    "score_markers",
    "find_markers",
]
