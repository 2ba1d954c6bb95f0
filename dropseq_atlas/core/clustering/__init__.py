"""Clustering module for Drop-seq cell populations.

Stages
------
- reduce: PCA on scaled variable genes, tSNE on the leading PCs
- cluster: Jaccard SNN graph, Louvain (or Leiden) community detection
- merge: cluster tree, random-forest / DE assessment of sibling clusters
- markers: one-vs-rest differential expression (binomial by default)

Example Usage
-------------
>>> from dropseq_atlas.core.clustering import (
...     ClusteringEngine, ClusterMerger, DERunner, ClusteringStageConfig,
... )
>>> config = ClusteringStageConfig()
>>> engine = ClusteringEngine(config)
>>> engine.run_reduction(adata)
>>> engine.run_clustering(adata)
>>> ClusterMerger(config).merge(adata)
>>> markers = DERunner(config).find_all_markers(adata)
"""

from .config import (
    ReductionConfig,
    ClusteringConfig,
    DEConfig,
    MergeConfig,
    ClusteringStageConfig,
)

from .engine import (
    ALGORITHMS,
    ClusteringEngine,
    ClusteringResult,
    ReductionResult,
    relabel_by_size,
)

from .de import (
    METHODS,
    RESULT_COLUMNS,
    DERunner,
    DEResult,
    adjust_pvalues,
    binomial_test,
)

from .merge import (
    ClusterMerger,
    ClusterTree,
    MergeResult,
    NodeAssessment,
)

__all__ = [
    # Config
    "ReductionConfig",
    "ClusteringConfig",
    "DEConfig",
    "MergeConfig",
    "ClusteringStageConfig",
    # Engine
    "ALGORITHMS",
    "ClusteringEngine",
    "ClusteringResult",
    "ReductionResult",
    "relabel_by_size",
    # DE
    "METHODS",
    "RESULT_COLUMNS",
    "DERunner",
    "DEResult",
    "adjust_pvalues",
    "binomial_test",
    # Merge
    "ClusterMerger",
    "ClusterTree",
    "MergeResult",
    "NodeAssessment",
]
