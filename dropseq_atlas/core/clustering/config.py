"""Configuration classes for clustering module.

Defaults follow the thresholds chosen for the Drop-seq retina analysis
(20 PCs, resolution 0.8, merge below 50 DE genes).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class ReductionConfig:
    """Configuration for PCA and tSNE.

    Attributes
    ----------
    n_pcs : int
        Principal components computed
    use_pcs : int
        Leading components used for tSNE and the neighbour graph
    svd_solver : str
        PCA solver passed to scanpy
    tsne_perplexity : float
        tSNE perplexity
    compute_tsne : bool
        Compute the 2-D tSNE embedding
    random_seed : int
        Random seed for reproducibility
    """

    n_pcs: int = 40
    use_pcs: int = 20
    svd_solver: str = "arpack"
    tsne_perplexity: float = 30.0
    compute_tsne: bool = True
    random_seed: int = 1337


@dataclass
class ClusteringConfig:
    """Configuration for SNN graph construction and community detection.

    Attributes
    ----------
    neighbors_k : int
        k for the nearest-neighbour graph (each cell counts itself)
    prune_snn : float
        Jaccard overlap below which SNN edges are removed
    resolution : float
        Modularity resolution
    algorithm : str
        Community detection algorithm: louvain or leiden
    n_iterations : int
        Leiden iterations (ignored for louvain)
    random_seed : int
        Random seed for reproducibility
    """

    neighbors_k: int = 30
    prune_snn: float = 1.0 / 15.0
    resolution: float = 0.8
    algorithm: str = "louvain"
    n_iterations: int = 2
    random_seed: int = 1337


@dataclass
class DEConfig:
    """Configuration for differential expression.

    Attributes
    ----------
    method : str
        Test: binomial, wilcoxon or t-test
    min_pct : float
        Gene must be detected in this fraction of either group
    logfc_threshold : float
        Minimum absolute natural-log fold change of mean expression
    pval_cutoff : float
        Adjusted p-value below which a gene counts as DE
    correction : str
        Multiple-testing correction (bonferroni, fdr_bh, holm, none)
    only_positive : bool
        Report only genes up-regulated in the cluster for marker tables
    n_genes : int
        Top genes kept per cluster in marker summaries
    """

    method: str = "binomial"
    min_pct: float = 0.1
    logfc_threshold: float = 0.25
    pval_cutoff: float = 0.01
    correction: str = "bonferroni"
    only_positive: bool = True
    n_genes: int = 20


@dataclass
class MergeConfig:
    """Configuration for tree-based cluster merging.

    Attributes
    ----------
    enabled : bool
        Run the merge stage
    min_de_genes : int
        Sibling clusters with fewer DE genes are merged
    max_oob_error : float, optional
        Also merge siblings whose random-forest OOB error exceeds this
    n_trees : int
        Trees in the random forest used to assess a node
    max_cells_per_side : int
        Cells sampled per side when training the forest
    linkage : str
        Linkage method for the cluster tree
    max_merges : int
        Upper bound on merge iterations
    random_seed : int
        Random seed for reproducibility
    """

    enabled: bool = True
    min_de_genes: int = 50
    max_oob_error: Optional[float] = None
    n_trees: int = 200
    max_cells_per_side: int = 2000
    linkage: str = "complete"
    max_merges: int = 100
    random_seed: int = 1337


@dataclass
class ClusteringStageConfig:
    """Master configuration for dimensionality reduction and clustering.

    Attributes
    ----------
    reduction : ReductionConfig
        PCA / tSNE configuration
    clustering : ClusteringConfig
        Graph clustering configuration
    de : DEConfig
        Differential expression configuration
    merge : MergeConfig
        Cluster merging configuration
    cluster_key : str
        obs column receiving cluster labels
    """

    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    de: DEConfig = field(default_factory=DEConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    cluster_key: str = "cluster"

    @classmethod
    def from_yaml(cls, path: Path) -> "ClusteringStageConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested analysis section of a workflow config
        if "analysis" in data:
            data = data["analysis"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringStageConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            reduction=ReductionConfig(**data.get("reduction", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            de=DEConfig(**data.get("de", {})),
            merge=MergeConfig(**data.get("merge", {})),
            cluster_key=data.get("cluster_key", "cluster"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reduction": {
                "n_pcs": self.reduction.n_pcs,
                "use_pcs": self.reduction.use_pcs,
                "svd_solver": self.reduction.svd_solver,
                "tsne_perplexity": self.reduction.tsne_perplexity,
                "compute_tsne": self.reduction.compute_tsne,
                "random_seed": self.reduction.random_seed,
            },
            "clustering": {
                "neighbors_k": self.clustering.neighbors_k,
                "prune_snn": self.clustering.prune_snn,
                "resolution": self.clustering.resolution,
                "algorithm": self.clustering.algorithm,
                "n_iterations": self.clustering.n_iterations,
                "random_seed": self.clustering.random_seed,
            },
            "de": {
                "method": self.de.method,
                "min_pct": self.de.min_pct,
                "logfc_threshold": self.de.logfc_threshold,
                "pval_cutoff": self.de.pval_cutoff,
                "correction": self.de.correction,
                "only_positive": self.de.only_positive,
                "n_genes": self.de.n_genes,
            },
            "merge": {
                "enabled": self.merge.enabled,
                "min_de_genes": self.merge.min_de_genes,
                "max_oob_error": self.merge.max_oob_error,
                "n_trees": self.merge.n_trees,
                "max_cells_per_side": self.merge.max_cells_per_side,
                "linkage": self.merge.linkage,
                "max_merges": self.merge.max_merges,
                "random_seed": self.merge.random_seed,
            },
            "cluster_key": self.cluster_key,
        }
