"""Clustering engine for cell population identification.

Provides the reduction and graph clustering pipeline:
scaled variable genes -> PCA -> tSNE, and PCA -> kNN -> Jaccard SNN ->
Louvain/Leiden community detection.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging
import random

import numpy as np
import pandas as pd
from scipy import sparse

from .config import ClusteringStageConfig


ALGORITHMS = ("louvain", "leiden")


@dataclass
class ReductionResult:
    """Result from PCA / tSNE.

    Attributes
    ----------
    n_pcs : int
        Components computed
    use_pcs : int
        Components used downstream
    variance_ratio : np.ndarray
        Explained variance ratio per component
    has_tsne : bool
        Whether a tSNE embedding was computed
    """

    n_pcs: int = 0
    use_pcs: int = 0
    variance_ratio: Optional[np.ndarray] = None
    has_tsne: bool = False

    def to_dict(self) -> Dict[str, Any]:
        explained = 0.0
        if self.variance_ratio is not None:
            explained = float(np.sum(self.variance_ratio[: self.use_pcs]))
        return {
            "n_pcs": self.n_pcs,
            "use_pcs": self.use_pcs,
            "variance_explained_used": round(explained, 4),
            "has_tsne": self.has_tsne,
        }


@dataclass
class ClusteringResult:
    """Result from clustering operation.

    Attributes
    ----------
    n_clusters : int
        Number of clusters found
    cluster_key : str
        Key in adata.obs containing cluster assignments
    cluster_sizes : Dict[str, int]
        Map of cluster ID to cell count
    n_edges : int
        Undirected edges in the pruned SNN graph
    algorithm : str
        Community detection algorithm used
    resolution : float
        Modularity resolution used
    """

    n_clusters: int = 0
    cluster_key: str = "cluster"
    cluster_sizes: Dict[str, int] = field(default_factory=dict)
    n_edges: int = 0
    algorithm: str = "louvain"
    resolution: float = 0.8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters": self.n_clusters,
            "cluster_key": self.cluster_key,
            "n_edges": self.n_edges,
            "algorithm": self.algorithm,
            "resolution": self.resolution,
            "cluster_sizes": dict(self.cluster_sizes),
        }


def relabel_by_size(labels: Any) -> pd.Categorical:
    """Renumber labels so that "0" is the largest group.

    Ties are broken by the original label order, numeric when every label
    is an integer.
    """
    series = pd.Series(np.asarray(labels).astype(str))
    counts = series.value_counts()
    numeric = all(lab.isdigit() for lab in counts.index)
    order = sorted(
        counts.index,
        key=lambda lab: (-counts[lab], int(lab) if numeric else lab),
    )
    mapping = {old: str(new) for new, old in enumerate(order)}
    new_labels = series.map(mapping)
    categories = [str(i) for i in range(len(order))]
    return pd.Categorical(new_labels, categories=categories)


class ClusteringEngine:
    """Reduction and SNN graph clustering engine.

    Parameters
    ----------
    config : ClusteringStageConfig, optional
        Clustering stage configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from dropseq_atlas.core.clustering import ClusteringEngine
    >>> engine = ClusteringEngine()
    >>> engine.run_reduction(adata)
    >>> result = engine.run_clustering(adata)
    >>> result.n_clusters
    39
    """

    def __init__(
        self,
        config: Optional[ClusteringStageConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringStageConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _use_pcs(self, adata: Any, use_pcs: Optional[int] = None) -> int:
        if "X_pca" not in adata.obsm:
            raise KeyError("PCA not computed; run run_pca first")
        use_pcs = use_pcs if use_pcs is not None else self.config.reduction.use_pcs
        return max(1, min(use_pcs, adata.obsm["X_pca"].shape[1]))

    def run_pca(self, adata: Any, n_pcs: Optional[int] = None) -> ReductionResult:
        """Run PCA on the scaled variable genes.

        Writes ``obsm['X_pca']``, ``uns['pca']`` and ``varm['PCs']``
        (loadings for the scaled genes, zero elsewhere).

        Raises
        ------
        KeyError
            If the scaled matrix is missing
        """
        import anndata as ad
        import scanpy as sc

        if "X_scaled" not in adata.obsm:
            raise KeyError("Scaled matrix not found in obsm['X_scaled']; run normalization first")

        cfg = self.config.reduction
        n_pcs = n_pcs if n_pcs is not None else cfg.n_pcs
        scaled = np.asarray(adata.obsm["X_scaled"])
        n_comps = max(1, min(n_pcs, scaled.shape[1] - 1, scaled.shape[0] - 1))
        if n_comps < n_pcs:
            self.logger.info("Reducing PCA components from %d to %d", n_pcs, n_comps)

        genes = list(adata.uns.get("scaled_genes", []))
        work = ad.AnnData(X=scaled)
        sc.tl.pca(
            work,
            n_comps=n_comps,
            svd_solver=cfg.svd_solver,
            random_state=cfg.random_seed,
        )

        adata.obsm["X_pca"] = work.obsm["X_pca"].astype(np.float32)
        variance_ratio = np.asarray(work.uns["pca"]["variance_ratio"])
        adata.uns["pca"] = {
            "variance_ratio": variance_ratio,
            "variance": np.asarray(work.uns["pca"]["variance"]),
            "params": {"n_comps": n_comps, "source": "X_scaled"},
        }
        if len(genes) == scaled.shape[1]:
            loadings = np.zeros((adata.n_vars, n_comps), dtype=np.float32)
            positions = adata.var_names.get_indexer(genes)
            valid = positions >= 0
            loadings[positions[valid]] = work.varm["PCs"][valid]
            adata.varm["PCs"] = loadings

        use_pcs = min(cfg.use_pcs, n_comps)
        self.logger.info(
            "Computed %d PCs; first %d explain %.1f%% of variance",
            n_comps,
            use_pcs,
            100.0 * float(np.sum(variance_ratio[:use_pcs])),
        )
        return ReductionResult(
            n_pcs=n_comps, use_pcs=use_pcs, variance_ratio=variance_ratio
        )

    def run_tsne(self, adata: Any, use_pcs: Optional[int] = None) -> None:
        """Compute a 2-D tSNE embedding from the leading PCs."""
        import scanpy as sc

        cfg = self.config.reduction
        use_pcs = self._use_pcs(adata, use_pcs)
        perplexity = min(cfg.tsne_perplexity, max((adata.n_obs - 1) / 3.0, 1.0))
        if perplexity < cfg.tsne_perplexity:
            self.logger.info(
                "Lowering tSNE perplexity from %.1f to %.1f for %d cells",
                cfg.tsne_perplexity,
                perplexity,
                adata.n_obs,
            )
        self.logger.info("Running tSNE on %d PCs (perplexity=%.1f)", use_pcs, perplexity)
        sc.tl.tsne(
            adata,
            n_pcs=use_pcs,
            use_rep="X_pca",
            perplexity=perplexity,
            random_state=cfg.random_seed,
        )

    def run_reduction(self, adata: Any) -> ReductionResult:
        """Run PCA and, if configured, tSNE."""
        result = self.run_pca(adata)
        if self.config.reduction.compute_tsne:
            self.run_tsne(adata, result.use_pcs)
            result.has_tsne = True
        return result

    def build_snn_graph(
        self,
        adata: Any,
        neighbors_k: Optional[int] = None,
        prune_snn: Optional[float] = None,
        use_pcs: Optional[int] = None,
    ) -> sparse.csr_matrix:
        """Build the pruned Jaccard shared-nearest-neighbour graph.

        Each cell's neighbourhood is its ``neighbors_k`` nearest cells in PC
        space, itself included. Edge weight between two cells is the
        Jaccard index of their neighbourhoods; weights below ``prune_snn``
        are dropped. Stored in ``obsp['snn']``.

        Returns
        -------
        sparse.csr_matrix
            Symmetric weighted adjacency without self loops
        """
        from sklearn.neighbors import NearestNeighbors

        cfg = self.config.clustering
        neighbors_k = neighbors_k if neighbors_k is not None else cfg.neighbors_k
        prune_snn = prune_snn if prune_snn is not None else cfg.prune_snn
        use_pcs = self._use_pcs(adata, use_pcs)

        n_cells = adata.n_obs
        k = max(1, min(neighbors_k, n_cells))
        coords = np.asarray(adata.obsm["X_pca"][:, :use_pcs])

        nn = NearestNeighbors(n_neighbors=k)
        nn.fit(coords)
        neighbors = nn.kneighbors(coords, return_distance=False)

        rows = np.repeat(np.arange(n_cells), k)
        membership = sparse.csr_matrix(
            (np.ones(n_cells * k, dtype=np.float32), (rows, neighbors.ravel())),
            shape=(n_cells, n_cells),
        )
        shared = (membership @ membership.T).tocsr()
        shared.data = shared.data / (2.0 * k - shared.data)
        shared.data[shared.data < prune_snn] = 0.0
        shared.setdiag(0.0)
        shared.eliminate_zeros()

        adata.obsp["snn"] = shared
        adata.uns["snn"] = {
            "neighbors_k": int(k),
            "prune_snn": float(prune_snn),
            "use_pcs": int(use_pcs),
        }
        self.logger.info(
            "Built SNN graph: k=%d on %d PCs, %d edges after pruning at %.4f",
            k,
            use_pcs,
            shared.nnz // 2,
            prune_snn,
        )
        return shared

    def _louvain(
        self, adjacency: sparse.csr_matrix, resolution: float, random_seed: int
    ) -> np.ndarray:
        """Multilevel modularity optimisation on a weighted graph."""
        import igraph as ig

        upper = sparse.triu(adjacency, k=1).tocoo()
        graph = ig.Graph(
            n=adjacency.shape[0],
            edges=list(zip(upper.row.tolist(), upper.col.tolist())),
            directed=False,
        )
        graph.es["weight"] = upper.data.tolist()

        # igraph draws from the stdlib generator by default
        random.seed(random_seed)
        partition = graph.community_multilevel(weights="weight", resolution=resolution)
        return np.asarray(partition.membership)

    def run_clustering(
        self,
        adata: Any,
        cluster_key: Optional[str] = None,
        resolution: Optional[float] = None,
        algorithm: Optional[str] = None,
        random_seed: Optional[int] = None,
    ) -> ClusteringResult:
        """Cluster cells on the SNN graph.

        Builds the graph first if ``obsp['snn']`` is missing. Labels are
        written to ``adata.obs[cluster_key]`` and renumbered by size.

        Returns
        -------
        ClusteringResult
            Clustering result with cluster statistics
        """
        import scanpy as sc

        cfg = self.config.clustering
        cluster_key = cluster_key or self.config.cluster_key
        resolution = resolution if resolution is not None else cfg.resolution
        algorithm = (algorithm or cfg.algorithm).lower()
        random_seed = random_seed if random_seed is not None else cfg.random_seed

        if algorithm not in ALGORITHMS:
            raise ValueError(
                f"Unknown clustering algorithm '{algorithm}' (expected one of {ALGORITHMS})"
            )

        if "snn" not in adata.obsp:
            self.build_snn_graph(adata)
        adjacency = sparse.csr_matrix(adata.obsp["snn"])

        self.logger.info(
            "Running %s clustering (resolution=%.3f) on %d cells",
            algorithm,
            resolution,
            adata.n_obs,
        )
        if algorithm == "louvain":
            labels = self._louvain(adjacency, resolution, random_seed)
        else:
            sc.tl.leiden(
                adata,
                resolution=resolution,
                adjacency=adjacency,
                key_added="_leiden",
                flavor="igraph",
                n_iterations=cfg.n_iterations,
                directed=False,
                random_state=random_seed,
            )
            labels = adata.obs.pop("_leiden").to_numpy()
            adata.uns.pop("_leiden", None)

        adata.obs[cluster_key] = relabel_by_size(labels)
        adata.uns[cluster_key] = {
            "algorithm": algorithm,
            "resolution": float(resolution),
            "random_seed": int(random_seed),
        }

        result = ClusteringResult(
            cluster_key=cluster_key,
            algorithm=algorithm,
            resolution=float(resolution),
            n_edges=int(adjacency.nnz // 2),
        )
        result.n_clusters = int(adata.obs[cluster_key].nunique())
        result.cluster_sizes = {
            str(k): int(v)
            for k, v in adata.obs[cluster_key].value_counts(sort=False).items()
        }
        self.logger.info("Found %d clusters", result.n_clusters)
        return result
