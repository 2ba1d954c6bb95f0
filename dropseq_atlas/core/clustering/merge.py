"""Tree-based merging of over-split clusters.

Clusters are arranged in a hierarchical tree by their average expression
of variable genes. Every pair of sibling leaves is assessed with a random
forest (out-of-bag error) and a DE gene count; the weakest pair is merged
and the tree rebuilt until every sibling pair is well separated.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.cluster import hierarchy

from .config import ClusteringStageConfig
from .de import DERunner
from .engine import relabel_by_size


@dataclass
class ClusterTree:
    """Hierarchical tree of clusters.

    Attributes
    ----------
    linkage : np.ndarray
        scipy linkage matrix over the leaves
    labels : List[str]
        Cluster label of each leaf, in linkage order
    """

    linkage: np.ndarray
    labels: List[str]

    def sibling_pairs(self) -> List[Tuple[str, str]]:
        """Pairs of leaves joined directly by one tree node."""
        n_leaves = len(self.labels)
        pairs = []
        for left, right, _, _ in self.linkage:
            left, right = int(left), int(right)
            if left < n_leaves and right < n_leaves:
                pairs.append((self.labels[left], self.labels[right]))
        return pairs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "linkage": np.asarray(self.linkage, dtype=float),
            "labels": np.asarray(self.labels, dtype=str),
        }


@dataclass
class NodeAssessment:
    """Separation statistics for one tree node.

    Attributes
    ----------
    side_a, side_b : List[str]
        Clusters on each side of the node
    n_cells_a, n_cells_b : int
        Cells on each side
    n_de_genes : int
        Genes significantly different between the sides
    oob_error : float
        Out-of-bag error of a random forest separating the sides
    """

    side_a: List[str]
    side_b: List[str]
    n_cells_a: int = 0
    n_cells_b: int = 0
    n_de_genes: int = 0
    oob_error: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side_a": "+".join(self.side_a),
            "side_b": "+".join(self.side_b),
            "n_cells_a": self.n_cells_a,
            "n_cells_b": self.n_cells_b,
            "n_de_genes": self.n_de_genes,
            "oob_error": round(self.oob_error, 4),
        }


@dataclass
class MergeResult:
    """Result from cluster merging.

    Attributes
    ----------
    n_clusters_before : int
        Clusters before merging
    n_clusters_after : int
        Clusters after merging and renumbering
    merges : List[NodeAssessment]
        Assessments of the merged nodes, in merge order
    assessments : List[NodeAssessment]
        Assessments of the sibling pairs in the final tree
    """

    n_clusters_before: int = 0
    n_clusters_after: int = 0
    merges: List[NodeAssessment] = field(default_factory=list)
    assessments: List[NodeAssessment] = field(default_factory=list)

    @property
    def n_merges(self) -> int:
        return len(self.merges)

    def merge_table(self) -> pd.DataFrame:
        """Merge log as a DataFrame (one row per merge)."""
        columns = ["side_a", "side_b", "n_cells_a", "n_cells_b", "n_de_genes", "oob_error"]
        return pd.DataFrame([m.to_dict() for m in self.merges], columns=columns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters_before": self.n_clusters_before,
            "n_clusters_after": self.n_clusters_after,
            "n_merges": self.n_merges,
            "merges": [m.to_dict() for m in self.merges],
        }


class ClusterMerger:
    """Merge sibling clusters that are not transcriptionally distinct.

    Parameters
    ----------
    config : ClusteringStageConfig, optional
        Clustering stage configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from dropseq_atlas.core.clustering import ClusterMerger
    >>> result = ClusterMerger().merge(adata)
    >>> result.n_clusters_before, result.n_clusters_after
    (41, 39)
    """

    def __init__(
        self,
        config: Optional[ClusteringStageConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringStageConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.de_runner = DERunner(self.config, logger=self.logger)

    def _features(self, adata: Any) -> np.ndarray:
        """Cell features for the random forest: leading PCs or scaled genes."""
        if "X_pca" in adata.obsm:
            n_use = min(self.config.reduction.use_pcs, adata.obsm["X_pca"].shape[1])
            return np.asarray(adata.obsm["X_pca"][:, :n_use])
        if "X_scaled" in adata.obsm:
            return np.asarray(adata.obsm["X_scaled"])
        raise KeyError("Neither X_pca nor X_scaled found in adata.obsm")

    def build_cluster_tree(
        self, adata: Any, cluster_key: Optional[str] = None
    ) -> ClusterTree:
        """Hierarchically cluster the per-cluster mean expression.

        Uses log-normalized expression of the variable genes (all genes if
        none are flagged) and euclidean distance.

        Raises
        ------
        ValueError
            If fewer than two clusters are present
        """
        cluster_key = cluster_key or self.config.cluster_key
        labels = adata.obs[cluster_key].astype(str).to_numpy()
        clusters = sorted(set(labels), key=lambda c: (len(c), c))
        if len(clusters) < 2:
            raise ValueError("At least two clusters are needed to build a cluster tree")

        if "highly_variable" in adata.var:
            gene_mask = adata.var["highly_variable"].to_numpy(dtype=bool)
        else:
            gene_mask = np.ones(adata.n_vars, dtype=bool)
        matrix = adata.X[:, gene_mask]

        means = np.zeros((len(clusters), int(gene_mask.sum())))
        for i, cluster in enumerate(clusters):
            sub = matrix[labels == cluster]
            if sparse.issparse(sub):
                means[i] = np.asarray(sub.mean(axis=0)).ravel()
            else:
                means[i] = np.asarray(sub).mean(axis=0)

        linkage = hierarchy.linkage(means, method=self.config.merge.linkage, metric="euclidean")
        return ClusterTree(linkage=linkage, labels=clusters)

    def assess_node(
        self,
        adata: Any,
        labels_a: Sequence[str],
        labels_b: Sequence[str],
        cluster_key: Optional[str] = None,
    ) -> NodeAssessment:
        """Measure how well two groups of clusters are separated.

        Parameters
        ----------
        adata : AnnData
            Clustered AnnData
        labels_a, labels_b : Sequence[str]
            Clusters on each side of the node

        Returns
        -------
        NodeAssessment
            OOB error of a random forest and number of DE genes
        """
        from sklearn.ensemble import RandomForestClassifier

        cfg = self.config.merge
        cluster_key = cluster_key or self.config.cluster_key
        labels = adata.obs[cluster_key].astype(str).to_numpy()
        mask_a = np.isin(labels, list(labels_a))
        mask_b = np.isin(labels, list(labels_b))

        assessment = NodeAssessment(
            side_a=[str(c) for c in labels_a],
            side_b=[str(c) for c in labels_b],
            n_cells_a=int(mask_a.sum()),
            n_cells_b=int(mask_b.sum()),
        )
        if assessment.n_cells_a == 0 or assessment.n_cells_b == 0:
            raise ValueError(
                f"Empty side in node assessment ({labels_a} vs {labels_b})"
            )

        rng = np.random.default_rng(cfg.random_seed)
        idx_a = np.flatnonzero(mask_a)
        idx_b = np.flatnonzero(mask_b)
        if len(idx_a) > cfg.max_cells_per_side:
            idx_a = rng.choice(idx_a, cfg.max_cells_per_side, replace=False)
        if len(idx_b) > cfg.max_cells_per_side:
            idx_b = rng.choice(idx_b, cfg.max_cells_per_side, replace=False)

        features = self._features(adata)
        X = np.vstack([features[idx_a], features[idx_b]])
        y = np.concatenate([np.zeros(len(idx_a), dtype=int), np.ones(len(idx_b), dtype=int)])

        forest = RandomForestClassifier(
            n_estimators=cfg.n_trees,
            oob_score=True,
            random_state=cfg.random_seed,
        )
        forest.fit(X, y)
        assessment.oob_error = float(1.0 - forest.oob_score_)
        assessment.n_de_genes = self.de_runner.count_de_genes(adata, mask_a, mask_b)

        self.logger.debug(
            "Node %s | %s: %d DE genes, OOB error %.3f",
            "+".join(assessment.side_a),
            "+".join(assessment.side_b),
            assessment.n_de_genes,
            assessment.oob_error,
        )
        return assessment

    def _should_merge(self, assessment: NodeAssessment) -> bool:
        cfg = self.config.merge
        if assessment.n_de_genes < cfg.min_de_genes:
            return True
        return cfg.max_oob_error is not None and assessment.oob_error > cfg.max_oob_error

    def merge(self, adata: Any, cluster_key: Optional[str] = None) -> MergeResult:
        """Merge weak sibling clusters until every sibling pair is distinct.

        Labels before merging are copied to ``obs['<cluster_key>_premerge']``;
        final labels are renumbered by size. The final tree is stored in
        ``uns['cluster_tree']`` and the merge log in ``uns['merge_log']``.

        Returns
        -------
        MergeResult
            Merge log and final sibling assessments
        """
        cfg = self.config.merge
        cluster_key = cluster_key or self.config.cluster_key
        if cluster_key not in adata.obs:
            raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")

        adata.obs[f"{cluster_key}_premerge"] = adata.obs[cluster_key].copy()
        labels = adata.obs[cluster_key].astype(str).to_numpy().copy()
        result = MergeResult(n_clusters_before=len(set(labels)))
        self.logger.info(
            "Merging clusters (min DE genes=%d, max OOB error=%s)",
            cfg.min_de_genes,
            cfg.max_oob_error,
        )

        cache: Dict[Tuple[str, str], NodeAssessment] = {}
        tree = None
        while len(set(labels)) > 1:
            adata.obs[cluster_key] = pd.Categorical(labels)
            tree = self.build_cluster_tree(adata, cluster_key)
            assessments = []
            for a, b in tree.sibling_pairs():
                key = tuple(sorted((a, b)))
                if key not in cache:
                    cache[key] = self.assess_node(adata, [a], [b], cluster_key)
                assessments.append(cache[key])
            result.assessments = assessments

            candidates = [a for a in assessments if self._should_merge(a)]
            if not candidates:
                break
            if result.n_merges >= cfg.max_merges:
                self.logger.warning(
                    "Stopped after max_merges=%d merges with %d mergeable pairs left",
                    cfg.max_merges,
                    len(candidates),
                )
                break
            weakest = min(candidates, key=lambda a: (a.n_de_genes, -a.oob_error))
            keep, absorb = weakest.side_a[0], weakest.side_b[0]
            if weakest.n_cells_b > weakest.n_cells_a:
                keep, absorb = absorb, keep
            labels[labels == absorb] = keep
            cache = {k: v for k, v in cache.items() if keep not in k and absorb not in k}
            result.merges.append(weakest)
            self.logger.info(
                "Merged cluster %s into %s (%d DE genes, OOB error %.3f)",
                absorb,
                keep,
                weakest.n_de_genes,
                weakest.oob_error,
            )

        adata.obs[cluster_key] = relabel_by_size(labels)
        result.n_clusters_after = int(adata.obs[cluster_key].nunique())

        if result.n_clusters_after > 1:
            tree = self.build_cluster_tree(adata, cluster_key)
            adata.uns["cluster_tree"] = tree.to_dict()
        else:
            adata.uns.pop("cluster_tree", None)
        adata.uns["merge_log"] = {
            "side_a": np.asarray([m.to_dict()["side_a"] for m in result.merges], dtype=str),
            "side_b": np.asarray([m.to_dict()["side_b"] for m in result.merges], dtype=str),
            "n_de_genes": np.asarray([m.n_de_genes for m in result.merges], dtype=int),
            "oob_error": np.asarray([m.oob_error for m in result.merges], dtype=float),
        }

        self.logger.info(
            "Cluster merging: %d -> %d clusters (%d merges)",
            result.n_clusters_before,
            result.n_clusters_after,
            result.n_merges,
        )
        return result
