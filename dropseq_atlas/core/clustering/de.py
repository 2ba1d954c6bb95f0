"""Differential expression testing for cluster markers and merging.

The default test is a binomial test on detection counts: the number of
cells in group 1 expressing a gene is compared against a binomial draw
with the detection frequency of group 2. Wilcoxon and t-test are
delegated to scanpy's ``rank_genes_groups``; all methods share the same
pre-filters, fold-change definition and output columns.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

import numpy as np
import pandas as pd
from scipy import sparse, stats

from .config import ClusteringStageConfig


METHODS = ("binomial", "wilcoxon", "t-test")

RESULT_COLUMNS = ["gene", "p_val", "avg_logFC", "pct_1", "pct_2", "p_val_adj"]


@dataclass
class DEResult:
    """Result from marker detection over all clusters.

    Attributes
    ----------
    table : pd.DataFrame
        Significant genes with RESULT_COLUMNS plus ``cluster``
    cluster_de_genes : Dict[str, List[str]]
        Map of cluster ID to its top marker genes
    method : str
        Test used
    elapsed_seconds : float
        Time taken for DE computation
    """

    table: Optional[pd.DataFrame] = None
    cluster_de_genes: Dict[str, List[str]] = field(default_factory=dict)
    method: str = "binomial"
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "n_rows": 0 if self.table is None else int(len(self.table)),
            "n_clusters": len(self.cluster_de_genes),
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


def adjust_pvalues(
    p_values: np.ndarray,
    method: str = "bonferroni",
    n_tests: Optional[int] = None,
) -> np.ndarray:
    """Apply multiple testing correction.

    Parameters
    ----------
    p_values : np.ndarray
        Raw p-values (NaN entries are left untouched)
    method : str
        "bonferroni", "fdr_bh", "holm", or "none"
    n_tests : int, optional
        Number of hypotheses; defaults to the number of valid p-values.
        Lets genes removed by pre-filters still count toward Bonferroni.

    Returns
    -------
    np.ndarray
        Adjusted p-values
    """
    p_values = np.asarray(p_values, dtype=float)
    adjusted = p_values.copy()
    valid_mask = ~np.isnan(p_values)
    valid_p = p_values[valid_mask]
    if len(valid_p) == 0 or method == "none":
        return adjusted

    n = n_tests if n_tests is not None else len(valid_p)
    n = max(n, len(valid_p))

    if method == "bonferroni":
        adjusted_valid = np.minimum(valid_p * n, 1.0)
    elif method == "fdr_bh":
        order = np.argsort(valid_p)
        ranked = valid_p[order] * n / np.arange(1, len(valid_p) + 1)
        ranked = np.minimum.accumulate(ranked[::-1])[::-1]
        adjusted_valid = np.empty_like(valid_p)
        adjusted_valid[order] = np.minimum(ranked, 1.0)
    elif method == "holm":
        order = np.argsort(valid_p)
        ranked = valid_p[order] * (n - np.arange(len(valid_p)))
        ranked = np.maximum.accumulate(ranked)
        adjusted_valid = np.empty_like(valid_p)
        adjusted_valid[order] = np.minimum(ranked, 1.0)
    else:
        raise ValueError(f"Unknown correction method: {method}")

    adjusted[valid_mask] = adjusted_valid
    return adjusted


def binomial_test(
    n_expressing: np.ndarray,
    n_cells: int,
    reference_expressing: np.ndarray,
    reference_cells: int,
) -> np.ndarray:
    """Two-sided binomial test of detection counts.

    The reference detection frequency uses a +1/+2 pseudocount so genes
    never (or always) detected in the reference still get finite p-values.
    """
    x = np.asarray(n_expressing, dtype=float)
    p_ref = (np.asarray(reference_expressing, dtype=float) + 1.0) / (reference_cells + 2.0)
    lower = stats.binom.cdf(x, n_cells, p_ref)
    upper = stats.binom.sf(x - 1.0, n_cells, p_ref)
    return np.minimum(1.0, 2.0 * np.minimum(lower, upper))


class DERunner:
    """Differential expression test runner.

    Parameters
    ----------
    config : ClusteringStageConfig, optional
        Clustering stage configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from dropseq_atlas.core.clustering import DERunner
    >>> runner = DERunner()
    >>> result = runner.find_all_markers(adata, cluster_key="cluster")
    >>> result.cluster_de_genes["0"][:3]
    ['Rho', 'Sag', 'Gngt1']
    """

    def __init__(
        self,
        config: Optional[ClusteringStageConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringStageConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _group_stats(matrix: Any, mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Detection counts and mean linear expression per gene."""
        sub = matrix[mask]
        if sparse.issparse(sub):
            sub = sparse.csr_matrix(sub)
            n_expr = np.asarray((sub > 0).sum(axis=0)).ravel()
            mean_lin = np.asarray(sub.expm1().mean(axis=0)).ravel()
        else:
            sub = np.asarray(sub)
            n_expr = (sub > 0).sum(axis=0)
            mean_lin = np.expm1(sub).mean(axis=0)
        return n_expr.astype(float), mean_lin.astype(float)

    def _scanpy_pvalues(
        self,
        adata: Any,
        group_mask: np.ndarray,
        reference_mask: np.ndarray,
        method: str,
    ) -> np.ndarray:
        """Per-gene p-values from scanpy for group vs reference."""
        import scanpy as sc

        keep = group_mask | reference_mask
        work = adata[keep].copy()
        labels = np.where(group_mask[keep], "group", "reference")
        work.obs["_de_group"] = pd.Categorical(labels)
        sc.tl.rank_genes_groups(
            work,
            groupby="_de_group",
            groups=["group"],
            reference="reference",
            method=method,
            n_genes=work.n_vars,
            use_raw=False,
            key_added="_de",
        )
        df = sc.get.rank_genes_groups_df(work, group="group", key="_de")
        pvals = df.set_index("names")["pvals"]
        return pvals.reindex(adata.var_names).to_numpy(dtype=float)

    def find_markers(
        self,
        adata: Any,
        group_mask: np.ndarray,
        reference_mask: Optional[np.ndarray] = None,
        method: Optional[str] = None,
        only_positive: bool = False,
    ) -> pd.DataFrame:
        """Test every gene between two groups of cells.

        Parameters
        ----------
        adata : AnnData
            Log-normalized AnnData
        group_mask : np.ndarray
            Boolean mask of group 1 cells
        reference_mask : np.ndarray, optional
            Boolean mask of group 2 cells (default: all other cells)
        method : str, optional
            binomial, wilcoxon or t-test. Uses config default if None.
        only_positive : bool
            Keep only genes higher in group 1

        Returns
        -------
        pd.DataFrame
            Tested genes with RESULT_COLUMNS, sorted by p-value
        """
        cfg = self.config.de
        method = method or cfg.method
        if method not in METHODS:
            raise ValueError(f"Unknown DE method '{method}' (expected one of {METHODS})")

        group_mask = np.asarray(group_mask, dtype=bool)
        if reference_mask is None:
            reference_mask = ~group_mask
        reference_mask = np.asarray(reference_mask, dtype=bool) & ~group_mask
        n1 = int(group_mask.sum())
        n2 = int(reference_mask.sum())
        if n1 == 0 or n2 == 0:
            raise ValueError(
                f"Both groups need cells for DE (group={n1}, reference={n2})"
            )

        x1, mean1 = self._group_stats(adata.X, group_mask)
        x2, mean2 = self._group_stats(adata.X, reference_mask)
        pct1 = x1 / n1
        pct2 = x2 / n2
        logfc = np.log1p(mean1) - np.log1p(mean2)

        keep = (np.maximum(pct1, pct2) >= cfg.min_pct) & (
            np.abs(logfc) >= cfg.logfc_threshold
        )
        if only_positive:
            keep &= logfc > 0

        if method == "binomial":
            p_val = np.full(adata.n_vars, np.nan)
            p_val[keep] = binomial_test(x1[keep], n1, x2[keep], n2)
        else:
            p_val = self._scanpy_pvalues(adata, group_mask, reference_mask, method)

        table = pd.DataFrame(
            {
                "gene": np.asarray(adata.var_names),
                "p_val": p_val,
                "avg_logFC": logfc,
                "pct_1": np.round(pct1, 3),
                "pct_2": np.round(pct2, 3),
            }
        )
        table = table.loc[keep].dropna(subset=["p_val"])
        table["p_val_adj"] = adjust_pvalues(
            table["p_val"].to_numpy(), method=cfg.correction, n_tests=adata.n_vars
        )
        table = table.sort_values(
            ["p_val", "avg_logFC"], ascending=[True, False]
        ).reset_index(drop=True)
        return table[RESULT_COLUMNS]

    def count_de_genes(
        self,
        adata: Any,
        mask_a: np.ndarray,
        mask_b: np.ndarray,
        method: Optional[str] = None,
    ) -> int:
        """Number of genes significantly different between two groups."""
        table = self.find_markers(adata, mask_a, mask_b, method=method)
        return int((table["p_val_adj"] < self.config.de.pval_cutoff).sum())

    def find_all_markers(
        self,
        adata: Any,
        cluster_key: Optional[str] = None,
        method: Optional[str] = None,
        only_positive: Optional[bool] = None,
        output_dir: Optional[Path] = None,
    ) -> DEResult:
        """Find markers of every cluster against all other cells.

        Parameters
        ----------
        adata : AnnData
            Clustered, log-normalized AnnData
        cluster_key : str, optional
            Column name in adata.obs with cluster labels
        method : str, optional
            DE method. Uses config default if None.
        only_positive : bool, optional
            Keep only up-regulated genes. Uses config default if None.
        output_dir : Path, optional
            Directory receiving ``markers.csv``

        Returns
        -------
        DEResult
            Marker table and per-cluster top genes

        Raises
        ------
        KeyError
            If the cluster column is missing
        """
        cfg = self.config.de
        cluster_key = cluster_key or self.config.cluster_key
        method = method or cfg.method
        only_positive = cfg.only_positive if only_positive is None else only_positive

        if cluster_key not in adata.obs:
            raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")

        labels = adata.obs[cluster_key].astype(str).to_numpy()
        clusters = sorted(set(labels), key=lambda c: (len(c), c))
        self.logger.info(
            "Finding markers for %d clusters (method=%s, min_pct=%.2f, logfc>=%.2f)",
            len(clusters),
            method,
            cfg.min_pct,
            cfg.logfc_threshold,
        )

        start = time.time()
        result = DEResult(method=method)
        frames = []
        for cluster in clusters:
            mask = labels == cluster
            if mask.all():
                self.logger.warning("Only one cluster present; no reference cells for DE")
                break
            table = self.find_markers(
                adata, mask, method=method, only_positive=only_positive
            )
            table = table.loc[table["p_val_adj"] < cfg.pval_cutoff].copy()
            table.insert(0, "cluster", cluster)
            frames.append(table)
            result.cluster_de_genes[cluster] = table["gene"].head(cfg.n_genes).tolist()
            self.logger.debug("Cluster %s: %d markers", cluster, len(table))

        if frames:
            result.table = pd.concat(frames, ignore_index=True)
        else:
            result.table = pd.DataFrame(columns=["cluster"] + RESULT_COLUMNS)
        result.elapsed_seconds = time.time() - start

        adata.uns["markers"] = {
            "method": method,
            "cluster_key": cluster_key,
            "n_markers": {
                c: int((result.table["cluster"] == c).sum()) for c in result.cluster_de_genes
            },
        }

        if output_dir is not None:
            output_dir = Path(output_dir)
            output_dir.mkdir(parents=True, exist_ok=True)
            path = output_dir / "markers.csv"
            result.table.to_csv(path, index=False)
            self.logger.info("Wrote %s", path)

        self.logger.info(
            "Marker detection finished: %d rows in %.1f seconds",
            len(result.table),
            result.elapsed_seconds,
        )
        return result
