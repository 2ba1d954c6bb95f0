"""Cell and gene quality control.

Computes per-cell QC metrics (detected genes, UMIs, mitochondrial
fraction) and removes cells outside the configured thresholds,
then drops genes that are no longer detected in enough cells.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from .config import QCConfig


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "high_mito",
    "low_genes",
    "high_genes",
]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    cells_before : int
        Cells before filtering
    cells_after : int
        Cells retained
    genes_before : int
        Genes before filtering
    genes_after : int
        Genes retained after the min-cells filter
    reason_counts : Dict[str, int]
        Cells flagged per removal reason (a cell may have several)
    removal_records : pd.DataFrame
        One row per removed cell with its sample and reasons
    """

    cells_before: int = 0
    cells_after: int = 0
    genes_before: int = 0
    genes_after: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    removal_records: Optional[pd.DataFrame] = None

    @property
    def cells_removed(self) -> int:
        return self.cells_before - self.cells_after

    @property
    def genes_removed(self) -> int:
        return self.genes_before - self.genes_after

    @property
    def removal_fraction(self) -> float:
        if self.cells_before == 0:
            return 0.0
        return self.cells_removed / self.cells_before

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_before": self.cells_before,
            "cells_after": self.cells_after,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
            "genes_before": self.genes_before,
            "genes_after": self.genes_after,
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


class CellQC:
    """Threshold-based cell and gene filter.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from dropseq_atlas.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(max_mito_fraction=0.05, min_genes=500, max_genes=2000))
    >>> adata, result = qc.run(adata)
    >>> result.cells_after
    27499
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def flag_mito_genes(self, adata: Any) -> int:
        """Mark mitochondrial genes in ``adata.var['mito']``.

        Returns
        -------
        int
            Number of mitochondrial genes found
        """
        prefix = self.config.mito_prefix.lower()
        names = pd.Series(adata.var_names, index=adata.var_names).str.lower()
        adata.var["mito"] = names.str.startswith(prefix).to_numpy()
        n_mito = int(adata.var["mito"].sum())
        if n_mito == 0:
            self.logger.warning(
                "No genes match mitochondrial prefix '%s'; mito fraction will be 0",
                self.config.mito_prefix,
            )
        return n_mito

    def compute_metrics(self, adata: Any) -> None:
        """Compute per-cell QC metrics in place.

        Adds ``n_genes``, ``n_counts`` and ``frac_mito`` (0..1) to
        ``adata.obs``.
        """
        import scanpy as sc

        n_mito = self.flag_mito_genes(adata)
        sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=["mito"],
            percent_top=None,
            log1p=False,
            inplace=True,
        )
        adata.obs["n_genes"] = adata.obs["n_genes_by_counts"].astype(int)
        adata.obs["n_counts"] = adata.obs["total_counts"].astype(float)
        adata.obs["frac_mito"] = (
            adata.obs["pct_counts_mito"].fillna(0.0).astype(float) / 100.0
        )
        self.logger.info(
            "Computed QC metrics for %d cells (%d mitochondrial genes): "
            "median genes=%.0f, median UMIs=%.0f, median mito fraction=%.3f",
            adata.n_obs,
            n_mito,
            float(np.median(adata.obs["n_genes"])) if adata.n_obs else 0.0,
            float(np.median(adata.obs["n_counts"])) if adata.n_obs else 0.0,
            float(np.median(adata.obs["frac_mito"])) if adata.n_obs else 0.0,
        )

    def flag_cells(self, adata: Any) -> pd.DataFrame:
        """Build the per-cell removal reason table.

        Returns
        -------
        pd.DataFrame
            Boolean columns per reason, indexed by barcode
        """
        cfg = self.config
        if "frac_mito" not in adata.obs:
            self.compute_metrics(adata)

        reasons = pd.DataFrame(index=adata.obs_names)
        reasons["high_mito"] = (adata.obs["frac_mito"] >= cfg.max_mito_fraction).to_numpy()
        reasons["low_genes"] = (adata.obs["n_genes"] <= cfg.min_genes).to_numpy()
        reasons["high_genes"] = (adata.obs["n_genes"] >= cfg.max_genes).to_numpy()
        return reasons

    def filter_cells(self, adata: Any) -> Tuple[Any, QCResult]:
        """Remove cells failing any QC threshold.

        Parameters
        ----------
        adata : AnnData
            Raw-count AnnData

        Returns
        -------
        Tuple[AnnData, QCResult]
            Filtered copy and filtering report

        Raises
        ------
        ValueError
            If the thresholds remove every cell
        """
        result = QCResult(cells_before=adata.n_obs, genes_before=adata.n_vars)
        reasons = self.flag_cells(adata)
        flagged = reasons.any(axis=1)

        for reason in REASON_COLUMNS:
            result.reason_counts[reason] = int(reasons[reason].sum())

        if bool(flagged.all()):
            raise ValueError(
                "QC thresholds removed all cells "
                f"(max_mito_fraction={self.config.max_mito_fraction}, "
                f"min_genes={self.config.min_genes}, max_genes={self.config.max_genes})"
            )

        removed = reasons.loc[flagged]
        sample = (
            adata.obs.loc[removed.index, "sample"].astype(str)
            if "sample" in adata.obs
            else pd.Series("", index=removed.index)
        )
        result.removal_records = pd.DataFrame(
            {
                "barcode": removed.index,
                "sample": sample.to_numpy(),
                "reasons": [
                    ";".join(name for name in REASON_COLUMNS if row[name])
                    for _, row in removed.iterrows()
                ],
            }
        )

        filtered = adata[~flagged.to_numpy()].copy()
        result.cells_after = filtered.n_obs
        result.genes_after = filtered.n_vars

        self.logger.info(
            "Cell QC removed %d of %d cells (high_mito=%d, low_genes=%d, high_genes=%d)",
            result.cells_removed,
            result.cells_before,
            result.reason_counts["high_mito"],
            result.reason_counts["low_genes"],
            result.reason_counts["high_genes"],
        )
        return filtered, result

    def filter_genes(self, adata: Any) -> int:
        """Drop genes detected in fewer than ``min_cells_per_gene`` cells.

        Returns
        -------
        int
            Number of genes removed
        """
        import scanpy as sc

        before = adata.n_vars
        sc.pp.filter_genes(adata, min_cells=self.config.min_cells_per_gene)
        removed = before - adata.n_vars
        self.logger.info(
            "Gene filter removed %d genes detected in < %d cells",
            removed,
            self.config.min_cells_per_gene,
        )
        return removed

    def run(self, adata: Any) -> Tuple[Any, QCResult]:
        """Compute metrics, filter cells, then filter genes.

        Returns
        -------
        Tuple[AnnData, QCResult]
            Filtered AnnData and the QC report
        """
        self.compute_metrics(adata)
        filtered, result = self.filter_cells(adata)
        self.filter_genes(filtered)
        result.genes_after = filtered.n_vars

        self.logger.info(
            "After QC: %d genes x %d cells remain",
            filtered.n_vars,
            filtered.n_obs,
        )
        return filtered, result
