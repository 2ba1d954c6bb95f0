"""Library-size normalization, variable-gene selection and scaling.

LogNormalize: counts are scaled to a fixed library size per cell and
log1p-transformed. Variable genes are picked by binned dispersion and
only those genes are regressed and z-scored for PCA.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from .config import NormalizationConfig


@dataclass
class VariableGenesResult:
    """Result from variable-gene selection.

    Attributes
    ----------
    n_variable_genes : int
        Number of genes flagged as highly variable
    table : pd.DataFrame
        Per-gene mean, dispersion and normalized dispersion,
        sorted by normalized dispersion (descending)
    """

    n_variable_genes: int = 0
    table: Optional[pd.DataFrame] = None

    @property
    def genes(self) -> List[str]:
        if self.table is None:
            return []
        return self.table.index[self.table["highly_variable"]].tolist()


@dataclass
class NormalizationResult:
    """Result from the normalization stage.

    Attributes
    ----------
    scale_factor : float
        Target library size used before log1p
    variable_genes : VariableGenesResult
        Variable-gene selection
    regressed : List[str]
        obs columns regressed out before scaling
    scaled_shape : tuple
        Shape of the scaled matrix (cells x variable genes)
    """

    scale_factor: float = 1e4
    variable_genes: VariableGenesResult = field(default_factory=VariableGenesResult)
    regressed: List[str] = field(default_factory=list)
    scaled_shape: tuple = (0, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale_factor": self.scale_factor,
            "n_variable_genes": self.variable_genes.n_variable_genes,
            "regressed": list(self.regressed),
            "scaled_shape": list(self.scaled_shape),
        }


class Normalizer:
    """Normalizer for UMI count matrices.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from dropseq_atlas.core.preprocessing import Normalizer
    >>> normalizer = Normalizer()
    >>> result = normalizer.run(adata)
    >>> adata.obsm["X_scaled"].shape
    (27499, 1984)
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def normalize(self, adata: Any) -> None:
        """Library-size normalize and log1p-transform ``adata.X`` in place.

        Raw counts are kept in ``adata.layers['counts']``.
        """
        import scanpy as sc

        if "counts" not in adata.layers:
            adata.layers["counts"] = adata.X.copy()
        sc.pp.normalize_total(adata, target_sum=self.config.scale_factor)
        sc.pp.log1p(adata)
        adata.uns["normalization"] = {
            "method": "log_normalize",
            "scale_factor": float(self.config.scale_factor),
        }
        self.logger.info(
            "Log-normalized %d cells to %.0f UMIs per cell",
            adata.n_obs,
            self.config.scale_factor,
        )

    def find_variable_genes(self, adata: Any) -> VariableGenesResult:
        """Select highly variable genes by normalized dispersion.

        Raises
        ------
        ValueError
            If no gene passes the cutoffs
        """
        import scanpy as sc

        cfg = self.config
        kwargs: Dict[str, Any] = {"flavor": cfg.hvg_flavor}
        if cfg.n_top_genes:
            kwargs["n_top_genes"] = cfg.n_top_genes
        else:
            kwargs.update(
                min_mean=cfg.hvg_min_mean,
                max_mean=cfg.hvg_max_mean,
                min_disp=cfg.hvg_min_disp,
            )
        sc.pp.highly_variable_genes(adata, **kwargs)

        table = adata.var[
            ["means", "dispersions", "dispersions_norm", "highly_variable"]
        ].copy()
        table = table.sort_values("dispersions_norm", ascending=False)
        n_hvg = int(table["highly_variable"].sum())
        if n_hvg == 0:
            raise ValueError(
                "No variable genes passed the dispersion cutoffs "
                f"(min_mean={cfg.hvg_min_mean}, max_mean={cfg.hvg_max_mean}, "
                f"min_disp={cfg.hvg_min_disp})"
            )

        self.logger.info("Selected %d variable genes (%s flavor)", n_hvg, cfg.hvg_flavor)
        return VariableGenesResult(n_variable_genes=n_hvg, table=table)

    def scale(self, adata: Any) -> List[str]:
        """Regress and z-score the variable genes.

        The scaled matrix is stored densely in ``adata.obsm['X_scaled']``
        with the gene order in ``adata.uns['scaled_genes']``.

        Returns
        -------
        List[str]
            obs columns that were regressed out
        """
        import scanpy as sc

        if "highly_variable" not in adata.var:
            raise KeyError("Variable genes not computed; run find_variable_genes first")

        genes = adata.var_names[adata.var["highly_variable"].to_numpy()]
        subset = adata[:, genes].copy()

        regress = [key for key in self.config.regress_vars if key in subset.obs]
        missing = sorted(set(self.config.regress_vars) - set(regress))
        if missing:
            self.logger.warning("Regression variables not in obs, skipping: %s", missing)
        if regress:
            self.logger.info("Regressing out %s from %d genes", regress, len(genes))
            sc.pp.regress_out(subset, keys=regress)

        sc.pp.scale(subset, zero_center=True, max_value=self.config.scale_clip)

        scaled = subset.X.toarray() if sparse.issparse(subset.X) else np.asarray(subset.X)
        adata.obsm["X_scaled"] = scaled.astype(np.float32)
        adata.uns["scaled_genes"] = list(genes)
        adata.uns["scale_clip"] = float(self.config.scale_clip)
        self.logger.info("Scaled matrix: %d cells x %d genes", *scaled.shape)
        return regress

    def run(self, adata: Any) -> NormalizationResult:
        """Normalize, select variable genes and scale in place."""
        result = NormalizationResult(scale_factor=self.config.scale_factor)
        self.normalize(adata)
        result.variable_genes = self.find_variable_genes(adata)
        result.regressed = self.scale(adata)
        result.scaled_shape = tuple(adata.obsm["X_scaled"].shape)
        return result
