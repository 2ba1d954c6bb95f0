"""Table and AnnData file I/O for Drop-seq Atlas."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to CSV (or TSV for ``.tsv`` paths), creating parents.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    ensure_output_dir(output_path.parent)
    sep = "\t" if output_path.suffix == ".tsv" else ","
    df.to_csv(output_path, index=index, sep=sep)
    logger.debug("Wrote %d rows to %s", len(df), output_path)
    return output_path


def cluster_summary(
    adata: Any,
    cluster_key: str = "cluster",
    sample_key: str = "sample",
) -> pd.DataFrame:
    """Cells per cluster, split by sample.

    Returns
    -------
    pd.DataFrame
        One row per cluster with a column per sample plus ``n_cells`` and
        ``fraction`` of all cells.

    Raises
    ------
    KeyError
        If the cluster column is missing
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")

    obs = adata.obs
    if sample_key in obs:
        table = pd.crosstab(obs[cluster_key], obs[sample_key])
    else:
        table = obs[cluster_key].value_counts(sort=False).to_frame("n_cells").iloc[:, :0]
    table.columns = [str(c) for c in table.columns]
    table["n_cells"] = obs[cluster_key].value_counts(sort=False).reindex(table.index)
    table["fraction"] = table["n_cells"] / max(adata.n_obs, 1)
    table.index = table.index.astype(str)
    table.index.name = cluster_key
    return table


def write_cluster_summary(
    adata: Any,
    path: PathLike,
    cluster_key: str = "cluster",
    sample_key: str = "sample",
) -> Path:
    """Write :func:`cluster_summary` to ``path`` with fractions rounded to 4 decimals."""
    table = cluster_summary(adata, cluster_key=cluster_key, sample_key=sample_key)
    table["fraction"] = table["fraction"].round(4)
    return write_dataframe(table, path, index=True)


def read_h5ad(path: PathLike) -> Any:
    """Read an AnnData file, failing clearly when it does not exist."""
    import anndata as ad

    h5ad_path = Path(path)
    if not h5ad_path.exists():
        raise FileNotFoundError(f"AnnData file not found: {h5ad_path}")
    logger.info("Loading %s", h5ad_path)
    return ad.read_h5ad(h5ad_path)


def write_h5ad(adata: Any, path: PathLike, compression: Optional[str] = "gzip") -> Path:
    """Write an AnnData file, creating the parent directory."""
    output_path = Path(path)
    ensure_output_dir(output_path.parent)
    adata.write_h5ad(output_path, compression=compression)
    logger.info("Saved %s (%d cells x %d genes)", output_path, adata.n_obs, adata.n_vars)
    return output_path
