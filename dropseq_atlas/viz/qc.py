"""Quality-control figures: per-sample metric violins and UMI/gene scatter."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

QC_METRICS = ("n_genes", "n_counts", "frac_mito")

METRIC_LABELS = {
    "n_genes": "Genes detected",
    "n_counts": "UMIs",
    "frac_mito": "Mitochondrial fraction",
}


def plot_qc_violins(
    adata: Any,
    output_path: Path,
    thresholds: Optional[Dict[str, Tuple[Optional[float], Optional[float]]]] = None,
    groupby: str = "sample",
    metrics: Sequence[str] = QC_METRICS,
    dpi: int = 150,
) -> Path:
    """Violin plots of QC metrics per sample.

    Parameters
    ----------
    adata : AnnData
        AnnData with QC metrics in ``obs``
    output_path : Path
        Path to save figure
    thresholds : Dict[str, Tuple[float, float]], optional
        (lower, upper) cutoff per metric, drawn as dashed lines
    groupby : str
        obs column used for the x axis
    metrics : Sequence[str]
        obs columns to plot
    dpi : int
        Figure resolution

    Returns
    -------
    Path
        Path of the saved figure
    """
    metrics = [m for m in metrics if m in adata.obs]
    if not metrics:
        raise KeyError("No QC metrics found in adata.obs; run QC first")
    thresholds = thresholds or {}

    obs = adata.obs
    group = obs[groupby].astype(str) if groupby in obs else pd.Series("all", index=obs.index)
    df = obs[metrics].copy()
    df[groupby] = group.to_numpy()

    fig, axes = plt.subplots(1, len(metrics), figsize=(4.5 * len(metrics), 4.5), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        sns.violinplot(data=df, x=groupby, y=metric, ax=ax, color="lightsteelblue", cut=0)
        sns.stripplot(data=df, x=groupby, y=metric, ax=ax, color="black", size=1, alpha=0.3)
        lower, upper = thresholds.get(metric, (None, None))
        for value in (lower, upper):
            if value is not None:
                ax.axhline(y=value, color="red", linestyle="--", alpha=0.7)
        ax.set_title(METRIC_LABELS.get(metric, metric))
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=45)

    plt.tight_layout()
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return output_path


def plot_umi_vs_genes(
    adata: Any,
    output_path: Path,
    hue: str = "frac_mito",
    dpi: int = 150,
) -> Path:
    """Scatter of UMIs against detected genes, coloured by ``hue``."""
    obs = adata.obs
    if "n_counts" not in obs or "n_genes" not in obs:
        raise KeyError("n_counts/n_genes not found in adata.obs; run QC first")

    fig, ax = plt.subplots(figsize=(6, 5))
    points = ax.scatter(
        obs["n_counts"],
        obs["n_genes"],
        c=obs[hue] if hue in obs else "steelblue",
        s=3,
        cmap="viridis",
        alpha=0.7,
    )
    if hue in obs:
        fig.colorbar(points, ax=ax, label=METRIC_LABELS.get(hue, hue))
    ax.set_xlabel("UMIs per cell")
    ax.set_ylabel("Genes per cell")
    ax.set_title("UMIs vs genes")

    plt.tight_layout()
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return output_path
