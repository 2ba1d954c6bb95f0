"""Reduction and clustering figures."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns


def _save(fig: Any, output_path: Path, dpi: int) -> Path:
    plt.tight_layout()
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return output_path


def plot_pca_variance(
    adata: Any,
    output_path: Path,
    use_pcs: Optional[int] = None,
    dpi: int = 150,
) -> Path:
    """Elbow plot of the PCA variance ratio.

    A vertical line marks the number of components used downstream.
    """
    if "pca" not in adata.uns or "variance_ratio" not in adata.uns["pca"]:
        raise KeyError("PCA variance ratio not found in adata.uns['pca']")
    ratio = np.asarray(adata.uns["pca"]["variance_ratio"])

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, len(ratio) + 1), ratio, "o-", color="steelblue", markersize=3)
    if use_pcs:
        ax.axvline(x=use_pcs, color="red", linestyle="--", alpha=0.7, label=f"{use_pcs} PCs used")
        ax.legend(loc="upper right")
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance ratio")
    ax.set_title("PCA elbow")
    return _save(fig, output_path, dpi)


def plot_dispersion(adata: Any, output_path: Path, dpi: int = 150) -> Path:
    """Normalized dispersion against mean expression, variable genes highlighted."""
    var = adata.var
    for column in ("means", "dispersions_norm", "highly_variable"):
        if column not in var:
            raise KeyError(f"'{column}' not found in adata.var; select variable genes first")

    hvg = var["highly_variable"].to_numpy(dtype=bool)
    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(var["means"][~hvg], var["dispersions_norm"][~hvg], s=2, color="lightgrey", label="other")
    ax.scatter(var["means"][hvg], var["dispersions_norm"][hvg], s=3, color="firebrick", label="variable")
    ax.set_xscale("log")
    ax.set_xlabel("Mean expression")
    ax.set_ylabel("Normalized dispersion")
    ax.set_title(f"{int(hvg.sum())} variable genes")
    ax.legend(loc="upper right", markerscale=3)
    return _save(fig, output_path, dpi)


def plot_tsne(
    adata: Any,
    output_path: Path,
    color: str = "cluster",
    dpi: int = 150,
) -> Path:
    """tSNE embedding coloured by a categorical obs column, with labels at centroids."""
    if "X_tsne" not in adata.obsm:
        raise KeyError("tSNE embedding not found in adata.obsm['X_tsne']")
    if color not in adata.obs:
        raise KeyError(f"'{color}' not found in adata.obs")

    coords = np.asarray(adata.obsm["X_tsne"])
    labels = adata.obs[color].astype(str).to_numpy()
    groups = sorted(set(labels), key=lambda g: (len(g), g))
    palette = sns.color_palette("husl", len(groups))

    fig, ax = plt.subplots(figsize=(7, 6))
    for group, colour in zip(groups, palette):
        mask = labels == group
        ax.scatter(coords[mask, 0], coords[mask, 1], s=3, color=colour, label=group)
        if color != "sample":
            cx, cy = np.median(coords[mask], axis=0)
            ax.text(cx, cy, group, fontsize=8, ha="center", va="center", weight="bold")
    ax.set_xlabel("tSNE 1")
    ax.set_ylabel("tSNE 2")
    ax.set_title(f"tSNE coloured by {color}")
    if len(groups) <= 30:
        ax.legend(loc="center left", bbox_to_anchor=(1.0, 0.5), markerscale=3, fontsize=7)
    return _save(fig, output_path, dpi)


def plot_cluster_sizes(
    adata: Any,
    output_path: Path,
    cluster_key: str = "cluster",
    dpi: int = 150,
) -> Path:
    """Bar chart of cells per cluster."""
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")

    counts = adata.obs[cluster_key].astype(str).value_counts()
    order = sorted(counts.index, key=lambda g: (len(g), g))

    fig, ax = plt.subplots(figsize=(max(6, 0.3 * len(order)), 4))
    sns.barplot(x=order, y=[counts[g] for g in order], ax=ax, color="steelblue")
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Cells")
    ax.set_title(f"{len(order)} clusters")
    return _save(fig, output_path, dpi)
