"""Visualization module for Drop-seq Atlas.

QC, reduction and clustering figures written with matplotlib/seaborn.
Figure failures are logged and never abort a run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .embedding import plot_cluster_sizes, plot_dispersion, plot_pca_variance, plot_tsne
from .qc import plot_qc_violins, plot_umi_vs_genes

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def save_figures(
    adata: Any,
    output_dir: PathLike,
    plots: Dict[str, Callable[..., Path]],
    fmt: str = "png",
    dpi: int = 150,
) -> Dict[str, Optional[Path]]:
    """Render several figures, logging failures instead of raising.

    Parameters
    ----------
    adata : AnnData
        Data to plot
    output_dir : PathLike
        Directory for the figures
    plots : Dict[str, Callable]
        Map of figure name to plot function; each is called as
        ``func(adata, output_path, dpi=dpi)``
    fmt : str
        File extension
    dpi : int
        Figure resolution

    Returns
    -------
    Dict[str, Optional[Path]]
        Mapping of figure name to output path. None if generation failed.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    results: Dict[str, Optional[Path]] = {}
    for name, func in plots.items():
        path = output_dir / f"{name}.{fmt}"
        try:
            results[name] = func(adata, path, dpi=dpi)
            logger.info("Generated figure: %s", path)
        except Exception as e:
            logger.warning("Failed to generate figure %s: %s", name, e)
            results[name] = None
    return results


__all__ = [
    "save_figures",
    "plot_cluster_sizes",
    "plot_dispersion",
    "plot_pca_variance",
    "plot_qc_violins",
    "plot_tsne",
    "plot_umi_vs_genes",
]
