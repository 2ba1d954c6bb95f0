"""Standard Drop-seq workflow: load -> qc -> normalize -> reduce -> cluster -> merge -> markers.

Each stage function takes the WorkflowState, mutates or replaces
``state.adata`` and returns its result object. Tables go to
``<output_dir>/tables`` and figures to ``<output_dir>/figures``.
"""

import logging
from functools import partial
from pathlib import Path
from typing import Optional

from ..core.clustering import ClusterMerger, ClusteringEngine, DERunner
from ..core.preprocessing import CellQC, DataLoader, Normalizer, describe_dataset
from ..io.logging import log_json, log_yaml
from ..io.tables import ensure_output_dir, write_cluster_summary, write_dataframe
from ..viz import (
    plot_cluster_sizes,
    plot_dispersion,
    plot_pca_variance,
    plot_qc_violins,
    plot_tsne,
    plot_umi_vs_genes,
    save_figures,
)
from .checkpoint import CheckpointStore
from .config import WorkflowConfig
from .executor import WorkflowExecutor
from .logger import WorkflowLogger
from .stage import WorkflowState

logger = logging.getLogger(__name__)

STAGE_ORDER = ("load", "qc", "normalize", "reduce", "cluster", "merge", "markers")


def _tables_dir(state: WorkflowState) -> Path:
    return Path(state.output_dir) / "tables"


def _figures(state: WorkflowState, config: WorkflowConfig, plots: dict) -> None:
    if not config.figures_enabled:
        return
    save_figures(
        state.adata,
        Path(state.output_dir) / "figures",
        plots,
        fmt=config.figure_format,
        dpi=config.figure_dpi,
    )


def stage_load(state: WorkflowState, config: WorkflowConfig):
    """Read the count matrix triplet into ``state.adata``."""
    loader = DataLoader(config.preprocessing.loader)
    paths = config.input_paths
    if "directory" in paths:
        result = loader.load_directory(paths["directory"])
    else:
        result = loader.load_dataset(paths["matrix"], paths["genes"], paths["barcodes"])
    state.adata = result.adata
    return result


def stage_qc(state: WorkflowState, config: WorkflowConfig):
    """Compute QC metrics, plot them, then filter cells and genes."""
    qc_cfg = config.preprocessing.qc
    filtered, result = CellQC(qc_cfg).run(state.adata)

    # metrics stay on the unfiltered object, so the plots show removed cells too
    thresholds = {
        "n_genes": (qc_cfg.min_genes, qc_cfg.max_genes),
        "frac_mito": (None, qc_cfg.max_mito_fraction),
    }
    _figures(
        state,
        config,
        {
            "qc_violins": partial(plot_qc_violins, thresholds=thresholds),
            "qc_umi_vs_genes": plot_umi_vs_genes,
        },
    )

    if result.removal_records is not None:
        write_dataframe(result.removal_records, _tables_dir(state) / "qc_removed_cells.csv")
    state.adata = filtered
    return result


def stage_normalize(state: WorkflowState, config: WorkflowConfig):
    """Log-normalize, select variable genes and scale them."""
    result = Normalizer(config.preprocessing.normalization).run(state.adata)
    table = result.variable_genes.table
    if table is not None:
        write_dataframe(table, _tables_dir(state) / "variable_genes.csv", index=True)
    _figures(state, config, {"variable_genes": plot_dispersion})
    return result


def stage_reduce(state: WorkflowState, config: WorkflowConfig):
    """PCA and tSNE."""
    result = ClusteringEngine(config.analysis).run_reduction(state.adata)
    _figures(
        state,
        config,
        {"pca_elbow": partial(plot_pca_variance, use_pcs=result.use_pcs)},
    )
    return result


def stage_cluster(state: WorkflowState, config: WorkflowConfig):
    """SNN graph and community detection."""
    engine = ClusteringEngine(config.analysis)
    engine.build_snn_graph(state.adata)
    result = engine.run_clustering(state.adata)
    key = config.analysis.cluster_key
    _figures(
        state,
        config,
        {"tsne_premerge": partial(plot_tsne, color=key)},
    )
    return result


def stage_merge(state: WorkflowState, config: WorkflowConfig):
    """Merge indistinct sibling clusters and write the cluster summary."""
    key = config.analysis.cluster_key
    result = None
    if config.analysis.merge.enabled:
        result = ClusterMerger(config.analysis).merge(state.adata, cluster_key=key)
        write_dataframe(result.merge_table(), _tables_dir(state) / "merge_log.csv")
    else:
        logger.info("Cluster merging disabled; keeping %d clusters", state.adata.obs[key].nunique())

    write_cluster_summary(state.adata, _tables_dir(state) / "cluster_summary.csv", cluster_key=key)
    _figures(
        state,
        config,
        {
            "tsne_clusters": partial(plot_tsne, color=key),
            "tsne_samples": partial(plot_tsne, color="sample"),
            "cluster_sizes": partial(plot_cluster_sizes, cluster_key=key),
        },
    )
    return result


def stage_markers(state: WorkflowState, config: WorkflowConfig):
    """One-vs-rest marker detection for every cluster."""
    return DERunner(config.analysis).find_all_markers(
        state.adata,
        cluster_key=config.analysis.cluster_key,
        output_dir=_tables_dir(state),
    )


def build_workflow(
    config: WorkflowConfig,
    wlogger: Optional[WorkflowLogger] = None,
) -> WorkflowExecutor:
    """Register the standard stages on a new executor.

    Parameters
    ----------
    config : WorkflowConfig
        Workflow configuration
    wlogger : WorkflowLogger, optional
        Logger receiving stage events

    Returns
    -------
    WorkflowExecutor
        Executor with load, qc, normalize, reduce, cluster, merge, markers
    """
    checkpoints = None
    if config.checkpoints_enabled:
        checkpoints = CheckpointStore(
            config.checkpoint_dir,
            compression=config.checkpoint_compression,
        )
    executor = WorkflowExecutor(
        checkpoints=checkpoints,
        logger=wlogger,
        record_path=config.log_dir / "stages.jsonl",
    )

    stages = [
        ("load", "Load count matrix", stage_load, True),
        ("qc", "Quality control", stage_qc, True),
        ("normalize", "Normalization and variable genes", stage_normalize, True),
        ("reduce", "PCA and tSNE", stage_reduce, True),
        ("cluster", "SNN graph clustering", stage_cluster, True),
        ("merge", "Cluster merging", stage_merge, True),
        ("markers", "Marker genes", stage_markers, False),
    ]
    previous = None
    for stage_id, name, func, checkpoint in stages:
        executor.register_stage(
            stage_id,
            partial(func, config=config),
            depends_on=[previous] if previous else [],
            name=name,
            checkpoint=checkpoint,
        )
        previous = stage_id
    return executor


def run_workflow(
    config: WorkflowConfig,
    start_stage: Optional[str] = None,
    end_stage: Optional[str] = None,
    force: bool = False,
    dry_run: bool = False,
    console: bool = True,
) -> WorkflowState:
    """Run the standard workflow end to end.

    The resolved configuration is dumped to ``<log_dir>/config.yaml`` and
    the final object is written to ``<output_dir>/<name>.h5ad``.

    Returns
    -------
    WorkflowState
        Final analysis object and per-stage results
    """
    output_dir = ensure_output_dir(config.output_dir)

    wlogger = WorkflowLogger(config.log_dir, log_level=config.log_level, console=console)
    wlogger.setup()
    try:
        log_yaml(config.log_dir / "config.yaml", config.to_dict())
        executor = build_workflow(config, wlogger)
        state = executor.run(
            WorkflowState(output_dir=output_dir),
            start_stage=start_stage,
            end_stage=end_stage,
            dry_run=dry_run,
            force=force,
        )
        if state.adata is not None and not dry_run:
            final_path = output_dir / f"{config.name}.h5ad"
            state.adata.write_h5ad(final_path, compression=config.checkpoint_compression)
            summary = describe_dataset(state.adata, cluster_key=config.analysis.cluster_key)
            log_json(config.log_dir / "stages.jsonl", {"stage": "final", "summary": summary})
            wlogger.log_info("Final object written to %s", final_path)
        return state
    finally:
        wlogger.close()
