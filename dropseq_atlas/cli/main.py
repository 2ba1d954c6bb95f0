"""Command-line interface for Drop-seq Atlas.

Provides CLI commands for running workflow stages on their own or the
whole checkpointed workflow from a YAML configuration.
"""

import logging
from pathlib import Path
from typing import Optional

import click
import yaml

from .. import __version__
from ..pipeline.workflow import STAGE_ORDER

USER_ERRORS = (FileNotFoundError, ValueError, KeyError)


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("dropseq_atlas")


def _fail(error: Exception) -> None:
    message = error.args[0] if isinstance(error, KeyError) and error.args else str(error)
    raise click.ClickException(str(message))


@click.group()
@click.version_option(version=__version__, prog_name="dropseq-atlas")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """Drop-seq Atlas: clustering workflow for Drop-seq scRNA-seq data.

    Loads a Matrix Market count matrix, filters and normalizes cells,
    clusters them on a shared-nearest-neighbour graph, merges clusters that
    are not transcriptionally distinct and reports marker genes.

    Examples:

        # Load, filter and normalize
        dropseq-atlas preprocess --input data/ --out processed/

        # Reduce, cluster and merge
        dropseq-atlas cluster --input processed/preprocessed.h5ad --out clustered/

        # Marker genes per cluster
        dropseq-atlas markers --input clustered/clustered.h5ad --out markers/

        # Whole workflow with checkpoints
        dropseq-atlas run --config workflow.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Directory with matrix, genes and barcodes files")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with a preprocessing section")
@click.pass_context
def preprocess(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
) -> None:
    """Load, quality-filter and normalize a count matrix.

    Writes preprocessed.h5ad and qc_removed_cells.csv to the output directory.
    """
    logger = ctx.obj["logger"]
    logger.info("Preprocessing %s", input_path)

    # Import here to avoid slow startup
    from dropseq_atlas.core.preprocessing import (
        CellQC,
        DataLoader,
        Normalizer,
        PreprocessingConfig,
    )
    from dropseq_atlas.io import write_dataframe, write_h5ad

    cfg = PreprocessingConfig.from_yaml(Path(config)) if config else PreprocessingConfig()
    out_dir = Path(output_path)

    try:
        load_result = DataLoader(cfg.loader, logger=logger).load_directory(input_path)
        adata, qc_result = CellQC(cfg.qc, logger=logger).run(load_result.adata)
        norm_result = Normalizer(cfg.normalization, logger=logger).run(adata)
    except USER_ERRORS as e:
        _fail(e)

    if qc_result.removal_records is not None:
        write_dataframe(qc_result.removal_records, out_dir / "qc_removed_cells.csv")
    out_path = write_h5ad(adata, out_dir / "preprocessed.h5ad")

    click.echo(
        f"Loaded {load_result.n_cells} cells x {load_result.n_genes} genes; "
        f"kept {qc_result.cells_after} cells x {qc_result.genes_after} genes"
    )
    click.echo(f"Variable genes: {norm_result.variable_genes.n_variable_genes}")
    click.echo(f"Saved: {out_path}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Preprocessed AnnData file (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with an analysis section")
@click.option("--resolution", type=float, default=None, help="Modularity resolution")
@click.option("--n-pcs", type=int, default=None, help="Principal components used for clustering")
@click.option("--algorithm", type=click.Choice(["louvain", "leiden"]), default=None,
              help="Community detection algorithm")
@click.option("--skip-merge", is_flag=True, help="Skip tree-based cluster merging")
@click.pass_context
def cluster(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    resolution: Optional[float],
    n_pcs: Optional[int],
    algorithm: Optional[str],
    skip_merge: bool,
) -> None:
    """Run PCA, tSNE, SNN clustering and cluster merging.

    Writes clustered.h5ad and cluster_summary.csv to the output directory.
    """
    logger = ctx.obj["logger"]
    logger.info("Clustering %s", input_path)

    from dropseq_atlas.core.clustering import (
        ClusterMerger,
        ClusteringEngine,
        ClusteringStageConfig,
    )
    from dropseq_atlas.io import read_h5ad, write_cluster_summary, write_h5ad

    cfg = ClusteringStageConfig.from_yaml(Path(config)) if config else ClusteringStageConfig()
    if resolution is not None:
        cfg.clustering.resolution = resolution
    if algorithm is not None:
        cfg.clustering.algorithm = algorithm
    if n_pcs is not None:
        cfg.reduction.use_pcs = n_pcs
        cfg.reduction.n_pcs = max(cfg.reduction.n_pcs, n_pcs)

    out_dir = Path(output_path)
    try:
        adata = read_h5ad(input_path)
        engine = ClusteringEngine(cfg, logger=logger)
        engine.run_reduction(adata)
        engine.build_snn_graph(adata)
        result = engine.run_clustering(adata)
        click.echo(f"Found {result.n_clusters} clusters ({result.algorithm}, resolution {result.resolution})")

        if not skip_merge and cfg.merge.enabled:
            merge_result = ClusterMerger(cfg, logger=logger).merge(adata)
            click.echo(
                f"Merged {merge_result.n_merges} pairs: "
                f"{merge_result.n_clusters_before} -> {merge_result.n_clusters_after} clusters"
            )
    except USER_ERRORS as e:
        _fail(e)

    write_cluster_summary(adata, out_dir / "cluster_summary.csv", cluster_key=cfg.cluster_key)
    out_path = write_h5ad(adata, out_dir / "clustered.h5ad")
    click.echo(f"Saved: {out_path}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Clustered AnnData file (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with an analysis section")
@click.option("--method", type=click.Choice(["binomial", "wilcoxon", "t-test"]), default=None,
              help="Differential expression test")
@click.option("--cluster-key", default=None, help="obs column with cluster labels")
@click.option("--all-genes", is_flag=True, help="Report down-regulated genes too")
@click.pass_context
def markers(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    method: Optional[str],
    cluster_key: Optional[str],
    all_genes: bool,
) -> None:
    """Find marker genes of every cluster (one vs rest).

    Writes markers.csv to the output directory.
    """
    logger = ctx.obj["logger"]
    logger.info("Finding markers in %s", input_path)

    from dropseq_atlas.core.clustering import ClusteringStageConfig, DERunner
    from dropseq_atlas.io import read_h5ad

    cfg = ClusteringStageConfig.from_yaml(Path(config)) if config else ClusteringStageConfig()
    try:
        adata = read_h5ad(input_path)
        result = DERunner(cfg, logger=logger).find_all_markers(
            adata,
            cluster_key=cluster_key,
            method=method,
            only_positive=False if all_genes else None,
            output_dir=Path(output_path),
        )
    except USER_ERRORS as e:
        _fail(e)

    click.echo(f"Marker genes ({result.method}): {len(result.table)} rows")
    for cluster_id, genes in result.cluster_de_genes.items():
        click.echo(f"  {cluster_id}: {', '.join(genes[:5])}")
    click.echo(f"Saved: {Path(output_path) / 'markers.csv'}")


@cli.command()
@click.option("--config", "-c", "config_path", required=True, type=click.Path(exists=True),
              help="Workflow configuration file (YAML)")
@click.option("--start-stage", type=click.Choice(STAGE_ORDER), default=None,
              help="Stage to start from (earlier stages come from checkpoints)")
@click.option("--end-stage", type=click.Choice(STAGE_ORDER), default=None,
              help="Stage to end at")
@click.option("--force", is_flag=True, help="Ignore checkpoints and re-run every stage")
@click.option("--dry-run", is_flag=True, help="Show the execution plan without running")
@click.pass_context
def run(
    ctx: click.Context,
    config_path: str,
    start_stage: Optional[str],
    end_stage: Optional[str],
    force: bool,
    dry_run: bool,
) -> None:
    """Run the whole workflow from a YAML configuration.

    Stages: load -> qc -> normalize -> reduce -> cluster -> merge -> markers
    """
    from dropseq_atlas.pipeline import WorkflowConfig, run_workflow

    try:
        config = WorkflowConfig.from_yaml(config_path)
        state = run_workflow(
            config,
            start_stage=start_stage,
            end_stage=end_stage,
            force=force,
            dry_run=dry_run,
        )
    except USER_ERRORS as e:
        _fail(e)

    if dry_run:
        click.echo("Dry run finished - no stages executed")
        return
    if state.shape:
        click.echo(f"Workflow completed: {state.shape[0]} cells x {state.shape[1]} genes")
    click.echo(f"Outputs: {config.output_dir}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="AnnData file (.h5ad) or directory with a count matrix")
@click.option("--cluster-key", default="cluster", help="obs column with cluster labels")
@click.pass_context
def summary(ctx: click.Context, input_path: str, cluster_key: str) -> None:
    """Print the data shape summary and matrix memory report."""
    from dropseq_atlas.core.preprocessing import (
        DataLoader,
        describe_dataset,
        matrix_memory_report,
    )
    from dropseq_atlas.io import read_h5ad, to_serializable

    path = Path(input_path)
    try:
        if path.is_dir():
            adata = DataLoader(logger=ctx.obj["logger"]).load_directory(path).adata
        else:
            adata = read_h5ad(path)
    except USER_ERRORS as e:
        _fail(e)

    report = describe_dataset(adata, cluster_key=cluster_key)
    matrix = adata.layers["counts"] if "counts" in adata.layers else adata.X
    report["memory"] = {k: round(v, 4) for k, v in matrix_memory_report(matrix).items()}
    click.echo(yaml.safe_dump(to_serializable(report), sort_keys=False).rstrip("\n"))


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
