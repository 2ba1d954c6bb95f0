"""Drop-seq Atlas: a re-runnable Drop-seq single-cell RNA-seq clustering workflow.

This package provides tools for:
- Loading Matrix Market count matrices with sample/batch annotations
- Cell and gene quality control
- Log-normalization, variable-gene selection and scaling
- PCA, tSNE and SNN graph clustering
- Tree-based merging of over-split clusters
- Binomial (and scanpy-backed) marker detection

Thresholds are loaded from YAML configuration files; every stage can be
checkpointed so a run resumes after the last completed stage.

Example usage:
    >>> from dropseq_atlas.pipeline import WorkflowConfig, run_workflow
    >>>
    >>> config = WorkflowConfig.from_yaml("configs/workflow.yaml")
    >>> state = run_workflow(config)
    >>> state.adata.obs["cluster"].nunique()
"""

__version__ = "0.1.0"
