"""Workflow orchestration module.

Provides YAML-based configuration, checkpointed stage execution with
dependency resolution, and the standard Drop-seq workflow.

Example Usage
-------------
>>> from dropseq_atlas.pipeline import WorkflowConfig, run_workflow
>>> config = WorkflowConfig.from_yaml("configs/workflow.yaml")
>>> state = run_workflow(config, start_stage="cluster")
>>> state.results["merge"].n_clusters_after
"""

# Stage representation
from .stage import Stage, WorkflowState

# Configuration
from .config import WorkflowConfig

# Logging
from .logger import ColoredFormatter, WorkflowLogger

# Checkpoints
from .checkpoint import CheckpointStore

# Execution
from .executor import WorkflowExecutor
from .workflow import STAGE_ORDER, build_workflow, run_workflow

__all__ = [
    # Stage
    "Stage",
    "WorkflowState",
    # Config
    "WorkflowConfig",
    # Logging
    "ColoredFormatter",
    "WorkflowLogger",
    # Checkpoints
    "CheckpointStore",
    # Execution
    "WorkflowExecutor",
    "STAGE_ORDER",
    "build_workflow",
    "run_workflow",
]
