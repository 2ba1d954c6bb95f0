"""Workflow execution engine with checkpoint/resume support."""

import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..io.logging import log_json
from .checkpoint import CheckpointStore
from .logger import WorkflowLogger
from .stage import Stage, WorkflowState


def _summarize(result: Any) -> Dict[str, Any]:
    """Stage result as a plain dict for run records."""
    if result is None:
        return {}
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, dict):
        return result
    return {"value": str(result)}


class WorkflowExecutor:
    """Runs registered stages in dependency order on a shared state.

    Checkpointed stages snapshot the analysis object after they finish;
    a later run resumes after the latest snapshot unless ``force`` is set.

    Parameters
    ----------
    checkpoints : CheckpointStore, optional
        Snapshot store. If None, nothing is saved or resumed.
    logger : WorkflowLogger, optional
        Logger instance. If None, a console-less logger is created lazily.
    record_path : Path, optional
        JSON-lines file receiving one record per completed stage

    Example
    -------
    >>> executor = WorkflowExecutor(CheckpointStore("output/checkpoints"))
    >>> executor.register_stage("load", load_func)
    >>> executor.register_stage("qc", qc_func, depends_on=["load"])
    >>> state = executor.run(WorkflowState(output_dir=Path("output")))
    """

    def __init__(
        self,
        checkpoints: Optional[CheckpointStore] = None,
        logger: Optional[WorkflowLogger] = None,
        record_path: Optional[Path] = None,
    ):
        self.checkpoints = checkpoints
        self.logger = logger
        self.record_path = Path(record_path) if record_path else None
        self.stages: Dict[str, Stage] = {}
        self.completed_stages: List[str] = []

    def _log(self, level: str, message: str, *args) -> None:
        if self.logger is not None:
            getattr(self.logger, f"log_{level}")(message, *args)

    def register_stage(
        self,
        stage_id: str,
        func: Callable[[WorkflowState], Any],
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        checkpoint: bool = True,
    ) -> Stage:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Called with the WorkflowState
        depends_on : List[str], optional
            Stage IDs this stage depends on
        name : str, optional
            Human-readable stage name
        checkpoint : bool
            Snapshot the analysis object after the stage

        Raises
        ------
        ValueError
            If the stage ID is already registered
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' already registered")
        stage = Stage(
            stage_id=stage_id,
            name=name or stage_id,
            func=func,
            depends_on=list(depends_on or []),
            checkpoint=checkpoint,
        )
        self.stages[stage_id] = stage
        return stage

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Check that every dependency refers to a registered stage."""
        errors = []
        for stage_id, stage in self.stages.items():
            for dep in stage.depends_on:
                if dep not in self.stages:
                    errors.append(f"Stage '{stage_id}' depends on unknown stage '{dep}'")
        return (len(errors) == 0, errors)

    def get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort.

        Ties keep registration order.

        Raises
        ------
        ValueError
            If dependencies are unknown or circular
        """
        valid, errors = self.validate_dependencies()
        if not valid:
            raise ValueError("; ".join(errors))

        in_degree = {stage_id: len(stage.depends_on) for stage_id, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other_stage in self.stages.items():
                if stage_id in other_stage.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected - cannot compute execution order")
        return order

    def plan(
        self,
        start_stage: Optional[str] = None,
        end_stage: Optional[str] = None,
        force: bool = False,
    ) -> Tuple[Optional[str], List[str]]:
        """Work out which snapshot to resume from and which stages to run.

        Parameters
        ----------
        start_stage : str, optional
            First stage the caller wants to (re)run
        end_stage : str, optional
            Last stage to run
        force : bool
            Ignore snapshots and run from the beginning (or ``start_stage``)

        Returns
        -------
        Tuple[Optional[str], List[str]]
            (stage whose snapshot is loaded first, stages to run in order)

        Raises
        ------
        ValueError
            If start/end stages are unknown or out of order
        """
        order = self.get_execution_order()
        for label, stage_id in (("Start", start_stage), ("End", end_stage)):
            if stage_id is not None and stage_id not in order:
                raise ValueError(f"{label} stage '{stage_id}' not found (stages: {order})")

        end_idx = order.index(end_stage) if end_stage else len(order) - 1
        if start_stage:
            start_idx = order.index(start_stage)
            if start_idx > end_idx:
                raise ValueError(
                    f"Start stage '{start_stage}' comes after end stage '{end_stage}'"
                )
            search = order[:start_idx]
        else:
            search = order[: end_idx + 1]

        resume_from = None
        if self.checkpoints is not None and (start_stage or not force):
            resume_from = self.checkpoints.latest(
                [sid for sid in search if self.stages[sid].checkpoint]
            )

        begin = order.index(resume_from) + 1 if resume_from else 0
        return resume_from, order[begin : end_idx + 1]

    def run(
        self,
        state: Optional[WorkflowState] = None,
        start_stage: Optional[str] = None,
        end_stage: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> WorkflowState:
        """Execute the workflow.

        Parameters
        ----------
        state : WorkflowState, optional
            Initial state (a fresh one if None)
        start_stage : str, optional
            Stage to start from; earlier stages are restored from snapshots
        end_stage : str, optional
            Stage to end at (default: last stage)
        dry_run : bool
            Log the execution plan without running anything
        force : bool
            Discard snapshots and re-run every stage

        Returns
        -------
        WorkflowState
            Final state with the analysis object and stage results
        """
        state = state or WorkflowState()
        if force and self.checkpoints is not None and not dry_run and not start_stage:
            self.checkpoints.clear()

        resume_from, to_run = self.plan(start_stage, end_stage, force=force)
        self._log("info", "Workflow execution plan: %s", " -> ".join(to_run) or "(nothing to run)")
        if resume_from:
            self._log("info", "Resuming from checkpoint after stage '%s'", resume_from)

        if dry_run:
            self._log("info", "DRY RUN MODE - No stages will be executed")
            return state

        if resume_from:
            state.adata = self.checkpoints.load(resume_from)
            order = self.get_execution_order()
            for stage_id in order[: order.index(resume_from) + 1]:
                summary = self.checkpoints.summary(stage_id)
                if summary:
                    state.results.setdefault(stage_id, summary)
                self.completed_stages.append(stage_id)
                self._log("info", "[SKIP] Stage %s restored from checkpoint", stage_id)

        for stage_id in to_run:
            self.execute_stage(self.stages[stage_id], state)

        self._log("info", "Workflow completed successfully")
        return state

    def execute_stage(self, stage: Stage, state: WorkflowState) -> Any:
        """Run one stage, record its result and snapshot if requested."""
        if self.logger is not None:
            self.logger.log_stage_start(stage.stage_id, stage.name)
        start_time = time.time()

        try:
            result = stage.run(state)
        except Exception as e:
            if self.logger is not None:
                self.logger.log_stage_error(stage.stage_id, str(e))
            raise

        duration = time.time() - start_time
        state.results[stage.stage_id] = result
        self.completed_stages.append(stage.stage_id)
        if self.logger is not None:
            self.logger.log_stage_complete(stage.stage_id, duration, shape=state.shape)

        summary = _summarize(result)
        if stage.checkpoint and self.checkpoints is not None and state.adata is not None:
            self.checkpoints.save(stage.stage_id, state.adata, summary=summary)
        if self.record_path is not None:
            log_json(
                self.record_path,
                {
                    "stage": stage.stage_id,
                    "duration_seconds": round(duration, 2),
                    "shape": list(state.shape) if state.shape else None,
                    "summary": summary,
                },
            )
        return result
