"""Stage and run-state representation for workflow execution."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


@dataclass
class WorkflowState:
    """Mutable state threaded through the workflow stages.

    Attributes
    ----------
    adata : AnnData, optional
        The analysis object, replaced or mutated by each stage
    results : Dict[str, Any]
        Map of stage_id to the value returned by the stage
    output_dir : Path
        Root directory for tables and figures
    """

    adata: Any = None
    results: Dict[str, Any] = field(default_factory=dict)
    output_dir: Path = field(default_factory=lambda: Path("output"))

    @property
    def shape(self) -> Optional[tuple]:
        if self.adata is None:
            return None
        return (int(self.adata.n_obs), int(self.adata.n_vars))


@dataclass
class Stage:
    """A single workflow stage.

    Attributes
    ----------
    stage_id : str
        Short identifier (e.g., "qc", "cluster")
    name : str
        Human-readable stage name
    func : Callable[[WorkflowState], Any]
        Function run with the workflow state; its return value is stored in
        ``state.results[stage_id]``
    depends_on : List[str]
        Stage IDs that must run first
    checkpoint : bool
        Snapshot the analysis object after this stage

    Example
    -------
    >>> stage = Stage("qc", "Quality control", run_qc, depends_on=["load"])
    >>> stage.run(state)
    """

    stage_id: str
    name: str
    func: Callable[[WorkflowState], Any]
    depends_on: List[str] = field(default_factory=list)
    checkpoint: bool = True

    def run(self, state: WorkflowState) -> Any:
        return self.func(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "depends_on": list(self.depends_on),
            "checkpoint": self.checkpoint,
        }
