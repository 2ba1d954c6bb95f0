"""Checkpoint snapshots of the analysis object.

Each checkpointed stage writes ``<stage_id>.h5ad`` into the checkpoint
directory; ``manifest.json`` records which stages completed, when, and
the shape of the saved object.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..io.logging import to_serializable

PathLike = Union[str, Path]

MANIFEST_NAME = "manifest.json"


class CheckpointStore:
    """Directory of stage snapshots with a JSON manifest.

    Parameters
    ----------
    directory : PathLike
        Checkpoint directory (created on first save)
    compression : str, optional
        h5ad compression ("gzip", "lzf" or None)
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> store = CheckpointStore("output/checkpoints")
    >>> store.save("normalize", adata)
    >>> store.latest(["load", "qc", "normalize", "reduce"])
    'normalize'
    >>> adata = store.load("normalize")
    """

    def __init__(
        self,
        directory: PathLike,
        compression: Optional[str] = "gzip",
        logger: Optional[logging.Logger] = None,
    ):
        self.directory = Path(directory)
        self.compression = compression
        self.logger = logger or logging.getLogger(__name__)

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST_NAME

    def path_for(self, stage_id: str) -> Path:
        return self.directory / f"{stage_id}.h5ad"

    def read_manifest(self) -> Dict[str, Any]:
        """Return the manifest, or an empty one if missing or unreadable."""
        if not self.manifest_path.exists():
            return {"stages": {}}
        try:
            with open(self.manifest_path, "r") as f:
                manifest = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            self.logger.warning("Failed to read checkpoint manifest %s: %s", self.manifest_path, e)
            return {"stages": {}}
        manifest.setdefault("stages", {})
        return manifest

    def _write_manifest(self, manifest: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        manifest["updated"] = datetime.now().isoformat(timespec="seconds")
        with open(self.manifest_path, "w") as f:
            json.dump(to_serializable(manifest), f, indent=2)

    def save(
        self,
        stage_id: str,
        adata: Any,
        summary: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Snapshot ``adata`` after ``stage_id`` and record it in the manifest."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(stage_id)
        adata.write_h5ad(path, compression=self.compression)

        manifest = self.read_manifest()
        manifest["stages"][stage_id] = {
            "path": path.name,
            "saved": datetime.now().isoformat(timespec="seconds"),
            "n_obs": int(adata.n_obs),
            "n_vars": int(adata.n_vars),
            "summary": summary or {},
        }
        self._write_manifest(manifest)
        self.logger.info("Checkpoint saved: %s (%d cells x %d genes)", path, adata.n_obs, adata.n_vars)
        return path

    def has(self, stage_id: str) -> bool:
        return stage_id in self.read_manifest()["stages"] and self.path_for(stage_id).exists()

    def completed(self) -> List[str]:
        """Stage IDs with a usable snapshot, in save order."""
        return [sid for sid in self.read_manifest()["stages"] if self.path_for(sid).exists()]

    def summary(self, stage_id: str) -> Dict[str, Any]:
        return self.read_manifest()["stages"].get(stage_id, {}).get("summary", {})

    def load(self, stage_id: str) -> Any:
        """Load the snapshot taken after ``stage_id``.

        Raises
        ------
        FileNotFoundError
            If no snapshot exists for the stage
        """
        import anndata as ad

        path = self.path_for(stage_id)
        if not path.exists():
            raise FileNotFoundError(f"No checkpoint for stage '{stage_id}': {path}")
        adata = ad.read_h5ad(path)
        self.logger.info("Checkpoint loaded: %s (%d cells x %d genes)", path, adata.n_obs, adata.n_vars)
        return adata

    def latest(self, order: Sequence[str]) -> Optional[str]:
        """Last stage in ``order`` that has a snapshot."""
        available = set(self.completed())
        for stage_id in reversed(list(order)):
            if stage_id in available:
                return stage_id
        return None

    def clear(self) -> None:
        """Delete every snapshot and the manifest."""
        if not self.directory.exists():
            return
        for stage_id in list(self.read_manifest()["stages"]):
            self.path_for(stage_id).unlink(missing_ok=True)
        self.manifest_path.unlink(missing_ok=True)
        self.logger.info("Cleared checkpoints in %s", self.directory)
