"""Run logging for Drop-seq Atlas.

Timestamped file logs plus structured run records: one JSON line per
completed stage and a YAML dump of the resolved configuration.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Tuple, Union

import numpy as np
import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Insert a timestamp before the suffix of ``log_path``.

    Example: workflow.log -> workflow_20260301_141502.log
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """Return a logger writing to a file next to the run outputs.

    Parameters
    ----------
    name : str
        Logger name (typically the workflow or stage name).
    log_path : PathLike
        Base path for the log file.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        If True, keep earlier logs by adding a timestamp to the filename.
        If False, overwrite the existing log file.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the path actually written to.
    """
    log_path = Path(log_path)
    if timestamped:
        actual_path = get_timestamped_log_path(log_path)
    else:
        actual_path = log_path
        actual_path.unlink(missing_ok=True)
    actual_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(actual_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    return logger, actual_path


def to_serializable(value: Any) -> Any:
    """Convert numpy scalars/arrays and paths into JSON/YAML friendly values."""
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def _prepare_log_destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append ``record`` as one JSON line, stamped with the current time."""
    path = _prepare_log_destination(log_path)
    payload = {"timestamp": datetime.now().isoformat(timespec="seconds")}
    payload.update(to_serializable(record))
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append ``record`` as a YAML document.

    Parameters
    ----------
    log_path : PathLike
        Destination file.
    record : dict
        Dictionary to serialize.
    logger : logging.Logger, optional
        If provided, the document is logged instead of written to file.
    """
    text = yaml.safe_dump(to_serializable(record), sort_keys=False).rstrip("\n")
    message = f"{text}\n---"
    if logger is not None:
        logger.info("%s", message)
        return

    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")
