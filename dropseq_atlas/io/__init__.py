"""I/O utilities for Drop-seq Atlas.

Provides run logging, table output and AnnData file helpers.
"""

from .logging import (
    get_logger,
    get_timestamped_log_path,
    log_json,
    log_yaml,
    to_serializable,
)
from .tables import (
    cluster_summary,
    ensure_output_dir,
    read_h5ad,
    write_cluster_summary,
    write_dataframe,
    write_h5ad,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    "to_serializable",
    # Tables / AnnData
    "cluster_summary",
    "ensure_output_dir",
    "read_h5ad",
    "write_cluster_summary",
    "write_dataframe",
    "write_h5ad",
]
