"""Test fixtures for Drop-seq Atlas.

Provides synthetic count generators and test configurations.
"""

from .mock_adata import (
    create_count_adata,
    create_normalized_adata,
    small_analysis_config,
    normalization_config_for_tests,
    qc_config_for_tests,
    write_mtx_triplet,
)

__all__ = [
    "create_count_adata",
    "create_normalized_adata",
    "small_analysis_config",
    "normalization_config_for_tests",
    "qc_config_for_tests",
    "write_mtx_triplet",
]
