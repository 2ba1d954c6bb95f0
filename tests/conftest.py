"""Pytest configuration and shared fixtures for Drop-seq Atlas tests."""

import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_count_adata,
    create_normalized_adata,
    normalization_config_for_tests,
    qc_config_for_tests,
    small_analysis_config,
    write_mtx_triplet,
)


# ============================================================================
# Count Data Fixtures
# ============================================================================


@pytest.fixture
def count_adata():
    """Raw counts: 240 cells x 154 genes, 3 populations, 2 samples."""
    return create_count_adata()


@pytest.fixture
def mtx_dir(tmp_path: Path, count_adata) -> Path:
    """Directory holding matrix.mtx / genes.tsv / barcodes.tsv."""
    directory = tmp_path / "raw"
    write_mtx_triplet(count_adata, directory)
    return directory


@pytest.fixture
def normalized_adata():
    """QC-filtered, log-normalized and scaled synthetic data."""
    return create_normalized_adata()


@pytest.fixture
def reduced_adata(normalized_adata, analysis_config):
    """Normalized data with PCA (no tSNE)."""
    from dropseq_atlas.core.clustering import ClusteringEngine

    analysis_config.reduction.compute_tsne = False
    ClusteringEngine(analysis_config).run_reduction(normalized_adata)
    return normalized_adata


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def qc_config():
    return qc_config_for_tests()


@pytest.fixture
def normalization_config():
    return normalization_config_for_tests()


@pytest.fixture
def analysis_config():
    return small_analysis_config()


@pytest.fixture
def workflow_config_dict(tmp_path: Path, mtx_dir: Path) -> dict:
    """Workflow configuration sized for the synthetic matrix."""
    return {
        "pipeline": {"name": "synthetic", "version": "1.0"},
        "global": {
            "data_dir": str(mtx_dir),
            "output_dir": str(tmp_path / "output"),
            "log_level": "INFO",
        },
        "inputs": {"directory": "{global.data_dir}"},
        "checkpoints": {"enabled": True, "directory": "{global.output_dir}/checkpoints"},
        "figures": {"enabled": False},
        "preprocessing": {
            "qc": {"max_mito_fraction": 0.2, "min_genes": 10, "max_genes": 1000},
            "normalization": {"n_top_genes": 40},
        },
        "analysis": {
            "reduction": {"n_pcs": 15, "use_pcs": 10, "compute_tsne": False},
            "clustering": {"neighbors_k": 15},
            "merge": {"min_de_genes": 5, "n_trees": 50},
        },
    }


@pytest.fixture
def workflow_config_path(tmp_path: Path, workflow_config_dict: dict) -> Path:
    """Workflow configuration written to YAML."""
    import yaml

    path = tmp_path / "workflow.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(workflow_config_dict, f)
    return path
