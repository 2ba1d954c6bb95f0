"""Unit tests for the command-line interface."""

import pandas as pd
import pytest
import yaml
from click.testing import CliRunner

from dropseq_atlas import __version__
from dropseq_atlas.cli.main import cli


@pytest.fixture
def runner():
    return CliRunner()


class TestCLI:
    """Tests for the dropseq-atlas commands."""

    def test_version(self, runner):
        """Test --version prints the package version."""
        result = runner.invoke(cli, ["--version"], obj={})
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_summary_directory(self, runner, mtx_dir):
        """Test summary of a raw count directory."""
        result = runner.invoke(cli, ["summary", "--input", str(mtx_dir)], obj={})
        assert result.exit_code == 0, result.output
        report = yaml.safe_load(result.output[result.output.index("n_genes:"):])
        assert report["n_cells"] == 240
        assert report["n_genes"] == 154
        assert report["samples"] == {"r1": 120, "r2": 120}
        assert report["memory"]["dense_mb"] > 0

    def test_preprocess_cluster_markers(self, runner, mtx_dir, workflow_config_path, tmp_path):
        """Test the stage commands chained through their h5ad outputs."""
        config = str(workflow_config_path)
        pre_dir = tmp_path / "pre"
        result = runner.invoke(
            cli,
            ["preprocess", "--input", str(mtx_dir), "--out", str(pre_dir), "--config", config],
            obj={},
        )
        assert result.exit_code == 0, result.output
        assert "Variable genes: 40" in result.output
        assert (pre_dir / "preprocessed.h5ad").exists()

        clu_dir = tmp_path / "clu"
        result = runner.invoke(
            cli,
            [
                "cluster",
                "--input", str(pre_dir / "preprocessed.h5ad"),
                "--out", str(clu_dir),
                "--config", config,
                "--resolution", "0.5",
            ],
            obj={},
        )
        assert result.exit_code == 0, result.output
        assert "resolution 0.5" in result.output
        summary = pd.read_csv(clu_dir / "cluster_summary.csv")
        assert summary["n_cells"].sum() == 240

        mk_dir = tmp_path / "mk"
        result = runner.invoke(
            cli,
            [
                "markers",
                "--input", str(clu_dir / "clustered.h5ad"),
                "--out", str(mk_dir),
                "--config", config,
            ],
            obj={},
        )
        assert result.exit_code == 0, result.output
        markers = pd.read_csv(mk_dir / "markers.csv")
        assert {"cluster", "gene", "p_val_adj"} <= set(markers.columns)

    def test_preprocess_user_error(self, runner, mtx_dir, tmp_path):
        """Test default thresholds on tiny cells fail with a clean message."""
        result = runner.invoke(
            cli, ["preprocess", "--input", str(mtx_dir), "--out", str(tmp_path / "out")], obj={}
        )
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "removed all cells" in result.output

    def test_markers_missing_cluster_key(self, runner, tmp_path, normalized_adata):
        """Test a missing cluster column is reported as a user error."""
        path = tmp_path / "norm.h5ad"
        normalized_adata.write_h5ad(path)
        result = runner.invoke(
            cli,
            ["markers", "--input", str(path), "--out", str(tmp_path / "mk"), "--cluster-key", "nope"],
            obj={},
        )
        assert result.exit_code == 1
        assert "nope" in result.output

    def test_run_dry_run(self, runner, workflow_config_path):
        """Test run --dry-run executes no stage."""
        result = runner.invoke(
            cli, ["run", "--config", str(workflow_config_path), "--dry-run"], obj={}
        )
        assert result.exit_code == 0, result.output
        assert "Dry run finished" in result.output

    def test_run_bad_stage(self, runner, workflow_config_path):
        """Test unknown stage names are rejected by click."""
        result = runner.invoke(
            cli, ["run", "--config", str(workflow_config_path), "--start-stage", "tsne"], obj={}
        )
        assert result.exit_code == 2

    def test_missing_config(self, runner, tmp_path):
        """Test a missing config path is rejected."""
        result = runner.invoke(cli, ["run", "--config", str(tmp_path / "absent.yaml")], obj={})
        assert result.exit_code == 2
