"""Unit tests for tree-based cluster merging."""

import logging

import pytest
import numpy as np
import pandas as pd
from scipy.cluster import hierarchy

from dropseq_atlas.core.clustering import (
    ClusteringStageConfig,
    ClusterMerger,
    ClusterTree,
    MergeConfig,
    MergeResult,
    NodeAssessment,
)


@pytest.fixture
def oversplit_adata(reduced_adata):
    """Each synthetic population split into two random halves (six labels)."""
    rng = np.random.default_rng(7)
    true = reduced_adata.obs["true_cluster"].astype(int).to_numpy()
    halves = rng.integers(0, 2, size=reduced_adata.n_obs)
    reduced_adata.obs["cluster"] = pd.Categorical((true * 2 + halves).astype(str))
    return reduced_adata


class TestClusterTree:
    """Tests for ClusterTree."""

    def test_sibling_pairs(self):
        """Test only leaf-leaf joins are reported as siblings."""
        linkage = hierarchy.linkage(np.array([[0.0], [0.1], [10.0], [10.1], [30.0]]), "complete")
        tree = ClusterTree(linkage=linkage, labels=["a", "b", "c", "d", "e"])
        pairs = {frozenset(pair) for pair in tree.sibling_pairs()}
        assert pairs == {frozenset({"a", "b"}), frozenset({"c", "d"})}

    def test_to_dict(self):
        """Test serialisable tree representation."""
        linkage = hierarchy.linkage(np.array([[0.0], [1.0]]), "complete")
        data = ClusterTree(linkage=linkage, labels=["0", "1"]).to_dict()
        assert data["linkage"].shape == (1, 4)
        assert list(data["labels"]) == ["0", "1"]


class TestMergeResult:
    """Tests for MergeResult dataclass."""

    def test_merge_table(self):
        """Test merge table has one row per merge."""
        result = MergeResult(
            n_clusters_before=3,
            n_clusters_after=2,
            merges=[NodeAssessment(["1"], ["2"], 10, 8, 3, 0.45)],
        )
        table = result.merge_table()
        assert result.n_merges == 1
        assert table.iloc[0]["side_a"] == "1"
        assert table.iloc[0]["n_de_genes"] == 3
        assert result.to_dict()["n_merges"] == 1

    def test_empty_merge_table(self):
        """Test an empty merge log still has its columns."""
        table = MergeResult().merge_table()
        assert table.empty
        assert "oob_error" in table.columns


class TestClusterMerger:
    """Tests for ClusterMerger class."""

    def test_build_cluster_tree(self, oversplit_adata, analysis_config):
        """Test halves of the same population are siblings."""
        tree = ClusterMerger(analysis_config).build_cluster_tree(oversplit_adata)
        assert sorted(tree.labels) == ["0", "1", "2", "3", "4", "5"]
        pairs = {frozenset(pair) for pair in tree.sibling_pairs()}
        assert pairs == {frozenset({"0", "1"}), frozenset({"2", "3"}), frozenset({"4", "5"})}

    def test_tree_needs_two_clusters(self, reduced_adata, analysis_config):
        """Test a single cluster cannot form a tree."""
        reduced_adata.obs["cluster"] = pd.Categorical(["0"] * reduced_adata.n_obs)
        with pytest.raises(ValueError, match="two clusters"):
            ClusterMerger(analysis_config).build_cluster_tree(reduced_adata)

    def test_assess_distinct_node(self, oversplit_adata, analysis_config):
        """Test different populations are well separated."""
        assessment = ClusterMerger(analysis_config).assess_node(
            oversplit_adata, ["0", "1"], ["2", "3"]
        )
        assert assessment.n_cells_a + assessment.n_cells_b == 160
        assert assessment.n_de_genes >= 12
        assert assessment.oob_error < 0.1

    def test_assess_empty_side(self, oversplit_adata, analysis_config):
        """Test assessing an absent cluster raises ValueError."""
        with pytest.raises(ValueError, match="Empty side"):
            ClusterMerger(analysis_config).assess_node(oversplit_adata, ["0"], ["99"])

    def test_merge_recovers_populations(self, oversplit_adata, analysis_config):
        """Test over-split halves are merged back into three clusters."""
        result = ClusterMerger(analysis_config).merge(oversplit_adata)

        assert result.n_clusters_before == 6
        assert result.n_clusters_after == 3
        assert result.n_merges == 3
        assert all(m.n_de_genes < 5 for m in result.merges)

        table = pd.crosstab(oversplit_adata.obs["cluster"], oversplit_adata.obs["true_cluster"])
        assert (table > 0).sum(axis=1).tolist() == [1, 1, 1]
        assert oversplit_adata.obs["cluster_premerge"].nunique() == 6
        assert list(oversplit_adata.obs["cluster"].cat.categories) == ["0", "1", "2"]

        assert oversplit_adata.uns["cluster_tree"]["linkage"].shape == (2, 4)
        assert len(oversplit_adata.uns["merge_log"]["n_de_genes"]) == 3
        assert len(result.merge_table()) == 3

    def test_distinct_clusters_kept(self, reduced_adata, analysis_config):
        """Test true populations are not merged."""
        reduced_adata.obs["cluster"] = reduced_adata.obs["true_cluster"].astype(str).astype("category")
        result = ClusterMerger(analysis_config).merge(reduced_adata)
        assert result.n_merges == 0
        assert result.n_clusters_after == 3
        assert len(result.assessments) >= 1
        assert all(a.n_de_genes >= 5 for a in result.assessments)

    def test_oob_criterion(self, oversplit_adata):
        """Test merging on random-forest error alone."""
        config = ClusteringStageConfig(
            merge=MergeConfig(min_de_genes=0, max_oob_error=0.3, n_trees=50)
        )
        config.reduction.use_pcs = 10
        result = ClusterMerger(config).merge(oversplit_adata)
        assert result.n_clusters_after == 3
        assert all(m.oob_error > 0.3 for m in result.merges)

    def test_max_merges(self, oversplit_adata, analysis_config, caplog):
        """Test the merge loop stops at max_merges and warns about the pairs left."""
        analysis_config.merge.max_merges = 1
        with caplog.at_level(logging.WARNING, logger="dropseq_atlas.core.clustering.merge"):
            result = ClusterMerger(analysis_config).merge(oversplit_adata)
        assert result.n_merges == 1
        assert result.n_clusters_after == 5
        assert "Stopped after max_merges=1" in caplog.text

    def test_max_merges_reached_on_convergence(self, oversplit_adata, analysis_config, caplog):
        """Test no warning when the last allowed merge leaves nothing to merge."""
        analysis_config.merge.max_merges = 3
        with caplog.at_level(logging.WARNING, logger="dropseq_atlas.core.clustering.merge"):
            result = ClusterMerger(analysis_config).merge(oversplit_adata)
        assert result.n_merges == 3
        assert result.n_clusters_after == 3
        assert "Stopped after max_merges" not in caplog.text

    def test_missing_cluster_key(self, reduced_adata, analysis_config):
        """Test merging without cluster labels raises KeyError."""
        with pytest.raises(KeyError):
            ClusterMerger(analysis_config).merge(reduced_adata, cluster_key="absent")
