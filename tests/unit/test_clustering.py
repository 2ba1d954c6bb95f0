"""Unit tests for clustering module."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from dropseq_atlas.core.clustering import (
    ClusteringConfig,
    DEConfig,
    MergeConfig,
    ReductionConfig,
    ClusteringStageConfig,
    ClusteringEngine,
    ClusteringResult,
    relabel_by_size,
)


def _purity(adata, key="cluster"):
    """Fraction of cells whose found cluster's majority true label matches."""
    table = pd.crosstab(adata.obs[key], adata.obs["true_cluster"])
    return table.max(axis=1).sum() / table.values.sum()


class TestClusteringConfig:
    """Tests for clustering configuration dataclasses."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClusteringStageConfig()
        assert config.reduction.n_pcs == 40
        assert config.reduction.use_pcs == 20
        assert config.clustering.neighbors_k == 30
        assert config.clustering.prune_snn == pytest.approx(1.0 / 15.0)
        assert config.clustering.resolution == 0.8
        assert config.clustering.algorithm == "louvain"
        assert config.merge.min_de_genes == 50
        assert config.cluster_key == "cluster"

    def test_de_defaults(self):
        """Test default DE configuration values."""
        config = DEConfig()
        assert config.method == "binomial"
        assert config.correction == "bonferroni"
        assert config.only_positive is True

    def test_custom_values(self):
        """Test custom configuration values."""
        config = ClusteringStageConfig(
            reduction=ReductionConfig(n_pcs=50, use_pcs=25),
            clustering=ClusteringConfig(resolution=1.2, algorithm="leiden"),
            merge=MergeConfig(enabled=False),
        )
        assert config.reduction.use_pcs == 25
        assert config.clustering.algorithm == "leiden"
        assert config.merge.enabled is False

    def test_from_yaml(self, tmp_path):
        """Test loading the analysis section of a workflow file."""
        yaml_content = """
analysis:
  reduction:
    use_pcs: 12
  clustering:
    resolution: 0.5
  de:
    method: wilcoxon
    n_genes: 15
  cluster_key: leiden_clusters
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = ClusteringStageConfig.from_yaml(yaml_file)
        assert config.reduction.use_pcs == 12
        assert config.reduction.n_pcs == 40
        assert config.clustering.resolution == 0.5
        assert config.de.method == "wilcoxon"
        assert config.de.n_genes == 15
        assert config.cluster_key == "leiden_clusters"

    def test_unknown_key_rejected(self):
        """Test misspelled options raise TypeError."""
        with pytest.raises(TypeError):
            ClusteringStageConfig.from_dict({"clustering": {"resolutoin": 1.0}})

    def test_to_dict(self):
        """Test to_dict output rebuilds the same configuration."""
        config = ClusteringStageConfig(clustering=ClusteringConfig(neighbors_k=12))
        data = config.to_dict()
        assert data["clustering"]["neighbors_k"] == 12
        assert set(data) == {"reduction", "clustering", "de", "merge", "cluster_key"}
        assert ClusteringStageConfig.from_dict(data) == config


class TestRelabelBySize:
    """Tests for relabel_by_size."""

    def test_largest_first(self):
        """Test the most populous label becomes "0"."""
        labels = relabel_by_size(["7", "3", "3", "3", "7", "1"])
        assert list(labels) == ["1", "0", "0", "0", "1", "2"]
        assert list(labels.categories) == ["0", "1", "2"]

    def test_ties_keep_label_order(self):
        """Test equally sized groups are ordered by their old labels."""
        labels = relabel_by_size(np.array([5, 2, 5, 2]))
        assert list(labels) == ["1", "0", "1", "0"]

    def test_ties_numeric_order(self):
        """Test integer labels tie-break numerically, so 9 precedes 10."""
        labels = relabel_by_size(np.array([9, 10, 9, 10, 11, 11, 11]))
        assert list(labels) == ["1", "2", "1", "2", "0", "0", "0"]

    def test_ties_mixed_labels(self):
        """Test non-numeric labels tie-break as strings."""
        labels = relabel_by_size(["b", "a10", "b", "a10"])
        assert list(labels) == ["1", "0", "1", "0"]


class TestClusteringResult:
    """Tests for ClusteringResult dataclass."""

    def test_default_values(self):
        """Test default result values."""
        result = ClusteringResult()
        assert result.n_clusters == 0
        assert result.cluster_key == "cluster"
        assert result.cluster_sizes == {}

    def test_to_dict(self):
        """Test serialisation of result fields."""
        result = ClusteringResult(n_clusters=2, cluster_sizes={"0": 10, "1": 5}, n_edges=40)
        data = result.to_dict()
        assert data["n_clusters"] == 2
        assert data["n_edges"] == 40
        assert data["cluster_sizes"] == {"0": 10, "1": 5}


class TestReduction:
    """Tests for PCA and tSNE."""

    def test_run_pca(self, normalized_adata, analysis_config):
        """Test PCA stores embeddings, variance and gene loadings."""
        result = ClusteringEngine(analysis_config).run_pca(normalized_adata)

        assert normalized_adata.obsm["X_pca"].shape == (normalized_adata.n_obs, 15)
        assert result.n_pcs == 15
        assert result.use_pcs == 10
        ratio = normalized_adata.uns["pca"]["variance_ratio"]
        assert len(ratio) == 15
        assert np.all(np.diff(ratio) <= 1e-8)
        assert normalized_adata.varm["PCs"].shape == (normalized_adata.n_vars, 15)

        # genes outside the scaled set carry no loading
        scaled = set(normalized_adata.uns["scaled_genes"])
        other = [i for i, g in enumerate(normalized_adata.var_names) if g not in scaled]
        assert np.all(normalized_adata.varm["PCs"][other] == 0)

    def test_pca_components_capped(self, normalized_adata):
        """Test asking for more PCs than scaled genes is capped."""
        config = ClusteringStageConfig(reduction=ReductionConfig(n_pcs=100, use_pcs=80))
        result = ClusteringEngine(config).run_pca(normalized_adata)
        n_scaled = normalized_adata.obsm["X_scaled"].shape[1]
        assert result.n_pcs == n_scaled - 1
        assert result.use_pcs == result.n_pcs

    def test_pca_requires_scaled_matrix(self, count_adata):
        """Test PCA before normalization raises KeyError."""
        with pytest.raises(KeyError, match="X_scaled"):
            ClusteringEngine().run_pca(count_adata)

    def test_run_reduction_with_tsne(self, normalized_adata, analysis_config):
        """Test tSNE embedding is two-dimensional."""
        analysis_config.reduction.compute_tsne = True
        result = ClusteringEngine(analysis_config).run_reduction(normalized_adata)
        assert result.has_tsne is True
        assert normalized_adata.obsm["X_tsne"].shape == (normalized_adata.n_obs, 2)
        assert result.to_dict()["variance_explained_used"] > 0


class TestSNNGraph:
    """Tests for shared-nearest-neighbour graph construction."""

    def test_graph_properties(self, reduced_adata, analysis_config):
        """Test graph is symmetric, loop-free and pruned."""
        graph = ClusteringEngine(analysis_config).build_snn_graph(reduced_adata)

        assert sparse.issparse(graph)
        assert graph.shape == (reduced_adata.n_obs, reduced_adata.n_obs)
        assert abs(graph - graph.T).max() < 1e-6
        assert graph.diagonal().sum() == 0
        assert graph.data.min() >= 1.0 / 15.0 - 1e-6
        assert graph.data.max() <= 1.0 + 1e-6
        assert reduced_adata.uns["snn"]["neighbors_k"] == 15
        assert "snn" in reduced_adata.obsp

    def test_jaccard_weights(self, reduced_adata, analysis_config):
        """Test edge weights equal the Jaccard index of the k-neighbourhoods."""
        from sklearn.neighbors import NearestNeighbors

        graph = ClusteringEngine(analysis_config).build_snn_graph(reduced_adata, prune_snn=0.0)
        params = reduced_adata.uns["snn"]
        coords = np.asarray(reduced_adata.obsm["X_pca"][:, : params["use_pcs"]])
        nn = NearestNeighbors(n_neighbors=params["neighbors_k"]).fit(coords)
        neighborhoods = [set(row) for row in nn.kneighbors(coords, return_distance=False)]

        dense = graph.toarray()
        for i in range(0, reduced_adata.n_obs, 7):
            for j in range(reduced_adata.n_obs):
                if i == j:
                    continue
                shared = len(neighborhoods[i] & neighborhoods[j])
                expected = shared / len(neighborhoods[i] | neighborhoods[j])
                assert dense[i, j] == pytest.approx(expected, abs=1e-5)

    def test_no_pruning_keeps_more_edges(self, reduced_adata, analysis_config):
        """Test lowering the pruning threshold never removes edges."""
        engine = ClusteringEngine(analysis_config)
        pruned = engine.build_snn_graph(reduced_adata).nnz
        full = engine.build_snn_graph(reduced_adata, prune_snn=0.0).nnz
        assert full >= pruned

    def test_requires_pca(self, normalized_adata):
        """Test graph construction before PCA raises KeyError."""
        with pytest.raises(KeyError, match="PCA"):
            ClusteringEngine().build_snn_graph(normalized_adata)


class TestClusteringEngine:
    """Tests for ClusteringEngine community detection."""

    def test_louvain_recovers_populations(self, reduced_adata, analysis_config):
        """Test Louvain clusters separate the synthetic populations."""
        result = ClusteringEngine(analysis_config).run_clustering(reduced_adata)

        assert result.algorithm == "louvain"
        assert result.n_clusters >= 3
        assert sum(result.cluster_sizes.values()) == reduced_adata.n_obs
        assert _purity(reduced_adata) > 0.9
        assert reduced_adata.uns["cluster"]["resolution"] == 0.8

    def test_labels_ordered_by_size(self, reduced_adata, analysis_config):
        """Test cluster "0" is the largest."""
        ClusteringEngine(analysis_config).run_clustering(reduced_adata)
        sizes = reduced_adata.obs["cluster"].value_counts()
        assert sizes.idxmax() == "0"

    def test_reproducible(self, reduced_adata, analysis_config):
        """Test the same seed gives the same labels."""
        engine = ClusteringEngine(analysis_config)
        engine.run_clustering(reduced_adata, cluster_key="first")
        engine.run_clustering(reduced_adata, cluster_key="second")
        assert list(reduced_adata.obs["first"]) == list(reduced_adata.obs["second"])

    def test_resolution_controls_granularity(self, reduced_adata, analysis_config):
        """Test a higher resolution never yields fewer clusters here."""
        engine = ClusteringEngine(analysis_config)
        low = engine.run_clustering(reduced_adata, cluster_key="low", resolution=0.2)
        high = engine.run_clustering(reduced_adata, cluster_key="high", resolution=3.0)
        assert high.n_clusters >= low.n_clusters

    def test_leiden(self, reduced_adata, analysis_config):
        """Test Leiden clustering through scanpy."""
        result = ClusteringEngine(analysis_config).run_clustering(
            reduced_adata, algorithm="leiden"
        )
        assert result.algorithm == "leiden"
        assert _purity(reduced_adata) > 0.9

    def test_unknown_algorithm(self, reduced_adata):
        """Test unknown algorithms raise ValueError."""
        with pytest.raises(ValueError, match="Unknown clustering algorithm"):
            ClusteringEngine().run_clustering(reduced_adata, algorithm="kmeans")
