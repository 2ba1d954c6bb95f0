"""Unit tests for differential expression."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from dropseq_atlas.core.clustering import (
    ClusteringStageConfig,
    DEConfig,
    DERunner,
    DEResult,
    RESULT_COLUMNS,
    adjust_pvalues,
    binomial_test,
)


def _markers(cluster: int, per_cluster: int = 8) -> set:
    return {f"Gene{i}" for i in range(cluster * per_cluster, (cluster + 1) * per_cluster)}


@pytest.fixture
def clustered_adata(normalized_adata):
    """Normalized data labelled with the generating populations."""
    normalized_adata.obs["cluster"] = normalized_adata.obs["true_cluster"].astype(str).astype("category")
    return normalized_adata


class TestAdjustPvalues:
    """Tests for multiple testing correction."""

    def test_bonferroni_with_extra_tests(self):
        """Test Bonferroni scales by the number of hypotheses."""
        adjusted = adjust_pvalues(np.array([0.01, 0.2, np.nan]), "bonferroni", n_tests=10)
        assert adjusted[0] == pytest.approx(0.1)
        assert adjusted[1] == 1.0
        assert np.isnan(adjusted[2])

    def test_fdr_bh(self):
        """Test Benjamini-Hochberg adjustment is monotone in rank."""
        adjusted = adjust_pvalues(np.array([0.01, 0.04, 0.03]), "fdr_bh")
        assert adjusted == pytest.approx([0.03, 0.04, 0.04])

    def test_holm(self):
        """Test Holm step-down adjustment."""
        adjusted = adjust_pvalues(np.array([0.01, 0.04, 0.03]), "holm")
        assert adjusted == pytest.approx([0.03, 0.06, 0.06])

    def test_none(self):
        """Test "none" leaves p-values unchanged."""
        p = np.array([0.5, 0.01])
        assert np.array_equal(adjust_pvalues(p, "none"), p)

    def test_unknown_method(self):
        """Test unknown corrections raise ValueError."""
        with pytest.raises(ValueError, match="Unknown correction"):
            adjust_pvalues(np.array([0.1]), "sidak")


class TestBinomialTest:
    """Tests for the detection-rate binomial test."""

    def test_expected_count_not_significant(self):
        """Test a count at the reference rate gives p = 1."""
        p = binomial_test(np.array([50]), 100, np.array([49]), 98)
        assert p[0] == pytest.approx(1.0)

    def test_absent_in_reference(self):
        """Test a gene seen everywhere in group 1 and never in group 2."""
        p = binomial_test(np.array([80]), 80, np.array([0]), 160)
        assert 0 <= p[0] < 1e-20

    def test_two_sided(self):
        """Test depletion is detected as well as enrichment."""
        p = binomial_test(np.array([0, 100]), 100, np.array([50, 50]), 98)
        assert np.all(p < 1e-10)


class TestFindMarkers:
    """Tests for DERunner.find_markers."""

    def test_binomial_recovers_markers(self, clustered_adata):
        """Test the top up-regulated genes are the population markers."""
        mask = (clustered_adata.obs["cluster"] == "0").to_numpy()
        table = DERunner().find_markers(clustered_adata, mask, only_positive=True)

        assert list(table.columns) == RESULT_COLUMNS
        assert set(table["gene"].head(8)) == _markers(0)
        assert (table["avg_logFC"] > 0).all()
        assert table["p_val"].is_monotonic_increasing
        assert (table["p_val_adj"] >= table["p_val"]).all()

    def test_detection_fractions(self, clustered_adata):
        """Test pct_1 and pct_2 are detection rates in each group."""
        mask = (clustered_adata.obs["cluster"] == "1").to_numpy()
        table = DERunner().find_markers(clustered_adata, mask).set_index("gene")

        gene = "Gene8"
        column = clustered_adata[:, gene].X
        column = column.toarray().ravel() if sparse.issparse(column) else np.ravel(column)
        assert table.loc[gene, "pct_1"] == pytest.approx((column[mask] > 0).mean(), abs=1e-3)
        assert table.loc[gene, "pct_2"] == pytest.approx((column[~mask] > 0).mean(), abs=1e-3)

    def test_negative_markers_kept_by_default(self, clustered_adata):
        """Test down-regulated genes are reported unless only_positive."""
        mask = (clustered_adata.obs["cluster"] == "0").to_numpy()
        table = DERunner().find_markers(clustered_adata, mask)
        down = set(table.loc[table["avg_logFC"] < 0, "gene"])
        assert down & (_markers(1) | _markers(2))

    def test_explicit_reference(self, clustered_adata):
        """Test a reference mask restricts group 2."""
        labels = clustered_adata.obs["cluster"].to_numpy()
        table = DERunner().find_markers(
            clustered_adata, labels == "0", labels == "1", only_positive=True
        )
        significant = set(table.loc[table["p_val_adj"] < 0.01, "gene"])
        assert _markers(0) <= significant
        assert not significant & _markers(2)

    def test_wilcoxon(self, clustered_adata):
        """Test the scanpy Wilcoxon path returns the same columns."""
        mask = (clustered_adata.obs["cluster"] == "2").to_numpy()
        table = DERunner().find_markers(
            clustered_adata, mask, method="wilcoxon", only_positive=True
        )
        assert list(table.columns) == RESULT_COLUMNS
        assert set(table["gene"].head(8)) == _markers(2)

    def test_empty_group(self, clustered_adata):
        """Test an empty group raises ValueError."""
        mask = np.zeros(clustered_adata.n_obs, dtype=bool)
        with pytest.raises(ValueError, match="Both groups"):
            DERunner().find_markers(clustered_adata, mask)

    def test_unknown_method(self, clustered_adata):
        """Test unknown DE methods raise ValueError."""
        mask = (clustered_adata.obs["cluster"] == "0").to_numpy()
        with pytest.raises(ValueError, match="Unknown DE method"):
            DERunner().find_markers(clustered_adata, mask, method="mast")


class TestCountDEGenes:
    """Tests for DERunner.count_de_genes."""

    def test_distinct_populations(self, clustered_adata):
        """Test populations with different markers have many DE genes."""
        labels = clustered_adata.obs["cluster"].to_numpy()
        n_de = DERunner().count_de_genes(clustered_adata, labels == "0", labels == "1")
        assert n_de >= 12

    def test_random_halves(self, clustered_adata):
        """Test two random halves of one population have few DE genes."""
        idx = np.flatnonzero(clustered_adata.obs["cluster"].to_numpy() == "0")
        rng = np.random.default_rng(1)
        half = rng.choice(idx, len(idx) // 2, replace=False)
        mask_a = np.zeros(clustered_adata.n_obs, dtype=bool)
        mask_a[half] = True
        mask_b = np.zeros(clustered_adata.n_obs, dtype=bool)
        mask_b[np.setdiff1d(idx, half)] = True

        assert DERunner().count_de_genes(clustered_adata, mask_a, mask_b) < 5


class TestFindAllMarkers:
    """Tests for DERunner.find_all_markers."""

    def test_all_clusters(self, clustered_adata, tmp_output_dir):
        """Test every cluster gets its own markers and markers.csv is written."""
        result = DERunner().find_all_markers(clustered_adata, output_dir=tmp_output_dir)

        assert isinstance(result, DEResult)
        assert set(result.cluster_de_genes) == {"0", "1", "2"}
        for cluster in range(3):
            top = set(result.cluster_de_genes[str(cluster)][:8])
            assert top == _markers(cluster)
        assert (result.table["p_val_adj"] < 0.01).all()
        assert list(result.table.columns) == ["cluster"] + RESULT_COLUMNS

        written = pd.read_csv(tmp_output_dir / "markers.csv", dtype={"cluster": str})
        assert len(written) == len(result.table)
        assert clustered_adata.uns["markers"]["method"] == "binomial"
        assert result.to_dict()["n_clusters"] == 3

    def test_top_gene_count(self, clustered_adata):
        """Test cluster_de_genes is capped at n_genes."""
        config = ClusteringStageConfig(de=DEConfig(n_genes=3))
        result = DERunner(config).find_all_markers(clustered_adata)
        assert all(len(genes) <= 3 for genes in result.cluster_de_genes.values())

    def test_single_cluster(self, clustered_adata):
        """Test a single cluster yields an empty table."""
        clustered_adata.obs["cluster"] = pd.Categorical(["0"] * clustered_adata.n_obs)
        result = DERunner().find_all_markers(clustered_adata)
        assert result.table.empty
        assert result.cluster_de_genes == {}

    def test_missing_cluster_key(self, normalized_adata):
        """Test a missing cluster column raises KeyError."""
        with pytest.raises(KeyError, match="not_a_column"):
            DERunner().find_all_markers(normalized_adata, cluster_key="not_a_column")
