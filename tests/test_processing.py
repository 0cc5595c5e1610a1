"""Tests for normalization, reduction and SNN clustering."""

import numpy as np
import pytest
from scipy import sparse

from scanalysis.qc_utils import calculate_qc_metrics
from scanalysis.processing import (
    normalize_and_scale,
    regress_covariates,
    run_pca,
    run_tsne,
    run_umap,
    build_snn_graph,
    cluster_cells,
    sweep_resolutions,
)


class TestNormalization:
    def test_raw_keeps_all_genes(self, dataset):
        n_genes = dataset.n_vars
        adata = normalize_and_scale(dataset, n_top_genes=100)

        assert adata.n_vars == 100
        assert adata.raw.n_vars == n_genes
        assert adata.var["highly_variable"].all()
        assert adata.uns["normalization"]["method"] == "pearson_residuals"

    def test_raw_is_log_normalized(self, dataset):
        adata = normalize_and_scale(dataset, n_top_genes=100)
        raw = adata.raw.X
        totals = np.expm1(raw.toarray() if sparse.issparse(raw) else raw).sum(axis=1)
        np.testing.assert_allclose(totals, 1e4, rtol=1e-3)

    def test_cells_unchanged(self, dataset):
        adata = normalize_and_scale(dataset, n_top_genes=100)
        assert list(adata.obs_names) == list(dataset.obs_names)

    def test_regress_missing_covariate(self, processed_adata):
        with pytest.raises(KeyError):
            regress_covariates(processed_adata, ["cc_difference"])

    def test_regress_nothing(self, processed_adata):
        before = processed_adata.X.copy()
        regress_covariates(processed_adata, [])
        np.testing.assert_array_equal(processed_adata.X, before)


class TestReduction:
    def test_pca(self, processed_adata):
        assert processed_adata.obsm["X_pca"].shape == (processed_adata.n_obs, 20)

    def test_tsne_3d(self, processed_adata):
        run_tsne(processed_adata, n_pcs=10, n_components=3, perplexity=20)
        assert processed_adata.obsm["X_tsne"].shape == (processed_adata.n_obs, 3)

    def test_umap_own_graph(self, processed_adata):
        run_umap(processed_adata, n_pcs=10, n_neighbors=15)
        assert processed_adata.obsm["X_umap"].shape == (processed_adata.n_obs, 2)
        assert "X_umap_neighbors" in processed_adata.uns
        # SNN graph left alone
        assert processed_adata.uns["snn"]["params"]["method"] == "snn"


class TestSNN:
    def test_graph_properties(self, processed_adata):
        graph = processed_adata.obsp["snn_connectivities"]
        prune = processed_adata.uns["snn"]["params"]["prune"]

        assert (abs(graph - graph.T) > 1e-12).nnz == 0
        assert graph.diagonal().sum() == 0
        assert graph.data.min() >= prune
        assert graph.data.max() <= 1.0

    def test_missing_rep(self, processed_adata):
        with pytest.raises(KeyError):
            build_snn_graph(processed_adata, use_rep="X_nothing")

    def test_clusters(self, processed_adata):
        clusters = processed_adata.obs["clusters"]
        assert clusters.notna().all()
        assert clusters.nunique() >= 2

    def test_clusters_follow_cell_types(self, processed_adata):
        table = processed_adata.obs.groupby("clusters", observed=True)["true_type"].agg(
            lambda s: s.value_counts(normalize=True).iloc[0]
        )
        assert (table > 0.9).all()

    def test_missing_graph(self, processed_adata):
        with pytest.raises(KeyError):
            cluster_cells(processed_adata, neighbors_key="snn_missing")

    def test_new_column_per_resolution(self, processed_adata):
        cluster_cells(processed_adata, resolution=1.0, key_added="clusters_hi")
        assert "clusters" in processed_adata.obs
        assert "clusters_hi" in processed_adata.obs

    def test_sweep(self, processed_adata):
        metrics = sweep_resolutions(processed_adata, [0.1, 0.5], n_pcs=10)
        assert list(metrics["resolution"]) == [0.1, 0.5]
        assert {"n_clusters", "silhouette", "small_cluster_fraction"} <= set(metrics.columns)
        assert "clusters_res0.1" in processed_adata.obs
