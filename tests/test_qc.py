"""Tests for QC metrics and range filters."""

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scanalysis.qc_utils import (
    calculate_qc_metrics,
    qc_mask,
    filter_cells,
    summarize_qc,
    QC_METRICS,
)


@pytest.fixture
def small_qc():
    X = np.array(
        [
            [10, 0, 5, 5],
            [0, 20, 0, 0],
            [4, 4, 1, 1],
        ]
    )
    adata = anndata.AnnData(sparse.csr_matrix(X))
    adata.obs_names = ["c1", "c2", "c3"]
    adata.var_names = ["ERCC-00002", "Actb", "mt-Co1", "Rpl5"]
    adata.layers["counts"] = adata.X.copy()
    return adata


class TestMetrics:
    def test_columns(self, dataset):
        adata = calculate_qc_metrics(dataset)
        for metric in QC_METRICS:
            assert metric in adata.obs

    def test_percentages(self, small_qc):
        adata = calculate_qc_metrics(small_qc)

        np.testing.assert_allclose(adata.obs["percent_spikein"], [50.0, 0.0, 40.0])
        np.testing.assert_allclose(adata.obs["percent_mt"], [25.0, 0.0, 10.0])
        np.testing.assert_allclose(adata.obs["percent_ribo"], [25.0, 0.0, 10.0])
        assert list(adata.var_names[adata.var["spikein"]]) == ["ERCC-00002"]

    def test_complexity(self, small_qc):
        adata = calculate_qc_metrics(small_qc)
        expected = np.log10(3) / np.log10(20)
        assert adata.obs.loc["c1", "log10_genes_per_umi"] == pytest.approx(expected)
        # one gene, log10(1) = 0
        assert adata.obs.loc["c2", "log10_genes_per_umi"] == pytest.approx(0.0)


class TestMask:
    def test_exclusive_bounds(self):
        obs = pd.DataFrame({"n_genes_by_counts": [1000, 1001, 7499, 7500]})
        mask = qc_mask(obs, {"n_genes_by_counts": (1000, 7500)})
        assert mask.tolist() == [False, True, True, False]

    def test_inclusive_bounds(self):
        obs = pd.DataFrame({"n_genes_by_counts": [1000, 1001, 7499, 7500]})
        mask = qc_mask(obs, {"n_genes_by_counts": (1000, 7500)}, inclusive=True)
        assert mask.all()

    def test_inclusive_key_in_ranges(self):
        obs = pd.DataFrame({"percent_spikein": [5.0, 4.9]})
        mask = qc_mask(obs, {"percent_spikein": (None, 5), "inclusive": True})
        assert mask.tolist() == [True, True]

    def test_open_side(self):
        obs = pd.DataFrame({"percent_spikein": [0.0, 4.9, 5.0, 50.0]})
        mask = qc_mask(obs, {"percent_spikein": (None, 5)})
        assert mask.tolist() == [True, True, False, False]

    def test_unknown_metric(self):
        obs = pd.DataFrame({"a": [1]})
        with pytest.raises(KeyError):
            qc_mask(obs, {"percent_spikein": (None, 5)})


class TestFilterCells:
    ranges = {
        "n_genes_by_counts": (150, 1000),
        "percent_spikein": (None, 5),
        "log10_genes_per_umi": (0.45, 0.9),
    }

    def test_alignment(self, dataset):
        adata = calculate_qc_metrics(dataset)
        filtered = filter_cells(adata, self.ranges)

        assert filtered.obs.shape[0] == filtered.X.shape[0]
        assert filtered.layers["counts"].shape[0] == filtered.n_obs
        expected = adata.obs_names[qc_mask(adata.obs, self.ranges)]
        assert list(filtered.obs_names) == list(expected)

    def test_monotonic_shrinkage(self, dataset):
        adata = calculate_qc_metrics(dataset)
        filtered = filter_cells(adata, self.ranges)
        assert filtered.n_obs <= adata.n_obs
        assert filtered.n_vars == adata.n_vars

    def test_idempotent(self, dataset):
        adata = calculate_qc_metrics(dataset)
        once = filter_cells(adata, self.ranges)
        twice = filter_cells(once, self.ranges)
        assert list(twice.obs_names) == list(once.obs_names)

    def test_summary(self, dataset):
        adata = calculate_qc_metrics(dataset)
        summary = summarize_qc(adata)
        assert summary.loc["ds1", "n_cells"] == adata.n_obs
        assert "percent_spikein" in summary.columns
