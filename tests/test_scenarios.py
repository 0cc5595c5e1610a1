"""Cell and gene counts on the two reference datasets.

Needs the raw matrices: set SCANALYSIS_DATA_DIR to a directory holding
dataset1.* and dataset2.* (any format load_counts reads).
"""

import os
from pathlib import Path

import pytest

from scanalysis.params import get_params
from scanalysis.data_loader import load_counts, create_dataset, merge_datasets
from scanalysis.qc_utils import calculate_qc_metrics, filter_cells

DATA_DIR = os.environ.get("SCANALYSIS_DATA_DIR")

pytestmark = pytest.mark.skipif(
    DATA_DIR is None, reason="SCANALYSIS_DATA_DIR not set"
)


def _find(name):
    matches = sorted(Path(DATA_DIR).glob(f"{name}*"))
    if not matches:
        pytest.skip(f"{name} not found in {DATA_DIR}")
    return matches[0]


@pytest.fixture(scope="module")
def params():
    return get_params()


@pytest.fixture(scope="module")
def dataset1(params):
    return create_dataset(load_counts(_find("dataset1")), "dataset1", **params["ingest"])


@pytest.fixture(scope="module")
def dataset2(params):
    return create_dataset(load_counts(_find("dataset2")), "dataset2", **params["ingest"])


class TestScenarios:
    def test_ingestion(self, dataset1):
        assert dataset1.n_vars == 17982
        assert dataset1.n_obs == 1961

    def test_single_qc(self, dataset1, params):
        adata = calculate_qc_metrics(dataset1.copy())
        adata = filter_cells(adata, params["cell_filters"]["single"])
        assert adata.n_obs == 1422

    def test_merge(self, dataset1, dataset2):
        merged = merge_datasets({"dataset1": dataset1, "dataset2": dataset2})
        assert merged.n_vars == len(set(dataset1.var_names) | set(dataset2.var_names))
        assert merged.n_obs == dataset1.n_obs + dataset2.n_obs
        assert merged.shape == (4624, 18772)

    def test_merged_qc(self, dataset1, dataset2, params):
        merged = merge_datasets({"dataset1": dataset1, "dataset2": dataset2})
        merged = calculate_qc_metrics(merged)
        merged = filter_cells(merged, params["cell_filters"]["merged"])
        assert merged.n_obs == 3828
