"""Pytest configuration and shared fixtures for scanalysis tests."""

import anndata
import matplotlib
import numpy as np
import pandas as pd
import pytest
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

matplotlib.use("Agg")

from scanalysis.data_loader import create_dataset
from scanalysis.qc_utils import calculate_qc_metrics
from scanalysis.processing import (
    normalize_and_scale,
    run_pca,
    build_snn_graph,
    cluster_cells,
)

CELL_TYPES = ["T cell", "B cell", "Monocyte"]

# Upper-case in the marker sets, mouse-style case in the data
TYPE_MARKERS = {
    "T cell": ["Cd3e", "Cd3d", "Cd2"],
    "B cell": ["Cd19", "Ms4a1", "Cd79a"],
    "Monocyte": ["Lyz2", "Cd14", "Fcgr3"],
}

S_TEST_GENES = ["MCM5", "PCNA", "TYMS", "FEN1", "MCM2", "MCM4", "RRM1", "UNG"]
G2M_TEST_GENES = ["HMGB2", "CDK1", "NUSAP1", "UBE2C", "BIRC5", "TPX2", "TOP2A", "NDC80"]

N_BACKGROUND = 200
BLOCK = 20


def make_counts(n_per_type=80, seed=0, prefix="cell", shift=1.0):
    """Synthetic raw counts with three cell types

    Each type up-regulates its own block of background genes and its markers.
    ``shift`` scales all rates to mimic a batch effect.
    """
    rng = np.random.default_rng(seed)

    background = [f"Gene{i}" for i in range(N_BACKGROUND)]
    markers = [g for genes in TYPE_MARKERS.values() for g in genes]
    qc_genes = ["ERCC-00002", "ERCC-00003", "mt-Co1", "mt-Nd1", "Rps3", "Rpl5"]
    genes = background + markers + S_TEST_GENES + G2M_TEST_GENES + qc_genes

    base = rng.gamma(2.0, 1.0, size=len(genes))
    rows = []
    labels = []
    for t, cell_type in enumerate(CELL_TYPES):
        rates = base.copy()
        rates[t * BLOCK:(t + 1) * BLOCK] *= 8
        for gene in TYPE_MARKERS[cell_type]:
            rates[genes.index(gene)] = 20.0
        library = rng.lognormal(0, 0.2, size=(n_per_type, 1))
        rows.append(rng.poisson(rates * library * shift))
        labels += [cell_type] * n_per_type

    X = np.vstack(rows)
    adata = anndata.AnnData(sparse.csr_matrix(X))
    adata.obs_names = [f"{prefix}{i}" for i in range(adata.n_obs)]
    adata.var_names = genes
    adata.obs["true_type"] = pd.Categorical(labels)
    return adata


def true_types(obs_names, n_per_type=80):
    """Cell type of each barcode, read back from the make_counts numbering"""
    numbers = [int(name.rsplit("cell", 1)[1]) for name in obs_names]
    return np.array([CELL_TYPES[i // n_per_type] for i in numbers])


def batch_mixing(X, batches, k=20):
    """Mean fraction of each cell's k nearest neighbors from another batch"""
    batches = np.asarray(batches)
    idx = NearestNeighbors(n_neighbors=k + 1).fit(X).kneighbors(X, return_distance=False)
    return float((batches[idx[:, 1:]] != batches[:, None]).mean())


def process(adata, n_top_genes=150):
    adata = calculate_qc_metrics(adata)
    adata = normalize_and_scale(adata, n_top_genes=n_top_genes)
    run_pca(adata, n_comps=20)
    build_snn_graph(adata, n_neighbors=15, n_pcs=10)
    cluster_cells(adata, resolution=0.3)
    return adata


@pytest.fixture
def raw_adata():
    """Raw counts, 240 cells x ~240 genes"""
    return make_counts()


@pytest.fixture
def dataset(raw_adata):
    """Ingested dataset with counts layer"""
    return create_dataset(raw_adata, "ds1", min_cells=3, min_features=50)


@pytest.fixture(scope="session")
def _processed():
    adata = create_dataset(make_counts(), "ds1", min_cells=3, min_features=50)
    return process(adata)


@pytest.fixture
def processed_adata(_processed):
    """Normalized, reduced and clustered dataset (fresh copy per test)"""
    return _processed.copy()


@pytest.fixture(scope="session")
def _merged():
    from scanalysis.data_loader import merge_datasets

    ds1 = create_dataset(make_counts(seed=1), "ds1")
    ds2 = create_dataset(make_counts(seed=2, shift=1.5), "ds2")
    adata = merge_datasets({"ds1": ds1, "ds2": ds2})
    adata = calculate_qc_metrics(adata)
    adata = normalize_and_scale(adata, n_top_genes=150, batch_key="dataset")
    run_pca(adata, n_comps=20)
    return adata


@pytest.fixture
def merged_adata(_merged):
    """Two merged batches, normalized with PCA"""
    return _merged.copy()


@pytest.fixture
def gene_sets():
    """Marker sets as prepare_gene_sets returns them"""
    return {
        "T cell": {"positive": ["CD3E", "CD3D", "CD2"], "negative": ["CD19"]},
        "B cell": {"positive": ["CD19", "MS4A1", "CD79A"], "negative": ["CD3E"]},
        "Monocyte": {"positive": ["LYZ2", "CD14", "FCGR3"], "negative": []},
        "Neuron": {"positive": ["RBFOX3", "SNAP25"], "negative": []},
    }


@pytest.fixture
def marker_db():
    """Marker database table in the spreadsheet layout"""
    return pd.DataFrame(
        {
            "tissueType": ["Immune system", "Immune system", "Immune system", "Brain"],
            "cellName": ["T cell", "B cell", "Monocyte", "Neuron"],
            "geneSymbolmore1": ["CD3E,CD3D, CD2", "CD19,MS4A1,CD79A", "LYZ2,CD14,Fcgr3", "RBFOX3"],
            "geneSymbolmore2": ["CD19", "CD3E", np.nan, None],
        }
    )


@pytest.fixture(scope="session")
def reference_adata():
    """Labeled log-normalized reference built from an independent sample"""
    import scanpy as sc

    ref = make_counts(n_per_type=40, seed=7, prefix="ref")
    ref.X = ref.X.astype(np.float32)
    sc.pp.normalize_total(ref, target_sum=1e4)
    sc.pp.log1p(ref)
    ref.obs["label_main"] = ref.obs["true_type"].astype(str)
    return ref
