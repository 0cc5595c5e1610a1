#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles count matrix ingestion, dataset creation and merging
"""

import anndata
import numpy as np
import h5py
import pandas as pd
import scanpy as sc
from pathlib import Path
from scipy import sparse


def load_count_h5(file_path):
    """Load a gene x cell count matrix stored in 10x/CellBender H5 layout

    Args:
        file_path: Path to the H5 file

    Returns:
        AnnData object (cells x genes)
    """
    with h5py.File(file_path, "r") as f:
        group = f["matrix"]
        features = group["features"]
        shape = tuple(group["shape"][:])

        X = sparse.csc_matrix(
            (group["data"][:], group["indices"][:], group["indptr"][:]), shape=shape
        )

        gene_names = [x.decode("utf-8") for x in features["name"][:]]
        gene_ids = (
            [x.decode("utf-8") for x in features["id"][:]]
            if "id" in features
            else gene_names
        )
        cell_barcodes = [x.decode("utf-8") for x in group["barcodes"][:]]

    if X.shape == (len(gene_names), len(cell_barcodes)):
        # Matrix is genes x cells, transpose to cells x genes
        adata = anndata.AnnData(X.T.tocsr())
    else:
        adata = anndata.AnnData(X.tocsr())

    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    adata.obs_names = cell_barcodes
    return adata


def load_counts(path):
    """Load a raw count matrix from disk

    Supported inputs: .h5ad, 10x-style .h5, a Matrix Market directory
    (matrix.mtx + genes/features + barcodes) and .csv/.tsv text files with
    genes as rows and cells as columns.

    Args:
        path: File or directory path

    Returns:
        AnnData object (cells x genes) with a sparse integer matrix
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    print(f"Loading {path}")
    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)
    elif path.suffix == ".h5ad":
        adata = anndata.read_h5ad(path)
    elif path.suffix == ".h5":
        adata = load_count_h5(path)
    elif path.suffix in (".csv", ".tsv", ".txt"):
        sep = "," if path.suffix == ".csv" else "\t"
        df = pd.read_csv(path, sep=sep, index_col=0)
        adata = anndata.AnnData(sparse.csr_matrix(df.T.to_numpy()))
        adata.obs_names = df.columns.astype(str)
        adata.var_names = df.index.astype(str)
    else:
        raise ValueError(f"Unsupported count matrix format: {path.suffix}")

    if not sparse.issparse(adata.X):
        adata.X = sparse.csr_matrix(adata.X)

    adata.var_names_make_unique()
    print(f"  {adata.n_vars:,} genes x {adata.n_obs:,} cells")
    return adata


def create_dataset(adata, name, min_cells=3, min_features=50):
    """Wrap a raw matrix into a dataset and drop empty cells and rare genes

    Cells with fewer than ``min_features`` detected genes are removed first,
    then genes detected in fewer than ``min_cells`` of the remaining cells.

    Args:
        adata: AnnData object with raw counts in .X
        name: Dataset label stored in obs["dataset"]
        min_cells: Minimum cells expressing a gene
        min_features: Minimum genes detected per cell

    Returns:
        New AnnData object
    """
    print(f"Creating dataset '{name}'...")
    adata = adata.copy()
    adata.obs["dataset"] = pd.Categorical([name] * adata.n_obs)

    if not sparse.issparse(adata.X):
        adata.X = sparse.csr_matrix(adata.X)

    n_genes = np.asarray((adata.X > 0).sum(axis=1)).ravel()
    adata = adata[n_genes >= min_features].copy()

    n_cells = np.asarray((adata.X > 0).sum(axis=0)).ravel()
    adata = adata[:, n_cells >= min_cells].copy()

    adata.layers["counts"] = adata.X.copy()
    adata.uns["dataset"] = {
        "name": name,
        "min_cells": min_cells,
        "min_features": min_features,
    }

    print(f"  {adata.n_vars:,} genes x {adata.n_obs:,} cells after ingestion filters")
    return adata


def merge_datasets(datasets, batch_key="dataset"):
    """Merge independently ingested datasets into one object

    Cell barcodes get the dataset name as prefix. Genes are the union of all
    inputs; genes absent from a dataset are filled with zero counts.

    Args:
        datasets: Mapping of dataset name to AnnData with raw counts
        batch_key: obs column receiving the dataset label

    Returns:
        Merged AnnData object
    """
    print("Merging datasets...")

    names = list(datasets)
    if len(set(names)) != len(names):
        raise ValueError(f"Dataset names must be unique: {names}")

    adatas = []
    for name, adata in datasets.items():
        adata = adata.copy()
        if "counts" in adata.layers:
            adata.X = adata.layers["counts"].copy()
        # keep the matrix only; QC columns are recomputed on the union
        adata = anndata.AnnData(
            adata.X,
            obs=pd.DataFrame(index=adata.obs_names),
            var=pd.DataFrame(index=adata.var_names),
        )
        adata.obs_names = [f"{name}_{barcode}" for barcode in adata.obs_names]
        print(f"  {name}: {adata.n_vars:,} genes x {adata.n_obs:,} cells")
        adatas.append(adata)

    merged = anndata.concat(
        adatas, join="outer", fill_value=0, label=batch_key, keys=names
    )
    merged.obs[batch_key] = pd.Categorical(merged.obs[batch_key], categories=names)
    merged.X = sparse.csr_matrix(merged.X)
    merged.layers["counts"] = merged.X.copy()

    print(f"  Merged: {merged.n_vars:,} genes x {merged.n_obs:,} cells")
    return merged
