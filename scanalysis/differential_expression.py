#!/usr/bin/env python3
"""
Differential expression utilities for single-cell RNA-seq analysis
Handles one-vs-rest marker detection per cluster and persisting the results
"""

import numpy as np
import pandas as pd
import scanpy as sc
from pathlib import Path
from statsmodels.stats.multitest import multipletests
from scanalysis.params import DE_PARAMS

MARKER_COLUMNS = ["cluster", "gene", "avg_log2FC", "pct_1", "pct_2", "p_val", "p_val_adj"]


def find_all_markers(
    adata,
    groupby="clusters",
    method=DE_PARAMS["method"],
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    only_pos=DE_PARAMS["only_pos"],
    use_raw=None,
):
    """Find marker genes of every cluster against all other cells

    Args:
        adata: AnnData object with clustering results
        groupby: Cluster column in adata.obs
        method: Test passed to scanpy (wilcoxon, t-test, logreg)
        min_pct: Minimum fraction of cells expressing the gene in either group
        logfc_threshold: Minimum absolute log2 fold change
        only_pos: Keep only genes up-regulated in the cluster
        use_raw: Test on adata.raw (default: when present)

    Returns:
        DataFrame with cluster, gene, avg_log2FC, pct_1, pct_2, p_val, p_val_adj.
        p_val_adj is Bonferroni-corrected over all genes tested per cluster.
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if adata.obs[groupby].nunique() < 2:
        raise ValueError(f"'{groupby}' needs at least two groups for marker detection")
    if use_raw is None:
        use_raw = adata.raw is not None

    n_genes = adata.raw.n_vars if use_raw else adata.n_vars
    print(f"Finding markers for '{groupby}' ({method}, {n_genes:,} genes)...")

    key = f"rank_genes_{groupby}"
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        use_raw=use_raw,
        n_genes=n_genes,
        pts=True,
        key_added=key,
    )
    df = sc.get.rank_genes_groups_df(adata, None, key=key)

    df = df.rename(
        columns={
            "group": "cluster",
            "names": "gene",
            "logfoldchanges": "avg_log2FC",
            "pct_nz_group": "pct_1",
            "pct_nz_reference": "pct_2",
            "pvals": "p_val",
        }
    )
    df["p_val"] = df["p_val"].fillna(1.0)
    df["p_val_adj"] = df.groupby("cluster", observed=True)["p_val"].transform(
        lambda p: multipletests(p, method="bonferroni")[1]
    )

    keep = np.maximum(df["pct_1"], df["pct_2"]) >= min_pct
    if only_pos:
        keep &= df["avg_log2FC"] >= logfc_threshold
    else:
        keep &= df["avg_log2FC"].abs() >= logfc_threshold

    markers = df.loc[keep, MARKER_COLUMNS].reset_index(drop=True)
    markers["cluster"] = markers["cluster"].astype(str)
    markers = markers.sort_values(
        ["cluster", "p_val", "avg_log2FC"], ascending=[True, True, False]
    ).reset_index(drop=True)

    print(f"  {len(markers):,} markers across {markers['cluster'].nunique()} clusters")
    return markers


def top_markers(markers, n=10):
    """Top ``n`` markers per cluster by log2 fold change"""
    return (
        markers.sort_values("avg_log2FC", ascending=False)
        .groupby("cluster", sort=True)
        .head(n)
        .sort_values(["cluster", "avg_log2FC"], ascending=[True, False])
        .reset_index(drop=True)
    )


def save_marker_bundle(tables, path):
    """Pickle a dict of marker tables (one per clustering) to ``path``"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.to_pickle(dict(tables), path)
    print(f"  Saved: {path}")
    return path


def load_marker_bundle(path):
    """Load a dict of marker tables written by save_marker_bundle"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker bundle not found: {path}")
    return pd.read_pickle(path)
