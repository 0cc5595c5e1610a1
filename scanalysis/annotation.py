#!/usr/bin/env python3
"""
Marker-based cell type annotation for single-cell RNA-seq analysis
Handles the marker database, per-cell marker scores and cluster labels
"""

import io
import numpy as np
import pandas as pd
import requests
import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path
from scanalysis.params import ANNOTATION

UNKNOWN_LABEL = "Unknown"


def fetch_marker_db(source=ANNOTATION["marker_db_url"], timeout=ANNOTATION["timeout"]):
    """Load the marker database spreadsheet from a URL or a local file

    Args:
        source: URL or path of the .xlsx file
        timeout: Request timeout in seconds

    Returns:
        DataFrame with tissueType, cellName, geneSymbolmore1 (positive) and
        geneSymbolmore2 (negative) columns
    """
    if Path(str(source)).exists():
        print(f"Loading marker database from {source}")
        return pd.read_excel(source)

    print(f"Downloading marker database from {source}")
    response = requests.get(source, timeout=timeout)
    response.raise_for_status()
    return pd.read_excel(io.BytesIO(response.content))


def _split_markers(value):
    if pd.isna(value):
        return []
    genes = []
    for gene in str(value).split(","):
        gene = gene.strip().upper()
        if gene and gene != "NA" and gene not in genes:
            genes.append(gene)
    return genes


def prepare_gene_sets(db, tissue=ANNOTATION["tissue"]):
    """Build positive/negative marker sets for one tissue

    Args:
        db: Marker database DataFrame (see fetch_marker_db)
        tissue: Value of the tissueType column to keep

    Returns:
        Dict of cell type -> {"positive": [...], "negative": [...]}
    """
    available = sorted(db["tissueType"].dropna().unique())
    if tissue not in available:
        raise ValueError(f"Tissue '{tissue}' not in marker database. Available: {available}")

    gene_sets = {}
    for _, row in db[db["tissueType"] == tissue].iterrows():
        gene_sets[row["cellName"]] = {
            "positive": _split_markers(row["geneSymbolmore1"]),
            "negative": _split_markers(row["geneSymbolmore2"]),
        }

    print(f"Prepared {len(gene_sets)} cell types for tissue '{tissue}'")
    return gene_sets


def marker_sensitivity(gene_sets):
    """Weight positive markers by how specific they are

    A marker listed for a single cell type gets weight 1, one listed for every
    cell type gets weight 0, linearly in between.

    Returns:
        Dict of gene -> weight
    """
    counts = pd.Series(
        [g for sets in gene_sets.values() for g in sets["positive"]], dtype=object
    ).value_counts()
    n_types = len(gene_sets)
    if n_types <= 1:
        return {gene: 1.0 for gene in counts.index}
    return {gene: 1 - (n - 1) / (n_types - 1) for gene, n in counts.items()}


def _expression_frame(adata, genes, use_raw):
    """Dense cells x genes expression for the requested (upper-case) symbols"""
    base = adata.raw if use_raw else adata
    upper = pd.Series(base.var_names, index=base.var_names.str.upper())
    upper = upper[~upper.index.duplicated()]

    present = [g for g in genes if g in upper.index]
    if not present:
        return pd.DataFrame(index=adata.obs_names)

    X = base[:, upper[present].to_numpy()].X
    X = X.toarray() if hasattr(X, "toarray") else np.asarray(X)
    return pd.DataFrame(X, index=adata.obs_names, columns=present)


def score_marker_sets(adata, gene_sets, use_raw=None):
    """Per-cell enrichment score for every cell type

    Marker expression is z-scored across cells and weighted by marker
    sensitivity; a cell type's score is the sum over positive markers divided
    by sqrt(n positive) minus the same term for negative markers.
    Gene symbols are matched case-insensitively.

    Args:
        adata: AnnData object with log-normalized expression
        gene_sets: Output of prepare_gene_sets
        use_raw: Use adata.raw (default: when present)

    Returns:
        DataFrame of cells x cell types
    """
    if use_raw is None:
        use_raw = adata.raw is not None

    all_genes = []
    for sets in gene_sets.values():
        for gene in sets["positive"] + sets["negative"]:
            if gene not in all_genes:
                all_genes.append(gene)

    expr = _expression_frame(adata, all_genes, use_raw)
    std = expr.std(axis=0, ddof=1).replace(0, np.nan)
    z = ((expr - expr.mean(axis=0)) / std).fillna(0.0)

    weights = marker_sensitivity(gene_sets)
    z = z * pd.Series({g: weights.get(g, 1.0) for g in z.columns})

    scores = {}
    for cell_type, sets in gene_sets.items():
        positive = [g for g in sets["positive"] if g in z.columns]
        negative = [g for g in sets["negative"] if g in z.columns]
        if not positive:
            continue
        score = z[positive].sum(axis=1) / np.sqrt(len(positive))
        if negative:
            score = score - z[negative].sum(axis=1) / np.sqrt(len(negative))
        scores[cell_type] = score

    if not scores:
        raise ValueError("None of the marker genes are present in the data")

    return pd.DataFrame(scores, index=adata.obs_names)


def annotate_clusters_by_markers(
    adata,
    gene_sets,
    groupby="clusters",
    key_added="sctype",
    unknown_fraction=ANNOTATION["unknown_fraction"],
    use_raw=None,
):
    """Assign a cell type to every cluster from summed marker scores

    Cell scores are summed per cluster; the best-scoring type wins unless its
    summed score is below ``unknown_fraction`` times the cluster size, in
    which case the cluster is labeled "Unknown".

    Args:
        adata: AnnData object with clusters in obs[groupby]
        gene_sets: Output of prepare_gene_sets
        groupby: Cluster column
        key_added: obs column for the labels
        unknown_fraction: Low-confidence cutoff per cell
        use_raw: Use adata.raw (default: when present)

    Side effects:
        - obs[key_added]: cluster label per cell
        - obsm[f"{key_added}_scores"]: per-cell scores
        - uns[key_added]: per-cluster table (cluster, cell_type, score, n_cells)

    Returns:
        Per-cluster DataFrame
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    print(f"Annotating '{groupby}' clusters by marker scores...")
    scores = score_marker_sets(adata, gene_sets, use_raw=use_raw)
    clusters = adata.obs[groupby].astype(str)

    cluster_scores = scores.groupby(clusters).sum()
    n_cells = clusters.value_counts()

    rows = []
    for cluster_id in cluster_scores.index:
        best = cluster_scores.loc[cluster_id].idxmax()
        best_score = float(cluster_scores.loc[cluster_id, best])
        size = int(n_cells[cluster_id])
        label = best if best_score >= size * unknown_fraction else UNKNOWN_LABEL
        rows.append(
            {
                "cluster": cluster_id,
                "cell_type": label,
                "top_type": best,
                "score": best_score,
                "n_cells": size,
            }
        )
    result = pd.DataFrame(rows)

    labels = dict(zip(result["cluster"], result["cell_type"]))
    adata.obs[key_added] = pd.Categorical(clusters.map(labels))
    adata.obsm[f"{key_added}_scores"] = scores
    adata.uns[key_added] = result

    n_unknown = (result["cell_type"] == UNKNOWN_LABEL).sum()
    print(f"  Assigned {len(result) - n_unknown} / {len(result)} clusters")
    print(result.to_string(index=False))
    return result


def compare_annotations(adata, key_a, key_b):
    """Crosstab of two annotation columns for manual comparison"""
    for key in (key_a, key_b):
        if key not in adata.obs:
            raise KeyError(f"Annotation '{key}' not found in adata.obs")
    return pd.crosstab(adata.obs[key_a], adata.obs[key_b])


def plot_marker_genes(adata, gene_sets, groupby="clusters", n_per_type=3, save_dir=None):
    """Plot top marker genes of each cell type across clusters

    Args:
        adata: AnnData object with clustering results
        gene_sets: Output of prepare_gene_sets
        groupby: Cluster column
        n_per_type: Markers shown per cell type
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    base = adata.raw if adata.raw is not None else adata
    upper = pd.Series(base.var_names, index=base.var_names.str.upper())
    upper = upper[~upper.index.duplicated()]

    available_markers = {}
    for cell_type, sets in gene_sets.items():
        genes = [upper[g] for g in sets["positive"] if g in upper.index][:n_per_type]
        if genes:
            available_markers[cell_type] = genes

    if not available_markers:
        print("  No marker genes present, skipping dotplot")
        return

    sc.pl.dotplot(
        adata,
        available_markers,
        groupby=groupby,
        standard_scale="var",
        show=False,
    )
    plt.xticks(rotation=45, ha="right")

    if save_dir:
        plt.savefig(save_dir / f"marker_genes_dotplot_{groupby}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_genes_dotplot_{groupby}.png")
        plt.close()
    else:
        plt.show()
