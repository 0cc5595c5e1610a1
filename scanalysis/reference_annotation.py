#!/usr/bin/env python3
"""
Reference-based cell type annotation for single-cell RNA-seq analysis
Labels clusters by rank correlation with a labeled expression atlas
"""

import tempfile
import anndata
import numpy as np
import pandas as pd
import requests
from pathlib import Path
from scipy.stats import rankdata
from scanalysis.params import ANNOTATION


def fetch_reference(
    source, label_key=ANNOTATION["reference_label_key"], timeout=ANNOTATION["timeout"]
):
    """Load a labeled reference atlas (log-expression in .X)

    Args:
        source: Path to a local .h5ad file or URL to download it from
        label_key: obs column with the cell type labels
        timeout: Request timeout in seconds for downloads

    Returns:
        AnnData object
    """
    path = Path(str(source))
    if path.exists():
        print(f"Loading reference from {path}")
        reference = anndata.read_h5ad(path)
    else:
        print(f"Downloading reference from {source}")
        response = requests.get(source, timeout=timeout)
        response.raise_for_status()
        with tempfile.NamedTemporaryFile(suffix=".h5ad") as tmp:
            tmp.write(response.content)
            tmp.flush()
            reference = anndata.read_h5ad(tmp.name)

    if label_key not in reference.obs:
        raise KeyError(f"Label column '{label_key}' not found in reference obs")

    n_labels = reference.obs[label_key].nunique()
    print(
        f"  {reference.n_obs:,} reference samples, {n_labels} labels, "
        f"{reference.n_vars:,} genes"
    )
    return reference


def _dense(X):
    return X.toarray() if hasattr(X, "toarray") else np.asarray(X)


def _label_medians(reference, label_key, labels=None):
    """Median expression per label (labels x genes)"""
    ref_labels = reference.obs[label_key].astype(str).to_numpy()
    if labels is None:
        labels = sorted(set(ref_labels))
    X = reference.X
    medians = {}
    for label in labels:
        medians[label] = np.median(_dense(X[ref_labels == label]), axis=0)
    return pd.DataFrame(medians, index=reference.var_names).T


def default_marker_count(n_labels):
    """Markers taken per label pair; fewer as the number of labels grows"""
    return int(round(500 * (2 / 3) ** np.log2(max(n_labels, 1))))


def reference_markers(reference, label_key, labels=None, n_genes=None, medians=None):
    """Union of the top genes separating every ordered pair of labels

    For each pair (a, b) the genes with the largest positive difference
    between the median expression in a and in b are kept.

    Args:
        reference: Labeled reference AnnData
        label_key: obs column with labels
        labels: Restrict to these labels (default: all)
        n_genes: Genes per pair (default: 500 * (2/3) ** log2(n_labels))
        medians: Precomputed output of _label_medians (optional)

    Returns:
        List of gene names
    """
    if medians is None:
        medians = _label_medians(reference, label_key, labels)
    if labels is not None:
        medians = medians.loc[list(labels)]
    if n_genes is None:
        n_genes = default_marker_count(len(medians))

    genes = medians.columns.to_numpy()
    values = medians.to_numpy()
    selected = set()
    for i in range(len(medians)):
        for j in range(len(medians)):
            if i == j:
                continue
            diff = values[i] - values[j]
            order = np.argsort(-diff, kind="stable")[:n_genes]
            selected.update(genes[order[diff[order] > 0]])

    return [g for g in genes if g in selected]


def _spearman(profile, ref_matrix):
    """Spearman correlation of one profile with every row of ref_matrix"""
    x = rankdata(profile)
    y = rankdata(ref_matrix, axis=1)
    x = x - x.mean()
    y = y - y.mean(axis=1, keepdims=True)
    denom = np.sqrt((x**2).sum() * (y**2).sum(axis=1))
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = (y @ x) / denom
    return np.nan_to_num(corr)


def _score_labels(profile, ref_expr, ref_labels, labels, gene_idx, quantile):
    scores = {}
    for label in labels:
        rows = ref_expr[ref_labels == label][:, gene_idx]
        scores[label] = float(np.quantile(_spearman(profile[gene_idx], rows), quantile))
    return pd.Series(scores)


def _group_profiles(adata, groupby, use_raw):
    base = adata.raw if use_raw else adata
    X = base.X
    if groupby is None:
        return pd.DataFrame(_dense(X), index=adata.obs_names, columns=base.var_names)

    groups = adata.obs[groupby].astype(str)
    profiles = {}
    for group in groups.unique():
        mask = (groups == group).to_numpy()
        profiles[group] = np.asarray(X[mask].mean(axis=0)).ravel()
    return pd.DataFrame(profiles, index=base.var_names).T


def annotate_by_reference(
    adata,
    reference,
    label_key=ANNOTATION["reference_label_key"],
    groupby="clusters",
    key_added="singler",
    fine_tune=ANNOTATION["fine_tune"],
    tune_thresh=ANNOTATION["tune_thresh"],
    quantile=ANNOTATION["quantile"],
    use_raw=None,
):
    """Label clusters (or cells) by correlation with a labeled reference

    A mean log-expression profile is built for every cluster. Each reference
    label is scored by the ``quantile`` of the Spearman correlations between
    the profile and the label's reference samples over marker genes. With
    ``fine_tune``, labels more than ``tune_thresh`` below the best are dropped
    and the rest re-scored on markers among themselves until one remains.

    Args:
        adata: AnnData object with log-normalized expression
        reference: Labeled reference AnnData (log-expression in .X)
        label_key: Label column of the reference
        groupby: Cluster column; None annotates every cell on its own
        key_added: obs column for the labels
        fine_tune: Whether to run the fine-tuning rounds
        tune_thresh: Score window kept between rounds
        quantile: Correlation quantile used as label score
        use_raw: Use adata.raw (default: when present)

    Side effects:
        - obs[key_added]: label per cell
        - obs[f"{key_added}_delta"]: best minus second best score
        - uns[key_added]: per-group table with first-round scores

    Returns:
        Per-group DataFrame
    """
    if use_raw is None:
        use_raw = adata.raw is not None
    if groupby is not None and groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    target = groupby if groupby is not None else "cells"
    print(f"Annotating {target} against reference '{label_key}'...")

    profiles = _group_profiles(adata, groupby, use_raw)
    shared = profiles.columns.intersection(reference.var_names)
    if len(shared) == 0:
        raise ValueError("No genes shared between data and reference")
    print(f"  {len(shared):,} shared genes")

    profiles = profiles[shared]
    reference = reference[:, shared]
    ref_expr = _dense(reference.X)
    ref_labels = reference.obs[label_key].astype(str).to_numpy()
    labels = sorted(set(ref_labels))
    gene_pos = pd.Series(np.arange(len(shared)), index=shared)

    medians = _label_medians(reference, label_key, labels)
    first_genes = gene_pos[reference_markers(reference, label_key, medians=medians)].to_numpy()
    if len(first_genes) == 0:
        # single label or identical medians
        first_genes = gene_pos.to_numpy()
    print(f"  {len(first_genes):,} marker genes across {len(labels)} labels")

    rows = []
    for group, profile in profiles.iterrows():
        profile = profile.to_numpy()
        scores = _score_labels(profile, ref_expr, ref_labels, labels, first_genes, quantile)

        best = scores.idxmax()
        ranked = scores.sort_values(ascending=False)
        delta = float(ranked.iloc[0] - ranked.iloc[1]) if len(ranked) > 1 else np.nan

        if fine_tune:
            current = list(scores[scores >= scores.max() - tune_thresh].index)
            while len(current) > 1:
                genes = gene_pos[
                    reference_markers(reference, label_key, labels=current, medians=medians)
                ].to_numpy()
                if len(genes) == 0:
                    break
                tuned = _score_labels(profile, ref_expr, ref_labels, current, genes, quantile)
                ranked = tuned.sort_values(ascending=False)
                delta = float(ranked.iloc[0] - ranked.iloc[1])
                best = tuned.idxmax()
                kept = list(tuned[tuned >= tuned.max() - tune_thresh].index)
                if len(kept) == len(current):
                    break
                current = kept

        row = {"group": str(group), "label": best, "delta": delta}
        row.update({f"score_{label}": float(scores[label]) for label in labels})
        rows.append(row)

    result = pd.DataFrame(rows)

    if groupby is None:
        adata.obs[key_added] = pd.Categorical(result["label"].to_numpy())
        adata.obs[f"{key_added}_delta"] = result["delta"].to_numpy()
    else:
        groups = adata.obs[groupby].astype(str)
        labels_by_group = dict(zip(result["group"], result["label"]))
        delta_by_group = dict(zip(result["group"], result["delta"]))
        adata.obs[key_added] = pd.Categorical(groups.map(labels_by_group))
        adata.obs[f"{key_added}_delta"] = groups.map(delta_by_group).astype(float)
    adata.uns[key_added] = result

    print(adata.obs[key_added].value_counts().to_string())
    return result
