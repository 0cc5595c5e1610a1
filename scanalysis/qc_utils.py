#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation and threshold-based cell filtering
"""

import numpy as np
import scanpy as sc
from scanalysis.params import GENE_PATTERNS

QC_METRICS = [
    "n_genes_by_counts",
    "total_counts",
    "percent_spikein",
    "percent_mt",
    "percent_ribo",
    "log10_genes_per_umi",
]


def _percent_of_counts(counts, gene_mask, totals):
    if not gene_mask.any():
        return np.zeros(counts.shape[0])
    subset = np.asarray(counts[:, gene_mask].sum(axis=1)).ravel()
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(totals > 0, subset / totals * 100, 0.0)
    return pct


def calculate_qc_metrics(adata, patterns=GENE_PATTERNS):
    """Calculate QC metrics on raw counts

    Adds to adata.obs: total_counts, n_genes_by_counts, percent_spikein,
    percent_mt, percent_ribo and log10_genes_per_umi (complexity).

    Args:
        adata: AnnData object with raw counts in .X or layers["counts"]
        patterns: Regex patterns for spike-in, mitochondrial, ribosomal genes

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    layer = "counts" if "counts" in adata.layers else None
    counts = adata.layers["counts"] if layer else adata.X

    adata.var["spikein"] = adata.var_names.str.contains(patterns["spikein_pattern"])
    adata.var["mt"] = adata.var_names.str.contains(patterns["mt_pattern"])
    adata.var["ribo"] = adata.var_names.str.contains(patterns["ribo_pattern"])

    sc.pp.calculate_qc_metrics(
        adata, percent_top=None, log1p=False, inplace=True, layer=layer
    )

    totals = np.asarray(counts.sum(axis=1)).ravel().astype(float)
    for name in ("spikein", "mt", "ribo"):
        adata.obs[f"percent_{name}"] = _percent_of_counts(
            counts, adata.var[name].to_numpy(), totals
        )

    # Genes per UMI: how many distinct genes each count buys
    n_genes = adata.obs["n_genes_by_counts"].to_numpy().astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        complexity = np.log10(n_genes) / np.log10(totals)
    adata.obs["log10_genes_per_umi"] = np.where(
        np.isfinite(complexity), complexity, np.nan
    )

    print(
        f"  Median genes/cell: {np.median(n_genes):.0f}, "
        f"median counts/cell: {np.median(totals):.0f}, "
        f"spike-in genes: {int(adata.var['spikein'].sum())}"
    )
    return adata


def qc_mask(obs, ranges, inclusive=False):
    """Boolean mask of cells passing every range check

    Args:
        obs: Cell metadata table with the QC metric columns
        ranges: Mapping of metric name to (low, high); None leaves a side open.
            An "inclusive" key in the mapping overrides ``inclusive``.
        inclusive: Whether bounds themselves pass

    Returns:
        numpy boolean array aligned with obs
    """
    ranges = dict(ranges)
    inclusive = ranges.pop("inclusive", inclusive)

    mask = np.ones(len(obs), dtype=bool)
    for metric, (low, high) in ranges.items():
        if metric not in obs.columns:
            raise KeyError(
                f"QC metric '{metric}' not found in obs; run calculate_qc_metrics first"
            )
        values = obs[metric].to_numpy()
        if low is not None:
            mask &= values >= low if inclusive else values > low
        if high is not None:
            mask &= values <= high if inclusive else values < high
    return mask


def filter_cells(adata, ranges, inclusive=False):
    """Apply QC range filters to cells

    Genes are left untouched, so metrics stay valid and re-applying the same
    ranges to the result removes nothing.

    Args:
        adata: AnnData object with QC metrics
        ranges: Mapping of metric name to (low, high)
        inclusive: Whether bounds themselves pass

    Returns:
        Filtered AnnData object (copy)
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    mask = qc_mask(adata.obs, ranges, inclusive=inclusive)
    adata = adata[mask].copy()

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")
    return adata


def summarize_qc(adata, groupby="dataset"):
    """Median QC metrics per group

    Args:
        adata: AnnData object with QC metrics
        groupby: obs column to group by

    Returns:
        DataFrame with one row per group plus the cell count
    """
    metrics = [m for m in QC_METRICS if m in adata.obs]
    if groupby not in adata.obs:
        summary = adata.obs[metrics].median().to_frame("all").T
        summary["n_cells"] = adata.n_obs
        return summary

    summary = adata.obs.groupby(groupby, observed=True)[metrics].median()
    summary["n_cells"] = adata.obs.groupby(groupby, observed=True).size()
    return summary
