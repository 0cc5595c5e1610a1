#!/usr/bin/env python3
"""
Plotting utilities for single-cell RNA-seq analysis
QC distributions with threshold lines, PCA elbow plots and embeddings
"""

import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
import matplotlib.pyplot as plt

QC_TITLES = {
    "n_genes_by_counts": "Genes per cell",
    "total_counts": "UMIs per cell",
    "percent_spikein": "Spike-in %",
    "percent_mt": "Mitochondrial %",
    "percent_ribo": "Ribosomal %",
    "log10_genes_per_umi": "log10 genes / log10 UMIs",
}


def _save_or_show(fig, save_dir, filename):
    if save_dir:
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()


def _threshold_lines(ax, bounds, vertical):
    if bounds is None:
        return
    line = ax.axvline if vertical else ax.axhline
    for bound in bounds:
        if bound is not None:
            line(bound, color="red", linestyle="--", alpha=0.6)


def plot_qc_violins(adata, ranges=None, groupby="dataset", save_dir=None, prefix="qc"):
    """Violin plot of every QC metric per dataset with the filter bounds

    Args:
        adata: AnnData object with QC metrics
        ranges: Filter ranges drawn as horizontal lines (optional)
        groupby: obs column used on the x axis
        save_dir: Directory to save plots (optional)
        prefix: File name prefix
    """
    print("Plotting QC violins...")
    ranges = ranges or {}
    metrics = [m for m in QC_TITLES if m in adata.obs]
    qc_data = adata.obs[metrics].copy()
    qc_data[groupby] = adata.obs[groupby].astype(str) if groupby in adata.obs else "all"

    n_cols = 3
    n_rows = int(np.ceil(len(metrics) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(5 * n_cols, 4 * n_rows))
    axes = np.atleast_1d(axes).flatten()

    for metric, ax in zip(metrics, axes):
        sns.violinplot(data=qc_data, x=groupby, y=metric, ax=ax, color="skyblue", inner="box")
        _threshold_lines(ax, ranges.get(metric), vertical=False)
        ax.set_title(QC_TITLES[metric])
        ax.set_xlabel("")
        ax.set_ylabel("")

    for ax in axes[len(metrics):]:
        ax.axis("off")

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"{prefix}_violin_plots.png")
    return fig


def plot_qc_densities(adata, ranges=None, groupby="dataset", save_dir=None, prefix="qc"):
    """Density of every QC metric per dataset with the filter bounds

    These are the plots the cell filter thresholds are read from.
    """
    print("Plotting QC densities...")
    ranges = ranges or {}
    metrics = [m for m in QC_TITLES if m in adata.obs]
    qc_data = adata.obs[metrics].copy()
    hue = None
    if groupby in adata.obs:
        qc_data[groupby] = adata.obs[groupby].astype(str)
        hue = groupby

    n_cols = 3
    n_rows = int(np.ceil(len(metrics) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(5 * n_cols, 4 * n_rows))
    axes = np.atleast_1d(axes).flatten()

    for metric, ax in zip(metrics, axes):
        log_scale = metric in ("n_genes_by_counts", "total_counts")
        sns.kdeplot(
            data=qc_data,
            x=metric,
            hue=hue,
            fill=True,
            alpha=0.3,
            log_scale=log_scale,
            common_norm=False,
            warn_singular=False,
            ax=ax,
        )
        _threshold_lines(ax, ranges.get(metric), vertical=True)
        ax.set_title(QC_TITLES[metric])
        ax.set_xlabel("")

    for ax in axes[len(metrics):]:
        ax.axis("off")

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"{prefix}_density_plots.png")
    return fig


def plot_qc_scatter(adata, save_dir=None, prefix="qc"):
    """UMIs vs genes per cell, colored by spike-in percentage"""
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.scatter(
        adata,
        x="total_counts",
        y="n_genes_by_counts",
        color="percent_spikein",
        ax=axes[0],
        show=False,
    )
    sc.pl.scatter(
        adata, x="n_genes_by_counts", y="log10_genes_per_umi", ax=axes[1], show=False
    )

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"{prefix}_scatter_plots.png")
    return fig


def plot_elbow(adata, n_pcs=None, save_dir=None, prefix="pca"):
    """Standard deviation per principal component with the chosen cut-off"""
    variance = np.asarray(adata.uns["pca"]["variance"])
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, len(variance) + 1), np.sqrt(variance), "o", markersize=4)
    if n_pcs is not None:
        ax.axvline(n_pcs + 0.5, color="red", linestyle="--", alpha=0.6, label=f"{n_pcs} PCs")
        ax.legend()
    ax.set_xlabel("PC")
    ax.set_ylabel("Standard deviation")
    ax.set_title("Elbow plot")

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"{prefix}_elbow.png")
    return fig


def plot_embeddings(adata, basis="umap", color=("clusters",), save_dir=None, prefix=None):
    """One embedding panel per obs column

    Args:
        adata: AnnData object with obsm[f"X_{basis}"]
        basis: Embedding name (umap, tsne, umap_cca, ...)
        color: obs columns to color by; missing ones are skipped
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        prefix: File name prefix (default: basis)
    """
    print(f"Plotting {basis} embeddings...")
    color = [c for c in color if c in adata.obs]
    if not color:
        print("  Nothing to color by, skipping")
        return None

    fig, axes = plt.subplots(1, len(color), figsize=(6 * len(color), 5), squeeze=False)
    for key, ax in zip(color, axes[0]):
        on_data = key.startswith("clusters") and adata.obs[key].nunique() < 30
        sc.pl.embedding(
            adata,
            basis=basis,
            color=key,
            legend_loc="on data" if on_data else "right margin",
            title=key,
            ax=ax,
            show=False,
        )

    plt.tight_layout()
    _save_or_show(fig, save_dir, f"{prefix or basis}_embeddings.png")
    return fig


def plot_resolution_sweep(metrics, save_dir=None):
    """Number of clusters and silhouette against resolution"""
    metrics = pd.DataFrame(metrics)
    fig, ax1 = plt.subplots(figsize=(6, 4))
    ax1.plot(metrics["resolution"], metrics["n_clusters"], "o-", color="tab:blue")
    ax1.set_xlabel("Resolution")
    ax1.set_ylabel("Clusters", color="tab:blue")

    ax2 = ax1.twinx()
    ax2.plot(metrics["resolution"], metrics["silhouette"], "s--", color="tab:orange")
    ax2.set_ylabel("Silhouette", color="tab:orange")

    plt.tight_layout()
    _save_or_show(fig, save_dir, "resolution_sweep.png")
    return fig
