#!/usr/bin/env python3
"""
End-to-end analysis tracks

analyze_dataset: one dataset from counts to annotated clusters and markers
integrate_datasets: two datasets merged, re-filtered and integrated three ways
"""

import anndata
from pathlib import Path

from scanalysis.params import load_params
from scanalysis.data_loader import load_counts, create_dataset, merge_datasets
from scanalysis.qc_utils import calculate_qc_metrics, filter_cells, summarize_qc
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
from scanalysis.cell_cycle import S_GENES, G2M_GENES, convert_orthologs, score_cell_cycle
from scanalysis.annotation import (
    fetch_marker_db,
    prepare_gene_sets,
    annotate_clusters_by_markers,
    plot_marker_genes,
)
from scanalysis.reference_annotation import fetch_reference, annotate_by_reference
from scanalysis.differential_expression import find_all_markers
from scanalysis.integration import integrate
from scanalysis.plotting import (
    plot_qc_densities,
    plot_qc_violins,
    plot_qc_scatter,
    plot_elbow,
    plot_embeddings,
    plot_resolution_sweep,
)


def _plots_dir(plots_dir):
    if plots_dir is None:
        return None
    plots_dir = Path(plots_dir)
    plots_dir.mkdir(parents=True, exist_ok=True)
    return plots_dir


def _ingest(path, name, params):
    adata = load_counts(path)
    return create_dataset(
        adata,
        name,
        min_cells=params["ingest"]["min_cells"],
        min_features=params["ingest"]["min_features"],
    )


def _quality_control(adata, params, track, plots_dir):
    ranges = params["cell_filters"][track]
    adata = calculate_qc_metrics(adata, patterns=params["gene_patterns"])
    if plots_dir:
        plot_qc_densities(adata, ranges, save_dir=plots_dir, prefix=f"{track}_qc")
        plot_qc_violins(adata, ranges, save_dir=plots_dir, prefix=f"{track}_qc")
        plot_qc_scatter(adata, save_dir=plots_dir, prefix=f"{track}_qc")

    adata = filter_cells(adata, ranges)
    print(summarize_qc(adata).to_string())
    return adata


def _normalize(adata, params, batch_key=None):
    norm = params["normalization"]
    return normalize_and_scale(
        adata,
        n_top_genes=norm["n_top_genes"],
        theta=norm["theta"],
        clip=norm["clip"],
        target_sum=norm["target_sum"],
        batch_key=batch_key,
    )


def _cell_cycle(adata, params):
    cc = params["cell_cycle"]
    s_genes, g2m_genes = S_GENES, G2M_GENES
    if cc["translate_orthologs"]:
        kwargs = {
            "source": cc["source_organism"],
            "target": cc["target_organism"],
            "url": cc["ortholog_url"],
            "timeout": cc["timeout"],
        }
        s_genes = convert_orthologs(S_GENES, **kwargs)
        g2m_genes = convert_orthologs(G2M_GENES, **kwargs)
    return score_cell_cycle(
        adata, s_genes=s_genes, g2m_genes=g2m_genes, random_state=params["random_state"]
    )


def _resolve_reference(reference, params):
    if reference is None:
        reference = params["annotation"]["reference"]
    if reference is None or isinstance(reference, anndata.AnnData):
        return reference
    return fetch_reference(
        reference,
        label_key=params["annotation"]["reference_label_key"],
        timeout=params["annotation"]["timeout"],
    )


def _resolve_gene_sets(gene_sets, params):
    if gene_sets is not None:
        return gene_sets
    annotation = params["annotation"]
    db = fetch_marker_db(annotation["marker_db_url"], timeout=annotation["timeout"])
    return prepare_gene_sets(db, tissue=annotation["tissue"])


def _annotate(adata, groupby, params, gene_sets, reference, suffix="", plots_dir=None):
    """Run both annotators on one clustering; results stay side by side"""
    annotation = params["annotation"]
    annotate_clusters_by_markers(
        adata,
        gene_sets,
        groupby=groupby,
        key_added=f"sctype{suffix}",
        unknown_fraction=annotation["unknown_fraction"],
    )
    if plots_dir:
        plot_marker_genes(adata, gene_sets, groupby=groupby, save_dir=plots_dir)

    if reference is None:
        print("No reference atlas given, skipping reference annotation")
        return
    annotate_by_reference(
        adata,
        reference,
        label_key=annotation["reference_label_key"],
        groupby=groupby,
        key_added=f"singler{suffix}",
        fine_tune=annotation["fine_tune"],
        tune_thresh=annotation["tune_thresh"],
        quantile=annotation["quantile"],
    )


def _find_markers(adata, groupby, params):
    de = params["de"]
    return find_all_markers(
        adata,
        groupby=groupby,
        method=de["method"],
        min_pct=de["min_pct"],
        logfc_threshold=de["logfc_threshold"],
        only_pos=de["only_pos"],
    )


def analyze_dataset(
    path,
    name,
    params=None,
    plots_dir=None,
    reference=None,
    gene_sets=None,
    sweep=False,
):
    """Single-dataset track

    ingest -> QC -> normalization -> cell cycle -> (regression) -> PCA ->
    t-SNE/UMAP -> SNN clustering -> marker and reference annotation -> markers

    Args:
        path: Count matrix file or directory
        name: Dataset label
        params: Parameter dictionary (default: load_params())
        plots_dir: Directory for figures (optional)
        reference: Labeled AnnData, or path/URL of one (optional)
        gene_sets: Prepared marker sets (default: downloaded marker database)
        sweep: Also cluster over the resolution grid and plot the outcome

    Returns:
        Tuple of (adata, markers DataFrame)
    """
    params = params or load_params()
    plots_dir = _plots_dir(plots_dir)
    track = "single"
    n_pcs = params["reduction"]["n_pcs"][track]
    random_state = params["random_state"]

    print(f"\n=== Single-dataset analysis: {name} ===")
    adata = _ingest(path, name, params)
    adata = _quality_control(adata, params, track, plots_dir)

    adata = _normalize(adata, params)
    adata = _cell_cycle(adata, params)
    regress_covariates(adata, params["normalization"]["vars_to_regress"])

    run_pca(adata, n_comps=params["reduction"]["n_comps"], random_state=random_state)
    if plots_dir:
        plot_elbow(adata, n_pcs=n_pcs, save_dir=plots_dir, prefix=track)

    run_tsne(
        adata,
        n_pcs=n_pcs,
        n_components=params["reduction"]["tsne_components"],
        perplexity=params["reduction"]["perplexity"],
        random_state=random_state,
    )
    run_umap(
        adata,
        n_pcs=n_pcs,
        n_neighbors=params["reduction"]["umap_neighbors"],
        random_state=random_state,
    )

    build_snn_graph(
        adata,
        n_neighbors=params["clustering"]["n_neighbors"],
        prune=params["clustering"]["prune_snn"],
        n_pcs=n_pcs,
    )
    if sweep:
        metrics = sweep_resolutions(
            adata, params["clustering"]["resolution_grid"], n_pcs=n_pcs
        )
        print(metrics.to_string(index=False))
        if plots_dir:
            plot_resolution_sweep(metrics, save_dir=plots_dir)
    cluster_cells(
        adata,
        resolution=params["clustering"]["resolution"][track],
        random_state=random_state,
    )

    gene_sets = _resolve_gene_sets(gene_sets, params)
    reference = _resolve_reference(reference, params)
    _annotate(adata, "clusters", params, gene_sets, reference, plots_dir=plots_dir)

    markers = _find_markers(adata, "clusters", params)

    if plots_dir:
        color = ["clusters", "sctype", "singler", "phase"]
        plot_embeddings(adata, basis="umap", color=color, save_dir=plots_dir, prefix=track)
        plot_embeddings(
            adata, basis="tsne", color=color, save_dir=plots_dir, prefix=f"{track}_tsne"
        )

    print(f"Single-dataset analysis of {name} complete: {adata.n_obs:,} cells")
    return adata, markers


def integrate_datasets(
    paths,
    names,
    params=None,
    plots_dir=None,
    reference=None,
    gene_sets=None,
):
    """Merged track

    Both datasets are ingested, merged and filtered again with the merged
    thresholds, then corrected with every configured integration method.
    Each corrected space gets its own clustering, annotation and markers.

    Returns:
        Tuple of (adata, dict of method -> markers DataFrame)
    """
    if len(paths) != len(names):
        raise ValueError("paths and names must have the same length")

    params = params or load_params()
    plots_dir = _plots_dir(plots_dir)
    track = "merged"
    batch_key = params["integration"]["batch_key"]
    n_pcs = params["reduction"]["n_pcs"][track]
    random_state = params["random_state"]

    print(f"\n=== Integrated analysis: {', '.join(names)} ===")
    datasets = {name: _ingest(path, name, params) for path, name in zip(paths, names)}
    adata = merge_datasets(datasets, batch_key=batch_key)
    adata = _quality_control(adata, params, track, plots_dir)

    adata = _normalize(adata, params, batch_key=batch_key)
    run_pca(adata, n_comps=params["reduction"]["n_comps"], random_state=random_state)
    if plots_dir:
        plot_elbow(adata, n_pcs=n_pcs, save_dir=plots_dir, prefix=track)

    # Uncorrected view for comparison
    run_umap(
        adata,
        n_pcs=n_pcs,
        n_neighbors=params["reduction"]["umap_neighbors"],
        random_state=random_state,
    )

    corrected = integrate(adata, params=params, track=track)

    gene_sets = _resolve_gene_sets(gene_sets, params)
    reference = _resolve_reference(reference, params)

    markers = {}
    for method in corrected:
        groupby = f"clusters_{method}"
        _annotate(adata, groupby, params, gene_sets, reference, suffix=f"_{method}")
        if adata.obs[groupby].nunique() < 2:
            print(f"Only one cluster after {method} integration, skipping markers")
        else:
            markers[method] = _find_markers(adata, groupby, params)

        if plots_dir:
            color = [batch_key, groupby, f"sctype_{method}", f"singler_{method}"]
            plot_embeddings(
                adata, basis=f"umap_{method}", color=color, save_dir=plots_dir
            )

    if plots_dir:
        plot_embeddings(
            adata,
            basis="umap",
            color=[batch_key],
            save_dir=plots_dir,
            prefix="unintegrated",
        )

    print(f"Integrated analysis complete: {adata.n_obs:,} cells")
    return adata, markers
