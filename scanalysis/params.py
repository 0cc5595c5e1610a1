#!/usr/bin/env python3
"""
Analysis parameters for the two-dataset scRNA-seq workflow

This file centralizes all thresholds used in the pipeline. Values were picked
by eye from the QC density plots and elbow plots of each run; override them
with a JSON file (see load_params) rather than editing the defaults.
"""

import copy
import json
from pathlib import Path

RANDOM_STATE = 42

# Applied when the raw matrix is wrapped into a dataset
INGEST_FILTERS = {
    "min_cells": 3,  # Keep genes detected in at least this many cells
    "min_features": 50,  # Keep cells with at least this many detected genes
}

# Gene name patterns used for per-cell percentages
GENE_PATTERNS = {
    "spikein_pattern": r"^ERCC-",  # ERCC spike-in controls
    "mt_pattern": r"^mt-",  # Mouse mitochondrial genes (use "^MT-" for human)
    "ribo_pattern": r"^Rp[sl]",  # Ribosomal protein genes
}

# Cell-level filters, one table per track. Bounds are exclusive: (low, high)
# keeps low < value < high, None leaves that side open.
CELL_FILTERS = {
    "single": {
        "n_genes_by_counts": (1000, 7500),
        "percent_spikein": (None, 5),
        "log10_genes_per_umi": (0.45, 0.7),
    },
    "merged": {
        "n_genes_by_counts": (1000, 7500),
        "percent_spikein": (None, 8),  # looser after merging, see density plots
        "log10_genes_per_umi": (0.45, 0.7),
    },
}

# Pearson residuals of the analytic negative binomial model
NORMALIZATION = {
    "n_top_genes": 3000,
    "theta": 100,  # NB overdispersion
    "clip": None,  # None clips residuals at sqrt(n_cells)
    "target_sum": 1e4,  # Library size for the log-normalized raw slot
    "vars_to_regress": [],  # e.g. ["cc_difference"]
}

REDUCTION = {
    "n_comps": 50,
    "n_pcs": {"single": 20, "merged": 30},  # from the elbow plots
    "tsne_components": 3,
    "perplexity": 30,
    "umap_neighbors": 30,
}

CLUSTERING = {
    "n_neighbors": 20,  # k of the KNN graph, self included
    "prune_snn": 1 / 15,  # drop SNN edges with Jaccard below this
    "resolution": {"single": 0.1, "merged": 0.4},
    "resolution_grid": [0.1, 0.2, 0.4, 0.6, 0.8, 1.0],
}

CELL_CYCLE = {
    "translate_orthologs": True,
    "source_organism": "hsapiens",
    "target_organism": "mmusculus",
    "ortholog_url": "https://biit.cs.ut.ee/gprofiler/api/orth/orth/",
    "timeout": 60,
}

DE_PARAMS = {
    "method": "wilcoxon",
    "min_pct": 0.25,  # Minimum detection fraction in either group
    "logfc_threshold": 0.25,  # Minimum |log2 fold change|
    "only_pos": True,
}

ANNOTATION = {
    "marker_db_url": (
        "https://raw.githubusercontent.com/IanevskiAleksandr/sc-type/master/"
        "ScTypeDB_full.xlsx"
    ),
    "tissue": "Immune system",
    "unknown_fraction": 0.25,  # clusters scoring below n_cells / 4 are Unknown
    "reference": None,  # path or URL of a labeled .h5ad atlas
    "reference_label_key": "label_main",
    "fine_tune": True,
    "tune_thresh": 0.05,
    "quantile": 0.8,
    "timeout": 120,
}

INTEGRATION = {
    "batch_key": "dataset",
    "methods": ["cca", "mnn", "harmony"],
    "reference": None,  # first dataset when None
    "n_cca_components": 30,
    "k_anchor": 5,  # CCA anchors
    "k_anchor_mnn": 20,  # MNN pairs in PCA space
    "k_score": 30,
    "k_weight": 100,
    "sd_weight": 1.0,
    "max_iter_harmony": 20,
}

INTEGRATION_METHODS = ("cca", "mnn", "harmony")
TRACKS = ("single", "merged")


def get_params():
    """Return a fresh copy of the default parameter tables"""
    return copy.deepcopy(
        {
            "random_state": RANDOM_STATE,
            "ingest": INGEST_FILTERS,
            "gene_patterns": GENE_PATTERNS,
            "cell_filters": CELL_FILTERS,
            "normalization": NORMALIZATION,
            "reduction": REDUCTION,
            "clustering": CLUSTERING,
            "cell_cycle": CELL_CYCLE,
            "de": DE_PARAMS,
            "annotation": ANNOTATION,
            "integration": INTEGRATION,
        }
    )


def _merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_params(path=None):
    """Load defaults, optionally overridden by a JSON file

    Only the keys present in the file are replaced; nested tables are merged.
    JSON lists given for QC ranges are turned back into tuples.

    Args:
        path: Path to a JSON override file (optional)

    Returns:
        Validated parameter dictionary
    """
    params = get_params()
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Parameter file not found: {path}")
        with open(path) as f:
            _merge(params, json.load(f))

    for track, ranges in params["cell_filters"].items():
        params["cell_filters"][track] = {
            metric: tuple(bounds) if isinstance(bounds, list) else bounds
            for metric, bounds in ranges.items()
        }

    validate_params(params)
    return params


def validate_params(params):
    """Validate that parameter values make sense"""
    errors = []

    for key in ("min_cells", "min_features"):
        if params["ingest"][key] < 0:
            errors.append(f"ingest.{key} must be non-negative")

    for track, ranges in params["cell_filters"].items():
        for metric, bounds in ranges.items():
            if metric == "inclusive":
                continue
            if not isinstance(bounds, tuple) or len(bounds) != 2:
                errors.append(f"{track}.{metric} must be a (low, high) pair")
                continue
            low, high = bounds
            if low is not None and high is not None and low >= high:
                errors.append(f"{track}.{metric}: low bound must be below high bound")
            if metric.startswith("percent_"):
                for bound in bounds:
                    if bound is not None and not 0 <= bound <= 100:
                        errors.append(f"{track}.{metric} must be between 0 and 100")

    reduction = params["reduction"]
    for track, n_pcs in reduction["n_pcs"].items():
        if not 0 < n_pcs <= reduction["n_comps"]:
            errors.append(f"reduction.n_pcs[{track}] must be in (0, n_comps]")
    if reduction["tsne_components"] not in (2, 3):
        errors.append("reduction.tsne_components must be 2 or 3")

    clustering = params["clustering"]
    if clustering["n_neighbors"] < 2:
        errors.append("clustering.n_neighbors must be at least 2")
    if not 0 <= clustering["prune_snn"] < 1:
        errors.append("clustering.prune_snn must be in [0, 1)")
    for track, resolution in clustering["resolution"].items():
        if resolution <= 0:
            errors.append(f"clustering.resolution[{track}] must be positive")

    if params["normalization"]["n_top_genes"] <= 0:
        errors.append("normalization.n_top_genes must be positive")

    de = params["de"]
    if not 0 <= de["min_pct"] <= 1:
        errors.append("de.min_pct must be between 0 and 1")
    if de["logfc_threshold"] < 0:
        errors.append("de.logfc_threshold must be non-negative")

    annotation = params["annotation"]
    if not 0 < annotation["quantile"] <= 1:
        errors.append("annotation.quantile must be in (0, 1]")
    if annotation["unknown_fraction"] < 0:
        errors.append("annotation.unknown_fraction must be non-negative")

    for key in ("k_anchor", "k_anchor_mnn", "k_score", "k_weight"):
        if params["integration"][key] < 1:
            errors.append(f"integration.{key} must be at least 1")

    unknown = set(params["integration"]["methods"]) - set(INTEGRATION_METHODS)
    if unknown:
        errors.append(f"Unknown integration methods: {sorted(unknown)}")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


def _format_range(bounds):
    low, high = bounds
    if low is None:
        return f"< {high}"
    if high is None:
        return f"> {low}"
    return f"{low} - {high}"


def get_filter_summary(params, track="single"):
    """Return a formatted summary of the filter settings of one track"""
    summary = [
        f"=== QC Filter Settings ({track}) ===",
        "\nIngestion filters:",
        f"  - Min cells per gene: {params['ingest']['min_cells']}",
        f"  - Min genes per cell: {params['ingest']['min_features']}",
        "\nCell-level filters (exclusive bounds):",
    ]
    for metric, bounds in params["cell_filters"][track].items():
        if metric == "inclusive":
            continue
        summary.append(f"  - {metric}: {_format_range(bounds)}")

    summary.extend(
        [
            "\nDownstream:",
            f"  - Variable genes: {params['normalization']['n_top_genes']}",
            f"  - PCs: {params['reduction']['n_pcs'][track]}",
            f"  - Resolution: {params['clustering']['resolution'][track]}",
        ]
    )
    return "\n".join(summary)
