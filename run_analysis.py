#!/usr/bin/env python3
"""
Single-cell RNA-seq QC, clustering, annotation and integration of two datasets

This script performs:
1. Ingestion of each count matrix with minimal cell/gene filters
2. Quality control with the thresholds in scanalysis/params.py
3. Normalization, dimensionality reduction and SNN clustering
4. Marker-based and reference-based cell type annotation
5. Marker detection per cluster
6. Merging and CCA / MNN / Harmony integration (integrated track)

python run_analysis.py --data data/ds1.h5 data/ds2.h5 --names ds1 ds2 --track both
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from scanalysis.params import load_params, get_filter_summary
from scanalysis.workflow import analyze_dataset, integrate_datasets
from scanalysis.differential_expression import save_marker_bundle

# Configure scanpy
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor="white")

warnings.filterwarnings("ignore", category=FutureWarning)


def main(
    data,
    names,
    track="both",
    config=None,
    reference=None,
    plots_dir_path="plots",
    output_dir="results",
    orthologs=True,
    sweep=False,
):
    """Main analysis pipeline

    Args:
        data: Count matrix paths, one per dataset
        names: Dataset labels, same order as data
        track: "single", "integrated" or "both"
        config: JSON file overriding the default parameters (optional)
        reference: Labeled reference .h5ad path or URL (optional)
        plots_dir_path: Directory where plots will be saved
        output_dir: Directory for the marker bundle and .h5ad files
        orthologs: Translate cell-cycle genes to the target organism
        sweep: Tabulate clusterings over the resolution grid

    Returns:
        Dict of result name -> AnnData
    """
    print("Starting single-cell analysis pipeline...")
    if len(data) != len(names):
        raise ValueError("--data and --names must have the same number of entries")

    params = load_params(config)
    params["cell_cycle"]["translate_orthologs"] = orthologs

    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Save-only mode
    matplotlib.use("Agg")

    results = {}
    markers = {}

    if track in ("single", "both"):
        print("\n" + get_filter_summary(params, "single") + "\n")
        for path, name in zip(data, names):
            adata, markers[name] = analyze_dataset(
                path,
                name,
                params=params,
                plots_dir=plots_dir / name,
                reference=reference,
                sweep=sweep,
            )
            results[name] = adata

    if track in ("integrated", "both"):
        print("\n" + get_filter_summary(params, "merged") + "\n")
        adata, integrated_markers = integrate_datasets(
            data,
            names,
            params=params,
            plots_dir=plots_dir / "integrated",
            reference=reference,
        )
        results["integrated"] = adata
        for method, table in integrated_markers.items():
            markers[f"integrated_{method}"] = table

    save_marker_bundle(markers, output_dir / "markers.pkl")
    for name, adata in results.items():
        output_path = output_dir / f"{name}.h5ad"
        adata.write(output_path)
        print(f"Saved annotated data to {output_path}")

    print("Analysis complete!")
    return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="scRNA-seq QC, clustering, annotation and integration"
    )
    parser.add_argument(
        "--data", nargs="+", required=True, help="Count matrices (.h5, .h5ad, mtx dir, .csv)"
    )
    parser.add_argument(
        "--names", nargs="+", required=True, help="Dataset labels, same order as --data"
    )
    parser.add_argument(
        "--track",
        choices=["single", "integrated", "both"],
        default="both",
        help="Which analysis to run (default: both)",
    )
    parser.add_argument("--config", default=None, help="JSON parameter override file")
    parser.add_argument(
        "--reference", default=None, help="Labeled reference .h5ad (path or URL)"
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--output",
        default="results",
        help="Directory for markers.pkl and .h5ad files (default: 'results')",
    )
    parser.add_argument(
        "--no-orthologs",
        action="store_true",
        help="Use the human cell-cycle gene symbols as they are",
    )
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="Also cluster the single-dataset track over the resolution grid",
    )
    args = parser.parse_args()

    main(
        args.data,
        args.names,
        track=args.track,
        config=args.config,
        reference=args.reference,
        plots_dir_path=args.plots_dir,
        output_dir=args.output,
        orthologs=not args.no_orthologs,
        sweep=args.sweep,
    )
