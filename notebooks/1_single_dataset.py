# %% [markdown]
# # Single-Dataset Analysis
#
# Interactive walkthrough of the single-dataset track: ingestion, QC, normalization,
# cell-cycle scoring, clustering, annotation and marker detection.
#
# Every threshold comes from `scanalysis/params.py`. Look at the density plots of
# each run before trusting the defaults, and put changes in a JSON override file.
#
# ---

# %% [markdown]
# ## Table of Contents
#
# 1. [Setup](#setup)
# 2. [Parameters](#parameters)
# 3. [Stage 1: Ingestion](#stage1)
# 4. [Stage 2: Quality Control](#stage2)
# 5. [Stage 3: Normalization & Cell Cycle](#stage3)
# 6. [Stage 4: PCA, t-SNE & UMAP](#stage4)
# 7. [Stage 5: Clustering](#stage5)
# 8. [Stage 6: Cell Type Annotation](#stage6)
# 9. [Stage 7: Marker Genes & Export](#stage7)

# %% [markdown]
# ## 1. Setup

# %%
# !pip install -q -e ..

import warnings
import matplotlib
import scanpy as sc
from pathlib import Path

from scanalysis.params import load_params, get_filter_summary
from scanalysis.data_loader import load_counts, create_dataset
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
from scanalysis.cell_cycle import S_GENES, G2M_GENES, convert_human_to_mouse, score_cell_cycle
from scanalysis.annotation import (
    fetch_marker_db,
    prepare_gene_sets,
    annotate_clusters_by_markers,
    compare_annotations,
    plot_marker_genes,
)
from scanalysis.reference_annotation import fetch_reference, annotate_by_reference
from scanalysis.differential_expression import find_all_markers, top_markers, save_marker_bundle
from scanalysis.plotting import (
    plot_qc_densities,
    plot_qc_violins,
    plot_elbow,
    plot_embeddings,
    plot_resolution_sweep,
)

warnings.filterwarnings('ignore', category=FutureWarning)
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor='white')
matplotlib.rcParams['figure.figsize'] = (8, 6)

print("✓ Setup complete!")
print(f"Scanpy version: {sc.__version__}")

# %% [markdown]
# ## 2. Parameters

# %%
DATA_PATH = "../data/dataset1.h5"  # 🔧 UPDATE THIS PATH
DATASET_NAME = "dataset1"
CONFIG_PATH = None  # JSON override file, e.g. "params.json"
REFERENCE = None  # labeled .h5ad atlas (path or URL) for reference annotation

params = load_params(CONFIG_PATH)
print(get_filter_summary(params, "single"))

# %% [markdown]
# ## 3. Stage 1: Ingestion
#
# Cells with fewer than `min_features` genes are dropped first, then genes seen
# in fewer than `min_cells` of the remaining cells.

# %%
raw = load_counts(DATA_PATH)
adata = create_dataset(raw, DATASET_NAME, **params['ingest'])
adata

# %% [markdown]
# ## 4. Stage 2: Quality Control
#
# The red lines are the current thresholds. Bounds are exclusive.

# %%
adata = calculate_qc_metrics(adata, patterns=params['gene_patterns'])
ranges = params['cell_filters']['single']

plot_qc_densities(adata, ranges)
plot_qc_violins(adata, ranges)

# %%
adata = filter_cells(adata, ranges)
summarize_qc(adata)

# %% [markdown]
# ## 5. Stage 3: Normalization & Cell Cycle
#
# Pearson residuals of the variable genes end up in `.X`; the log-normalized
# full gene space in `.raw` is used for scoring, annotation and markers.
# The cell-cycle lists are human symbols and are translated for mouse data.

# %%
adata = normalize_and_scale(
    adata,
    n_top_genes=params['normalization']['n_top_genes'],
    theta=params['normalization']['theta'],
    target_sum=params['normalization']['target_sum'],
)

# %%
s_genes = convert_human_to_mouse(S_GENES)
g2m_genes = convert_human_to_mouse(G2M_GENES)
score_cell_cycle(adata, s_genes=s_genes, g2m_genes=g2m_genes)

# Optional: regress out the cell-cycle difference
# regress_covariates(adata, ["cc_difference"])

# %% [markdown]
# ## 6. Stage 4: PCA, t-SNE & UMAP

# %%
N_PCS = params['reduction']['n_pcs']['single']

run_pca(adata, n_comps=params['reduction']['n_comps'])
plot_elbow(adata, n_pcs=N_PCS)

# %%
run_tsne(adata, n_pcs=N_PCS, n_components=params['reduction']['tsne_components'])
run_umap(adata, n_pcs=N_PCS, n_neighbors=params['reduction']['umap_neighbors'])

# %% [markdown]
# ## 7. Stage 5: Clustering
#
# Look at the sweep before settling on a resolution.

# %%
build_snn_graph(
    adata,
    n_neighbors=params['clustering']['n_neighbors'],
    prune=params['clustering']['prune_snn'],
    n_pcs=N_PCS,
)
sweep = sweep_resolutions(adata, params['clustering']['resolution_grid'], n_pcs=N_PCS)
plot_resolution_sweep(sweep)
sweep

# %%
cluster_cells(adata, resolution=params['clustering']['resolution']['single'])
plot_embeddings(adata, basis='umap', color=['clusters', 'phase'])

# %% [markdown]
# ## 8. Stage 6: Cell Type Annotation
#
# Two independent annotators. Their labels are kept side by side; compare them
# by hand.

# %%
db = fetch_marker_db(params['annotation']['marker_db_url'])
gene_sets = prepare_gene_sets(db, tissue=params['annotation']['tissue'])
annotate_clusters_by_markers(adata, gene_sets, groupby='clusters')
plot_marker_genes(adata, gene_sets, groupby='clusters')

# %%
if REFERENCE is not None:
    reference = fetch_reference(REFERENCE, label_key=params['annotation']['reference_label_key'])
    annotate_by_reference(adata, reference, groupby='clusters')
    print(compare_annotations(adata, 'sctype', 'singler').to_string())

plot_embeddings(adata, basis='umap', color=['clusters', 'sctype', 'singler'])

# %% [markdown]
# ## 9. Stage 7: Marker Genes & Export

# %%
markers = find_all_markers(adata, groupby='clusters', **{
    k: params['de'][k] for k in ('method', 'min_pct', 'logfc_threshold', 'only_pos')
})
top_markers(markers, n=5)

# %%
save_marker_bundle({DATASET_NAME: markers}, Path("results") / f"{DATASET_NAME}_markers.pkl")
adata.write(Path("results") / f"{DATASET_NAME}.h5ad")
print("✓ Done")
