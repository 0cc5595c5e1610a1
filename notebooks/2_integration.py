# %% [markdown]
# # Two-Dataset Integration
#
# Both datasets are ingested, merged (union of genes, prefixed barcodes), filtered
# again with the merged thresholds and corrected three ways: CCA anchors, mutual
# nearest neighbors and Harmony. Each corrected space is clustered and annotated
# on its own; no method is picked automatically.
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
import matplotlib
import scanpy as sc
from pathlib import Path

from scanalysis.params import load_params, get_filter_summary
from scanalysis.data_loader import load_counts, create_dataset, merge_datasets
from scanalysis.qc_utils import calculate_qc_metrics, filter_cells, summarize_qc
from scanalysis.processing import normalize_and_scale, run_pca, run_umap
from scanalysis.integration import integrate
from scanalysis.annotation import (
    fetch_marker_db,
    prepare_gene_sets,
    annotate_clusters_by_markers,
    compare_annotations,
)
from scanalysis.differential_expression import find_all_markers, save_marker_bundle
from scanalysis.plotting import plot_qc_densities, plot_elbow, plot_embeddings

warnings.filterwarnings('ignore', category=FutureWarning)
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor='white')
matplotlib.rcParams['figure.figsize'] = (8, 6)

# %% [markdown]
# ## 2. Parameters

# %%
DATA = {
    "dataset1": "../data/dataset1.h5",  # 🔧 UPDATE THESE PATHS
    "dataset2": "../data/dataset2.h5",
}
CONFIG_PATH = None

params = load_params(CONFIG_PATH)
BATCH_KEY = params['integration']['batch_key']
print(get_filter_summary(params, "merged"))

# %% [markdown]
# ## 3. Ingest & Merge
#
# Each dataset gets the ingestion filters on its own, before merging.

# %%
datasets = {
    name: create_dataset(load_counts(path), name, **params['ingest'])
    for name, path in DATA.items()
}
adata = merge_datasets(datasets, batch_key=BATCH_KEY)
adata

# %% [markdown]
# ## 4. Second QC Pass
#
# Spike-in fractions shift after merging; compare the two densities before
# settling on the merged thresholds.

# %%
adata = calculate_qc_metrics(adata, patterns=params['gene_patterns'])
ranges = params['cell_filters']['merged']
plot_qc_densities(adata, ranges, groupby=BATCH_KEY)

# %%
adata = filter_cells(adata, ranges)
summarize_qc(adata, groupby=BATCH_KEY)

# %% [markdown]
# ## 5. Normalization & PCA

# %%
N_PCS = params['reduction']['n_pcs']['merged']

adata = normalize_and_scale(
    adata,
    n_top_genes=params['normalization']['n_top_genes'],
    theta=params['normalization']['theta'],
    batch_key=BATCH_KEY,
)
run_pca(adata, n_comps=params['reduction']['n_comps'])
plot_elbow(adata, n_pcs=N_PCS)

# %%
# Before correction
run_umap(adata, n_pcs=N_PCS)
plot_embeddings(adata, basis='umap', color=[BATCH_KEY])

# %% [markdown]
# ## 6. Integration
#
# Results per method: `X_umap_<method>` and `clusters_<method>`.

# %%
corrected = integrate(adata, params=params, track='merged')

for method in corrected:
    plot_embeddings(adata, basis=f'umap_{method}', color=[BATCH_KEY, f'clusters_{method}'])

# %% [markdown]
# ## 7. Annotation & Markers per Method

# %%
db = fetch_marker_db(params['annotation']['marker_db_url'])
gene_sets = prepare_gene_sets(db, tissue=params['annotation']['tissue'])

markers = {}
for method in corrected:
    annotate_clusters_by_markers(
        adata, gene_sets, groupby=f'clusters_{method}', key_added=f'sctype_{method}'
    )
    markers[f'integrated_{method}'] = find_all_markers(adata, groupby=f'clusters_{method}')

compare_annotations(adata, 'sctype_cca', 'sctype_harmony')

# %%
save_marker_bundle(markers, Path("results") / "integrated_markers.pkl")
adata.write(Path("results") / "integrated.h5ad")
print("✓ Done")
