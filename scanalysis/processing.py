#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, variable gene selection, PCA, t-SNE/UMAP and
SNN graph clustering
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.manifold import TSNE
from sklearn.metrics import silhouette_score
from sklearn.neighbors import NearestNeighbors


def normalize_and_scale(
    adata,
    n_top_genes=3000,
    theta=100,
    clip=None,
    target_sum=1e4,
    batch_key=None,
):
    """Normalize counts with analytic Pearson residuals

    A negative binomial model with the cell's total count as offset is fitted
    for every gene; genes are ranked by residual variance and the top
    ``n_top_genes`` are kept as the active feature set.

    The full gene space is kept log-normalized (CP10k + log1p) in ``.raw`` for
    scoring, annotation and differential expression.

    Args:
        adata: AnnData object with raw counts
        n_top_genes: Number of highly variable genes
        theta: Negative binomial overdispersion
        clip: Residual clipping value (None = sqrt(n_cells))
        target_sum: Library size for the log-normalized raw slot
        batch_key: Select variable genes per batch and combine ranks (optional)

    Returns:
        New AnnData object restricted to the variable genes, residuals in .X
    """
    print("Normalizing data (Pearson residuals)...")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    n_top_genes = min(int(n_top_genes), adata.n_vars)
    sc.experimental.pp.highly_variable_genes(
        adata,
        flavor="pearson_residuals",
        n_top_genes=n_top_genes,
        theta=theta,
        clip=clip,
        layer="counts",
        batch_key=batch_key,
    )
    print(f"  Selected {int(adata.var['highly_variable'].sum()):,} variable genes")

    # Log-normalized full gene space
    adata.X = adata.layers["counts"].astype(np.float32)
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata

    adata = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    adata.X = adata.layers["counts"].astype(np.float32)
    sc.experimental.pp.normalize_pearson_residuals(adata, theta=theta, clip=clip)

    adata.uns["normalization"] = {
        "method": "pearson_residuals",
        "theta": theta,
        "n_top_genes": n_top_genes,
        "target_sum": target_sum,
    }

    print(
        f"  Residuals: {adata.n_obs:,} cells x {adata.n_vars:,} genes "
        f"(raw: {adata.raw.n_vars:,} genes)"
    )
    return adata


def regress_covariates(adata, keys):
    """Regress obs covariates (e.g. cc_difference) out of the residuals"""
    keys = [keys] if isinstance(keys, str) else list(keys)
    if not keys:
        return adata
    missing = [k for k in keys if k not in adata.obs]
    if missing:
        raise KeyError(f"Covariates not found in adata.obs: {missing}")

    print(f"Regressing out {', '.join(keys)}...")
    sc.pp.regress_out(adata, keys)
    return adata


def run_pca(adata, n_comps=50, random_state=0):
    """Run PCA on the variable gene residuals

    Args:
        adata: Normalized AnnData object
        n_comps: Number of components to compute
        random_state: Seed for the ARPACK start vector

    Returns:
        AnnData object with obsm["X_pca"] and varm["PCs"]
    """
    print("Running PCA...")
    n_comps = min(n_comps, min(adata.shape) - 1)
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    ratio = adata.uns["pca"]["variance_ratio"]
    print(f"  First 5 PCs explain {ratio[:5].sum() * 100:.1f}% of variance")
    return adata


def run_tsne(adata, n_pcs=20, n_components=3, perplexity=30, random_state=1):
    """t-SNE on the first ``n_pcs`` principal components

    Only for visualization; nothing downstream reads the t-SNE coordinates.
    """
    print(f"Running {n_components}-D t-SNE on {n_pcs} PCs...")
    X = adata.obsm["X_pca"][:, :n_pcs]
    # sklearn needs perplexity < n_samples
    perplexity = min(perplexity, max(1.0, (adata.n_obs - 1) / 3))

    tsne = TSNE(
        n_components=n_components,
        perplexity=perplexity,
        init="pca",
        random_state=random_state,
    )
    adata.obsm["X_tsne"] = tsne.fit_transform(X)
    adata.uns["tsne"] = {
        "params": {
            "n_pcs": n_pcs,
            "n_components": n_components,
            "perplexity": perplexity,
        }
    }
    return adata


def run_umap(
    adata,
    n_pcs=20,
    n_neighbors=30,
    use_rep="X_pca",
    key_added="X_umap",
    random_state=42,
):
    """2-D UMAP from its own KNN graph in ``use_rep`` space"""
    print(f"Running UMAP on {use_rep}...")
    neighbors_key = f"{key_added}_neighbors"
    sc.pp.neighbors(
        adata,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        n_pcs=n_pcs,
        use_rep=use_rep,
        key_added=neighbors_key,
        random_state=random_state,
    )
    sc.tl.umap(
        adata,
        neighbors_key=neighbors_key,
        key_added=key_added,
        random_state=random_state,
    )
    return adata


def build_snn_graph(
    adata, n_neighbors=20, prune=1 / 15, use_rep="X_pca", n_pcs=None, key_added="snn"
):
    """Shared nearest neighbor graph

    Each cell is linked to its ``n_neighbors`` nearest cells (itself included);
    an edge between two cells is weighted by the Jaccard index of their
    neighborhoods and dropped below ``prune``.

    Args:
        adata: AnnData object with the embedding in obsm
        n_neighbors: Neighborhood size k
        prune: Minimum Jaccard index kept
        use_rep: obsm key of the embedding
        n_pcs: Number of leading dimensions to use (None = all)
        key_added: Graph name; results in obsp[f"{key_added}_connectivities"],
            obsp[f"{key_added}_distances"] and uns[key_added]

    Returns:
        AnnData object with the graph stored
    """
    print(f"Building SNN graph (k={n_neighbors}) on {use_rep}...")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")

    X = adata.obsm[use_rep]
    if n_pcs is not None:
        X = X[:, :n_pcs]
    k = min(n_neighbors, adata.n_obs)

    nn = NearestNeighbors(n_neighbors=k).fit(X)
    knn = nn.kneighbors_graph(X, mode="connectivity").tocsr()
    distances = nn.kneighbors_graph(X, mode="distance").tocsr()

    snn = (knn @ knn.T).tocsr().astype(np.float64)
    snn.data = snn.data / (2 * k - snn.data)
    snn.data[snn.data < prune] = 0
    snn = snn - sparse.diags(snn.diagonal())
    snn.eliminate_zeros()

    conn_key = f"{key_added}_connectivities"
    dist_key = f"{key_added}_distances"
    adata.obsp[conn_key] = sparse.csr_matrix(snn)
    adata.obsp[dist_key] = distances
    adata.uns[key_added] = {
        "connectivities_key": conn_key,
        "distances_key": dist_key,
        "params": {
            "n_neighbors": k,
            "method": "snn",
            "prune": prune,
            "use_rep": use_rep,
            "n_pcs": X.shape[1],
        },
    }

    print(f"  {snn.nnz // 2:,} edges after pruning")
    return adata


def cluster_cells(
    adata, resolution=0.8, neighbors_key="snn", key_added="clusters", random_state=0
):
    """Modularity-optimizing community detection on a stored graph

    Labels go to a new obs column; other resolutions' columns are untouched.
    """
    if neighbors_key not in adata.uns:
        raise KeyError(f"Graph '{neighbors_key}' not found; run build_snn_graph first")

    print(f"Clustering at resolution {resolution}...")
    sc.tl.leiden(
        adata,
        resolution=resolution,
        neighbors_key=neighbors_key,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )
    adata.uns[key_added]["params"]["neighbors_key"] = neighbors_key

    n_clusters = adata.obs[key_added].nunique()
    print(f"  {n_clusters} clusters in obs['{key_added}']")
    return adata


def sweep_resolutions(
    adata,
    resolutions,
    neighbors_key="snn",
    use_rep="X_pca",
    n_pcs=None,
    min_cluster_size=20,
):
    """Cluster at several resolutions and tabulate the outcome

    Helps picking a resolution that gives the expected number of clusters;
    no resolution is chosen here.

    Side effects:
    - Adds columns ``clusters_res{r}`` to ``adata.obs`` for each resolution

    Returns:
    - DataFrame with resolution, n_clusters, silhouette, small_cluster_fraction
    """
    X = adata.obsm[use_rep]
    if n_pcs is not None:
        X = X[:, :n_pcs]

    metrics = []
    for res in resolutions:
        key = f"clusters_res{res:g}"
        cluster_cells(
            adata, resolution=float(res), neighbors_key=neighbors_key, key_added=key
        )
        labels = adata.obs[key].astype(str)

        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < adata.n_obs:
            counts = labels.value_counts()
            small_frac = float(counts[counts < min_cluster_size].sum() / len(labels))
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    return pd.DataFrame(metrics)
