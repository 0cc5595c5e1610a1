#!/usr/bin/env python3
"""
Batch integration utilities for merged single-cell RNA-seq datasets
Handles CCA + anchor correction, mutual nearest neighbor correction and
Harmony, each followed by its own embedding and clustering
"""

import numpy as np
import pandas as pd
import scanpy as sc
from harmonypy import run_harmony as harmonize
from scipy.sparse.linalg import LinearOperator, svds
from sklearn.neighbors import NearestNeighbors
from scanalysis.params import INTEGRATION, get_params
from scanalysis.processing import build_snn_graph, cluster_cells, run_umap

CORRECTED_KEYS = {
    "cca": "X_cca_corrected",
    "mnn": "X_mnn",
    "harmony": "X_pca_harmony",
}


def _batches(adata, batch_key):
    if batch_key not in adata.obs:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs")
    return list(pd.unique(adata.obs[batch_key].astype(str)))


def _standardize(X):
    X = X - X.mean(axis=0)
    std = X.std(axis=0, ddof=1)
    std[std == 0] = 1.0
    return X / std


def _l2_normalize(X):
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def find_anchors(
    coords,
    ref_idx,
    query_idx,
    k_anchor=INTEGRATION["k_anchor"],
    k_score=INTEGRATION["k_score"],
):
    """Pair reference and query cells that are mutual nearest neighbors

    Each pair is scored by the overlap of the two cells' neighborhoods in the
    joint space (k_score nearest cells from each side). Scores are rescaled
    between the 1st and 90th percentile and clipped to [0, 1]; pairs with a
    zero score are dropped.

    Args:
        coords: Cells x dims array in a shared space
        ref_idx: Row indices of the reference cells
        query_idx: Row indices of the query cells
        k_anchor: Neighbors searched in the other dataset
        k_score: Neighbors used for scoring

    Returns:
        DataFrame with ref, query (row indices into coords) and score
    """
    ref_idx = np.asarray(ref_idx)
    query_idx = np.asarray(query_idx)
    R = coords[ref_idx]
    Q = coords[query_idx]

    k_rq = min(k_anchor, len(query_idx))
    k_qr = min(k_anchor, len(ref_idx))
    rq = NearestNeighbors(n_neighbors=k_rq).fit(Q).kneighbors(R, return_distance=False)
    qr = NearestNeighbors(n_neighbors=k_qr).fit(R).kneighbors(Q, return_distance=False)

    query_to_ref = [set(row) for row in qr]
    pairs = [
        (i, j) for i in range(len(ref_idx)) for j in rq[i] if i in query_to_ref[j]
    ]
    if not pairs:
        return pd.DataFrame(columns=["ref", "query", "score"])

    # Joint neighborhoods, as global row indices
    ks_r = min(k_score, len(ref_idx))
    ks_q = min(k_score, len(query_idx))
    nn_ref = NearestNeighbors(n_neighbors=ks_r).fit(R)
    nn_query = NearestNeighbors(n_neighbors=ks_q).fit(Q)

    def neighborhoods(X):
        from_ref = ref_idx[nn_ref.kneighbors(X, return_distance=False)]
        from_query = query_idx[nn_query.kneighbors(X, return_distance=False)]
        return np.hstack([from_ref, from_query])

    hood_r = neighborhoods(R)
    hood_q = neighborhoods(Q)

    raw = np.array(
        [len(np.intersect1d(hood_r[i], hood_q[j], assume_unique=True)) for i, j in pairs],
        dtype=float,
    )
    low, high = np.percentile(raw, [1, 90])
    if high > low:
        scores = np.clip((raw - low) / (high - low), 0, 1)
    else:
        scores = np.ones_like(raw)

    anchors = pd.DataFrame(
        {
            "ref": ref_idx[[i for i, _ in pairs]],
            "query": query_idx[[j for _, j in pairs]],
            "score": scores,
        }
    )
    return anchors[anchors["score"] > 0].reset_index(drop=True)


def correct_with_anchors(
    coords,
    ref_idx,
    query_idx,
    anchors,
    k_weight=INTEGRATION["k_weight"],
    sd_weight=INTEGRATION["sd_weight"],
    values=None,
):
    """Move query cells onto the reference using anchor correction vectors

    Every anchor carries the vector from its query cell to its reference cell.
    A query cell moves by the average vector of its ``k_weight`` nearest
    anchors, weighted by anchor score and a Gaussian of the distance scaled to
    the farthest of those anchors. Neighbors and weights come from ``coords``;
    the vectors are taken from ``values`` when given (e.g. the expression
    matrix behind a CCA space), otherwise from ``coords`` itself.

    Returns:
        Corrected copy of values (or coords); reference rows are unchanged
    """
    if len(anchors) == 0:
        raise ValueError("No anchors found between reference and query")

    coords = np.asarray(coords, dtype=float)
    values = coords if values is None else np.asarray(values, dtype=float)
    if values.shape[0] != coords.shape[0]:
        raise ValueError("values must have one row per row of coords")

    query_idx = np.asarray(query_idx)
    anchor_ref = anchors["ref"].to_numpy()
    anchor_query = anchors["query"].to_numpy()
    vectors = values[anchor_ref] - values[anchor_query]

    k = min(k_weight, len(anchors))
    nn = NearestNeighbors(n_neighbors=k).fit(coords[anchor_query])
    dist, idx = nn.kneighbors(coords[query_idx])

    scale = dist[:, -1:].copy()
    scale[scale == 0] = 1.0
    weights = np.exp(-((dist / scale) ** 2) / (2 * sd_weight**2))
    weights *= anchors["score"].to_numpy()[idx]
    totals = weights.sum(axis=1, keepdims=True)
    totals[totals == 0] = 1.0
    weights /= totals

    shift = np.einsum("ck,ckd->cd", weights, vectors[idx])
    corrected = values.copy()
    corrected[query_idx] += shift
    return corrected


def run_cca(
    adata,
    batch_key=INTEGRATION["batch_key"],
    n_components=INTEGRATION["n_cca_components"],
    n_pcs=30,
    key_added="X_cca",
    k_anchor=INTEGRATION["k_anchor"],
    k_score=INTEGRATION["k_score"],
    k_weight=INTEGRATION["k_weight"],
    sd_weight=INTEGRATION["sd_weight"],
    random_state=0,
):
    """Canonical correlation analysis between two batches plus anchor correction

    Each batch's residual matrix is standardized per gene; the truncated SVD
    of their cross-product gives one set of canonical vectors per batch.
    Vectors are scaled by their singular values and L2-normalized per cell,
    and anchors are found in that space. The anchors then correct the
    residual matrix of the second batch onto the first, and the corrected
    matrix gets its own PCA for clustering.

    Side effects:
        - obsm[key_added]: shared CCA space
        - layers[f"{key_added}_corrected"]: corrected residuals
        - obsm[f"{key_added}_corrected"]: PCA of the corrected residuals
        - uns["cca"]: singular values, anchor count and parameters

    Returns:
        AnnData object
    """
    batches = _batches(adata, batch_key)
    if len(batches) != 2:
        raise ValueError(f"CCA integration needs exactly two batches, got {len(batches)}")

    print(f"Running CCA between {batches[0]} and {batches[1]}...")
    labels = adata.obs[batch_key].astype(str).to_numpy()
    ref_idx = np.flatnonzero(labels == batches[0])
    query_idx = np.flatnonzero(labels == batches[1])

    X = adata.X.toarray() if hasattr(adata.X, "toarray") else np.asarray(adata.X)
    X = X.astype(np.float64)
    X1 = _standardize(X[ref_idx])
    X2 = _standardize(X[query_idx])

    # SVD of X1 @ X2.T without forming the cells x cells matrix
    cross = LinearOperator(
        (X1.shape[0], X2.shape[0]),
        matvec=lambda v: X1 @ (X2.T @ v),
        rmatvec=lambda u: X2 @ (X1.T @ u),
        dtype=np.float64,
    )
    k = min(n_components, min(X1.shape[0], X2.shape[0]) - 1)
    U, s, Vt = svds(cross, k=k, random_state=random_state)
    order = np.argsort(s)[::-1]
    U, s, V = U[:, order], s[order], Vt[order].T

    # unit-norm columns would give noise components the same weight as signal
    embedding = np.zeros((adata.n_obs, k))
    embedding[ref_idx] = _l2_normalize(U * s)
    embedding[query_idx] = _l2_normalize(V * s)
    adata.obsm[key_added] = embedding

    anchors = find_anchors(embedding, ref_idx, query_idx, k_anchor=k_anchor, k_score=k_score)
    print(f"  {len(anchors):,} anchors")
    corrected = correct_with_anchors(
        embedding,
        ref_idx,
        query_idx,
        anchors,
        k_weight=k_weight,
        sd_weight=sd_weight,
        values=X,
    )
    adata.layers[f"{key_added}_corrected"] = corrected.astype(np.float32)

    n_comps = min(n_pcs, min(corrected.shape) - 1)
    adata.obsm[f"{key_added}_corrected"] = sc.pp.pca(
        corrected, n_comps=n_comps, svd_solver="arpack", random_state=random_state
    )
    adata.uns["cca"] = {
        "singular_values": s,
        "reference": batches[0],
        "n_anchors": len(anchors),
        "params": {
            "n_components": k,
            "n_pcs": n_comps,
            "k_anchor": k_anchor,
            "k_score": k_score,
        },
    }
    return adata


def run_mnn(
    adata,
    batch_key=INTEGRATION["batch_key"],
    use_rep="X_pca",
    n_pcs=None,
    reference=INTEGRATION["reference"],
    k_anchor=INTEGRATION["k_anchor_mnn"],
    k_score=INTEGRATION["k_score"],
    k_weight=INTEGRATION["k_weight"],
    sd_weight=INTEGRATION["sd_weight"],
    key_added="X_mnn",
):
    """Mutual nearest neighbor correction in PCA space

    The reference batch (first one by default) is kept fixed and the other
    batches are corrected onto the growing integrated set one at a time,
    in order of appearance.
    """
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")
    batches = _batches(adata, batch_key)
    if reference is None:
        reference = batches[0]
    if reference not in batches:
        raise ValueError(f"Reference batch '{reference}' not in {batches}")

    order = [reference] + [b for b in batches if b != reference]
    print(f"Running MNN correction ({' -> '.join(order)})...")

    coords = np.asarray(adata.obsm[use_rep], dtype=float)
    if n_pcs is not None:
        coords = coords[:, :n_pcs]
    labels = adata.obs[batch_key].astype(str).to_numpy()

    integrated = np.flatnonzero(labels == reference)
    n_anchors = []
    for batch in order[1:]:
        query_idx = np.flatnonzero(labels == batch)
        anchors = find_anchors(
            coords, integrated, query_idx, k_anchor=k_anchor, k_score=k_score
        )
        print(f"  {batch}: {len(anchors):,} mutual pairs")
        coords = correct_with_anchors(
            coords, integrated, query_idx, anchors, k_weight=k_weight, sd_weight=sd_weight
        )
        integrated = np.concatenate([integrated, query_idx])
        n_anchors.append(len(anchors))

    adata.obsm[key_added] = coords
    adata.uns["mnn"] = {"order": order, "n_anchors": n_anchors, "k_anchor": k_anchor}
    return adata


def run_harmony(
    adata,
    batch_key=INTEGRATION["batch_key"],
    basis="X_pca",
    adjusted_basis="X_pca_harmony",
    n_pcs=None,
    max_iter_harmony=INTEGRATION["max_iter_harmony"],
    random_state=0,
):
    """Harmony soft-clustering correction of the PCA embedding"""
    if basis not in adata.obsm:
        raise KeyError(f"Representation '{basis}' not found in adata.obsm")
    _batches(adata, batch_key)

    print("Running Harmony...")
    X = np.asarray(adata.obsm[basis], dtype=np.float64)
    if n_pcs is not None:
        X = X[:, :n_pcs]

    ho = harmonize(
        X,
        meta_data=adata.obs,
        vars_use=[batch_key],
        max_iter_harmony=max_iter_harmony,
        random_state=random_state,
        verbose=False,
    )
    # harmonypy releases differ in the orientation of Z_corr
    Z = np.asarray(ho.Z_corr)
    if Z.shape != X.shape:
        Z = Z.T
    if Z.shape != X.shape:
        raise ValueError(f"Unexpected Harmony output shape {Z.shape}, expected {X.shape}")

    adata.obsm[adjusted_basis] = Z
    adata.uns["harmony"] = {
        "basis": basis,
        "n_pcs": X.shape[1],
        "max_iter_harmony": max_iter_harmony,
    }
    return adata


def integrate(adata, methods=None, params=None, track="merged"):
    """Run every integration method and re-cluster on each corrected space

    Results per method: obsm[f"X_umap_{method}"], obsp/uns graph
    f"snn_{method}" and obs[f"clusters_{method}"]. No method is preferred.

    Args:
        adata: Merged, normalized AnnData object with X_pca
        methods: Subset of ("cca", "mnn", "harmony"); default from params
        params: Parameter dictionary from load_params
        track: Which per-track settings (PCs, resolution) to use

    Returns:
        Dict of method -> obsm key of the corrected embedding
    """
    if params is None:
        params = get_params()
    integration = params["integration"]
    methods = list(methods or integration["methods"])
    n_pcs = params["reduction"]["n_pcs"][track]
    batch_key = integration["batch_key"]
    random_state = params["random_state"]

    for method in methods:
        print(f"\n=== Integration: {method} ===")
        if method == "cca":
            run_cca(
                adata,
                batch_key=batch_key,
                n_components=integration["n_cca_components"],
                n_pcs=n_pcs,
                k_anchor=integration["k_anchor"],
                k_score=integration["k_score"],
                k_weight=integration["k_weight"],
                sd_weight=integration["sd_weight"],
                random_state=random_state,
            )
        elif method == "mnn":
            run_mnn(
                adata,
                batch_key=batch_key,
                n_pcs=n_pcs,
                reference=integration["reference"],
                k_anchor=integration["k_anchor_mnn"],
                k_score=integration["k_score"],
                k_weight=integration["k_weight"],
                sd_weight=integration["sd_weight"],
            )
        elif method == "harmony":
            run_harmony(
                adata,
                batch_key=batch_key,
                n_pcs=n_pcs,
                max_iter_harmony=integration["max_iter_harmony"],
                random_state=random_state,
            )
        else:
            raise ValueError(f"Unknown integration method: {method}")

        rep = CORRECTED_KEYS[method]
        run_umap(
            adata,
            n_pcs=None,
            n_neighbors=params["reduction"]["umap_neighbors"],
            use_rep=rep,
            key_added=f"X_umap_{method}",
            random_state=random_state,
        )
        build_snn_graph(
            adata,
            n_neighbors=params["clustering"]["n_neighbors"],
            prune=params["clustering"]["prune_snn"],
            use_rep=rep,
            key_added=f"snn_{method}",
        )
        cluster_cells(
            adata,
            resolution=params["clustering"]["resolution"][track],
            neighbors_key=f"snn_{method}",
            key_added=f"clusters_{method}",
            random_state=random_state,
        )

    return {method: CORRECTED_KEYS[method] for method in methods}
