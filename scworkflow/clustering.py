#!/usr/bin/env python3
"""
Graph construction, clustering and embedding for single-cell RNA-seq analysis
Handles the kNN/SNN graph, modularity clustering, resolution sweeps and UMAP
"""

import random

import igraph as ig
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.metrics import silhouette_score

from scworkflow import schema
from scworkflow.errors import MalformedInputError

# Spacing of the resolution ladder clusters are refined along
RESOLUTION_STEP = 0.05


def compute_snn(distances, prune=1 / 15):
    """Shared-nearest-neighbor graph from a kNN distance matrix

    Each cell's neighborhood is its kNN set plus itself; the edge weight is the
    Jaccard index of the two neighborhoods. Weights below ``prune`` and self
    loops are removed.

    Args:
        distances: Sparse (cells x cells) kNN distance matrix
        prune: Minimum Jaccard weight kept

    Returns:
        Symmetric CSR matrix with weights in [0, 1] and an empty diagonal
    """
    n = distances.shape[0]
    knn = sparse.csr_matrix(distances, copy=True)
    knn.data[:] = 1.0
    knn = (knn + sparse.identity(n, format="csr")).tocsr()
    knn.data[:] = 1.0

    sizes = np.asarray(knn.sum(axis=1)).ravel()
    shared = (knn @ knn.T).tocoo()
    rows, cols = shared.row, shared.col
    jaccard = shared.data / (sizes[rows] + sizes[cols] - shared.data)

    keep = (rows != cols) & (jaccard >= prune)
    snn = sparse.csr_matrix((jaccard[keep], (rows[keep], cols[keep])), shape=(n, n))
    snn.sort_indices()
    return snn


def find_neighbors(adata, n_neighbors=20, n_pcs=None, random_state=0, prune=1 / 15, use_rep=schema.OBSM_PCA):
    """Build the kNN graph in component space and its SNN re-weighting

    Args:
        adata: AnnData object with components in obsm[use_rep]
        n_neighbors: k for the kNN graph
        n_pcs: Number of leading components used (None = all)
        random_state: Seed for the approximate neighbor search
        prune: Jaccard pruning threshold for the SNN graph
        use_rep: obsm key holding the reduced space

    Returns:
        AnnData object with distances/connectivities and obsp["snn"]
    """
    if use_rep not in adata.obsm:
        raise MalformedInputError(f"No reduced space '{use_rep}' found", identifiers=[use_rep])

    print("Computing neighborhood graph...")
    k = int(min(n_neighbors, adata.n_obs))
    sc.pp.neighbors(
        adata,
        n_neighbors=k,
        n_pcs=n_pcs,
        use_rep=use_rep,
        random_state=int(random_state),
    )
    adata.obsp[schema.OBSP_SNN] = compute_snn(adata.obsp["distances"], prune=prune)
    schema.set_annotation(adata, "knn_k", k)
    return adata


def _relabel_by_size(labels):
    """Renumber labels 0..n-1 by decreasing size, ties by first appearance"""
    labels = pd.Series(np.asarray(labels).astype(str))
    first_seen = {lab: i for i, lab in reversed(list(enumerate(labels)))}
    sizes = labels.value_counts()
    ordered = sorted(sizes.index, key=lambda lab: (-sizes[lab], first_seen[lab]))
    mapping = {old: str(new) for new, old in enumerate(ordered)}
    return pd.Categorical(
        labels.map(mapping).to_numpy(), categories=[str(i) for i in range(len(ordered))]
    )


def _ladder_steps(resolution):
    """Ladder rung a resolution maps to (rounded to RESOLUTION_STEP, at least one)"""
    return max(1, int(np.floor(float(resolution) / RESOLUTION_STEP + 0.5)))


def _subgraph(snn, members):
    block = sparse.triu(snn[members][:, members], k=1).tocoo()
    return ig.Graph(
        n=len(members),
        edges=list(zip(block.row.tolist(), block.col.tolist())),
        edge_attrs={"weight": block.data.tolist()},
    )


def _split_clusters(snn, membership, degrees, gamma):
    """Let every cluster split under the whole-graph modularity at ``gamma``

    Restricted to one cluster, modularity is CPM with node weights equal to
    the degrees in the full graph and resolution gamma / 2m, so each cluster
    is optimized on its own subgraph. Clusters are never merged.
    """
    refined = np.empty_like(membership)
    next_label = 0
    for label in np.unique(membership):
        members = np.flatnonzero(membership == label)
        parts = np.zeros(len(members), dtype=int)
        if len(members) > 1:
            parts = np.asarray(
                _subgraph(snn, members).community_leiden(
                    objective_function="CPM",
                    weights="weight",
                    resolution=gamma,
                    node_weights=degrees[members].tolist(),
                    n_iterations=-1,
                ).membership
            )
        refined[members] = parts + next_label
        next_label += int(parts.max()) + 1
    return refined


def _leiden_ladder(snn, n_steps, random_state=0):
    """Yield ``(step, membership)`` for resolutions RESOLUTION_STEP * step

    Each rung refines the previous one and is seeded by (random_state, step)
    alone, so a run to a higher rung passes through exactly the partitions of
    any shorter run.
    """
    degrees = np.asarray(snn.sum(axis=1)).ravel()
    two_m = degrees.sum()
    if two_m == 0:
        raise MalformedInputError("SNN graph has no edges", identifiers=[schema.OBSP_SNN])

    membership = np.zeros(snn.shape[0], dtype=int)
    try:
        for step in range(1, n_steps + 1):
            seed = np.random.SeedSequence([int(random_state), step]).generate_state(1)[0]
            ig.set_random_number_generator(random.Random(int(seed)))
            membership = _split_clusters(snn, membership, degrees, step * RESOLUTION_STEP / two_m)
            yield step, membership
    finally:
        ig.set_random_number_generator(random)


def _snn_matrix(adata):
    if schema.OBSP_SNN not in adata.obsp:
        raise MalformedInputError("Build the SNN graph first", identifiers=[schema.OBSP_SNN])
    return sparse.csr_matrix(adata.obsp[schema.OBSP_SNN])


def find_clusters(adata, resolution=0.5, random_state=0, key_added=schema.OBS_CLUSTER):
    """Partition the SNN graph by modularity optimization

    Clusters are grown down a ladder of resolutions RESOLUTION_STEP apart.
    The first rung is a Leiden run (igraph) on the whole graph; every later
    rung lets each cluster split further under the same modularity objective
    at the higher resolution. The requested resolution is rounded to the
    nearest rung. Since a rung only ever splits clusters, a higher resolution
    never gives fewer clusters on the same graph and seed.

    Args:
        adata: AnnData object with obsp["snn"]
        resolution: Modularity resolution
        random_state: Seed for the community search
        key_added: obs column receiving the labels

    Returns:
        AnnData object with a categorical cluster column
    """
    snn = _snn_matrix(adata)

    print(f"Clustering (resolution={resolution})...")
    membership = None
    for _, membership in _leiden_ladder(snn, _ladder_steps(resolution), random_state):
        pass
    adata.obs[key_added] = _relabel_by_size(membership)

    n_clusters = len(adata.obs[key_added].cat.categories)
    if key_added == schema.OBS_CLUSTER:
        schema.set_annotation(adata, "cluster_resolution", float(resolution))
    print(f"  Found {n_clusters} clusters")
    return adata


def _score_partition(space, labels, min_cluster_size):
    sizes = pd.Series(labels).value_counts()
    n_cells = len(labels)
    silhouette = np.nan
    if 1 < len(sizes) < n_cells:
        silhouette = float(silhouette_score(space, np.asarray(labels)))
    small = sizes[sizes < max(2, int(min_cluster_size))].sum() if len(sizes) > 1 else 0
    return {
        "n_clusters": int(len(sizes)),
        "silhouette": silhouette,
        "small_cluster_fraction": float(small) / n_cells,
    }


def choose_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    n_pcs=None,
    random_state=0,
    tolerance=0.02,
):
    """Cluster at every grid resolution and keep the best-separated one

    All grid values are read off a single ladder run, so the candidate
    clusterings are nested. A candidate qualifies when its silhouette width in
    component space is within ``tolerance`` of the best; among those the one
    with the fewest cells in clusters under ``min_cluster_size`` wins, then
    the one with fewer clusters, then the lower resolution. Without any
    scorable candidate the lowest resolution is used.

    Labels for every tested value go to obs["cluster_<res>"], the scores to
    uns["resolution_sweep"], and the winner to obs["cluster"].

    Returns:
        The chosen resolution
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.1), 2)
    grid = sorted({float(r) for r in resolution_grid})

    space = adata.obsm[schema.OBSM_PCA]
    if n_pcs is not None:
        space = space[:, : int(n_pcs)]

    by_step = {}
    for res in grid:
        by_step.setdefault(_ladder_steps(res), []).append(res)

    rows = []
    for step, membership in _leiden_ladder(_snn_matrix(adata), max(by_step), random_state):
        for res in by_step.get(step, ()):
            labels = _relabel_by_size(membership)
            adata.obs[f"{schema.OBS_CLUSTER}_{res:.2f}"] = labels
            rows.append({"resolution": res, **_score_partition(space, labels, min_cluster_size)})
    sweep = pd.DataFrame(rows).sort_values("resolution", kind="mergesort").reset_index(drop=True)

    scored = sweep.dropna(subset=["silhouette"])
    if scored.empty:
        chosen = float(sweep["resolution"].iloc[0])
    else:
        close = scored[scored["silhouette"] >= scored["silhouette"].max() - tolerance]
        ranked = close.sort_values(
            ["small_cluster_fraction", "n_clusters", "resolution"], kind="mergesort"
        )
        chosen = float(ranked["resolution"].iloc[0])

    adata.uns["resolution_sweep"] = sweep
    adata.obs[schema.OBS_CLUSTER] = adata.obs[f"{schema.OBS_CLUSTER}_{chosen:.2f}"].copy()
    schema.set_annotation(adata, "cluster_resolution", chosen)
    print(f"Chosen resolution: {chosen} ({len(sweep)} tested)")
    return chosen


def run_umap(adata, n_components=2, random_state=0):
    """Embed cells in 2 (or 3) dimensions from the neighbor graph

    Purely presentational: cluster labels are left untouched.
    """
    if "neighbors" not in adata.uns:
        raise MalformedInputError("Compute neighbors before UMAP", identifiers=["neighbors"])

    print("Running UMAP...")
    sc.tl.umap(adata, n_components=int(n_components), random_state=int(random_state))
    return adata
