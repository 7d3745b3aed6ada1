#!/usr/bin/env python3
"""
Anchor-based integration of conditions for single-cell RNA-seq analysis

Datasets are placed in a shared canonical-correlation space, mutual nearest
neighbors across datasets become anchors, anchors are scored by neighborhood
overlap, and every query cell is shifted by a distance-weighted average of the
anchor correction vectors.
"""

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.neighbors import NearestNeighbors
from sklearn.utils.extmath import randomized_svd

from scworkflow import schema
from scworkflow.errors import InsufficientAnchorsError, MalformedInputError
from scworkflow.processing import find_variable_features


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _standardize(X):
    """Per-gene z-score across cells; constant genes become zero"""
    X = np.asarray(X, dtype=np.float64)
    std = X.std(axis=0, ddof=1) if X.shape[0] > 1 else np.ones(X.shape[1])
    std[std == 0] = 1.0
    return (X - X.mean(axis=0)) / std


def _l2_rows(X):
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def _names(datasets, names):
    if names is None:
        names = [f"dataset_{i}" for i in range(len(datasets))]
    names = [str(n) for n in names]
    if len(names) != len(datasets):
        raise MalformedInputError("One name per dataset is required", identifiers=names)
    return names


def split_by_condition(adata, condition_key=schema.OBS_CONDITION):
    """Split a container into one AnnData per condition

    Returns:
        List of (condition label, AnnData) pairs in category order
    """
    if condition_key not in adata.obs:
        raise MalformedInputError(
            f"Condition column '{condition_key}' not found", identifiers=[condition_key]
        )
    labels = adata.obs[condition_key]
    order = labels.cat.categories if hasattr(labels, "cat") else pd.unique(labels)
    return [
        (str(label), adata[(labels == label).to_numpy()].copy())
        for label in order
        if (labels == label).any()
    ]


def select_integration_features(datasets, n_features=2000):
    """Rank genes by how many datasets find them variable

    Genes must be present in every dataset. Ties on the number of datasets are
    broken by the median variable rank, then by gene order.

    Args:
        datasets: List of log-normalized AnnData objects with a counts layer
        n_features: Number of features to return

    Returns:
        List of gene identifiers
    """
    print("Selecting integration features...")

    for adata in datasets:
        if "variable_rank" not in adata.var:
            find_variable_features(adata, n_features)

    common = datasets[0].var_names
    for adata in datasets[1:]:
        common = common[common.isin(adata.var_names)]
    if len(common) == 0:
        raise MalformedInputError("Datasets share no genes")

    ranks = pd.DataFrame(
        {i: adata.var["variable_rank"].reindex(common) for i, adata in enumerate(datasets)}
    )
    table = pd.DataFrame(
        {
            "n_datasets": ranks.notna().sum(axis=1),
            "median_rank": ranks.median(axis=1, skipna=True),
            "order": np.arange(len(common)),
        },
        index=common,
    )
    table = table[table["n_datasets"] > 0]
    table = table.sort_values(
        ["n_datasets", "median_rank", "order"], ascending=[False, True, True], kind="stable"
    )
    features = list(table.index[: int(n_features)])
    print(f"  Selected {len(features)} integration features")
    return features


def _pair_anchors(X1, X2, n_dims, k_anchor, k_filter, k_score, random_state):
    """Find and score anchors between two (cells x features) matrices"""
    n1, n2 = X1.shape[0], X2.shape[0]
    S1, S2 = _standardize(X1), _standardize(X2)

    # Canonical correlation vectors via SVD of the cross product
    n_cc = max(1, min(int(n_dims), n1 - 1, n2 - 1))
    U, _, Vt = randomized_svd(S1 @ S2.T, n_components=n_cc, random_state=random_state)
    emb1, emb2 = _l2_rows(U), _l2_rows(Vt.T)

    # Mutual nearest neighbors
    nn12 = NearestNeighbors(n_neighbors=min(k_anchor, n2)).fit(emb2).kneighbors(
        emb1, return_distance=False
    )
    nn21 = NearestNeighbors(n_neighbors=min(k_anchor, n1)).fit(emb1).kneighbors(
        emb2, return_distance=False
    )
    partners = [set(row) for row in nn21]
    pairs = [(i, j) for i in range(n1) for j in sorted(nn12[i]) if i in partners[j]]
    if not pairs:
        return np.empty((0, 2), dtype=int), np.empty(0)
    pairs = np.array(pairs, dtype=int)

    # Keep anchors whose partner is close in expression space too
    if k_filter < n2:
        E1, E2 = _l2_rows(np.asarray(X1, dtype=float)), _l2_rows(np.asarray(X2, dtype=float))
        cells = np.unique(pairs[:, 0])
        nn = NearestNeighbors(n_neighbors=int(k_filter)).fit(E2).kneighbors(
            E1[cells], return_distance=False
        )
        allowed = {c: set(row) for c, row in zip(cells, nn)}
        keep = np.array([j in allowed[i] for i, j in pairs], dtype=bool)
        pairs = pairs[keep]
        if len(pairs) == 0:
            return pairs, np.empty(0)

    # Shared neighbor overlap in the joint space
    combined = np.vstack([emb1, emb2])
    blocks = []
    for emb, offset, n in ((emb1, 0, n1), (emb2, n1, n2)):
        idx = NearestNeighbors(n_neighbors=min(k_score, n)).fit(emb).kneighbors(
            combined, return_distance=False
        )
        blocks.append(idx + offset)
    neighbors = np.hstack(blocks)
    rows = np.repeat(np.arange(n1 + n2), neighbors.shape[1])
    indicator = sparse.csr_matrix(
        (np.ones(rows.size), (rows, neighbors.ravel())), shape=(n1 + n2, n1 + n2)
    )
    indicator.data[:] = 1.0
    shared = np.asarray(
        indicator[pairs[:, 0]].multiply(indicator[pairs[:, 1] + n1]).sum(axis=1)
    ).ravel()

    low, high = np.quantile(shared, [0.01, 0.9])
    if high > low:
        scores = np.clip((shared - low) / (high - low), 0.0, 1.0)
    else:
        scores = np.ones_like(shared, dtype=float)
    return pairs, scores


def find_integration_anchors(
    datasets,
    features,
    names=None,
    n_dims=30,
    k_anchor=5,
    k_filter=200,
    k_score=30,
    min_anchors=10,
    random_state=0,
):
    """Find scored anchors between every pair of datasets

    Args:
        datasets: List of log-normalized AnnData objects
        features: Genes used for the shared space (present in every dataset)
        names: Dataset names used in messages (optional)
        n_dims: Number of canonical vectors
        k_anchor: Neighbors searched for mutual nearest neighbors
        k_filter: Neighbors searched in expression space when filtering
        k_score: Neighbors per dataset used for the overlap score
        min_anchors: Fewer anchors for a pair is an error
        random_state: Seed for the truncated SVD

    Returns:
        DataFrame with dataset1, dataset2, cell1, cell2 (positional) and score
    """
    names = _names(datasets, names)
    if len(datasets) < 2:
        raise MalformedInputError("Integration needs at least two datasets", identifiers=names)
    for name, adata in zip(names, datasets):
        missing = [g for g in features if g not in adata.var_names]
        if missing:
            raise MalformedInputError(
                f"Integration features missing from dataset '{name}'", identifiers=missing
            )

    print("Finding integration anchors...")
    matrices = [_dense(adata[:, features].X) for adata in datasets]

    tables = []
    for i in range(len(datasets)):
        for j in range(i + 1, len(datasets)):
            pairs, scores = _pair_anchors(
                matrices[i], matrices[j], n_dims, int(k_anchor), int(k_filter), int(k_score),
                random_state,
            )
            print(f"  {names[i]} <-> {names[j]}: {len(pairs)} anchors")
            if len(pairs) < min_anchors:
                raise InsufficientAnchorsError(
                    f"Found {len(pairs)} anchors between '{names[i]}' and '{names[j]}', "
                    f"need at least {min_anchors}",
                    identifiers=[names[i], names[j]],
                )
            tables.append(
                pd.DataFrame(
                    {
                        "dataset1": i,
                        "dataset2": j,
                        "cell1": pairs[:, 0],
                        "cell2": pairs[:, 1],
                        "score": scores,
                    }
                )
            )

    return pd.concat(tables, ignore_index=True)


def _anchor_weights(query_space, anchor_cells, scores, k_weight):
    """Per-cell weights over the nearest anchors (rows sum to 1)"""
    n_query = query_space.shape[0]
    k = min(int(k_weight), len(anchor_cells))
    dist, idx = NearestNeighbors(n_neighbors=k).fit(query_space[anchor_cells]).kneighbors(
        query_space
    )

    max_dist = dist[:, -1:].copy()
    max_dist[max_dist == 0] = 1.0
    weights = (1.0 - dist / max_dist) * scores[idx]
    weights = 1.0 - np.exp(-weights / 4.0)

    totals = weights.sum(axis=1, keepdims=True)
    # No informative anchor nearby: spread evenly over the k nearest
    empty = totals[:, 0] == 0
    weights[empty] = 1.0
    totals[empty] = k
    weights = weights / totals

    rows = np.repeat(np.arange(n_query), k)
    return sparse.csr_matrix(
        (weights.ravel(), (rows, idx.ravel())), shape=(n_query, len(anchor_cells))
    )


def integrate_data(
    datasets,
    anchors,
    features,
    names=None,
    condition_key=schema.OBS_CONDITION,
    k_weight=100,
    n_dims=30,
    random_state=0,
):
    """Batch-correct datasets into one integrated container

    Datasets are merged in order into the first one (the reference). A query
    cell is corrected by the weighted average of ``reference - query``
    differences over its nearest anchors in the query's PCA space; weights
    decay linearly with distance up to the k-th anchor, are multiplied by the
    anchor score and passed through a Gaussian kernel.

    Args:
        datasets: List of log-normalized AnnData objects
        anchors: Output of find_integration_anchors
        features: Genes carried in the integrated matrix
        names: Dataset (condition) names
        condition_key: obs column receiving the dataset name
        k_weight: Number of anchors used per query cell
        n_dims: PCA dimensions of the weighting space
        random_state: Seed for the weighting PCA

    Returns:
        AnnData object with integrated values in X, merged normalized data on
        the shared gene axis in .raw and the condition in obs
    """
    names = _names(datasets, names)
    print("Integrating data...")

    corrected = [_dense(datasets[0][:, features].X).astype(np.float64)]
    for j in range(1, len(datasets)):
        query = _dense(datasets[j][:, features].X).astype(np.float64)
        pair = anchors[(anchors["dataset2"] == j) & (anchors["dataset1"] < j)]
        if pair.empty:
            raise InsufficientAnchorsError(
                f"No anchors link '{names[j]}' to the datasets merged before it",
                identifiers=[names[j]],
            )

        reference_rows = np.vstack(
            [corrected[int(d)][int(c)] for d, c in zip(pair["dataset1"], pair["cell1"])]
        )
        anchor_cells = pair["cell2"].to_numpy(dtype=int)
        differences = reference_rows - query[anchor_cells]

        n_comps = max(1, min(int(n_dims), query.shape[0] - 1, query.shape[1] - 1))
        query_space = sc.pp.pca(
            _standardize(query), n_comps=n_comps, svd_solver="arpack", random_state=random_state
        )
        weights = _anchor_weights(
            np.asarray(query_space, dtype=np.float64),
            anchor_cells,
            pair["score"].to_numpy(dtype=float),
            k_weight,
        )
        corrected.append(query + weights @ differences)
        print(f"  Merged '{names[j]}' using {len(pair)} anchors")

    # Observations with their condition
    obs = []
    for name, adata in zip(names, datasets):
        frame = adata.obs.copy()
        frame[condition_key] = name
        obs.append(frame)
    obs = pd.concat(obs)
    obs[condition_key] = pd.Categorical(obs[condition_key], categories=names)

    integrated = anndata.AnnData(
        X=np.vstack(corrected).astype(np.float32),
        obs=obs,
        var=pd.DataFrame(index=pd.Index(features)),
    )
    if not integrated.obs_names.is_unique:
        raise MalformedInputError(
            "Cell identifiers collide across datasets",
            identifiers=list(integrated.obs_names[integrated.obs_names.duplicated()]),
        )

    # Full normalized data on the shared gene axis for marker testing
    merged = anndata.concat(list(datasets), join="inner")
    merged.obs_names = integrated.obs_names
    integrated.raw = merged
    if all(schema.LAYER_COUNTS in adata.layers for adata in datasets):
        integrated.layers[schema.LAYER_COUNTS] = sparse.vstack(
            [sparse.csr_matrix(adata[:, features].layers[schema.LAYER_COUNTS]) for adata in datasets]
        ).tocsr()

    integrated.uns[schema.UNS_INTEGRATION] = {
        "anchors": anchors.reset_index(drop=True),
        "datasets": list(names),
        "k_weight": int(k_weight),
    }
    schema.set_annotation(integrated, "n_anchors", int(len(anchors)))
    return integrated
