#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles cluster renaming, marker-panel label suggestions and composition tables
"""

import numpy as np
import pandas as pd
import scanpy as sc

from scworkflow import schema
from scworkflow.errors import ConfigurationError, MalformedInputError


def rename_clusters(adata, mapping, cluster_key=schema.OBS_CLUSTER):
    """Attach human-readable cell type names to clusters

    Clusters without an entry in ``mapping`` keep their cluster label.

    Args:
        adata: AnnData object with clustering results
        mapping: Dictionary of cluster label -> cell type name
        cluster_key: obs column holding the cluster labels

    Returns:
        AnnData object with obs["celltype"]
    """
    if cluster_key not in adata.obs:
        raise MalformedInputError(f"No cluster column '{cluster_key}'", identifiers=[cluster_key])

    clusters = adata.obs[cluster_key].astype(str)
    mapping = {str(k): str(v) for k, v in (mapping or {}).items()}
    unknown = sorted(set(mapping) - set(clusters.unique()))
    if unknown:
        raise ConfigurationError("Cluster names given for unknown clusters", identifiers=unknown)

    column = adata.obs[cluster_key]
    levels = column.cat.categories if hasattr(column, "cat") else pd.unique(column)
    order = list(dict.fromkeys(mapping.get(str(c), str(c)) for c in levels))
    celltype = clusters.map(lambda c: mapping.get(c, c))
    adata.obs[schema.OBS_CELLTYPE] = pd.Categorical(celltype, categories=order)

    print(f"Named {len(mapping)} of {clusters.nunique()} clusters")
    return adata


def suggest_cluster_labels(
    adata,
    marker_panels,
    margin=0.05,
    agg="median",
    cluster_key=schema.OBS_CLUSTER,
    random_state=0,
):
    """Suggest a cell type per cluster from marker-panel module scores

    Scores every panel per cell (scanpy ``score_genes``), aggregates per
    cluster and proposes the best-scoring panel when it beats the runner-up by
    at least ``margin``.

    Args:
        adata: AnnData object with clusters and log-normalized data
        marker_panels: Dictionary of cell type -> list of marker genes
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')
        cluster_key: obs column holding the cluster labels
        random_state: Seed for the control gene sets

    Returns:
        DataFrame indexed by cluster with label, best_score, second_score and
        confident; feed the confident rows to rename_clusters
    """
    if agg not in ("median", "mean"):
        raise ConfigurationError(f"Unknown aggregation '{agg}'", identifiers=[agg])
    if cluster_key not in adata.obs:
        raise MalformedInputError(f"No cluster column '{cluster_key}'", identifiers=[cluster_key])

    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    score_cols = []
    for label, genes in marker_panels.items():
        genes = [g for g in genes if g in var_names]
        if not genes:
            print(f"  Skipping {label}: no marker genes found")
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(
            adata, gene_list=genes, score_name=score_name, use_raw=use_raw,
            random_state=random_state,
        )
        score_cols.append(score_name)

    if not score_cols:
        raise ConfigurationError(
            "None of the marker panels has genes in the data", identifiers=list(marker_panels)
        )

    # Aggregate scores per cluster
    grouped = adata.obs.groupby(cluster_key, observed=True)[score_cols]
    grouped = grouped.median() if agg == "median" else grouped.mean()

    values = grouped.to_numpy(dtype=float)
    top_idx = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top_idx]
    if values.shape[1] > 1:
        second = np.partition(values, -2, axis=1)[:, -2]
    else:
        second = np.full(values.shape[0], -np.inf)
    labels = np.array([c[len("score_"):] for c in score_cols])

    table = pd.DataFrame(
        {
            "label": labels[top_idx],
            "best_score": best,
            "second_score": second,
            "confident": best - second >= margin,
        },
        index=grouped.index.astype(str),
    )
    table.index.name = cluster_key

    print(f"Confident labels for {int(table['confident'].sum())} / {len(table)} clusters")
    return table


def cluster_composition(adata, cluster_key=schema.OBS_CLUSTER, condition_key=schema.OBS_CONDITION, normalize=False):
    """Cells per cluster per condition

    Args:
        normalize: Return fractions within each condition instead of counts
    """
    for key in (cluster_key, condition_key):
        if key not in adata.obs:
            raise MalformedInputError(f"Column '{key}' not found in obs", identifiers=[key])

    return pd.crosstab(
        adata.obs[cluster_key],
        adata.obs[condition_key],
        normalize="columns" if normalize else False,
    )
